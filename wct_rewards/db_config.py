# wct_rewards/db_config.py
"""Database configuration and credentials management"""
from dataclasses import dataclass
from urllib.parse import quote_plus

from wct_rewards.config import Settings, settings as default_settings


@dataclass
class DatabaseCredentials:
    """Database credentials container with validation"""
    host: str
    port: str
    name: str
    user: str
    password: str
    ssl_mode: str = 'prefer'

    def to_connection_string(self) -> str:
        """Generate database connection string with proper escaping"""
        return (
            f"postgresql://{quote_plus(self.user)}:{quote_plus(self.password)}@{self.host}:{self.port}/"
            f"{self.name}?sslmode={self.ssl_mode}"
        )

    @classmethod
    def from_settings(cls, config: Settings) -> 'DatabaseCredentials':
        """Create credentials from application settings"""
        return cls(
            host=config.DB_HOST,
            port=config.DB_PORT,
            name=config.DB_NAME,
            user=config.DB_USER,
            password=config.DB_PASSWORD or '',
            ssl_mode=config.DB_SSL_MODE
        )


class DatabaseManager:
    """Resolves the connection string the engine is created with"""

    @classmethod
    def initialize_from_env(cls, config: Settings = None) -> str:
        """
        Initialize database connection from environment variables.

        DATABASE_URL wins when set; otherwise the DB_* settings are combined
        into a Postgres URL.

        Returns:
            Database connection string

        Raises:
            ValueError: If neither DATABASE_URL nor DB_PASSWORD is configured
        """
        config = config or default_settings
        if config.DATABASE_URL:
            return config.DATABASE_URL

        if not config.DB_PASSWORD:
            raise ValueError("DATABASE_URL or DB_PASSWORD setting is required")

        return DatabaseCredentials.from_settings(config).to_connection_string()
