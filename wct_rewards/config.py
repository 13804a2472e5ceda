"""Application configuration and environment settings"""
from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class S3Settings(BaseModel):
    """S3 settings for distribution log uploads"""
    bucket: str = Field(..., description="Bucket receiving distribution logs")
    region: str = Field(..., description="AWS region")
    prefix: str = Field("distribution-logs", description="Key prefix for uploaded logs")


class RewardPolicy(BaseModel):
    """
    Parameters of a reward period.

    Passed explicitly to the planner and the distributor so runs can be
    reproduced with different pools and floors.
    """
    pool: float = Field(200_000, gt=0, description="Tokens distributed per period")
    min_floor: int = Field(10, ge=0, description="Minimum tokens paid to any rewarded contributor")
    token_decimals: int = Field(9, ge=0, description="Decimals of the token on the ledger")
    transfer_delay_seconds: float = Field(0.5, ge=0, description="Pause between ledger transfers")
    confirm_attempts: int = Field(5, ge=1, description="Confirmation polls before a transfer is failed")
    confirm_interval_seconds: float = Field(1.0, ge=0, description="Pause between confirmation polls")
    provision_accounts: bool = Field(True, description="Create missing recipient ledger accounts")

    def to_base_units(self, tokens: int) -> int:
        """Convert whole tokens to ledger base units"""
        return int(tokens) * 10 ** self.token_decimals


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Database
    DATABASE_URL: Optional[str] = Field(None, description="Full SQLAlchemy connection string")
    DB_HOST: str = Field("localhost", description="Database host")
    DB_PORT: str = Field("5432", description="Database port")
    DB_NAME: str = Field("wct_rewards", description="Database name")
    DB_USER: str = Field("wct", description="Database user")
    DB_PASSWORD: Optional[str] = Field(None, description="Database password")
    DB_SSL_MODE: str = Field("prefer", description="Postgres sslmode")

    # Ledger
    LEDGER_URL: str = Field("http://localhost:8899", description="Base URL of the ledger service")
    LEDGER_TIMEOUT: float = Field(30.0, description="Ledger request timeout in seconds")
    TREASURY_WALLET: Optional[str] = Field(None, description="Wallet owning the reward treasury")
    TREASURY_SIGNING_KEY: Optional[str] = Field(None, description="Hex encoded Ed25519 seed of the treasury")
    TOKEN_MINT: Optional[str] = Field(None, description="Mint address of the reward token")
    TOKEN_DECIMALS: int = Field(9, description="Token decimals")

    # Reward policy
    WEEKLY_REWARD_POOL: float = Field(200_000, description="Tokens distributed per period")
    MIN_TOKENS_PER_USER: int = Field(10, description="Minimum token reward per contributor")
    TRANSFER_DELAY_SECONDS: float = Field(0.5, description="Delay between transfers")
    CONFIRM_ATTEMPTS: int = Field(5, description="Confirmation polls per transfer")
    CONFIRM_INTERVAL_SECONDS: float = Field(1.0, description="Delay between confirmation polls")
    PROVISION_ACCOUNTS: bool = Field(True, description="Create missing recipient accounts")
    REWARD_PERIOD_DAYS: int = Field(7, description="Length of a reward period in days")

    # Output and audit
    OUTPUT_DIR: str = Field("./distribution-logs", description="Directory for distribution logs")
    DISTRIBUTION_LOG_BUCKET: Optional[str] = Field(None, description="S3 bucket for distribution logs")
    AWS_REGION: str = Field(default="us-east-1", description="AWS region")

    # Admin API
    ADMIN_API_TOKEN: Optional[str] = Field(None, description="Bearer token required by the admin API")

    @property
    def reward_policy(self) -> RewardPolicy:
        """Get the reward policy as a separate model"""
        return RewardPolicy(
            pool=self.WEEKLY_REWARD_POOL,
            min_floor=self.MIN_TOKENS_PER_USER,
            token_decimals=self.TOKEN_DECIMALS,
            transfer_delay_seconds=self.TRANSFER_DELAY_SECONDS,
            confirm_attempts=self.CONFIRM_ATTEMPTS,
            confirm_interval_seconds=self.CONFIRM_INTERVAL_SECONDS,
            provision_accounts=self.PROVISION_ACCOUNTS,
        )

    @property
    def s3_settings(self) -> Optional[S3Settings]:
        """Get S3 settings, or None when log uploads are disabled"""
        if not self.DISTRIBUTION_LOG_BUCKET:
            return None
        return S3Settings(
            bucket=self.DISTRIBUTION_LOG_BUCKET,
            region=self.AWS_REGION
        )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )


settings = Settings()
