"""Token ledger integration service"""
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from wct_rewards.config import Settings
from wct_rewards.errors import RewardsError

logger = logging.getLogger(__name__)

# Base58 encoded 32 byte public key
WALLET_ADDRESS_PATTERN = re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')


class LedgerError(RewardsError):
    """Base exception for ledger errors"""
    pass


class InvalidWalletError(LedgerError):
    pass


class AccountNotFoundError(LedgerError):
    pass


class InsufficientBalanceError(LedgerError):
    pass


class LedgerRejectedError(LedgerError):
    pass


class LedgerUnavailableError(LedgerError):
    """Network failure, timeout or server error talking to the ledger"""
    pass


ERROR_CODES = {
    'account_not_found': AccountNotFoundError,
    'invalid_address': InvalidWalletError,
    'insufficient_balance': InsufficientBalanceError,
}


def is_valid_wallet_address(address: Optional[str]) -> bool:
    return bool(address) and bool(WALLET_ADDRESS_PATTERN.match(address))


class Ledger(ABC):
    """Operations the distributor needs from the token ledger"""

    @abstractmethod
    def get_account(self, owner: str) -> str:
        """Token account held by `owner`; raises AccountNotFoundError"""

    @abstractmethod
    def create_account(self, owner: str) -> str:
        """Provision a token account for `owner`"""

    @abstractmethod
    def get_balance(self, account: str) -> int:
        """Balance of a token account in base units"""

    @abstractmethod
    def submit_transfer(self, from_account: str, to_account: str, amount: int) -> str:
        """Submit a transfer of `amount` base units; returns the transaction reference"""

    @abstractmethod
    def confirm_transfer(self, transaction_ref: str) -> bool:
        """Whether the ledger has confirmed the transaction"""


class LedgerClient(Ledger):
    """HTTP client for the ledger service with signed transfer submission"""

    def __init__(self, base_url: str, mint: Optional[str] = None, signing_key: Optional[str] = None,
                 timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.mint = mint
        self.timeout = timeout
        self.http = session or requests.Session()
        self._private_key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(signing_key)) if signing_key else None

    @classmethod
    def from_settings(cls, config: Settings) -> 'LedgerClient':
        return cls(
            base_url=config.LEDGER_URL,
            mint=config.TOKEN_MINT,
            signing_key=config.TREASURY_SIGNING_KEY,
            timeout=config.LEDGER_TIMEOUT
        )

    @property
    def public_key_hex(self) -> Optional[str]:
        if not self._private_key:
            return None
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        ).hex()

    def _sign(self, body: bytes) -> Dict[str, str]:
        if not self._private_key:
            raise LedgerError("Treasury signing key is not configured")
        return {
            'X-Ledger-Public-Key': self.public_key_hex,
            'X-Ledger-Signature': self._private_key.sign(body).hex(),
        }

    def _raise_for_response(self, response: requests.Response) -> None:
        if response.status_code < 400:
            return
        if response.status_code >= 500:
            raise LedgerUnavailableError(f"Ledger server error {response.status_code}: {response.text}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get('error') if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}
        code = error.get('code', '')
        message = error.get('message') or response.text
        if response.status_code == 404 and not code:
            code = 'account_not_found'
        raise ERROR_CODES.get(code, LedgerRejectedError)(f"Ledger rejected request ({code or response.status_code}): {message}")

    @staticmethod
    def _parse(response: requests.Response, endpoint: str) -> dict:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise LedgerRejectedError(f"Malformed ledger response from {endpoint}: {e}") from e
        if not isinstance(body, dict):
            raise LedgerRejectedError(f"Malformed ledger response from {endpoint}: expected an object")
        return body

    @staticmethod
    def _field(response: dict, key: str, endpoint: str) -> Any:
        if response.get(key) is None:
            raise LedgerRejectedError(f"Ledger response from {endpoint} has no '{key}'")
        return response[key]

    def _make_request(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None,
                      signed: bool = False, retries: int = 1) -> dict:
        """
        Make request to the ledger, retrying transport failures up to `retries` times.

        Raises:
            LedgerUnavailableError: On any transport failure or server error
            LedgerRejectedError: On a client error or a body that is not a JSON object
        """
        headers = {'Accept': 'application/json'}
        body = None
        if payload is not None:
            body = json.dumps(payload, sort_keys=True, separators=(',', ':')).encode()
            headers['Content-Type'] = 'application/json'
            if signed:
                headers.update(self._sign(body))

        for attempt in range(retries):
            try:
                response = self.http.request(
                    method,
                    f'{self.base_url}/{endpoint}',
                    data=body,
                    headers=headers,
                    timeout=self.timeout
                )
                self._raise_for_response(response)
                return self._parse(response, endpoint)
            except (requests.RequestException, LedgerUnavailableError) as e:
                if attempt == retries - 1:
                    if isinstance(e, LedgerUnavailableError):
                        raise
                    raise LedgerUnavailableError(f"Ledger unreachable: {e}") from e
                logger.warning(f"Retrying ledger request after error: {e}")
                time.sleep(1)

    def get_account(self, owner: str) -> str:
        if not is_valid_wallet_address(owner):
            raise InvalidWalletError(f"Invalid wallet address: {owner}")
        params = f'?mint={self.mint}' if self.mint else ''
        response = self._make_request('GET', f'accounts/{owner}{params}', retries=3)
        return self._field(response, 'account', 'accounts')

    def create_account(self, owner: str) -> str:
        logger.info(f"Creating token account for {owner}")
        response = self._make_request('POST', 'accounts', {'owner': owner, 'mint': self.mint}, signed=True)
        return self._field(response, 'account', 'accounts')

    def get_balance(self, account: str) -> int:
        response = self._make_request('GET', f'accounts/{account}/balance', retries=3)
        amount = self._field(response, 'amount', 'balance')
        try:
            return int(amount)
        except (TypeError, ValueError) as e:
            raise LedgerRejectedError(f"Ledger returned a non-numeric balance: {amount!r}") from e

    def submit_transfer(self, from_account: str, to_account: str, amount: int) -> str:
        # Never retried here: a lost response must be resolved by confirmation, not resubmission
        response = self._make_request(
            'POST',
            'transfers',
            {'from': from_account, 'to': to_account, 'amount': int(amount), 'mint': self.mint},
            signed=True
        )
        return self._field(response, 'transactionRef', 'transfers')

    def confirm_transfer(self, transaction_ref: str) -> bool:
        response = self._make_request('GET', f'transfers/{transaction_ref}', retries=3)
        return bool(response.get('confirmed', False))
