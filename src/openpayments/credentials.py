"""Merchant credential store and authenticated-client factory."""

import base64
from typing import Optional, Tuple

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from src.config import Config
from src.errors import ConfigError
from src.logging_utils import get_logger
from src.models import MerchantCredential
from src.openpayments.client import OpenPaymentsClient
from src.openpayments.signatures import key_fingerprint, load_private_key, normalize_private_key_pem

logger = get_logger(__name__)

SELF_TEST_MESSAGE = b"open-payments-self-test"


class CredentialStore:
    """Holds the merchant signing identity.

    Built from an explicit Config. The identity is read-only afterwards except
    through ``override``, the dev-only administrative path, which only works
    when the config enables it.
    """

    def __init__(self, cfg: Config):
        self.config = cfg
        self._credential = MerchantCredential(
            wallet_address_url=cfg.wallet_address_url.strip(),
            key_id=cfg.key_id.strip(),
            private_key_pem=self._pem_from_config(cfg),
        )
        self._key: Optional[Ed25519PrivateKey] = None

    @staticmethod
    def _pem_from_config(cfg: Config) -> str:
        try:
            return normalize_private_key_pem(cfg.open_payments_private_key_pem, cfg.open_payments_private_key_b64)
        except ConfigError as e:
            # Reported by require() at the first signed call
            logger.warning(f"Merchant private key not usable: {e.message}")
            return ""

    @property
    def credential(self) -> MerchantCredential:
        return self._credential

    @property
    def configured(self) -> bool:
        return not self._credential.missing_fields()

    def require(self) -> Tuple[MerchantCredential, Ed25519PrivateKey]:
        """Return the credential and its parsed key, or fail fast.

        Raises:
            ConfigError: If any field is missing or the key is not Ed25519.
        """
        missing = self._credential.missing_fields()
        if missing:
            raise ConfigError(f"Merchant credentials incomplete: missing {', '.join(missing)}")
        if not self._credential.wallet_address_url.startswith("https://"):
            raise ConfigError("Merchant wallet address URL must start with https://")
        if self._key is None:
            self._key = load_private_key(self._credential.private_key_pem)
        return self._credential, self._key

    def override(
        self,
        wallet_address_url: Optional[str] = None,
        key_id: Optional[str] = None,
        private_key_pem: Optional[str] = None,
    ) -> MerchantCredential:
        """Replace parts of the merchant identity at runtime (development only).

        Raises:
            ConfigError: If runtime overrides are disabled, or the new key does not parse.
        """
        if not self.config.allow_runtime_credentials:
            raise ConfigError("Runtime credential override is disabled")

        candidate = MerchantCredential(
            wallet_address_url=(wallet_address_url or self._credential.wallet_address_url).strip(),
            key_id=(key_id or self._credential.key_id).strip(),
            private_key_pem=(
                normalize_private_key_pem(pem=private_key_pem)
                if private_key_pem
                else self._credential.private_key_pem
            ),
        )
        key = load_private_key(candidate.private_key_pem) if candidate.private_key_pem else None

        self._credential = candidate
        self._key = key
        logger.warning(
            f"Merchant credentials overridden at runtime: wallet={candidate.wallet_address_url} "
            f"key_id={candidate.key_id}"
        )
        return candidate

    def self_test(self) -> dict:
        """Sign and verify a fixed message with the merchant key."""
        credential, key = self.require()
        signature = key.sign(SELF_TEST_MESSAGE)
        public_key = key.public_key()
        try:
            public_key.verify(signature, SELF_TEST_MESSAGE)
            ok = True
        except Exception:
            ok = False
        return {
            "ok": ok,
            "keyId": credential.key_id,
            "walletAddressUrl": credential.wallet_address_url,
            "fingerprint": key_fingerprint(public_key),
            "signature": base64.urlsafe_b64encode(signature).decode("ascii").rstrip("="),
        }

    def client(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> OpenPaymentsClient:
        """Build an Open Payments client signing with this store's identity."""
        return OpenPaymentsClient(self, timeout=self.config.http_timeout_seconds, transport=transport)
