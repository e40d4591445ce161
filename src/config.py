"""Centralized configuration management for the Open Payments checkout service.

Loads all configuration from environment variables (and a local .env file)
with sensible defaults for the Interledger test network.
"""

from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the checkout service."""

    # Merchant Open Payments identity
    wallet_address_url: str = Field(default="", description="Merchant wallet address URL")
    key_id: str = Field(default="", description="Key id registered with the merchant wallet")
    open_payments_private_key_pem: str = Field(
        default="", description="Ed25519 private key (PEM, literal \\n allowed)"
    )
    open_payments_private_key_b64: str = Field(
        default="", description="Base64 of the PEM, or of the bare key body"
    )

    # Redirect contract
    frontend_url: str = Field(default="http://localhost:5173")
    finish_redirect_uri: Optional[str] = Field(
        default=None, description="Where the wallet sends the browser back with interact_ref"
    )

    # Service
    checkout_host: str = Field(default="0.0.0.0")
    checkout_port: int = Field(default=3001)

    # Database
    database_path: str = Field(default="./checkout.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Network behaviour
    http_timeout_seconds: float = Field(default=10.0, description="Per-call timeout")
    merchant_token_ttl_seconds: float = Field(
        default=60.0, description="Upper bound on merchant token reuse"
    )
    order_reservation_seconds: float = Field(
        default=60.0, description="After this, an order reserved by a checkout that never created its receiver can be taken over"
    )

    # Settlement polling
    poll_interval_seconds: float = Field(default=2.5)
    poll_max_attempts: int = Field(default=120, description="~5 minutes at the default interval")

    # Wallet defaults when the wallet document omits them
    default_asset_code: str = Field(default="USD")
    default_asset_scale: int = Field(default=2)

    # Dev-only credential override
    allow_runtime_credentials: bool = Field(default=False)
    admin_token: str = Field(default="", description="Required in X-Admin-Token for overrides")

    model_config = {"env_file": ".env", "case_sensitive": False, "extra": "ignore"}

    @property
    def callback_uri(self) -> str:
        """Finish redirect URI handed to the customer's authorization server."""
        if self.finish_redirect_uri:
            return self.finish_redirect_uri
        return f"{self.frontend_url.rstrip('/')}/tienda/callback"

    @property
    def has_credentials(self) -> bool:
        return bool(
            self.wallet_address_url
            and self.key_id
            and (self.open_payments_private_key_pem or self.open_payments_private_key_b64)
        )


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["checkout"], cfg: Optional[Config] = None) -> list[str]:
    """Report configuration problems for a service.

    Missing merchant credentials are not fatal at startup: every signed call
    fails with ConfigError until they are supplied.

    Args:
        service: The service name to validate configuration for.
        cfg: Configuration to check. Defaults to the global instance.

    Returns:
        A list of human readable problems, empty when the config is complete.
    """
    cfg = cfg or config
    problems = []

    if service == "checkout":
        if not cfg.wallet_address_url:
            problems.append("WALLET_ADDRESS_URL must be set")
        elif not cfg.wallet_address_url.startswith("https://"):
            problems.append("WALLET_ADDRESS_URL must start with https://")
        if not cfg.key_id:
            problems.append("KEY_ID must be set")
        if not cfg.open_payments_private_key_pem and not cfg.open_payments_private_key_b64:
            problems.append(
                "Either OPEN_PAYMENTS_PRIVATE_KEY_PEM or OPEN_PAYMENTS_PRIVATE_KEY_B64 must be set"
            )
        if cfg.allow_runtime_credentials and not cfg.admin_token:
            problems.append("ADMIN_TOKEN must be set when ALLOW_RUNTIME_CREDENTIALS is enabled")

    return problems
