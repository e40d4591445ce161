"""Error taxonomy for the checkout orchestrator.

Remote failures are translated into these classes where they are detected
(HTTP client, wallet resolver, grant negotiator); nothing from httpx crosses
the orchestrator boundary. The HTTP layer renders them with ``to_payload``.
"""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base class for every failure the checkout service reports."""

    code = "checkout_error"
    status_code = 500
    retryable = False
    default_hint: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        upstream_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint or self.default_hint
        self.upstream_status = upstream_status
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.hint:
            payload["hint"] = self.hint
        if self.upstream_status is not None:
            payload["upstreamStatus"] = self.upstream_status
        return payload


class ConfigError(CheckoutError):
    code = "config_error"
    status_code = 500
    default_hint = (
        "Set WALLET_ADDRESS_URL, KEY_ID and OPEN_PAYMENTS_PRIVATE_KEY_PEM "
        "(or OPEN_PAYMENTS_PRIVATE_KEY_B64) for the merchant wallet."
    )


class InvalidInput(CheckoutError):
    code = "invalid_input"
    status_code = 400


class InvalidAmount(InvalidInput):
    code = "invalid_amount"
    default_hint = "Amount must be a finite number greater than zero."


class WalletUnresolvable(CheckoutError):
    code = "wallet_unresolvable"
    status_code = 502
    retryable = True
    default_hint = "Check the wallet address for typos, then retry."


class GrantDenied(CheckoutError):
    code = "grant_denied"
    status_code = 502
    default_hint = (
        "The authorization server refused the grant. Check that KEY_ID is registered "
        "on the merchant wallet and matches the private key."
    )


class GrantMalformed(CheckoutError):
    code = "grant_malformed"
    status_code = 502


class GrantIncomplete(CheckoutError):
    code = "grant_incomplete"
    status_code = 409
    default_hint = "Consent was not completed. Restart checkout; do not resubmit the same interact_ref."


class Forbidden(CheckoutError):
    code = "forbidden"
    status_code = 403
    default_hint = (
        "The resource server rejected the signer. The merchant credentials "
        "(WALLET_ADDRESS_URL / KEY_ID / private key) likely do not own this receiver."
    )


class NetworkTimeout(CheckoutError):
    code = "network_timeout"
    status_code = 504
    retryable = True
    default_hint = "The payment network did not answer in time. Retry, or contact support if it persists."


class NetworkError(CheckoutError):
    code = "network_error"
    status_code = 502
    retryable = True


class ResourceServerError(CheckoutError):
    code = "resource_server_error"
    status_code = 502


class SessionNotFound(CheckoutError):
    code = "session_not_found"
    status_code = 404
    default_hint = "Please restart checkout."


class TimedOut(CheckoutError):
    code = "timed_out"
    status_code = 504
    default_hint = "Payment was not confirmed in time. Please contact support before paying again."


class OrderInProgress(CheckoutError):
    code = "order_in_progress"
    status_code = 409
    retryable = True
    default_hint = "Checkout for this order is already being started. Retry in a moment."
