"""GNAP grant negotiation.

Merchant grants are non-interactive (incoming payments on the merchant's own
wallet). Customer grants are interactive: the customer approves a quote and an
outgoing payment bound to one receiver in their wallet, and the grant is
continued with the ``interact_ref`` handed back on the finish redirect.
"""

import secrets
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from src.errors import GrantDenied, GrantIncomplete, GrantMalformed
from src.logging_utils import get_logger, redact
from src.models import AccessGrant, GrantKind, WalletIdentity
from src.openpayments.client import OpenPaymentsClient

logger = get_logger(__name__)

MERCHANT_ACTIONS = ("create", "read", "list", "complete")

# Remembered per negotiator; oldest refs are forgotten past this size
_MAX_CONSUMED_REFS = 10_000


def _token_value(data: Dict[str, Any]) -> Tuple[Optional[str], Optional[int]]:
    token = data.get("access_token")
    if isinstance(token, list):
        token = token[0] if token else None
    if not isinstance(token, dict):
        return None, None
    expires_in = token.get("expires_in")
    return token.get("value") or None, int(expires_in) if expires_in is not None else None


class GrantNegotiator:
    """Requests and continues GNAP grants through an OpenPaymentsClient."""

    def __init__(self, client: OpenPaymentsClient):
        self.client = client
        self._consumed_refs: "OrderedDict[str, None]" = OrderedDict()

    def _client_wallet(self) -> str:
        credential, _ = self.client.credentials.require()
        return credential.wallet_address_url

    async def request_merchant_grant(
        self,
        merchant: WalletIdentity,
        actions: Sequence[str] = MERCHANT_ACTIONS,
        locations: Optional[Sequence[str]] = None,
    ) -> AccessGrant:
        """Request a non-interactive incoming-payment grant on the merchant wallet.

        Raises:
            GrantDenied: AS refused, or answered with an interactive/pending grant.
            GrantMalformed: Final answer without an access token value.
        """
        access_item: Dict[str, Any] = {
            "type": "incoming-payment",
            "actions": list(actions),
            "identifier": merchant.address_url,
        }
        if locations:
            access_item["locations"] = list(locations)

        body = {
            "access_token": {"access": [access_item]},
            "client": self._client_wallet(),
        }
        data = await self.client.request_grant(merchant.auth_server_url, body)

        if "interact" in data or ("continue" in data and "access_token" not in data):
            raise GrantDenied(
                "Merchant grant came back pending; incoming-payment grants must be non-interactive",
            )
        value, expires_in = _token_value(data)
        if not value:
            raise GrantMalformed("Merchant grant response has no access_token.value")

        logger.info(f"Merchant grant issued for {','.join(actions)} (token {redact(value)})")
        return AccessGrant(kind=GrantKind.NON_INTERACTIVE, access_token=value, expires_in=expires_in)

    async def request_merchant_token(
        self, merchant: WalletIdentity, actions: Sequence[str] = MERCHANT_ACTIONS
    ) -> AccessGrant:
        """Merchant grant scoped to the resource server, falling back to no locations.

        Some authorization servers reject the ``locations`` field with a 4xx;
        only that refusal is retried, and the second attempt's error is the one
        reported. A pending (interactive) merchant grant is never retried.
        """
        try:
            return await self.request_merchant_grant(
                merchant, actions, locations=[merchant.resource_server_url]
            )
        except GrantDenied as e:
            if e.upstream_status is None:
                raise
            logger.warning(f"Merchant grant with locations refused ({e.upstream_status}), retrying without")
            return await self.request_merchant_grant(merchant, actions)

    async def request_customer_interactive_grant(
        self,
        customer: WalletIdentity,
        receiver_url: str,
        finish_redirect_uri: str,
        nonce: Optional[str] = None,
    ) -> AccessGrant:
        """Start the customer's consent flow for paying ``receiver_url``.

        The outgoing-payment access is limited to that receiver, so the
        resulting token cannot pay anyone else.

        Raises:
            GrantDenied: The customer's AS refused the request.
            GrantMalformed: No redirect or continuation in the answer.
        """
        nonce = nonce or secrets.token_urlsafe(16)
        body = {
            "access_token": {
                "access": [
                    {
                        "type": "quote",
                        "actions": ["create", "read"],
                        "identifier": customer.address_url,
                    },
                    {
                        "type": "outgoing-payment",
                        "actions": ["create", "read", "list"],
                        "identifier": customer.address_url,
                        "limits": {"receiver": receiver_url},
                    },
                ]
            },
            "client": self._client_wallet(),
            "interact": {
                "start": ["redirect"],
                "finish": {"method": "redirect", "uri": finish_redirect_uri, "nonce": nonce},
            },
        }
        data = await self.client.request_grant(customer.auth_server_url, body)

        interact = data.get("interact") or {}
        cont = data.get("continue") or {}
        redirect = interact.get("redirect") if isinstance(interact, dict) else None
        continue_uri = cont.get("uri") if isinstance(cont, dict) else None
        continue_token, _ = _token_value(cont) if isinstance(cont, dict) else (None, None)
        if not redirect or not continue_uri or not continue_token:
            raise GrantMalformed(
                "Customer grant response lacks interact.redirect or continue",
                hint="The customer's wallet did not start an interactive consent flow.",
            )

        logger.info(f"Customer grant pending for receiver {receiver_url}")
        return AccessGrant(
            kind=GrantKind.INTERACTIVE_PENDING,
            continue_uri=continue_uri,
            continue_access_token=continue_token,
            interact_redirect_url=redirect,
            finish_nonce=nonce,
        )

    async def continue_customer_grant(
        self, continue_uri: str, continue_access_token: str, interact_ref: str
    ) -> AccessGrant:
        """Finalize a pending customer grant.

        Each interact_ref is submitted at most once; a repeat fails without a
        network call.

        Raises:
            GrantIncomplete: Denied, stale or reused consent, or no token issued.
        """
        if interact_ref in self._consumed_refs:
            raise GrantIncomplete("interact_ref was already submitted")
        self._consumed_refs[interact_ref] = None
        while len(self._consumed_refs) > _MAX_CONSUMED_REFS:
            self._consumed_refs.popitem(last=False)

        data = await self.client.continue_grant(continue_uri, continue_access_token, interact_ref)
        value, expires_in = _token_value(data)
        if not value:
            raise GrantIncomplete("Grant continuation returned no access token")

        cont = data.get("continue") if isinstance(data.get("continue"), dict) else {}
        logger.info(f"Customer grant finalized (token {redact(value)})")
        return AccessGrant(
            kind=GrantKind.INTERACTIVE_FINALIZED,
            access_token=value,
            expires_in=expires_in,
            continue_uri=cont.get("uri"),
        )


class MerchantTokenCache:
    """Short-lived reuse of merchant access tokens, keyed by wallet and actions."""

    def __init__(
        self,
        negotiator: GrantNegotiator,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.negotiator = negotiator
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._tokens: Dict[Tuple[str, Tuple[str, ...]], Tuple[str, float]] = {}

    @staticmethod
    def _key(merchant: WalletIdentity, actions: Iterable[str]) -> Tuple[str, Tuple[str, ...]]:
        return merchant.address_url, tuple(sorted(set(actions)))

    async def get(self, merchant: WalletIdentity, actions: Sequence[str]) -> str:
        key = self._key(merchant, actions)
        cached = self._tokens.get(key)
        now = self.clock()
        if cached and cached[1] > now:
            return cached[0]

        grant = await self.negotiator.request_merchant_token(merchant, actions)
        ttl = self.ttl_seconds
        if grant.expires_in is not None:
            ttl = min(ttl, grant.expires_in)
        self._tokens[key] = (grant.access_token, now + ttl)
        return grant.access_token

    def invalidate(self, merchant: Optional[WalletIdentity] = None, actions: Optional[Sequence[str]] = None):
        """Forget cached tokens; everything when called without arguments."""
        if merchant is None:
            self._tokens.clear()
        elif actions is None:
            for key in [k for k in self._tokens if k[0] == merchant.address_url]:
                del self._tokens[key]
        else:
            self._tokens.pop(self._key(merchant, actions), None)
