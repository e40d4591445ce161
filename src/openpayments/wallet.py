"""Wallet address resolution.

Turns a wallet address URL, or a ``$`` payment pointer, into the public
metadata of the wallet: its authorization server, resource server and asset.
"""

from typing import Any, Dict, Optional, Tuple

from src.errors import InvalidInput, NetworkError, WalletUnresolvable
from src.logging_utils import get_logger
from src.models import WalletIdentity
from src.openpayments.client import JSON_ACCEPT, OpenPaymentsClient

logger = get_logger(__name__)

LEGACY_ACCEPT = "application/spsp4+json, application/json"


def pointer_to_url(pointer: str) -> str:
    """Rewrite ``$host/path`` to ``https://host/path/.well-known/pay``.

    Anything not starting with ``$`` is returned stripped but otherwise unchanged.
    """
    p = pointer.strip()
    if not p.startswith("$"):
        return p
    rest = p[1:].lstrip("/").rstrip("/")
    return f"https://{rest}/.well-known/pay"


def normalize_wallet_address(wallet_address: Optional[str]) -> str:
    """Validate a wallet address or payment pointer and return its URL.

    Raises:
        InvalidInput: If the address is empty, or neither https:// nor a pointer.
    """
    if not wallet_address or not str(wallet_address).strip():
        raise InvalidInput("Wallet address is required")
    url = pointer_to_url(str(wallet_address))
    if not url.startswith("https://") or len(url) <= len("https://"):
        raise InvalidInput(
            f"Wallet address must be an https:// URL or a $ payment pointer: {wallet_address!r}",
            hint="Example: https://ilp.interledger-test.dev/alice",
        )
    return url


class WalletResolver:
    """Resolves wallet addresses to WalletIdentity."""

    def __init__(
        self,
        client: OpenPaymentsClient,
        default_asset_code: str = "USD",
        default_asset_scale: int = 2,
        cache: bool = False,
    ):
        self.client = client
        self.default_asset_code = default_asset_code
        self.default_asset_scale = default_asset_scale
        self.cache_enabled = cache
        self._cache: Dict[str, Tuple[WalletIdentity, Dict[str, Any]]] = {}

    async def _get(self, url: str, accept: str) -> Tuple[int, Optional[Dict[str, Any]]]:
        try:
            response = await self.client.fetch_wallet_document(url, accept=accept)
        except NetworkError as e:
            # A 5xx answer is a status like any other here; transport failures propagate
            if e.upstream_status is None:
                raise
            return e.upstream_status, None

        if not response.is_success:
            return response.status_code, None
        try:
            document = response.json()
        except ValueError:
            raise WalletUnresolvable(f"Wallet {url} returned a non-JSON document")
        if not isinstance(document, dict):
            raise WalletUnresolvable(f"Wallet {url} returned {type(document).__name__}, expected object")
        return response.status_code, document

    async def _fetch(self, url: str) -> Tuple[WalletIdentity, Dict[str, Any]]:
        if self.cache_enabled and url in self._cache:
            return self._cache[url]

        status, document = await self._get(url, JSON_ACCEPT)
        if document is None:
            logger.info(f"Wallet {url} answered {status}, retrying with legacy Accept header")
            status, document = await self._get(url, LEGACY_ACCEPT)
        if document is None:
            raise WalletUnresolvable(f"Could not resolve wallet {url} ({status})", upstream_status=status)

        identity = self._identity(url, document)
        if self.cache_enabled:
            self._cache[url] = (identity, document)
        return identity, document

    def _asset(self, document: Dict[str, Any]) -> Tuple[Optional[str], Optional[int]]:
        asset = document.get("asset") if isinstance(document.get("asset"), dict) else {}
        code = document.get("assetCode") or asset.get("code")
        scale = document.get("assetScale")
        if scale is None:
            scale = asset.get("scale")
        return code, scale

    def _identity(self, url: str, document: Dict[str, Any]) -> WalletIdentity:
        auth_server = document.get("authServer")
        resource_server = document.get("resourceServer")
        if not auth_server or not resource_server:
            raise WalletUnresolvable(
                f"Wallet {url} does not advertise authServer and resourceServer",
                hint="The address may be a legacy SPSP pointer without Open Payments support.",
            )

        code, scale = self._asset(document)
        try:
            return WalletIdentity(
                address_url=document.get("id") or url,
                resource_server_url=resource_server,
                auth_server_url=auth_server,
                asset_code=code or self.default_asset_code,
                asset_scale=self.default_asset_scale if scale is None else int(scale),
                public_name=document.get("publicName"),
            )
        except (ValueError, TypeError) as e:
            raise WalletUnresolvable(f"Wallet {url} has invalid asset metadata: {e}")

    async def resolve(self, wallet_address: str) -> WalletIdentity:
        """Resolve a wallet address or payment pointer.

        Raises:
            InvalidInput: Address is not https:// and not a payment pointer.
            WalletUnresolvable: Lookup failed or the document is unusable.
            NetworkTimeout, NetworkError: Transport failures.
        """
        url = normalize_wallet_address(wallet_address)
        identity, _ = await self._fetch(url)
        logger.debug(f"Resolved wallet {url}: {identity.asset_code}/{identity.asset_scale}")
        return identity

    async def describe(self, pointer: str) -> Dict[str, Any]:
        """Resolved URL, asset and raw document of a wallet, for display."""
        url = normalize_wallet_address(pointer)
        identity, document = await self._fetch(url)
        return {
            "ok": True,
            "resolvedUrl": url,
            "assetCode": identity.asset_code,
            "assetScale": identity.asset_scale,
            "info": document,
        }
