"""Authenticated Open Payments HTTP client.

One canonical client for wallet addresses, GNAP grants and the resource
server endpoints (incoming payments, quotes, outgoing payments). Requests to
authorization and resource servers are signed with the merchant key; wallet
address lookups are public.

Transport failures are mapped to NetworkTimeout / NetworkError here, and HTTP
statuses to the error taxonomy by the role of the server that answered.
"""

import json
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from src.errors import (
    Forbidden,
    GrantDenied,
    GrantIncomplete,
    NetworkError,
    NetworkTimeout,
    ResourceServerError,
)
from src.logging_utils import get_logger
from src.openpayments.signatures import sign_request

if TYPE_CHECKING:
    from src.openpayments.credentials import CredentialStore

logger = get_logger(__name__)

JSON_ACCEPT = "application/json"


class OpenPaymentsClient:
    """Thin async client over httpx with GNAP signing and error mapping."""

    def __init__(
        self,
        credentials: "CredentialStore",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            credentials: Source of the merchant signing identity, consulted on
                every signed request so runtime overrides take effect.
            timeout: Per-call timeout in seconds.
            transport: Optional httpx transport (tests plug a MockTransport here).
        """
        self.credentials = credentials
        self.timeout = timeout
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    async def close(self):
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Transport

    async def _send(
        self,
        method: str,
        url: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
        signed: bool = True,
        accept: str = JSON_ACCEPT,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {"accept": accept}
        content = None
        if body is not None:
            content = json.dumps(body, separators=(",", ":")).encode("utf-8")
            headers["content-type"] = "application/json"
        if access_token:
            headers["authorization"] = f"GNAP {access_token}"

        request = self._http.build_request(method, url, params=params)
        if signed:
            credential, key = self.credentials.require()
            headers.update(
                sign_request(key, credential.key_id, method, str(request.url), headers, content)
            )

        request = self._http.build_request(method, url, params=params, headers=headers, content=content)
        try:
            response = await self._http.send(request)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {url} timed out after {self.timeout}s")
            raise NetworkTimeout(f"{method} {url} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise NetworkError(f"{method} {url} failed: {e}") from e

        logger.debug(f"{method} {url} -> {response.status_code}")
        if response.status_code >= 500:
            raise NetworkError(
                f"{method} {url} returned {response.status_code}",
                upstream_status=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, error_cls=ResourceServerError) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise error_cls(
                f"{response.request.method} {response.request.url} returned non-JSON body",
                upstream_status=response.status_code,
            )
        if not isinstance(data, dict):
            raise error_cls(
                f"{response.request.method} {response.request.url} returned {type(data).__name__}, expected object",
                upstream_status=response.status_code,
            )
        return data

    @staticmethod
    def _describe(response: httpx.Response) -> str:
        text = response.text[:200] if response.content else ""
        return f"{response.request.method} {response.request.url} returned {response.status_code} {text}".strip()

    def _check_resource_response(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code in (401, 403):
            raise Forbidden(self._describe(response), upstream_status=response.status_code)
        if response.status_code >= 400:
            raise ResourceServerError(self._describe(response), upstream_status=response.status_code)
        if response.status_code == 204 or not response.content:
            return {}
        return self._json(response)

    # Wallet addresses

    async def fetch_wallet_document(self, url: str, accept: str = JSON_ACCEPT) -> httpx.Response:
        """Unsigned GET of a wallet address document; status handling is the caller's."""
        return await self._send("GET", url, signed=False, accept=accept)

    # Grants (authorization server)

    async def request_grant(self, auth_server_url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._send("POST", auth_server_url, body=body)
        if response.status_code >= 400:
            raise GrantDenied(self._describe(response), upstream_status=response.status_code)
        return self._json(response)

    async def continue_grant(self, continue_uri: str, continue_access_token: str, interact_ref: str) -> Dict[str, Any]:
        response = await self._send(
            "POST",
            continue_uri,
            body={"interact_ref": interact_ref},
            access_token=continue_access_token,
        )
        if response.status_code >= 400:
            raise GrantIncomplete(self._describe(response), upstream_status=response.status_code)
        return self._json(response, error_cls=GrantIncomplete)

    # Incoming payments (merchant resource server)

    async def create_incoming_payment(
        self, resource_server_url: str, access_token: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        url = f"{resource_server_url.rstrip('/')}/incoming-payments"
        response = await self._send("POST", url, body=body, access_token=access_token)
        return self._check_resource_response(response)

    async def get_incoming_payment(self, receiver_url: str, access_token: str) -> Dict[str, Any]:
        response = await self._send("GET", receiver_url, access_token=access_token)
        return self._check_resource_response(response)

    async def complete_incoming_payment(self, receiver_url: str, access_token: str) -> Dict[str, Any]:
        response = await self._send("POST", f"{receiver_url.rstrip('/')}/complete", access_token=access_token)
        return self._check_resource_response(response)

    # Quotes and outgoing payments (customer resource server)

    async def create_quote(self, resource_server_url: str, access_token: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{resource_server_url.rstrip('/')}/quotes"
        response = await self._send("POST", url, body=body, access_token=access_token)
        return self._check_resource_response(response)

    async def create_outgoing_payment(
        self, resource_server_url: str, access_token: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        url = f"{resource_server_url.rstrip('/')}/outgoing-payments"
        response = await self._send("POST", url, body=body, access_token=access_token)
        return self._check_resource_response(response)

    async def list_outgoing_payments(
        self, resource_server_url: str, access_token: str, wallet_address_url: str, first: int = 20
    ) -> List[Dict[str, Any]]:
        url = f"{resource_server_url.rstrip('/')}/outgoing-payments"
        response = await self._send(
            "GET",
            url,
            access_token=access_token,
            params={"wallet-address": wallet_address_url, "first": first},
        )
        data = self._check_resource_response(response)
        result = data.get("result", [])
        return result if isinstance(result, list) else []
