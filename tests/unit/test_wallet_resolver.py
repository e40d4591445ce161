"""Unit tests for wallet address resolution."""

import httpx
import pytest

from src.errors import InvalidInput, NetworkTimeout, WalletUnresolvable
from src.openpayments.wallet import LEGACY_ACCEPT, WalletResolver, pointer_to_url
from tests.conftest import CUSTOMER_AS, CUSTOMER_RS, CUSTOMER_WALLET


@pytest.mark.unit
class TestPointerToUrl:
    def test_pointer_with_path(self):
        assert pointer_to_url("$ilp.example/alice") == "https://ilp.example/alice/.well-known/pay"

    def test_pointer_without_path(self):
        assert pointer_to_url(" $ilp.example ") == "https://ilp.example/.well-known/pay"

    def test_url_passes_through(self):
        assert pointer_to_url("https://ilp.example/alice") == "https://ilp.example/alice"


@pytest.mark.unit
class TestWalletResolver:
    """Resolving wallet documents through the fake network."""

    async def test_resolve(self, services):
        wallet = await services.resolver.resolve(CUSTOMER_WALLET)
        assert wallet.address_url == CUSTOMER_WALLET
        assert wallet.auth_server_url == CUSTOMER_AS
        assert wallet.resource_server_url == CUSTOMER_RS
        assert (wallet.asset_code, wallet.asset_scale) == ("USD", 2)
        assert wallet.public_name == "Alice"

    async def test_lookup_is_unsigned(self, services, network):
        await services.resolver.resolve(CUSTOMER_WALLET)
        request = network.calls("GET", CUSTOMER_WALLET)[0]
        assert "signature" not in request.headers

    @pytest.mark.parametrize("bad", ["", "http://wallet.example/alice", "alice", "ftp://x"])
    async def test_rejects_non_https(self, services, network, bad):
        with pytest.raises(InvalidInput):
            await services.resolver.resolve(bad)
        assert network.requests == []

    async def test_payment_pointer(self, services, network):
        url = "https://wallet.example/bob/.well-known/pay"
        network.wallets[url] = dict(network.wallets[CUSTOMER_WALLET], id=url)
        wallet = await services.resolver.resolve("$wallet.example/bob")
        assert wallet.address_url == url

    async def test_legacy_accept_fallback(self, services, network):
        network.fail_next("GET", CUSTOMER_WALLET, httpx.Response(406))
        wallet = await services.resolver.resolve(CUSTOMER_WALLET)

        assert wallet.auth_server_url == CUSTOMER_AS
        first, second = network.calls("GET", CUSTOMER_WALLET)
        assert first.headers["accept"] == "application/json"
        assert second.headers["accept"] == LEGACY_ACCEPT

    async def test_unresolvable_carries_status(self, services, network):
        network.fail_next("GET", CUSTOMER_WALLET, httpx.Response(404), httpx.Response(404))
        with pytest.raises(WalletUnresolvable) as exc_info:
            await services.resolver.resolve(CUSTOMER_WALLET)
        assert exc_info.value.upstream_status == 404
        assert exc_info.value.retryable is True

    async def test_server_error_is_retried_with_legacy_accept(self, services, network):
        network.fail_next("GET", CUSTOMER_WALLET, httpx.Response(503))
        wallet = await services.resolver.resolve(CUSTOMER_WALLET)
        assert wallet.address_url == CUSTOMER_WALLET

    async def test_missing_servers(self, services, network):
        network.wallets[CUSTOMER_WALLET] = {"id": CUSTOMER_WALLET, "assetCode": "USD", "assetScale": 2}
        with pytest.raises(WalletUnresolvable):
            await services.resolver.resolve(CUSTOMER_WALLET)

    async def test_asset_defaults_and_nested_asset(self, services, network):
        network.wallets[CUSTOMER_WALLET] = {
            "authServer": CUSTOMER_AS,
            "resourceServer": CUSTOMER_RS,
            "asset": {"code": "MXN", "scale": 2},
        }
        wallet = await services.resolver.resolve(CUSTOMER_WALLET)
        assert (wallet.asset_code, wallet.asset_scale) == ("MXN", 2)

        network.wallets[CUSTOMER_WALLET] = {"authServer": CUSTOMER_AS, "resourceServer": CUSTOMER_RS}
        wallet = await services.resolver.resolve(CUSTOMER_WALLET)
        assert (wallet.asset_code, wallet.asset_scale) == ("USD", 2)

    async def test_timeout(self, services, network):
        network.fail_next("GET", CUSTOMER_WALLET, httpx.ReadTimeout("slow"))
        with pytest.raises(NetworkTimeout):
            await services.resolver.resolve(CUSTOMER_WALLET)

    async def test_cache(self, services, network):
        resolver = WalletResolver(services.client, cache=True)
        await resolver.resolve(CUSTOMER_WALLET)
        await resolver.resolve(CUSTOMER_WALLET)
        assert len(network.calls("GET", CUSTOMER_WALLET)) == 1

    async def test_describe(self, services):
        described = await services.resolver.describe(CUSTOMER_WALLET)
        assert described["ok"] is True
        assert described["resolvedUrl"] == CUSTOMER_WALLET
        assert described["info"]["publicName"] == "Alice"
