"""Unit tests for settlement confirmation and polling."""

import httpx
import pytest

from src.errors import Forbidden, InvalidInput, TimedOut
from src.models import SaleItem
from tests.conftest import MERCHANT_AS


async def _receiver(services, amount="19.99", order_id=None, items=()):
    created = await services.orchestrator.create_receiver(amount, order_id=order_id)
    if items:
        await services.gateway.add_order_items(order_id, list(items))
    return created.receiver


@pytest.mark.unit
class TestConfirm:
    async def test_unpaid_one_unit_short(self, services, network):
        receiver = await _receiver(services)
        network.pay(receiver, 1998)

        result = await services.poller.confirm(receiver, 1999, "USD", 2)

        assert result.paid is False
        assert result.received_minor == 1998
        assert result.sale_id is None
        assert await services.db.count_sales_for_receiver(receiver) == 0

    async def test_paid_exactly(self, services, network):
        receiver = await _receiver(services)
        network.pay(receiver, 1999)

        result = await services.poller.confirm(receiver, 1999, "USD", 2, payer_wallet="https://wallet.example/alice")

        assert result.paid is True
        assert result.completed is True
        assert result.sale_id is not None
        assert result.already_recorded is False
        assert network.incoming_payments[receiver]["completed"] is True

    async def test_nothing_received_yet(self, services, network):
        receiver = await _receiver(services)
        del network.incoming_payments[receiver]["receivedAmount"]

        result = await services.poller.confirm(receiver, 1999, "USD", 2)
        assert result.paid is False
        assert result.received_minor == 0

    async def test_confirm_twice_records_one_sale(self, services, network):
        receiver = await _receiver(services, order_id="55", items=[SaleItem(product_id=1, quantity=2, unit_price=5)])
        await services.db.upsert_product(1, "Coffee", 10)
        network.pay(receiver, 1999)

        first = await services.poller.confirm(receiver, 1999, "USD", 2, order_id="55")
        second = await services.poller.confirm(receiver, 1999, "USD", 2, order_id="55")

        assert first.already_recorded is False
        assert second.already_recorded is True
        assert second.sale_id == first.sale_id
        assert await services.db.count_sales_for_receiver(receiver) == 1
        # stock is decremented for the first recording only
        assert await services.db.get_stock(1) == 8
        assert (await services.gateway.find_order_receiver("55")).status == "paid"

    async def test_merchant_token_is_reused_between_polls(self, services, network):
        receiver = await _receiver(services)
        grants_before = len(network.calls("POST", MERCHANT_AS))

        await services.poller.confirm(receiver, 1999, "USD", 2)
        await services.poller.confirm(receiver, 1999, "USD", 2)

        assert len(network.calls("POST", MERCHANT_AS)) == grants_before + 1

    async def test_forbidden_is_not_retried(self, services, network):
        receiver = await _receiver(services)
        network.forbidden_receivers.add(receiver)

        with pytest.raises(Forbidden):
            await services.poller.wait_for_settlement(receiver, 1999, "USD", 2, max_attempts=10)
        assert len(network.calls("GET", receiver)) == 1

    async def test_complete_failure_is_best_effort(self, services, network):
        receiver = await _receiver(services)
        network.pay(receiver, 1999)
        network.fail_next("POST", f"{receiver}/complete", httpx.Response(500))

        result = await services.poller.confirm(receiver, 1999, "USD", 2)

        assert result.paid is True
        assert result.completed is False
        assert result.sale_id is not None

    @pytest.mark.parametrize("expected", [0, -5, True, "1999"])
    async def test_invalid_expected(self, services, network, expected):
        with pytest.raises(InvalidInput):
            await services.poller.confirm("https://rs.merchant.example/incoming-payments/x", expected, "USD", 2)
        assert network.requests == []

    async def test_lowered_expected_amount_for_order_is_rejected(self, services, network):
        receiver = await _receiver(services, order_id="77")
        network.pay(receiver, 1)

        with pytest.raises(InvalidInput):
            await services.poller.confirm(receiver, 1, "USD", 2, order_id="77")

        assert await services.db.count_sales_for_receiver(receiver) == 0
        assert (await services.gateway.find_order_receiver("77")).status == "pending"
        assert network.calls("GET", receiver) == []

    async def test_other_receiver_for_order_is_rejected(self, services, network):
        await _receiver(services, order_id="78")
        other = await _receiver(services)
        network.pay(other, 1999)

        with pytest.raises(InvalidInput):
            await services.poller.confirm(other, 1999, "USD", 2, order_id="78")
        assert (await services.gateway.find_order_receiver("78")).status == "pending"

    async def test_expected_below_incoming_amount_is_rejected(self, services, network):
        receiver = await _receiver(services)
        network.pay(receiver, 1)

        with pytest.raises(InvalidInput):
            await services.poller.confirm(receiver, 1, "USD", 2)
        assert await services.db.count_sales_for_receiver(receiver) == 0

    async def test_asset_mismatch(self, services, network):
        receiver = await _receiver(services)
        network.pay(receiver, 1999)
        with pytest.raises(InvalidInput):
            await services.poller.confirm(receiver, 1999, "EUR", 2)


@pytest.mark.unit
class TestWaitForSettlement:
    async def test_times_out_after_max_attempts(self, services, network):
        receiver = await _receiver(services)
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        with pytest.raises(TimedOut):
            await services.poller.wait_for_settlement(
                receiver, 1999, "USD", 2, interval_seconds=2.5, max_attempts=4, sleep=fake_sleep
            )

        assert len(network.calls("GET", receiver)) == 4
        assert sleeps == [2.5, 2.5, 2.5]

    async def test_transient_errors_are_retried(self, services, network):
        receiver = await _receiver(services)
        network.fail_next("GET", receiver, httpx.ConnectError("reset"), httpx.Response(502))

        async def pay_on_sleep(_):
            network.pay(receiver, 1999)

        result = await services.poller.wait_for_settlement(
            receiver, 1999, "USD", 2, max_attempts=5, sleep=pay_on_sleep
        )

        assert result.paid is True
        assert len(network.calls("GET", receiver)) == 3

    async def test_stops_on_paid(self, services, network):
        receiver = await _receiver(services)
        network.pay(receiver, 2500)

        async def no_sleep(_):
            raise AssertionError("should not sleep")

        result = await services.poller.wait_for_settlement(receiver, 1999, "USD", 2, sleep=no_sleep)
        assert result.paid is True
        assert result.received_minor == 2500
