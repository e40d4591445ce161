"""Settlement confirmation.

A receiver is paid when its received amount reaches the expected amount;
that comparison is the only settlement truth. Completing the incoming
payment is best effort and never blocks recording the sale.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.config import Config
from src.errors import (
    CheckoutError,
    Forbidden,
    InvalidInput,
    NetworkError,
    NetworkTimeout,
    ResourceServerError,
    TimedOut,
)
from src.logging_utils import bind_order_id, get_logger
from src.models import CheckoutState, SaleItem, SettlementResult
from src.openpayments.client import OpenPaymentsClient
from src.openpayments.grants import MerchantTokenCache
from src.openpayments.wallet import WalletResolver
from src.checkout.ledger import OrderGateway
from src.checkout.orchestrator import CheckoutAttempt

logger = get_logger(__name__)

SETTLEMENT_ACTIONS = ("read", "complete")


def _received_minor(data: Dict[str, Any]) -> int:
    received = data.get("receivedAmount")
    if not isinstance(received, dict) or received.get("value") in (None, ""):
        return 0
    try:
        return int(received["value"])
    except (TypeError, ValueError):
        logger.warning(f"Unparsable receivedAmount.value {received.get('value')!r}, treating as 0")
        return 0


class SettlementPoller:
    """Reads receivers with merchant auth and records settled sales once."""

    def __init__(
        self,
        client: OpenPaymentsClient,
        resolver: WalletResolver,
        token_cache: MerchantTokenCache,
        gateway: OrderGateway,
        cfg: Config,
    ):
        self.client = client
        self.resolver = resolver
        self.token_cache = token_cache
        self.gateway = gateway
        self.config = cfg

    @staticmethod
    def _validate(receiver_url: str, expected_minor: Any, asset_code: str, asset_scale: Any) -> None:
        if not receiver_url or not str(receiver_url).startswith("https://"):
            raise InvalidInput(f"receiver must be an https:// URL: {receiver_url!r}")
        if isinstance(expected_minor, bool) or not isinstance(expected_minor, int) or expected_minor <= 0:
            raise InvalidInput(f"expectedMinor must be a positive integer: {expected_minor!r}")
        if not asset_code:
            raise InvalidInput("assetCode is required")
        if isinstance(asset_scale, bool) or not isinstance(asset_scale, int) or asset_scale < 0:
            raise InvalidInput(f"assetScale must be a non-negative integer: {asset_scale!r}")

    async def _check_order(
        self, order_id: str, receiver_url: str, expected_minor: int, asset_code: str, asset_scale: int
    ) -> None:
        binding = await self.gateway.find_order_receiver(order_id)
        if binding is None or not binding.receiver_url:
            return
        if binding.receiver_url != receiver_url:
            raise InvalidInput(f"Order {order_id} is bound to a different receiver")
        if (
            binding.expected_minor != expected_minor
            or binding.asset_code != asset_code
            or binding.asset_scale != asset_scale
        ):
            raise InvalidInput(
                f"Order {order_id} expects {binding.expected_minor} {binding.asset_code}/{binding.asset_scale}, "
                f"not {expected_minor} {asset_code}/{asset_scale}"
            )

    @staticmethod
    def _check_incoming_amount(
        data: Dict[str, Any], receiver_url: str, expected_minor: int, asset_code: str, asset_scale: int
    ) -> None:
        incoming_amount = data.get("incomingAmount")
        if not isinstance(incoming_amount, dict):
            return
        remote_code = incoming_amount.get("assetCode")
        if remote_code and remote_code != asset_code:
            raise InvalidInput(f"Receiver is denominated in {remote_code}, not {asset_code}")
        remote_scale = incoming_amount.get("assetScale")
        if remote_scale is not None and remote_scale != asset_scale:
            raise InvalidInput(f"Receiver uses asset scale {remote_scale}, not {asset_scale}")
        if incoming_amount.get("value") in (None, ""):
            return
        try:
            remote_minor = int(incoming_amount["value"])
        except (TypeError, ValueError):
            raise ResourceServerError(f"Receiver {receiver_url} has an unparsable incomingAmount.value")
        if expected_minor < remote_minor:
            raise InvalidInput(f"Receiver {receiver_url} expects {remote_minor}, not {expected_minor}")

    async def _complete(self, receiver_url: str, token: str) -> bool:
        try:
            await self.client.complete_incoming_payment(receiver_url, token)
            return True
        except CheckoutError as e:
            logger.warning(f"Completing {receiver_url} failed ({e.code}); the sale is recorded anyway")
            return False

    async def confirm(
        self,
        receiver_url: str,
        expected_minor: int,
        asset_code: str,
        asset_scale: int,
        order_id: Optional[str] = None,
        payer_wallet: Optional[str] = None,
        items: Optional[List[SaleItem]] = None,
    ) -> SettlementResult:
        """Check one receiver and record the sale when it is paid.

        Safe to call repeatedly: the sale is recorded at most once per receiver.

        Raises:
            InvalidInput: Bad arguments, or the amount or asset disagrees with
                the order binding or the receiver's incomingAmount.
            Forbidden: The merchant credentials may not read this receiver.
        """
        self._validate(receiver_url, expected_minor, asset_code, asset_scale)
        bind_order_id(order_id)
        if order_id:
            await self._check_order(order_id, receiver_url, expected_minor, asset_code, asset_scale)

        credential, _ = self.client.credentials.require()
        merchant = await self.resolver.resolve(credential.wallet_address_url)
        token = await self.token_cache.get(merchant, SETTLEMENT_ACTIONS)

        try:
            data = await self.client.get_incoming_payment(receiver_url, token)
        except Forbidden:
            self.token_cache.invalidate(merchant, SETTLEMENT_ACTIONS)
            raise

        self._check_incoming_amount(data, receiver_url, expected_minor, asset_code, asset_scale)

        received = _received_minor(data)
        completed = bool(data.get("completed"))
        if received < expected_minor:
            logger.debug(f"Receiver {receiver_url} at {received}/{expected_minor}")
            return SettlementResult(
                paid=False, received_minor=received, expected_minor=expected_minor, completed=completed
            )

        attempt = CheckoutAttempt(order_id, state=CheckoutState.OUTGOING_PAYMENT_CREATED)
        attempt.advance(CheckoutState.SETTLED, f"({received}/{expected_minor} on {receiver_url})")

        if not completed:
            completed = await self._complete(receiver_url, token)

        if not items and order_id:
            items = await self.gateway.get_order_items(order_id)
        items = items or []

        outcome = await self.gateway.record_sale(
            receiver_url=receiver_url,
            amount_minor=expected_minor,
            asset_code=asset_code,
            asset_scale=asset_scale,
            payer_wallet=payer_wallet,
            items=items,
            order_id=order_id,
        )
        if order_id:
            await self.gateway.mark_order_paid(order_id, receiver_url, payer_wallet)

        if outcome.already_recorded:
            logger.info(f"Sale {outcome.sale_id} already recorded for {receiver_url}")
        else:
            for item in items:
                await self.gateway.decrement_stock(item.product_id, item.quantity)

        return SettlementResult(
            paid=True,
            received_minor=received,
            expected_minor=expected_minor,
            completed=completed,
            sale_id=outcome.sale_id,
            already_recorded=outcome.already_recorded,
        )

    async def wait_for_settlement(
        self,
        receiver_url: str,
        expected_minor: int,
        asset_code: str,
        asset_scale: int,
        order_id: Optional[str] = None,
        payer_wallet: Optional[str] = None,
        items: Optional[List[SaleItem]] = None,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> SettlementResult:
        """Poll ``confirm`` until paid.

        Transient network failures are retried on the next tick; everything
        else propagates.

        Raises:
            TimedOut: Not paid within ``max_attempts`` polls.
        """
        interval = self.config.poll_interval_seconds if interval_seconds is None else interval_seconds
        attempts = self.config.poll_max_attempts if max_attempts is None else max_attempts

        for attempt in range(1, attempts + 1):
            try:
                result = await self.confirm(
                    receiver_url, expected_minor, asset_code, asset_scale, order_id, payer_wallet, items
                )
                if result.paid:
                    return result
            except (NetworkError, NetworkTimeout) as e:
                logger.warning(f"Settlement poll {attempt}/{attempts} failed ({e.code}), retrying")
            if attempt < attempts:
                await sleep(interval)

        raise TimedOut(f"Receiver {receiver_url} not settled after {attempts} polls")
