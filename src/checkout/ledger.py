"""Order and ledger gateway.

The orchestrator and the settlement poller only talk to persistence through
``OrderGateway``. ``SqliteOrderGateway`` is the shipped implementation.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

import aiosqlite

from src.database import Database
from src.logging_utils import get_logger
from src.models import (
    CheckoutSession,
    OrderBinding,
    SaleItem,
    SaleOutcome,
    SaleRecord,
    format_minor_units,
)

logger = get_logger(__name__)


class OrderGateway(ABC):
    """Persistence seam for orders, checkout sessions, sales and stock."""

    @abstractmethod
    async def record_sale(
        self,
        receiver_url: str,
        amount_minor: int,
        asset_code: str,
        asset_scale: int,
        payer_wallet: Optional[str],
        items: List[SaleItem],
        order_id: Optional[str] = None,
    ) -> SaleOutcome:
        """Record the sale for a receiver exactly once."""

    @abstractmethod
    async def decrement_stock(self, product_id: int, quantity: int) -> bool:
        """Best effort; returns False instead of raising."""

    @abstractmethod
    async def find_order_receiver(self, order_id: str) -> Optional[OrderBinding]:
        ...

    @abstractmethod
    async def reserve_order(self, binding: OrderBinding, stale_after_seconds: float) -> bool:
        """Claim the order before creating its receiver; False when another checkout holds it."""

    @abstractmethod
    async def bind_receiver(self, order_id: str, receiver_url: str) -> bool:
        """False when the order is already bound (the caller lost the race)."""

    @abstractmethod
    async def release_order(self, order_id: str) -> None:
        """Drop a reservation whose receiver could not be created."""

    @abstractmethod
    async def add_order_items(self, order_id: str, items: List[SaleItem]) -> None:
        ...

    @abstractmethod
    async def get_order_items(self, order_id: str) -> List[SaleItem]:
        ...

    @abstractmethod
    async def attach_outgoing_payment(self, order_id: str, outgoing_payment_id: str) -> None:
        ...

    @abstractmethod
    async def mark_order_paid(self, order_id: str, receiver_url: str, payer_wallet: Optional[str]) -> None:
        ...

    @abstractmethod
    async def save_session(self, session: CheckoutSession) -> None:
        ...

    @abstractmethod
    async def load_session(self, continue_uri: str) -> Optional[CheckoutSession]:
        ...

    @abstractmethod
    async def discard_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def discard_order_sessions(self, order_id: str) -> int:
        ...


class SqliteOrderGateway(OrderGateway):
    """OrderGateway over the aiosqlite Database."""

    def __init__(self, database: Database):
        self.db = database

    async def record_sale(
        self,
        receiver_url: str,
        amount_minor: int,
        asset_code: str,
        asset_scale: int,
        payer_wallet: Optional[str],
        items: List[SaleItem],
        order_id: Optional[str] = None,
    ) -> SaleOutcome:
        sale = SaleRecord(
            receiver_url=receiver_url,
            amount_minor=amount_minor,
            asset_code=asset_code,
            asset_scale=asset_scale,
            total=float(Decimal(format_minor_units(amount_minor, asset_scale))),
            payer_wallet=payer_wallet,
            order_id=order_id,
            items=items,
        )
        sale_id = await self.db.insert_sale(sale)
        if sale_id is not None:
            return SaleOutcome(sale_id=sale_id, already_recorded=False)

        existing = await self.db.get_sale_by_receiver(receiver_url)
        return SaleOutcome(sale_id=existing.sale_id if existing else None, already_recorded=True)

    async def decrement_stock(self, product_id: int, quantity: int) -> bool:
        try:
            return await self.db.decrement_stock(product_id, quantity)
        except aiosqlite.Error as e:
            logger.warning(f"Stock update failed for product {product_id}: {e}")
            return False

    async def find_order_receiver(self, order_id: str) -> Optional[OrderBinding]:
        return await self.db.get_order(order_id)

    async def reserve_order(self, binding: OrderBinding, stale_after_seconds: float) -> bool:
        return await self.db.reserve_order(binding, stale_after_seconds)

    async def bind_receiver(self, order_id: str, receiver_url: str) -> bool:
        return await self.db.set_order_receiver(order_id, receiver_url)

    async def release_order(self, order_id: str) -> None:
        await self.db.release_order_reservation(order_id)

    async def add_order_items(self, order_id: str, items: List[SaleItem]) -> None:
        if items:
            await self.db.add_order_items(order_id, items)

    async def get_order_items(self, order_id: str) -> List[SaleItem]:
        return await self.db.get_order_items(order_id)

    async def attach_outgoing_payment(self, order_id: str, outgoing_payment_id: str) -> None:
        await self.db.set_order_outgoing_payment(order_id, outgoing_payment_id)

    async def mark_order_paid(self, order_id: str, receiver_url: str, payer_wallet: Optional[str]) -> None:
        await self.db.mark_order_paid(order_id, receiver_url, payer_wallet)

    async def save_session(self, session: CheckoutSession) -> None:
        await self.db.save_checkout_session(session)

    async def load_session(self, continue_uri: str) -> Optional[CheckoutSession]:
        return await self.db.get_checkout_session(continue_uri)

    async def discard_session(self, session_id: str) -> None:
        await self.db.delete_checkout_session(session_id)

    async def discard_order_sessions(self, order_id: str) -> int:
        return await self.db.delete_sessions_for_order(order_id)
