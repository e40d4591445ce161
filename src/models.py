"""Shared data models for the Open Payments checkout service.

Domain models (wallets, grants, payments, sessions, sales) and the JSON
request/response bodies of the HTTP boundary.
"""

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.errors import InvalidAmount


class WalletIdentity(BaseModel):
    """Public metadata of a wallet address."""

    model_config = ConfigDict(frozen=True)

    address_url: str = Field(description="Wallet address URL (doubles as its id)")
    resource_server_url: str = Field(description="Open Payments resource server")
    auth_server_url: str = Field(description="GNAP authorization server")
    asset_code: str = Field(min_length=1, description="Asset code, e.g. USD")
    asset_scale: int = Field(ge=0, description="Decimal places of the minor unit")
    public_name: Optional[str] = Field(default=None)


class MerchantCredential(BaseModel):
    """Merchant signing identity."""

    wallet_address_url: str
    key_id: str
    private_key_pem: str = Field(repr=False)

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.wallet_address_url.strip():
            missing.append("wallet_address_url")
        if not self.key_id.strip():
            missing.append("key_id")
        if not self.private_key_pem.strip():
            missing.append("private_key")
        return missing


class GrantKind(str, Enum):
    NON_INTERACTIVE = "non-interactive"
    INTERACTIVE_PENDING = "interactive-pending"
    INTERACTIVE_FINALIZED = "interactive-finalized"


class AccessGrant(BaseModel):
    """A GNAP grant as far as this service needs it."""

    kind: GrantKind
    access_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = Field(default=None, description="Token lifetime in seconds")
    continue_uri: Optional[str] = None
    continue_access_token: Optional[str] = Field(default=None, repr=False)
    interact_redirect_url: Optional[str] = None
    finish_nonce: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.kind != GrantKind.INTERACTIVE_PENDING and bool(self.access_token)


class Amount(BaseModel):
    """Open Payments amount object, kept in its wire shape."""

    value: str
    assetCode: str
    assetScale: int

    @property
    def minor(self) -> int:
        return int(self.value)


class IncomingPayment(BaseModel):
    """Payee-side receiver created on the merchant's resource server."""

    id: str = Field(description="Receiver URL")
    wallet_address: Optional[str] = None
    expected_minor: Optional[int] = None
    asset_code: str
    asset_scale: int
    received_minor: int = 0
    completed: bool = False


class Quote(BaseModel):
    id: str
    debit_amount: Amount
    receive_amount: Amount


class OutgoingPayment(BaseModel):
    id: str
    quote_id: Optional[str] = None
    receiver: Optional[str] = None


class CheckoutState(str, Enum):
    INIT = "INIT"
    RECEIVER_CREATED = "RECEIVER_CREATED"
    CUSTOMER_GRANT_PENDING = "CUSTOMER_GRANT_PENDING"
    CUSTOMER_GRANT_FINALIZED = "CUSTOMER_GRANT_FINALIZED"
    QUOTE_CREATED = "QUOTE_CREATED"
    OUTGOING_PAYMENT_CREATED = "OUTGOING_PAYMENT_CREATED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


class CheckoutSession(BaseModel):
    """State persisted across the browser redirect."""

    session_id: str
    order_id: Optional[str] = None
    receiver_url: str
    continue_uri: str
    continue_access_token: str = Field(repr=False)
    customer_wallet_address_url: str
    expected_minor: int
    asset_code: str
    asset_scale: int
    finish_nonce: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class SaleItem(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)


class SaleRecord(BaseModel):
    """Confirmed sale, one per settled receiver."""

    sale_id: Optional[int] = None
    receiver_url: str
    amount_minor: int
    asset_code: str
    asset_scale: int
    total: float
    payer_wallet: Optional[str] = None
    order_id: Optional[str] = None
    items: List[SaleItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class SaleOutcome(BaseModel):
    """Result of recording a sale; ``already_recorded`` is the idempotent path."""

    sale_id: Optional[int] = None
    already_recorded: bool = False


class OrderBinding(BaseModel):
    """1:1 mapping between an order and its receiver."""

    order_id: str
    receiver_url: Optional[str] = Field(default=None, description="None while the order is only reserved")
    expected_minor: int
    asset_code: str
    asset_scale: int
    status: Literal["pending", "paid"] = "pending"
    outgoing_payment_id: Optional[str] = None
    payer_wallet: Optional[str] = None


class SettlementResult(BaseModel):
    paid: bool
    received_minor: int
    expected_minor: int
    completed: bool = False
    sale_id: Optional[int] = None
    already_recorded: bool = False


# HTTP request/response bodies (camelCase on the wire)


class SaleItemIn(BaseModel):
    productId: int
    quantity: int = Field(gt=0)
    unitPrice: float = Field(ge=0)

    def to_sale_item(self) -> SaleItem:
        return SaleItem(product_id=self.productId, quantity=self.quantity, unit_price=self.unitPrice)


class StartCheckoutRequest(BaseModel):
    """Body of POST /checkout/start. ``amount`` is validated by the orchestrator."""

    amount: Any = None
    description: Optional[str] = None
    customerWalletAddress: Optional[str] = None
    orderId: Optional[str] = None
    items: List[SaleItemIn] = Field(default_factory=list)

    @field_validator("orderId", mode="before")
    @classmethod
    def _order_id_as_str(cls, value):
        return None if value is None else str(value)


class ContinueCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    continueUri: Optional[str] = None
    continueAccessToken: Optional[str] = None
    interactRef: Optional[str] = Field(default=None, alias="interact_ref")
    customerWalletAddress: Optional[str] = None
    receiver: Optional[str] = None
    orderId: Optional[str] = None

    @field_validator("orderId", mode="before")
    @classmethod
    def _order_id_as_str(cls, value):
        return None if value is None else str(value)




class ConfirmPaymentRequest(BaseModel):
    receiver: str
    expectedMinor: int
    assetCode: str
    assetScale: int = Field(ge=0)
    orderId: Optional[str] = None
    payerWallet: Optional[str] = None
    items: List[SaleItemIn] = Field(default_factory=list)

    @field_validator("orderId", mode="before")
    @classmethod
    def _order_id_as_str(cls, value):
        return None if value is None else str(value)


class CreatePaymentRequest(BaseModel):
    amount: Any = None
    description: Optional[str] = None
    orderId: Optional[str] = None

    @field_validator("orderId", mode="before")
    @classmethod
    def _order_id_as_str(cls, value):
        return None if value is None else str(value)


class RuntimeCredentialsRequest(BaseModel):
    walletAddressUrl: Optional[str] = None
    keyId: Optional[str] = None
    privateKeyPem: Optional[str] = None


class PaymentSummary(BaseModel):
    """What the customer is about to pay, in minor units."""

    receiver: str
    assetCode: str
    assetScale: int
    expectedMinor: int
    description: Optional[str] = None


class ContinueHandle(BaseModel):
    uri: str
    accessToken: str


class PendingCheckout(BaseModel):
    """Client-side copy of the checkout session, kept across the redirect."""

    sessionId: str
    continueUri: str
    continueAccessToken: str
    customerWalletAddress: str
    receiver: str
    expectedMinor: int
    assetCode: str
    assetScale: int
    orderId: Optional[str] = None


class StartCheckoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    redirect: str
    continue_: ContinueHandle = Field(alias="continue")
    payment: PaymentSummary
    storageKey: str
    pending: PendingCheckout


class ContinueCheckoutResponse(BaseModel):
    ok: bool = True
    outgoingPaymentId: str
    debitAmount: Amount
    receiveAmount: Amount
    receiver: str
    expectedMinor: int
    assetCode: str
    assetScale: int
    orderId: Optional[str] = None


class CreatePaymentResponse(PaymentSummary):
    ok: bool = True
    walletAddress: str
    orderId: Optional[str] = None


def parse_amount(amount: Any) -> Decimal:
    """Validate a decimal amount coming from a caller.

    Raises:
        InvalidAmount: If the amount is not a finite positive number.
    """
    if amount is None or isinstance(amount, bool):
        raise InvalidAmount(f"amount is not a number: {amount!r}")
    if isinstance(amount, float) and not math.isfinite(amount):
        raise InvalidAmount(f"amount is not finite: {amount!r}")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"amount is not a number: {amount!r}")
    if not value.is_finite():
        raise InvalidAmount(f"amount is not finite: {amount!r}")
    if value <= 0:
        raise InvalidAmount(f"amount must be greater than zero: {amount!r}")
    return value


def to_minor_units(amount: Any, asset_scale: int) -> int:
    """round(amount * 10^scale), half-up, computed in decimal arithmetic."""
    value = parse_amount(amount)
    scaled = value.scaleb(asset_scale).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def format_minor_units(minor: int, asset_scale: int) -> str:
    """Display form of a minor-unit amount, e.g. 1999 @ 2 -> '19.99'."""
    quantum = Decimal(1).scaleb(-asset_scale)
    return format(Decimal(minor).scaleb(-asset_scale).quantize(quantum), "f")
