"""Checkout orchestration.

A checkout crosses a browser redirect, so it is driven by two independent
entry points joined by a persisted CheckoutSession:

    start()             INIT -> RECEIVER_CREATED -> CUSTOMER_GRANT_PENDING
    continue_checkout() CUSTOMER_GRANT_PENDING -> CUSTOMER_GRANT_FINALIZED
                        -> QUOTE_CREATED -> OUTGOING_PAYMENT_CREATED

Settlement (OUTGOING_PAYMENT_CREATED -> SETTLED) is observed by the
SettlementPoller. Any state can move to FAILED; nothing is retried
automatically.
"""

import uuid
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from src.config import Config
from src.errors import (
    CheckoutError,
    GrantDenied,
    GrantIncomplete,
    InvalidAmount,
    InvalidInput,
    NetworkError,
    NetworkTimeout,
    OrderInProgress,
    ResourceServerError,
    SessionNotFound,
)
from src.logging_utils import bind_order_id, get_logger
from src.models import (
    CheckoutSession,
    CheckoutState,
    ContinueCheckoutResponse,
    ContinueHandle,
    CreatePaymentResponse,
    IncomingPayment,
    OrderBinding,
    OutgoingPayment,
    PaymentSummary,
    PendingCheckout,
    Quote,
    SaleItem,
    StartCheckoutResponse,
    WalletIdentity,
    parse_amount,
    to_minor_units,
)
from src.openpayments.client import OpenPaymentsClient
from src.openpayments.grants import GrantNegotiator
from src.openpayments.wallet import WalletResolver, normalize_wallet_address
from src.checkout.ledger import OrderGateway

logger = get_logger(__name__)

STORAGE_KEY = "op_pending"

ALLOWED_TRANSITIONS = {
    CheckoutState.INIT: {CheckoutState.RECEIVER_CREATED},
    CheckoutState.RECEIVER_CREATED: {CheckoutState.CUSTOMER_GRANT_PENDING},
    CheckoutState.CUSTOMER_GRANT_PENDING: {CheckoutState.CUSTOMER_GRANT_FINALIZED},
    CheckoutState.CUSTOMER_GRANT_FINALIZED: {CheckoutState.QUOTE_CREATED},
    CheckoutState.QUOTE_CREATED: {CheckoutState.OUTGOING_PAYMENT_CREATED},
    CheckoutState.OUTGOING_PAYMENT_CREATED: {CheckoutState.SETTLED},
    CheckoutState.SETTLED: set(),
    CheckoutState.FAILED: set(),
}


class CheckoutAttempt:
    """State, history and failure reason of one pass through the state machine."""

    def __init__(self, order_id: Optional[str] = None, state: CheckoutState = CheckoutState.INIT):
        self.order_id = order_id
        self.state = state
        self.history: List[CheckoutState] = [state]
        self.failure: Optional[CheckoutError] = None

    def advance(self, new_state: CheckoutState, detail: str = "") -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Illegal checkout transition {self.state.value} -> {new_state.value}")
        logger.info(f"Checkout {self.state.value} -> {new_state.value} {detail}".rstrip())
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: CheckoutError) -> None:
        if self.state in (CheckoutState.SETTLED, CheckoutState.FAILED):
            return
        log = logger.error if error.status_code >= 500 else logger.warning
        log(f"Checkout {self.state.value} -> FAILED: {error.code}: {error.message}")
        self.failure = error
        self.state = CheckoutState.FAILED
        self.history.append(CheckoutState.FAILED)


class PaymentOrchestrator:
    """Drives a checkout from amount to outgoing payment."""

    def __init__(
        self,
        client: OpenPaymentsClient,
        resolver: WalletResolver,
        negotiator: GrantNegotiator,
        gateway: OrderGateway,
        cfg: Config,
    ):
        self.client = client
        self.resolver = resolver
        self.negotiator = negotiator
        self.gateway = gateway
        self.config = cfg

    # Receiver

    async def _merchant(self) -> WalletIdentity:
        credential, _ = self.client.credentials.require()
        return await self.resolver.resolve(credential.wallet_address_url)

    @staticmethod
    def _receiver_from_binding(binding: OrderBinding, merchant: WalletIdentity) -> IncomingPayment:
        return IncomingPayment(
            id=binding.receiver_url,
            wallet_address=merchant.address_url,
            expected_minor=binding.expected_minor,
            asset_code=binding.asset_code,
            asset_scale=binding.asset_scale,
        )

    @staticmethod
    def _check_binding(binding: OrderBinding, expected_minor: int, merchant: WalletIdentity) -> None:
        if binding.status == "paid":
            raise InvalidInput(
                f"Order {binding.order_id} is already paid",
                hint="This order was settled; it cannot be checked out again.",
            )
        if (
            binding.expected_minor != expected_minor
            or binding.asset_code != merchant.asset_code
            or binding.asset_scale != merchant.asset_scale
        ):
            raise InvalidInput(
                f"Order {binding.order_id} already has a receiver for "
                f"{binding.expected_minor} {binding.asset_code}/{binding.asset_scale}",
                hint="An order's amount cannot change once checkout has started.",
            )

    async def _adopt_bound_receiver(
        self, attempt: CheckoutAttempt, order_id: str, expected_minor: int, merchant: WalletIdentity
    ) -> IncomingPayment:
        winner = await self.gateway.find_order_receiver(order_id)
        if winner is None or not winner.receiver_url:
            raise OrderInProgress(f"Order {order_id} is reserved by another checkout")
        self._check_binding(winner, expected_minor, merchant)
        attempt.advance(CheckoutState.RECEIVER_CREATED, f"(adopted {winner.receiver_url})")
        return self._receiver_from_binding(winner, merchant)

    async def _ensure_receiver(
        self,
        attempt: CheckoutAttempt,
        amount: Any,
        description: Optional[str],
        order_id: Optional[str],
        items: Sequence[SaleItem] = (),
    ) -> IncomingPayment:
        merchant = await self._merchant()
        expected_minor = to_minor_units(amount, merchant.asset_scale)
        if expected_minor <= 0:
            raise InvalidAmount(
                f"amount {amount} is below the smallest unit at scale {merchant.asset_scale}"
            )

        if order_id:
            existing = await self.gateway.find_order_receiver(order_id)
            if existing and existing.receiver_url:
                self._check_binding(existing, expected_minor, merchant)
                attempt.advance(CheckoutState.RECEIVER_CREATED, f"(reused {existing.receiver_url})")
                return self._receiver_from_binding(existing, merchant)

            reservation = OrderBinding(
                order_id=order_id,
                expected_minor=expected_minor,
                asset_code=merchant.asset_code,
                asset_scale=merchant.asset_scale,
            )
            if not await self.gateway.reserve_order(reservation, self.config.order_reservation_seconds):
                return await self._adopt_bound_receiver(attempt, order_id, expected_minor, merchant)

        try:
            grant = await self.negotiator.request_merchant_token(merchant)
            metadata = {"description": description or (f"Online order #{order_id}" if order_id else "Online order")}
            if order_id:
                metadata["orderId"] = order_id
            data = await self.client.create_incoming_payment(
                merchant.resource_server_url,
                grant.access_token,
                {
                    "walletAddress": merchant.address_url,
                    "incomingAmount": {
                        "value": str(expected_minor),
                        "assetCode": merchant.asset_code,
                        "assetScale": merchant.asset_scale,
                    },
                    "metadata": metadata,
                },
            )
            receiver_url = data.get("id")
            if not receiver_url:
                raise ResourceServerError("Incoming payment response has no id")
        except CheckoutError:
            if order_id:
                await self.gateway.release_order(order_id)
            raise

        if order_id:
            if not await self.gateway.bind_receiver(order_id, receiver_url):
                # only after a stale reservation was taken over
                logger.warning(f"Order {order_id} was bound concurrently; abandoning receiver {receiver_url}")
                return await self._adopt_bound_receiver(attempt, order_id, expected_minor, merchant)
            await self.gateway.add_order_items(order_id, list(items))

        attempt.advance(CheckoutState.RECEIVER_CREATED, f"({receiver_url})")
        return IncomingPayment(
            id=receiver_url,
            wallet_address=merchant.address_url,
            expected_minor=expected_minor,
            asset_code=merchant.asset_code,
            asset_scale=merchant.asset_scale,
        )

    async def create_receiver(
        self, amount: Any, description: Optional[str] = None, order_id: Optional[str] = None
    ) -> CreatePaymentResponse:
        """Create (or reuse) the receiver for an amount, without a customer grant.

        Used by the point of sale: the customer pays the receiver from their
        own wallet and the sale is confirmed by polling.
        """
        bind_order_id(order_id)
        attempt = CheckoutAttempt(order_id)
        try:
            parse_amount(amount)
            self.client.credentials.require()
            receiver = await self._ensure_receiver(attempt, amount, description, order_id)
        except CheckoutError as e:
            attempt.fail(e)
            raise

        return CreatePaymentResponse(
            receiver=receiver.id,
            assetCode=receiver.asset_code,
            assetScale=receiver.asset_scale,
            expectedMinor=receiver.expected_minor,
            description=description,
            walletAddress=receiver.wallet_address,
            orderId=order_id,
        )

    # Entry point 1: before the redirect

    async def start(
        self,
        amount: Any,
        customer_wallet_address: Optional[str],
        description: Optional[str] = None,
        order_id: Optional[str] = None,
        items: Sequence[SaleItem] = (),
    ) -> StartCheckoutResponse:
        """Create the receiver and the customer's pending grant.

        Raises:
            InvalidAmount, InvalidInput, ConfigError: Before any network call.
            CheckoutError: Any remote failure, already mapped.
        """
        bind_order_id(order_id)
        attempt = CheckoutAttempt(order_id)
        try:
            parse_amount(amount)
            customer_url = normalize_wallet_address(customer_wallet_address)
            self.client.credentials.require()

            receiver = await self._ensure_receiver(attempt, amount, description, order_id, items)

            customer = await self.resolver.resolve(customer_url)
            grant = await self.negotiator.request_customer_interactive_grant(
                customer, receiver.id, self.config.callback_uri
            )

            session = CheckoutSession(
                session_id=uuid.uuid4().hex,
                order_id=order_id,
                receiver_url=receiver.id,
                continue_uri=grant.continue_uri,
                continue_access_token=grant.continue_access_token,
                customer_wallet_address_url=customer.address_url,
                expected_minor=receiver.expected_minor,
                asset_code=receiver.asset_code,
                asset_scale=receiver.asset_scale,
                finish_nonce=grant.finish_nonce,
            )
            if order_id:
                dropped = await self.gateway.discard_order_sessions(order_id)
                if dropped:
                    logger.info(f"Dropped {dropped} stale checkout session(s)")
            await self.gateway.save_session(session)
            attempt.advance(CheckoutState.CUSTOMER_GRANT_PENDING, f"(session {session.session_id})")
        except CheckoutError as e:
            attempt.fail(e)
            raise

        return StartCheckoutResponse(
            redirect=grant.interact_redirect_url,
            continue_=ContinueHandle(uri=session.continue_uri, accessToken=session.continue_access_token),
            payment=PaymentSummary(
                receiver=receiver.id,
                assetCode=receiver.asset_code,
                assetScale=receiver.asset_scale,
                expectedMinor=receiver.expected_minor,
                description=description,
            ),
            storageKey=STORAGE_KEY,
            pending=PendingCheckout(
                sessionId=session.session_id,
                continueUri=session.continue_uri,
                continueAccessToken=session.continue_access_token,
                customerWalletAddress=session.customer_wallet_address_url,
                receiver=session.receiver_url,
                expectedMinor=session.expected_minor,
                assetCode=session.asset_code,
                assetScale=session.asset_scale,
                orderId=order_id,
            ),
        )

    # Entry point 2: after the redirect

    @staticmethod
    def _check_session(
        session: CheckoutSession,
        continue_access_token: Optional[str],
        customer_wallet_address: Optional[str],
        receiver: Optional[str],
        order_id: Optional[str],
    ) -> None:
        mismatches = []
        if continue_access_token and continue_access_token != session.continue_access_token:
            mismatches.append("continueAccessToken")
        if receiver and receiver != session.receiver_url:
            mismatches.append("receiver")
        if order_id and order_id != session.order_id:
            mismatches.append("orderId")
        if customer_wallet_address:
            try:
                customer_url = normalize_wallet_address(customer_wallet_address)
            except InvalidInput:
                customer_url = customer_wallet_address
            if customer_url != session.customer_wallet_address_url:
                mismatches.append("customerWalletAddress")
        if mismatches:
            raise InvalidInput(
                f"Checkout session does not match request: {', '.join(mismatches)}",
                hint="Please restart checkout.",
            )

    async def continue_checkout(
        self,
        continue_uri: Optional[str],
        interact_ref: Optional[str],
        continue_access_token: Optional[str] = None,
        customer_wallet_address: Optional[str] = None,
        receiver: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> ContinueCheckoutResponse:
        """Finalize the customer's grant, quote and create the outgoing payment.

        Raises:
            SessionNotFound: No pending session for the continuation URI.
            InvalidInput: Missing fields, or the request does not match the session.
            GrantIncomplete, GrantDenied: Consent failed; the session is dropped.
        """
        if not continue_uri or not interact_ref:
            raise InvalidInput("continueUri and interactRef are required")

        session = await self.gateway.load_session(continue_uri)
        if session is None:
            raise SessionNotFound(f"No pending checkout for {continue_uri}")
        bind_order_id(session.order_id)
        self._check_session(session, continue_access_token, customer_wallet_address, receiver, order_id)

        attempt = CheckoutAttempt(session.order_id, state=CheckoutState.CUSTOMER_GRANT_PENDING)
        try:
            try:
                grant = await self.negotiator.continue_customer_grant(
                    session.continue_uri, session.continue_access_token, interact_ref
                )
            except (GrantIncomplete, GrantDenied):
                await self.gateway.discard_session(session.session_id)
                raise
            await self.gateway.discard_session(session.session_id)
            attempt.advance(CheckoutState.CUSTOMER_GRANT_FINALIZED)

            customer = await self.resolver.resolve(session.customer_wallet_address_url)
            quote = await self._create_quote(customer, grant.access_token, session.receiver_url)
            attempt.advance(CheckoutState.QUOTE_CREATED, f"({quote.id})")

            outgoing = await self._create_outgoing_payment(customer, grant.access_token, quote)
            if session.order_id:
                await self.gateway.attach_outgoing_payment(session.order_id, outgoing.id)
            attempt.advance(CheckoutState.OUTGOING_PAYMENT_CREATED, f"({outgoing.id})")
        except CheckoutError as e:
            attempt.fail(e)
            raise

        return ContinueCheckoutResponse(
            outgoingPaymentId=outgoing.id,
            debitAmount=quote.debit_amount,
            receiveAmount=quote.receive_amount,
            receiver=session.receiver_url,
            expectedMinor=session.expected_minor,
            assetCode=session.asset_code,
            assetScale=session.asset_scale,
            orderId=session.order_id,
        )

    async def _create_quote(self, customer: WalletIdentity, access_token: str, receiver_url: str) -> Quote:
        data = await self.client.create_quote(
            customer.resource_server_url,
            access_token,
            {"walletAddress": customer.address_url, "receiver": receiver_url, "method": "ilp"},
        )
        try:
            return Quote(
                id=data.get("id"),
                debit_amount=data.get("debitAmount"),
                receive_amount=data.get("receiveAmount"),
            )
        except ValidationError as e:
            raise ResourceServerError(f"Quote response is malformed: {e.error_count()} error(s)")

    @staticmethod
    def _outgoing_from(data: Dict[str, Any]) -> OutgoingPayment:
        if not data.get("id"):
            raise ResourceServerError("Outgoing payment response has no id")
        return OutgoingPayment(id=data["id"], quote_id=data.get("quoteId"), receiver=data.get("receiver"))

    async def _find_outgoing_payment(
        self, customer: WalletIdentity, access_token: str, quote_id: str
    ) -> Optional[OutgoingPayment]:
        payments = await self.client.list_outgoing_payments(
            customer.resource_server_url, access_token, customer.address_url
        )
        for item in payments:
            if isinstance(item, dict) and item.get("quoteId") == quote_id and item.get("id"):
                return self._outgoing_from(item)
        return None

    async def _create_outgoing_payment(
        self, customer: WalletIdentity, access_token: str, quote: Quote
    ) -> OutgoingPayment:
        # Resubmitted only after listing shows no payment for this quote
        body = {"walletAddress": customer.address_url, "quoteId": quote.id}
        last_error = None
        for _ in range(2):
            try:
                data = await self.client.create_outgoing_payment(customer.resource_server_url, access_token, body)
                return self._outgoing_from(data)
            except (NetworkError, NetworkTimeout) as e:
                last_error = e
                logger.warning(f"Outgoing payment outcome unknown for quote {quote.id}: {e.message}")
                try:
                    existing = await self._find_outgoing_payment(customer, access_token, quote.id)
                except (NetworkError, NetworkTimeout) as list_error:
                    logger.error(
                        f"Could not list outgoing payments to check quote {quote.id} "
                        f"({list_error.code}); not resubmitting"
                    )
                    raise e
                if existing:
                    logger.info(f"Adopted existing outgoing payment {existing.id} for quote {quote.id}")
                    return existing
        raise last_error
