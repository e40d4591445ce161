"""Open Payments checkout service.

FastAPI application exposing the storefront checkout:
- /checkout/start and /checkout/continue around the wallet consent redirect
- /payment/confirm for settlement polling
- /payments/create for point-of-sale receivers
- wallet lookup, health and credential diagnostics
"""

import hmac
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from src.config import Config, config, validate_config_for_service
from src.database import Database, db
from src.errors import CheckoutError
from src.logging_utils import (
    CheckoutLogContext,
    bind_order_id,
    get_logger,
    setup_logging,
)
from src.models import (
    ConfirmPaymentRequest,
    ContinueCheckoutRequest,
    CreatePaymentRequest,
    RuntimeCredentialsRequest,
    StartCheckoutRequest,
)
from src.openpayments.credentials import CredentialStore
from src.openpayments.grants import GrantNegotiator, MerchantTokenCache
from src.openpayments.wallet import WalletResolver
from src.checkout.ledger import SqliteOrderGateway
from src.checkout.orchestrator import PaymentOrchestrator
from src.checkout.settlement import SettlementPoller

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"


def create_app(
    cfg: Optional[Config] = None,
    database: Optional[Database] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the checkout app.

    Args:
        cfg: Service configuration. Defaults to the global config.
        database: Ledger database. Defaults to the global instance.
        transport: Optional httpx transport for all outbound Open Payments calls.
    """
    cfg = cfg or config
    database = database or db

    app = FastAPI(
        title="Open Payments Checkout",
        description="GNAP checkout orchestrator for the storefront and point of sale",
    )

    credentials = CredentialStore(cfg)
    client = credentials.client(transport=transport)
    resolver = WalletResolver(client, cfg.default_asset_code, cfg.default_asset_scale)
    negotiator = GrantNegotiator(client)
    token_cache = MerchantTokenCache(negotiator, cfg.merchant_token_ttl_seconds)
    gateway = SqliteOrderGateway(database)
    orchestrator = PaymentOrchestrator(client, resolver, negotiator, gateway, cfg)
    poller = SettlementPoller(client, resolver, token_cache, gateway, cfg)

    app.state.config = cfg
    app.state.credentials = credentials
    app.state.orchestrator = orchestrator
    app.state.poller = poller

    @app.on_event("startup")
    async def startup():
        """Initialize database and report configuration problems."""
        logger.info("Initializing checkout service...")
        await database.initialize()
        for problem in validate_config_for_service("checkout", cfg):
            logger.warning(f"Configuration: {problem}")
        logger.info("Checkout service initialized")

    @app.on_event("shutdown")
    async def shutdown():
        await client.close()

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        with CheckoutLogContext(request.headers.get(CORRELATION_HEADER)) as cid:
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "checkout",
            "credentialsConfigured": credentials.configured,
        }

    @app.post("/checkout/start")
    async def start_checkout(request: StartCheckoutRequest):
        """Create the receiver and the customer's interactive grant.

        Returns:
            Redirect URL for the customer's wallet, the continuation handle,
            the payment summary and the pending blob to keep across the redirect.
        """
        result = await orchestrator.start(
            amount=request.amount,
            customer_wallet_address=request.customerWalletAddress,
            description=request.description,
            order_id=request.orderId,
            items=[item.to_sale_item() for item in request.items],
        )
        return result.model_dump(by_alias=True)

    @app.post("/checkout/continue")
    async def continue_checkout(request: ContinueCheckoutRequest):
        """Finalize the customer grant and create the outgoing payment."""
        result = await orchestrator.continue_checkout(
            continue_uri=request.continueUri,
            interact_ref=request.interactRef,
            continue_access_token=request.continueAccessToken,
            customer_wallet_address=request.customerWalletAddress,
            receiver=request.receiver,
            order_id=request.orderId,
        )
        return result.model_dump()

    @app.post("/payment/confirm")
    async def confirm_payment(request: ConfirmPaymentRequest):
        """Check whether a receiver is paid; records the sale once when it is."""
        result = await poller.confirm(
            receiver_url=request.receiver,
            expected_minor=request.expectedMinor,
            asset_code=request.assetCode,
            asset_scale=request.assetScale,
            order_id=request.orderId,
            payer_wallet=request.payerWallet,
            items=[item.to_sale_item() for item in request.items],
        )
        return {
            "paid": result.paid,
            "receivedMinor": result.received_minor,
            "expectedMinor": result.expected_minor,
            "completed": result.completed,
            "saleId": result.sale_id,
            "alreadyRecorded": result.already_recorded,
        }

    @app.post("/payments/create")
    async def create_payment(request: CreatePaymentRequest):
        """Create a receiver for the point of sale (no customer grant)."""
        bind_order_id(request.orderId)
        result = await orchestrator.create_receiver(
            amount=request.amount,
            description=request.description,
            order_id=request.orderId,
        )
        return result.model_dump()

    @app.get("/wallet/resolve")
    async def resolve_wallet(pointer: str = Query(..., description="Wallet address URL or $ payment pointer")):
        """Resolve a wallet address for display."""
        return await resolver.describe(pointer)

    @app.get("/credentials/self-test")
    async def credentials_self_test():
        """Sign and verify with the merchant key and report its fingerprint."""
        return credentials.self_test()

    @app.post("/admin/runtime-credentials")
    async def runtime_credentials(
        request: RuntimeCredentialsRequest,
        x_admin_token: Optional[str] = Header(default=None),
    ):
        """Replace the merchant credentials in memory (development only)."""
        if not cfg.allow_runtime_credentials:
            raise HTTPException(status_code=404, detail="Not Found")
        if not cfg.admin_token or not hmac.compare_digest(x_admin_token or "", cfg.admin_token):
            raise HTTPException(status_code=401, detail="Invalid admin token")

        credential = credentials.override(
            wallet_address_url=request.walletAddressUrl,
            key_id=request.keyId,
            private_key_pem=request.privateKeyPem,
        )
        token_cache.invalidate()
        return {
            "ok": True,
            "walletAddressUrl": credential.wallet_address_url,
            "keyId": credential.key_id,
            "configured": credentials.configured,
        }

    return app


# Setup logging
setup_logging(config.log_level, config.log_format)

app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=config.checkout_host, port=config.checkout_port)
