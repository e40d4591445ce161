import json
import os
import uuid
from types import SimpleNamespace
from urllib.parse import urlsplit

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

MERCHANT_WALLET = "https://wallet.example/merchant"
CUSTOMER_WALLET = "https://wallet.example/alice"
MERCHANT_AS = "https://auth.merchant.example"
MERCHANT_RS = "https://rs.merchant.example"
CUSTOMER_AS = "https://auth.customer.example"
CUSTOMER_RS = "https://rs.customer.example"
TEST_KEY_ID = "test-key-1"

TEST_PRIVATE_KEY = Ed25519PrivateKey.from_private_bytes(bytes(range(32)))
TEST_PRIVATE_KEY_PEM = TEST_PRIVATE_KEY.private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption(),
).decode("ascii")

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
os.environ.setdefault("WALLET_ADDRESS_URL", MERCHANT_WALLET)
os.environ.setdefault("KEY_ID", TEST_KEY_ID)
os.environ.setdefault("OPEN_PAYMENTS_PRIVATE_KEY_PEM", TEST_PRIVATE_KEY_PEM)
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DATABASE_PATH", "./test_checkout.db")

from src.checkout.ledger import SqliteOrderGateway  # noqa: E402
from src.checkout.orchestrator import PaymentOrchestrator  # noqa: E402
from src.checkout.settlement import SettlementPoller  # noqa: E402
from src.config import Config  # noqa: E402
from src.database import Database  # noqa: E402
from src.openpayments.credentials import CredentialStore  # noqa: E402
from src.openpayments.grants import GrantNegotiator, MerchantTokenCache  # noqa: E402
from src.openpayments.signatures import verify_request  # noqa: E402
from src.openpayments.wallet import WalletResolver  # noqa: E402


def _json(status_code: int, body) -> httpx.Response:
    return httpx.Response(status_code, json=body)


class FakeOpenPaymentsNetwork:
    """In-memory wallet addresses, authorization servers and resource servers.

    Signed requests are verified against the test key; tokens carry the
    access they were granted, so an outgoing-payment token only quotes toward
    the receiver its grant was limited to.
    """

    def __init__(self, public_key):
        self.public_key = public_key
        self.requests = []
        self.faults = {}
        self.wallets = {
            MERCHANT_WALLET: {
                "id": MERCHANT_WALLET,
                "publicName": "Mi Shop",
                "assetCode": "USD",
                "assetScale": 2,
                "authServer": MERCHANT_AS,
                "resourceServer": MERCHANT_RS,
            },
            CUSTOMER_WALLET: {
                "id": CUSTOMER_WALLET,
                "publicName": "Alice",
                "assetCode": "USD",
                "assetScale": 2,
                "authServer": CUSTOMER_AS,
                "resourceServer": CUSTOMER_RS,
            },
        }
        self.tokens = {}
        self.continuations = {}
        self.used_interact_refs = set()
        self.incoming_payments = {}
        self.quotes = {}
        self.outgoing_payments = []
        self.forbidden_receivers = set()
        self.merchant_grant_interactive = False
        self.reject_locations = False
        self.auto_settle = True
        self._counter = 0

    # Test helpers

    def fail_next(self, method: str, url: str, *outcomes):
        """Queue responses, exceptions or handlers for the next calls to ``method url``."""
        self.faults.setdefault((method, url), []).extend(outcomes)

    def calls(self, method: str = None, url_prefix: str = None):
        return [
            r
            for r in self.requests
            if (method is None or r.method == method)
            and (url_prefix is None or str(r.url).startswith(url_prefix))
        ]

    def pay(self, receiver_url: str, value: int):
        self.incoming_payments[receiver_url]["receivedAmount"]["value"] = str(value)

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    # Transport entry point

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        base = str(request.url).split("?")[0].rstrip("/")

        queued = self.faults.get((request.method, base))
        if queued:
            outcome = queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if callable(outcome):
                return outcome(request)
            return outcome

        if request.method == "GET" and base in self.wallets:
            return _json(200, self.wallets[base])

        origin = f"{request.url.scheme}://{request.url.host}"
        if origin in (MERCHANT_AS, CUSTOMER_AS, MERCHANT_RS, CUSTOMER_RS):
            if not verify_request(
                self.public_key, request.method, str(request.url), dict(request.headers), request.content
            ):
                return _json(401, {"error": "invalid_signature"})

        path = urlsplit(base).path.rstrip("/")
        if origin in (MERCHANT_AS, CUSTOMER_AS):
            if path == "":
                return self._grant(origin, request)
            if path.startswith("/continue/"):
                return self._continue(base, request)
        if origin == MERCHANT_RS:
            return self._merchant_rs(base, path, request)
        if origin == CUSTOMER_RS:
            return self._customer_rs(path, request)
        return _json(404, {"error": "not_found"})

    # Authorization servers

    def _grant(self, origin: str, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        access = body["access_token"]["access"]
        n = self._next()

        if "interact" in body or (origin == MERCHANT_AS and self.merchant_grant_interactive):
            continue_uri = f"{origin}/continue/{n}"
            receiver = next(
                (a.get("limits", {}).get("receiver") for a in access if a["type"] == "outgoing-payment"),
                None,
            )
            self.continuations[continue_uri] = {"token": f"cont-{n}", "receiver": receiver}
            return _json(
                200,
                {
                    "interact": {"redirect": f"{origin}/interact/{n}", "finish": f"finish-{n}"},
                    "continue": {"uri": continue_uri, "access_token": {"value": f"cont-{n}"}, "wait": 5},
                },
            )

        if self.reject_locations and any("locations" in a for a in access):
            return _json(400, {"error": "invalid_request", "description": "locations not supported"})

        token = f"merchant-{n}"
        self.tokens[token] = {"kind": "merchant", "wallet": access[0]["identifier"]}
        return _json(
            200,
            {
                "access_token": {"value": token, "manage": f"{origin}/token/{n}", "expires_in": 600, "access": access},
                "continue": {"uri": f"{origin}/continue/{n}", "access_token": {"value": f"cont-{n}"}},
            },
        )

    def _continue(self, continue_uri: str, request: httpx.Request) -> httpx.Response:
        pending = self.continuations.get(continue_uri)
        if pending is None:
            return _json(404, {"error": "unknown_request"})
        if request.headers.get("authorization") != f"GNAP {pending['token']}":
            return _json(401, {"error": "invalid_continuation"})
        ref = json.loads(request.content).get("interact_ref")
        if not ref or ref in self.used_interact_refs or ref == "denied":
            return _json(401, {"error": "request_denied"})
        self.used_interact_refs.add(ref)

        token = f"customer-{self._next()}"
        self.tokens[token] = {"kind": "customer", "receiver": pending["receiver"]}
        return _json(200, {"access_token": {"value": token, "expires_in": 600}})

    def _token(self, request: httpx.Request):
        auth = request.headers.get("authorization", "")
        if not auth.startswith("GNAP "):
            return None
        return self.tokens.get(auth[len("GNAP "):])

    # Merchant resource server

    def _merchant_rs(self, base: str, path: str, request: httpx.Request) -> httpx.Response:
        token = self._token(request)
        if token is None or token["kind"] != "merchant":
            return _json(401, {"error": "unauthorized"})

        if request.method == "POST" and path == "/incoming-payments":
            body = json.loads(request.content)
            receiver = f"{MERCHANT_RS}/incoming-payments/{uuid.uuid4()}"
            self.incoming_payments[receiver] = {
                "id": receiver,
                "walletAddress": body["walletAddress"],
                "incomingAmount": body["incomingAmount"],
                "receivedAmount": {
                    "value": "0",
                    "assetCode": body["incomingAmount"]["assetCode"],
                    "assetScale": body["incomingAmount"]["assetScale"],
                },
                "completed": False,
                "metadata": body.get("metadata"),
            }
            return _json(201, self.incoming_payments[receiver])

        receiver = base[: -len("/complete")] if base.endswith("/complete") else base
        if receiver in self.forbidden_receivers:
            return _json(403, {"error": "forbidden"})
        incoming = self.incoming_payments.get(receiver)
        if incoming is None:
            return _json(404, {"error": "not_found"})
        if request.method == "GET":
            return _json(200, incoming)
        if request.method == "POST" and base.endswith("/complete"):
            incoming["completed"] = True
            return _json(200, incoming)
        return _json(405, {"error": "method_not_allowed"})

    # Customer resource server

    def _customer_rs(self, path: str, request: httpx.Request) -> httpx.Response:
        token = self._token(request)
        if token is None or token["kind"] != "customer":
            return _json(401, {"error": "unauthorized"})

        if request.method == "POST" and path == "/quotes":
            body = json.loads(request.content)
            if body["receiver"] != token["receiver"]:
                return _json(403, {"error": "receiver not allowed by grant"})
            incoming = self.incoming_payments.get(body["receiver"])
            if incoming is None:
                return _json(400, {"error": "invalid_receiver"})
            quote_id = f"{CUSTOMER_RS}/quotes/{uuid.uuid4()}"
            amount = dict(incoming["incomingAmount"])
            self.quotes[quote_id] = {
                "id": quote_id,
                "walletAddress": body["walletAddress"],
                "receiver": body["receiver"],
                "debitAmount": amount,
                "receiveAmount": amount,
                "used": False,
            }
            return _json(201, {k: v for k, v in self.quotes[quote_id].items() if k != "used"})

        if request.method == "POST" and path == "/outgoing-payments":
            body = json.loads(request.content)
            quote = self.quotes.get(body["quoteId"])
            if quote is None or quote["used"]:
                return _json(400, {"error": "invalid_quote"})
            quote["used"] = True
            payment = {
                "id": f"{CUSTOMER_RS}/outgoing-payments/{uuid.uuid4()}",
                "walletAddress": body["walletAddress"],
                "quoteId": quote["id"],
                "receiver": quote["receiver"],
                "debitAmount": quote["debitAmount"],
            }
            self.outgoing_payments.append(payment)
            if self.auto_settle:
                self.pay(quote["receiver"], int(quote["receiveAmount"]["value"]))
            return _json(201, payment)

        if request.method == "GET" and path == "/outgoing-payments":
            return _json(200, {"result": self.outgoing_payments})

        return _json(404, {"error": "not_found"})


@pytest.fixture
def network():
    return FakeOpenPaymentsNetwork(TEST_PRIVATE_KEY.public_key())


@pytest.fixture
def transport(network):
    return httpx.MockTransport(network.handle)


@pytest.fixture
def test_config(tmp_path):
    return Config(
        wallet_address_url=MERCHANT_WALLET,
        key_id=TEST_KEY_ID,
        open_payments_private_key_pem=TEST_PRIVATE_KEY_PEM,
        open_payments_private_key_b64="",
        frontend_url="https://shop.example",
        database_path=str(tmp_path / "checkout.db"),
        poll_interval_seconds=0,
        poll_max_attempts=5,
        allow_runtime_credentials=False,
        admin_token="",
    )


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
async def services(test_config, test_db, transport):
    """Fully wired checkout collaborators talking to the fake network."""
    credentials = CredentialStore(test_config)
    client = credentials.client(transport=transport)
    resolver = WalletResolver(client)
    negotiator = GrantNegotiator(client)
    gateway = SqliteOrderGateway(test_db)
    token_cache = MerchantTokenCache(negotiator, test_config.merchant_token_ttl_seconds)
    yield SimpleNamespace(
        config=test_config,
        credentials=credentials,
        client=client,
        resolver=resolver,
        negotiator=negotiator,
        token_cache=token_cache,
        gateway=gateway,
        db=test_db,
        orchestrator=PaymentOrchestrator(client, resolver, negotiator, gateway, test_config),
        poller=SettlementPoller(client, resolver, token_cache, gateway, test_config),
    )
    await client.close()
