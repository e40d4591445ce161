"""Verify the configured merchant credentials.

Parses the private key, resolves the merchant wallet and requests a
non-interactive incoming-payment grant, printing what to fix at the first
step that fails.
"""

import asyncio
import sys

from src.config import config, validate_config_for_service
from src.errors import CheckoutError
from src.logging_utils import redact
from src.openpayments.credentials import CredentialStore
from src.openpayments.grants import GrantNegotiator
from src.openpayments.wallet import WalletResolver


def fail(step: str, error: CheckoutError):
    print(f"❌ {step} failed: {error.message}")
    if error.hint:
        print(f"   Hint: {error.hint}")
    sys.exit(1)


async def verify():
    print("🔍 Merchant credential check\n")

    problems = validate_config_for_service("checkout")
    for problem in problems:
        print(f"⚠️  {problem}")

    store = CredentialStore(config)

    print("📋 Step 1: private key")
    try:
        result = store.self_test()
    except CheckoutError as e:
        fail("Loading the private key", e)
    print(f"✅ Key id {result['keyId']}, fingerprint {result['fingerprint']}")

    async with store.client() as client:
        print("\n📋 Step 2: merchant wallet")
        try:
            merchant = await WalletResolver(client, config.default_asset_code, config.default_asset_scale).resolve(
                config.wallet_address_url
            )
        except CheckoutError as e:
            fail("Resolving the wallet", e)
        print(f"✅ {merchant.address_url}")
        print(f"   Auth server:     {merchant.auth_server_url}")
        print(f"   Resource server: {merchant.resource_server_url}")
        print(f"   Asset:           {merchant.asset_code}/{merchant.asset_scale}")

        print("\n📋 Step 3: incoming-payment grant")
        try:
            grant = await GrantNegotiator(client).request_merchant_grant(merchant)
        except CheckoutError as e:
            fail("Requesting the grant", e)
        print(f"✅ Access token {redact(grant.access_token, keep=12)} (expires in {grant.expires_in}s)")

    print("\n✅ Credentials are valid")


if __name__ == "__main__":
    asyncio.run(verify())
