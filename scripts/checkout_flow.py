"""Drive a checkout against a running checkout service.

Starts a checkout for a test order, prints the consent URL, and, once the
customer has approved in their wallet, continues it with the interact_ref
and polls /payment/confirm until the receiver is paid.

    python -m scripts.checkout_flow --wallet https://ilp.interledger-test.dev/alice --amount 1.50
"""

import argparse
import asyncio
import sys
import uuid

import httpx

from src.config import config


async def run(base_url: str, wallet: str, amount: str, polls: int):
    order_id = f"test-{uuid.uuid4().hex[:8]}"
    print(f"🧪 Checkout flow against {base_url} (order {order_id})\n")

    async with httpx.AsyncClient(base_url=base_url, timeout=config.http_timeout_seconds) as http:
        print("📋 Step 1: starting checkout...")
        response = await http.post(
            "/checkout/start",
            json={
                "amount": amount,
                "description": f"Test order #{order_id}",
                "customerWalletAddress": wallet,
                "orderId": order_id,
            },
        )
        start = response.json()
        if response.status_code != 200 or not start.get("ok"):
            print(f"❌ Start failed ({response.status_code}): {start.get('message')}")
            if start.get("hint"):
                print(f"   Hint: {start['hint']}")
            sys.exit(1)

        payment = start["payment"]
        pending = start["pending"]
        print(f"✅ Receiver: {payment['receiver']}")
        print(f"   Expected: {payment['expectedMinor']} ({payment['assetCode']}/{payment['assetScale']})")
        print(f"\n👉 Approve the payment in your wallet:\n   {start['redirect']}\n")

        interact_ref = input("Paste the interact_ref from the callback URL: ").strip()

        print("\n📋 Step 2: continuing checkout...")
        response = await http.post(
            "/checkout/continue",
            json={
                "continueUri": pending["continueUri"],
                "continueAccessToken": pending["continueAccessToken"],
                "interact_ref": interact_ref,
                "customerWalletAddress": pending["customerWalletAddress"],
                "receiver": pending["receiver"],
                "orderId": order_id,
            },
        )
        cont = response.json()
        if response.status_code != 200:
            print(f"❌ Continue failed ({response.status_code}): {cont.get('message')}")
            sys.exit(1)
        print(f"✅ Outgoing payment: {cont['outgoingPaymentId']}")

        print("\n📋 Step 3: waiting for settlement...")
        for attempt in range(1, polls + 1):
            response = await http.post(
                "/payment/confirm",
                json={
                    "receiver": pending["receiver"],
                    "expectedMinor": pending["expectedMinor"],
                    "assetCode": pending["assetCode"],
                    "assetScale": pending["assetScale"],
                    "orderId": order_id,
                    "payerWallet": pending["customerWalletAddress"],
                },
            )
            confirm = response.json()
            if response.status_code == 403:
                print(f"❌ 403 from the resource server: {confirm.get('hint')}")
                sys.exit(1)
            if response.status_code == 200 and confirm.get("paid"):
                print(f"✅ Paid: {confirm['receivedMinor']}/{confirm['expectedMinor']}, sale {confirm['saleId']}")
                return
            print(f"   [{attempt}/{polls}] received {confirm.get('receivedMinor', 0)}")
            await asyncio.sleep(config.poll_interval_seconds)

    print("❌ Not settled in time. Check the wallet before paying again.")
    sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a checkout end to end")
    parser.add_argument("--base-url", default=f"http://localhost:{config.checkout_port}")
    parser.add_argument("--wallet", required=True, help="Customer wallet address URL")
    parser.add_argument("--amount", default="1.00")
    parser.add_argument("--polls", type=int, default=config.poll_max_attempts)
    args = parser.parse_args()
    asyncio.run(run(args.base_url, args.wallet, args.amount, args.polls))
