import hashlib
import hmac
import json
import os
import time
import uuid
import httpx
import asyncio
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

# Configuration
BASE_URL = os.getenv("PAYOUT_API_URL", "http://localhost:8001")
PRIVATE_TOKEN = os.getenv("PRIVATE_TOKEN")

if not PRIVATE_TOKEN:
    logger.error("PRIVATE_TOKEN not found in environment variables!")
    raise ValueError("PRIVATE_TOKEN is required but not set")


def verify_callback_signature(body: bytes, signature: str, secret: str = None) -> bool:
    """
    Check the X-Signature header of a status callback.

    Merchants receiving callbacks run the same check: HMAC-SHA512 of the raw
    body keyed by the shared token.
    """
    expected = hmac.new((secret or PRIVATE_TOKEN).encode(), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def generate_payout_payload(amount: float = 1500.0, wallet_id: str = "sberbank", ttl_seconds: int = 600) -> dict:
    """
    Generate a realistic payout request

    Returns:
        Dictionary with payout data
    """
    now = int(time.time())
    return {
        "destination": f"2202{uuid.uuid4().int % 10**12:012d}",
        "amount": amount,
        "walletId": wallet_id,
        "expiredTime": now,
        "expiredOfferTime": now + ttl_seconds,
        "callback_url": os.getenv("CALLBACK_URL", "http://localhost:9000/callback"),
    }


async def post(path: str, payload: dict, token: str = None):
    headers = {"Content-Type": "application/json", "token": token or PRIVATE_TOKEN}
    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(
                f"{BASE_URL}{path}", content=json.dumps(payload), headers=headers, timeout=10.0
            )
            logger.info(f"Status: {response.status_code}")
            logger.info(f"Response: {response.json()}")
            return response
        except httpx.RequestError as e:
            logger.error(f"Request failed: {str(e)}")
            return None


async def run_test_scenarios():
    """
    Run payout API scenarios against a running server
    """
    test_cases = [
        {
            "name": "Case 1: Success Path",
            "payload": generate_payout_payload(),
            "expected_status": {200, 503},  # 503 when no operator has balance
            "description": "Valid payout request",
        },
        {
            "name": "Case 2: Invalid Token",
            "payload": generate_payout_payload(),
            "expected_status": {401},
            "token": "fake_token",
            "description": "Valid payload with a wrong token header",
        },
        {
            "name": "Case 3: Amount Below Minimum",
            "payload": generate_payout_payload(amount=1.0),
            "expected_status": {400},
            "description": "Amount outside the configured bounds",
        },
        {
            "name": "Case 4: Unknown Payment Method",
            "payload": generate_payout_payload(wallet_id="unknown_bank"),
            "expected_status": {400},
            "description": "walletId is not a supported method",
        },
        {
            "name": "Case 5: Deadline Before Availability",
            "payload": {**generate_payout_payload(), "expiredOfferTime": 1},
            "expected_status": {400},
            "description": "expiredOfferTime earlier than expiredTime",
        },
    ]

    created = []
    for case in test_cases:
        logger.info(f"\n=== {case['name']} ===")
        logger.info(f"Description: {case['description']}")

        response = await post("/api/payout/create", case["payload"], token=case.get("token"))
        status_code = response.status_code if response is not None else None

        if status_code in case["expected_status"]:
            logger.info("PASS")
        else:
            logger.info("FAIL")
            logger.info(f"Expected status: {case['expected_status']}, Got: {status_code}")

        if response is not None and status_code == 200:
            created.append(response.json()["external_id"])

        await asyncio.sleep(1)

    for tx_id in created:
        logger.info(f"\n=== Status of {tx_id} ===")
        await post("/api/payout/status", {"clientUniqueId": tx_id})


async def main():
    """
    Main function to run the mock sender
    """
    logger.info("Starting payout mock sender")
    logger.info(f"Target URL: {BASE_URL}")

    try:
        await run_test_scenarios()
        logger.info("\nMock sender completed successfully")
    except KeyboardInterrupt:
        logger.info("\nMock sender interrupted")


if __name__ == "__main__":
    asyncio.run(main())
