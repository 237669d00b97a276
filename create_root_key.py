import asyncio
import os
import sys
from datetime import datetime

import httpx

# usage: python create_root_key.py [base_url] [name] [role]
BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
KEY_NAME = sys.argv[2] if len(sys.argv) > 2 else f"Root API Key {datetime.now():%Y%m%d-%H%M%S}"
ROLE = sys.argv[3] if len(sys.argv) > 3 else "root"

ADMIN_URL = f"{BASE_URL}/api/admin/api-keys"


async def main():
    admin_secret = os.environ.get("ADMIN_SECRET")
    if not admin_secret:
        print("ADMIN_SECRET environment variable is required")
        sys.exit(1)

    print(f"Creating {ROLE} API key '{KEY_NAME}' at {ADMIN_URL}")

    async with httpx.AsyncClient(timeout=20.0) as client:
        try:
            response = await client.post(
                ADMIN_URL,
                headers={"X-Admin-Secret": admin_secret},
                json={"name": KEY_NAME, "role": ROLE, "expires_in_days": 365},
            )
        except httpx.ConnectError:
            print("\n[ERROR] Connection failed. Is the server running?")
            sys.exit(1)

    body = response.json()
    if response.status_code != 201 or not body.get("success"):
        print(f"Failed to create API key ({response.status_code}): {body.get('error')}")
        sys.exit(1)

    api_key = body["api_key"]
    print("\nAPI key created successfully!")
    print(f"   ID: {api_key['id']}")
    print(f"   Key: {api_key['key']}")
    print(f"   Expires: {api_key['expires_at']}")
    print("\nStore this API key securely - it will not be shown again!")
    print(f"\nTry it:\n   curl -H \"X-API-Key: {api_key['key']}\" \"{BASE_URL}/api/geocoding?name=Berlin\"")


if __name__ == "__main__":
    asyncio.run(main())
