#!/usr/bin/env python3
"""Basic usage examples for the Upload Relay.

This script demonstrates the core functionality:
- Uploading a file and polling its progress until it lands in storage
- Listing stored objects and incomplete multipart uploads
- Issuing a signed download URL
- Basic error handling
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import httpx

BASE_URL = "http://localhost:3000"


class UploadRelayClient:
    """Simple client for the Upload Relay API."""

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=60.0)

    async def upload(self, path: Path) -> dict:
        """Upload a file; returns as soon as the relay has accepted it."""
        with open(path, "rb") as f:
            response = await self.client.post(
                f"{self.base_url}/upload",
                files={"file": (path.name, f)},
            )
        response.raise_for_status()
        return response.json()

    async def progress(self, file_name: str) -> dict:
        response = await self.client.get(
            f"{self.base_url}/progress", params={"file": file_name}
        )
        response.raise_for_status()
        return response.json()

    async def wait_until_done(self, file_name: str, interval: float = 0.5) -> dict:
        """Poll progress until the transfer is done or its record disappears."""
        seen_activity = False
        while True:
            status = await self.progress(file_name)
            stage = status["uploadStage"]
            print(f"   {status['percent']:3d}%  {stage}")
            if stage == "done" or stage == "failed":
                return status
            if stage == "local" and seen_activity:
                # record removed without reaching "done": the transfer failed
                return status
            seen_activity = seen_activity or stage != "local"
            await asyncio.sleep(interval)

    async def list_files(self, prefix: Optional[str] = None) -> list:
        params = {"prefix": prefix} if prefix else None
        response = await self.client.get(f"{self.base_url}/files", params=params)
        response.raise_for_status()
        return response.json()

    async def list_uploads(self) -> list:
        response = await self.client.get(f"{self.base_url}/uploads")
        response.raise_for_status()
        return response.json()

    async def generate_url(self, file_name: str, expiry: int = 3600) -> str:
        response = await self.client.get(
            f"{self.base_url}/generate-url",
            params={"file": file_name, "expiry": expiry},
        )
        response.raise_for_status()
        return response.json()["url"]

    async def close(self):
        await self.client.aclose()


async def example_1_upload_with_progress(path: Path):
    """Example 1: Upload a file and follow its progress."""
    print("📤 Example 1: Upload with progress")
    print("-" * 40)

    client = UploadRelayClient()
    try:
        accepted = await client.upload(path)
        print(f"✅ {accepted['message']}: {accepted['fileName']}")
        final = await client.wait_until_done(accepted["fileName"])
        if final["uploadStage"] == "done":
            print("🎉 Stored!")
        else:
            print(f"❌ Transfer did not complete: {final}")
    finally:
        await client.close()

    print()


async def example_2_listing():
    """Example 2: List stored objects and unfinished multipart uploads."""
    print("📂 Example 2: Listing")
    print("-" * 40)

    client = UploadRelayClient()
    try:
        files = await client.list_files()
        print(f"Stored objects: {len(files)}")
        for obj in files[:10]:
            print(f"   {obj['key']}  ({obj['size']} bytes)")

        uploads = await client.list_uploads()
        print(f"Incomplete multipart uploads: {len(uploads)}")
        for upload in uploads:
            print(f"   {upload['key']}  upload_id={upload['upload_id']}")
    finally:
        await client.close()

    print()


async def example_3_signed_url(file_name: str):
    """Example 3: Share a stored object for ten minutes."""
    print("🔗 Example 3: Signed URL")
    print("-" * 40)

    client = UploadRelayClient()
    try:
        url = await client.generate_url(file_name, expiry=600)
        print(f"✅ {url}")
    finally:
        await client.close()

    print()


async def example_4_error_handling():
    """Example 4: Errors the relay reports."""
    print("⚠️ Example 4: Error handling")
    print("-" * 40)

    client = UploadRelayClient()
    try:
        try:
            await client.generate_url("definitely-missing-object.txt")
        except httpx.HTTPStatusError as e:
            print(f"✅ Missing object rejected: {e.response.status_code} {e.response.json()}")

        response = await client.client.post(f"{client.base_url}/abort", json={})
        print(f"✅ Abort without fields: {response.status_code} {response.json()}")
    finally:
        await client.close()

    print()


async def main():
    """Run all examples."""
    print("🚀 Upload Relay - Basic Usage Examples")
    print("=" * 60)
    print()

    if len(sys.argv) < 2:
        print("Usage: python examples/basic_usage.py <file-to-upload>")
        return

    path = Path(sys.argv[1])

    # Check if the service is running
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{BASE_URL}/health", timeout=5.0)
            if response.status_code != 200:
                print("❌ Upload Relay is not responding properly")
                return
    except Exception:
        print("❌ Cannot connect to Upload Relay")
        print(f"   Make sure the service is running on {BASE_URL}")
        print("   Start with: upload-relay")
        return

    print("✅ Upload Relay is running!")
    print()

    await example_1_upload_with_progress(path)
    await example_2_listing()
    await example_3_signed_url(path.name)
    await example_4_error_handling()

    print("🎉 All examples completed!")


if __name__ == "__main__":
    asyncio.run(main())
