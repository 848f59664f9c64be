import asyncio
import hashlib


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def sha256_async(data: bytes) -> str:
    return await asyncio.to_thread(sha256_bytes, data)
