IDEMPOTENCY_TTL = 86400

def idempotency_key(booking_id: str, operation: str) -> str:
    return f"{booking_id}:{operation}"

def processed_key(key: str) -> str:
    return f"processed:{key}"

async def is_processed(redis_client, key: str) -> bool:
    return bool(await redis_client.exists(processed_key(key)))

async def mark_processed(redis_client, key: str):
    await redis_client.set(processed_key(key), "1", ex=IDEMPOTENCY_TTL)
