import json
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

from app.config import settings
from app.core.logging import logger

USER_CACHE_TTL = timedelta(hours=1)

# Initialize Redis client for caching
redis_client = redis.Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT, db=settings.REDIS_DB)


async def get_user_details_from_user_management(user_id: UUID) -> Optional[Dict[str, Any]]:
    """User profile (email, phone_number, name...) from the user-management service, cached for an hour."""
    cache_key = f"user_details:{user_id}"
    try:
        cached_data = await redis_client.get(cache_key)
    except RedisError as e:
        logger.warning("User cache unavailable", user_id=str(user_id), error=str(e))
        cached_data = None

    if cached_data:
        logger.debug("User details retrieved from cache", user_id=str(user_id))
        return json.loads(cached_data)

    async with httpx.AsyncClient(timeout=10) as client:
        try:
            response = await client.get(f"{settings.USER_MANAGEMENT_URL}/api/v1/users/{user_id}")
            response.raise_for_status()
            user_data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning("User not found in User Management service", user_id=str(user_id), status_code=e.response.status_code)
            return None
        except httpx.RequestError as e:
            logger.error("User Management service unavailable", user_id=str(user_id), error=str(e))
            return None

    try:
        await redis_client.setex(cache_key, USER_CACHE_TTL, json.dumps(user_data))
    except RedisError as e:
        logger.warning("Failed to cache user details", user_id=str(user_id), error=str(e))
    logger.info("User details fetched from User Management service", user_id=str(user_id))
    return user_data
