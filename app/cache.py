"""
Read-through cache for a provider's occupied slots.

Slots change only when a booking is accepted, rescheduled or cancelled, so
the router invalidates the key on those transitions and the TTL only bounds
staleness from writes made elsewhere. Redis being down never fails a request.
"""

from uuid import UUID

from loguru import logger
from pydantic import TypeAdapter
from redis.asyncio import Redis

from app import settings
from app.schemas import BookingSlot

_redis: Redis | None = None
_slots = TypeAdapter(list[BookingSlot])


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def slots_key(provider_id: UUID) -> str:
    return f"bookings:slots:{provider_id}"


async def get_slots_cache(provider_id: UUID) -> list[BookingSlot] | None:
    try:
        raw = await get_redis().get(slots_key(provider_id))
    except Exception:
        logger.opt(exception=True).warning(
            "Slots cache read failed: provider_id={}", provider_id
        )
        return None
    if not raw:
        return None
    return _slots.validate_json(raw)


async def set_slots_cache(provider_id: UUID, slots: list[BookingSlot]) -> None:
    try:
        await get_redis().setex(
            slots_key(provider_id), settings.SLOTS_CACHE_TTL, _slots.dump_json(slots)
        )
    except Exception:
        logger.opt(exception=True).warning(
            "Slots cache write failed: provider_id={}", provider_id
        )


async def invalidate_slots_cache(provider_id: UUID) -> None:
    try:
        await get_redis().delete(slots_key(provider_id))
    except Exception:
        logger.opt(exception=True).warning(
            "Slots cache invalidation failed: provider_id={}", provider_id
        )
