"""
Connection Configuration
========================

Centralized connection configuration for the worker and gateway processes.
Redis is optional: without REDIS_URL the event bus runs in-process only.
"""
import os
from typing import Optional
from dataclasses import dataclass


@dataclass
class RedisConfig:
    """Redis connection configuration."""
    url: Optional[str]

    @classmethod
    def from_env(cls) -> 'RedisConfig':
        """Create config from environment variables."""
        url = os.getenv('REDIS_URL', '').strip()
        return cls(url=url or None)

    @property
    def enabled(self) -> bool:
        return bool(self.url)


def get_redis_config() -> RedisConfig:
    """Get Redis configuration from environment."""
    return RedisConfig.from_env()


async def create_event_bus(redis_url: Optional[str] = None):
    """Create and connect the event bus from environment config."""
    from dispatch.services.event_bus import EventBus
    url = redis_url if redis_url is not None else get_redis_config().url
    bus = EventBus(url)
    await bus.connect()
    return bus


async def create_state_cache(redis_url: Optional[str] = None):
    """Create and connect the shared state cache from environment config."""
    from dispatch.services.event_bus import StateCache
    url = redis_url if redis_url is not None else get_redis_config().url
    cache = StateCache(url)
    await cache.connect()
    return cache
