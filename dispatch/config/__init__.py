"""
Configuration module for settings, city profiles and connections.
"""
from .settings import Settings, get_settings
from .cities import (
    CityProfile,
    CITIES,
    NYC,
    MPLS,
    ALL_FEEDS,
    get_city,
    feeds_for,
    initial_stream_feeds,
)
from .connections import (
    RedisConfig,
    get_redis_config,
    create_event_bus,
    create_state_cache,
)

__all__ = [
    'Settings',
    'get_settings',
    'CityProfile',
    'CITIES',
    'NYC',
    'MPLS',
    'ALL_FEEDS',
    'get_city',
    'feeds_for',
    'initial_stream_feeds',
    'RedisConfig',
    'get_redis_config',
    'create_event_bus',
    'create_state_cache',
]
