from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """
    Dispatch settings loaded from environment variables.

    Environment variables can come from:
    - docker-compose.yml environment section
    - .env file (for secrets like API keys and feed credentials)
    - System environment

    Durations are in seconds unless the name says otherwise.
    """

    # Environment
    environment: str = "development"
    enabled_cities: str = "nyc,mpls"

    # OpenAI (transcription + extraction + agents)
    openai_api_key: str = ""
    extraction_model: str = "gpt-4o"
    agent_model: str = "gpt-4o"
    transcription_model: str = "whisper-1"

    # Redis
    redis_url: Optional[str] = "redis://localhost:6379"

    # Broadcastify live streams (HTTP basic auth)
    broadcastify_username: str = ""
    broadcastify_password: str = ""
    broadcastify_stream_host: str = "https://audio.broadcastify.com"

    # Broadcastify Calls API (JWT auth)
    bcfy_api_url: str = "https://api.bcfy.io"
    bcfy_api_key_id: str = ""
    bcfy_api_key_secret: str = ""
    bcfy_app_id: str = ""
    bcfy_system_id: int = 7636
    bcfy_token_ttl: int = 3600
    bcfy_poll_interval: float = 30.0

    # OpenMHz
    openmhz_api_url: str = "https://api.openmhz.com"
    openmhz_poll_interval: float = 10.0
    openmhz_lookback: int = 300

    # Streams
    max_concurrent_streams: int = 4
    chunk_duration: float = 15.0
    silence_threshold: float = 90.0
    liveness_interval: float = 30.0
    reconnect_delay: float = 3.0
    error_reconnect_delay: float = 5.0
    stream_stagger: float = 2.0
    min_chunk_bytes: int = 5000

    # Pollers
    poll_failure_threshold: int = 5
    max_calls_per_poll: int = 10
    min_call_audio_bytes: int = 1000

    # Bounds
    max_transcripts: int = 20
    max_incidents: int = 50
    max_memory_incidents: int = 200
    max_patterns: int = 50
    max_processed_calls: int = 1000
    max_transcript_fingerprints: int = 100

    # Timeouts for external calls
    download_timeout: float = 30.0
    transcription_timeout: float = 60.0
    extraction_timeout: float = 30.0
    agent_timeout: float = 45.0

    # Detective Bureau cadence
    predictor_interval: float = 900.0
    predictor_initial_delay: float = 120.0
    pattern_scan_interval: float = 300.0
    prediction_sweep_interval: float = 60.0
    pursuit_cooldown: float = 1800.0
    snapshot_interval: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra env vars

    @field_validator('enabled_cities', mode='before')
    @classmethod
    def normalize_cities(cls, v):
        """' NYC, mpls ' -> 'nyc,mpls'"""
        if v is None:
            return "nyc,mpls"
        return ','.join(c.strip().lower() for c in str(v).split(',') if c.strip())

    @field_validator('redis_url', mode='before')
    @classmethod
    def blank_redis_url(cls, v):
        """An empty REDIS_URL means run without Redis (in-process bus only)"""
        if v is not None and not str(v).strip():
            return None
        return v

    @property
    def city_ids(self) -> List[str]:
        """ENABLED_CITIES=nyc,mpls -> ['nyc', 'mpls']"""
        return [c.strip().lower() for c in self.enabled_cities.split(',') if c.strip()]

    @property
    def bcfy_enabled(self) -> bool:
        return bool(self.bcfy_api_key_id and self.bcfy_api_key_secret and self.bcfy_app_id)

    @property
    def streams_enabled(self) -> bool:
        return bool(self.broadcastify_username and self.broadcastify_password)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
