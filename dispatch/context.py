"""
CityContext - everything one city owns at runtime

One context per enabled city, created once at start-up and passed
explicitly to the components that need it.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from dispatch.bureau import AgentOrchestrator, CityMemory
from dispatch.config.cities import CityProfile, get_city
from dispatch.services.city_state import CityState
from dispatch.services.dedup_cache import DedupCache
from dispatch.services.llm_gateway import LLMGateway


@dataclass
class CityContext:
    profile: CityProfile
    state: CityState
    call_dedup: DedupCache
    transcript_dedup: DedupCache
    orchestrator: AgentOrchestrator

    @property
    def city(self) -> str:
        return self.profile.id

    @classmethod
    def create(cls, profile: CityProfile, llm: LLMGateway, bus=None, settings=None) -> 'CityContext':
        if settings is None:
            from dispatch.config.settings import get_settings
            settings = get_settings()

        memory = CityMemory(
            profile.id,
            max_incidents=settings.max_memory_incidents,
            max_patterns=settings.max_patterns,
        )
        orchestrator = AgentOrchestrator(
            profile,
            llm,
            bus=bus,
            memory=memory,
            agent_timeout=settings.agent_timeout,
            pursuit_cooldown=timedelta(seconds=settings.pursuit_cooldown),
        )
        return cls(
            profile=profile,
            state=CityState(
                profile.id,
                max_incidents=settings.max_incidents,
                max_transcripts=settings.max_transcripts,
            ),
            call_dedup=DedupCache(settings.max_processed_calls),
            transcript_dedup=DedupCache(settings.max_transcript_fingerprints),
            orchestrator=orchestrator,
        )


def build_contexts(
    llm: LLMGateway,
    bus=None,
    settings=None,
    cities: Optional[List[str]] = None,
) -> Dict[str, CityContext]:
    """One CityContext per enabled city, keyed by city id"""
    if settings is None:
        from dispatch.config.settings import get_settings
        settings = get_settings()
    city_ids = cities if cities is not None else settings.city_ids
    return {
        city_id: CityContext.create(get_city(city_id), llm, bus=bus, settings=settings)
        for city_id in city_ids
    }
