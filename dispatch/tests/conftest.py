"""
Pytest configuration and shared fakes for dispatch tests.

No test touches the network: the LLM, speech-to-text, stream opener and
call-log clients are all replaced by the fakes below.
"""
import json
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from dispatch.config.cities import MPLS, NYC
from dispatch.models.domain import Incident, Prediction
from dispatch.services.event_bus import EventBus


def pytest_configure(config):
    """Configure pytest with asyncio marker."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test."
    )


T0 = datetime(2025, 3, 14, 22, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable datetime clock"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLLM:
    """
    Stands in for LLMGateway.

    Replies are popped in order; a dict/list reply is serialized as JSON.
    A reply may also be a callable taking the messages list.
    """

    def __init__(self, replies=None, default: Optional[str] = None):
        self.replies = list(replies or [])
        self.default = default
        self.requests: List[dict] = []

    def _next(self, messages):
        if self.replies:
            reply = self.replies.pop(0)
        else:
            reply = self.default
        if callable(reply):
            reply = reply(messages)
        if isinstance(reply, (dict, list)):
            reply = json.dumps(reply)
        return reply

    async def complete(self, messages, max_tokens=500, temperature=0.3, timeout=None, label="llm"):
        self.requests.append({'messages': messages, 'max_tokens': max_tokens, 'label': label})
        return self._next(messages)

    async def complete_json(self, messages, **kwargs):
        from dispatch.services.llm_gateway import extract_json_block
        return extract_json_block(await self.complete(messages, **kwargs))


class RecordingBus(EventBus):
    """In-process EventBus that also keeps every published payload"""

    def __init__(self):
        super().__init__(None)
        self.events: List[tuple] = []

    async def publish(self, channel: str, payload: dict) -> bool:
        self.events.append((channel, payload))
        return await super().publish(channel, payload)

    def of_type(self, event_type: str) -> List[dict]:
        return [p for _, p in self.events if p.get('type') == event_type]


def make_incident(
    incident_id: int = 1,
    incident_type: str = "Robbery",
    location: str = "Flatbush Ave & Church Ave",
    region: str = "Brooklyn",
    created_at: datetime = T0,
    summary: str = "",
    city: str = "nyc",
    priority: str = "HIGH",
) -> Incident:
    return Incident(
        id=incident_id,
        incident_type=incident_type,
        location=location,
        region=region,
        priority=priority,
        summary=summary,
        source_transcript=f"{incident_type} at {location}",
        city=city,
        created_at=created_at,
    )


def make_prediction(
    location: str = "Flatbush Ave",
    region: str = "Brooklyn",
    incident_type: str = "Robbery",
    now: datetime = T0,
    window: timedelta = timedelta(minutes=30),
    confidence: float = 0.7,
) -> Prediction:
    return Prediction.create(
        agent='PROPHET',
        location=location,
        region=region,
        incident_type=incident_type,
        confidence=confidence,
        window=window,
        now=now,
        reasoning="test",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def nyc():
    return NYC


@pytest.fixture
def mpls():
    return MPLS


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()
