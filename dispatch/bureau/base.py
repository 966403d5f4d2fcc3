"""
Agent interface for the Detective Bureau

Each agent owns its own status fields and reads the shared CityMemory.
Agents never write to memory: they return an Insight, and the orchestrator
applies any patterns or predictions it carries.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from dispatch.bureau.memory import CityMemory
from dispatch.config.cities import CityProfile
from dispatch.models.domain import Incident, Prediction
from dispatch.services.llm_gateway import LLMGateway
from dispatch.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PatternFinding:
    """A pattern an agent wants registered in CityMemory"""
    name: str
    connections: List[str]
    linked_ids: set
    confidence: str
    analysis: str = ""


@dataclass
class Insight:
    agent: str
    agent_icon: str
    kind: str
    analysis: Any
    urgency: str = "low"
    incident_id: Optional[int] = None
    predictions: List[Prediction] = field(default_factory=list)
    pattern: Optional[PatternFinding] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            'agent': self.agent,
            'agentIcon': self.agent_icon,
            'type': self.kind,
            'incidentId': self.incident_id,
            'analysis': self.analysis,
            'urgency': self.urgency,
        }
        data.update(self.extra)
        return data


def to_prompt_json(value) -> str:
    return json.dumps(value, indent=2, default=str)


class Agent(ABC):
    """One specialist in the bureau"""

    name: str = ""
    role: str = ""
    icon: str = ""
    idle_status: str = "monitoring"

    def __init__(
        self,
        memory: CityMemory,
        llm: LLMGateway,
        profile: CityProfile,
        clock: Callable[[], datetime] = utcnow,
        timeout: Optional[float] = None,
    ):
        self.memory = memory
        self.llm = llm
        self.profile = profile
        self.clock = clock
        self.timeout = timeout
        self.status = self.idle_status
        self.insights_produced = 0

    @property
    def tag(self) -> str:
        return f"{self.name}-{self.profile.id}"

    @property
    @abstractmethod
    def system_prompt(self) -> str:
        ...

    @abstractmethod
    async def on_incident(self, incident: Incident) -> Optional[Insight]:
        """React to a new incident; None when the agent has nothing to say."""
        ...

    async def on_tick(self, now: datetime) -> List[Insight]:
        """Timer-driven work. Most agents have none."""
        return []

    async def ask(self, messages: List[dict], max_tokens: int, temperature: float = 0.3) -> Optional[str]:
        return await self.llm.complete(
            messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=self.timeout,
            label=self.tag,
        )

    def describe(self) -> dict:
        return {
            'id': self.name,
            'name': self.name,
            'role': self.role,
            'icon': self.icon,
            'status': self.status,
            'insights': self.insights_produced,
        }
