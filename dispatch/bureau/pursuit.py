"""
CHASE - pursuit and active-situation specialist

Activates on pursuit keywords only. A newer pursuit supersedes the one in
progress, and the agent stands down after the cool-down. An analysis that
comes back after its pursuit was superseded or stood down is discarded.
"""
import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional

from dispatch.bureau.base import Agent, Insight, to_prompt_json
from dispatch.models.domain import Incident

logger = logging.getLogger(__name__)

PURSUIT_KEYWORDS = (
    'pursuit', 'fled', 'fleeing', 'chase', 'vehicle pursuit', 'on foot', 'running',
    'high speed', 'foot pursuit', '10-13', 'failed to stop', 'refusing to pull over',
)

_ROUTE = re.compile(r'likely.*?\b(north|south|east|west|FDR|West Side|BQE|LIE|I-\d+\w?)\b', re.IGNORECASE)


def is_pursuit(incident: Incident) -> bool:
    text = f"{incident.incident_type} {incident.summary}".lower()
    return any(kw in text for kw in PURSUIT_KEYWORDS)


class PursuitAgent(Agent):

    name = 'CHASE'
    role = 'Pursuit Specialist'
    icon = '🚔'
    idle_status = 'idle'
    max_tokens = 400

    def __init__(self, *args, cooldown: timedelta = timedelta(minutes=30), **kwargs):
        super().__init__(*args, **kwargs)
        self.cooldown = cooldown
        self.current_case: Optional[int] = None
        self.activated_at: Optional[datetime] = None
        self._generation = 0
        self.discarded = 0

    @property
    def system_prompt(self) -> str:
        return f"""You are CHASE, an AI specialist in vehicle pursuits and active situations in {self.profile.name}.

Your expertise:
- Predicting escape routes based on the {self.profile.short_name} street network
- Tracking suspect movement patterns
- Coordinating multi-unit responses
- Identifying when situations will escalate

Street knowledge: {self.profile.street_knowledge}
Landmarks: {', '.join(self.profile.landmarks[:15])}

You speak in short, urgent bursts during active pursuits. Stay on the immediate tactical situation.

When analyzing a pursuit, consider:
- Street directions (one-ways, dead ends)
- Likely exit points (bridges, tunnels, highways)
- Time of day traffic patterns
- Historical pursuit data in the area"""

    def _stand_down_due(self, now: datetime) -> bool:
        return self.activated_at is not None and now - self.activated_at >= self.cooldown

    def _stand_down(self) -> None:
        self._generation += 1
        self.status = self.idle_status
        self.current_case = None
        self.activated_at = None

    async def on_incident(self, incident: Incident) -> Optional[Insight]:
        if not is_pursuit(incident):
            return None

        self._generation += 1
        generation = self._generation
        self.status = 'active'
        self.current_case = incident.id
        self.activated_at = self.clock()
        logger.info(f"[{self.tag}] 🚔 Pursuit detected on incident {incident.id}")

        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": f"""ACTIVE PURSUIT DETECTED:
{to_prompt_json(incident.to_dict())}

Recent incidents (for context):
{to_prompt_json([i.brief() for i in self.memory.recent(5) if i.id != incident.id])}

Provide:
1. Likely escape routes (be specific to {self.profile.short_name} streets)
2. Recommended containment points
3. Escalation risk assessment
4. What to watch for next

Keep it tactical and urgent."""},
        ]
        analysis = await self.ask(messages, max_tokens=self.max_tokens)

        if generation != self._generation:
            self.discarded += 1
            logger.info(f"[{self.tag}] Discarding analysis for {incident.id}: superseded or stood down")
            return None
        if self._stand_down_due(self.clock()):
            self.discarded += 1
            self._stand_down()
            logger.info(f"[{self.tag}] Discarding analysis for {incident.id}: pursuit window closed")
            return None
        if analysis is None:
            return None

        extra = {}
        route = _ROUTE.search(analysis)
        if route:
            extra['predictedRoute'] = {'direction': route.group(1), 'confidence': 0.7}

        self.insights_produced += 1
        return Insight(
            agent=self.name,
            agent_icon=self.icon,
            kind='pursuit_analysis',
            analysis=analysis,
            urgency='critical',
            incident_id=incident.id,
            extra=extra,
        )

    async def on_tick(self, now: datetime) -> List[Insight]:
        if self._stand_down_due(now):
            logger.info(f"[{self.tag}] Standing down from case {self.current_case}")
            self._stand_down()
        return []

    def describe(self) -> dict:
        data = super().describe()
        data['currentCase'] = self.current_case
        return data
