"""
HISTORIAN - long-term memory and context

Engages only when there is history to report: earlier incidents at the
same address, or earlier incidents sharing at least two suspect
descriptors.
"""
import logging
from typing import List, Optional

from dispatch.bureau.base import Agent, Insight, to_prompt_json
from dispatch.bureau.text import MIN_SHARED_DESCRIPTORS, extract_descriptors
from dispatch.models.domain import Incident

logger = logging.getLogger(__name__)


class HistorianAgent(Agent):

    name = 'HISTORIAN'
    role = 'Historical Analyst'
    icon = '📚'
    max_tokens = 300

    @property
    def system_prompt(self) -> str:
        return f"""You are HISTORIAN, an AI with perfect memory of all past incidents in {self.profile.name}.

Your expertise:
- Recognizing repeat addresses and locations
- Tracking suspect descriptions across time
- Identifying escalation patterns at specific locations
- Providing historical context for new incidents

When a new incident comes in, you check:
1. Has this address had previous calls? What kind?
2. Does this suspect description match anyone from the past week?
3. Is this part of an ongoing situation?
4. What happened last time at this location?"""

    def suspect_matches(self, incident: Incident) -> List[Incident]:
        descriptors = set(extract_descriptors(incident.summary))
        if len(descriptors) < MIN_SHARED_DESCRIPTORS:
            return []
        matches = []
        for other in self.memory.incidents:
            if other.id == incident.id or not other.summary:
                continue
            if len(descriptors & set(extract_descriptors(other.summary))) >= MIN_SHARED_DESCRIPTORS:
                matches.append(other)
        return matches

    async def on_incident(self, incident: Incident) -> Optional[Insight]:
        prior_calls = max(self.memory.address_calls(incident) - 1, 0)
        history = self.memory.location_history(incident)
        suspects = self.suspect_matches(incident)
        if not prior_calls and not suspects:
            return None

        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": f"""New incident:
{to_prompt_json(incident.to_dict())}

Previous calls at this address: {prior_calls}
Most recent of them:
{to_prompt_json([i.brief() for i in history[:5]])}

Possible suspect matches from other incidents:
{to_prompt_json([i.brief() for i in suspects[:3]])}

Provide relevant historical context in 2-3 sentences. What should we know about this location or these suspects?"""},
        ]
        context = await self.ask(messages, max_tokens=self.max_tokens)
        if context is None:
            return None

        self.insights_produced += 1
        return Insight(
            agent=self.name,
            agent_icon=self.icon,
            kind='historical_context',
            analysis=context,
            urgency='medium' if prior_calls > 3 else 'low',
            incident_id=incident.id,
            extra={
                'locationHistory': len(history),
                'addressCalls': prior_calls,
                'suspectMatches': len(suspects),
            },
        )
