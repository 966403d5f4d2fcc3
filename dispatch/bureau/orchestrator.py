"""
AgentOrchestrator - the Detective Bureau for one city

Two triggers:
- event-driven: every accepted incident goes through record() (memory
  update and prediction hit/expiry check, synchronous with ingestion) and
  then analyze() (agents run concurrently, insights published)
- timer-driven: predictor cycle, pattern deep scan, sweep (see
  register_periodic_tasks)

The orchestrator is the only writer of CityMemory. Query methods return
fresh dicts/lists and can be called while ingestion is running.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from dispatch.bureau.base import Agent, Insight, to_prompt_json
from dispatch.bureau.historian import HistorianAgent
from dispatch.bureau.memory import CityMemory
from dispatch.bureau.pattern import PatternAgent
from dispatch.bureau.predictor import PredictorAgent
from dispatch.bureau.pursuit import PursuitAgent
from dispatch.config.cities import CityProfile
from dispatch.models.domain import Incident, Prediction
from dispatch.services.llm_gateway import LLMGateway
from dispatch.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

BRIEFING_TOP_HOTSPOTS = 5


def route_question(question: str) -> str:
    """Pick the agent best placed to answer a free-text question"""
    q = question.lower()
    if any(k in q for k in ('pursuit', 'chase', 'fled')):
        return PursuitAgent.name
    if any(k in q for k in ('predict', 'next', 'expect')):
        return PredictorAgent.name
    if any(k in q for k in ('before', 'history', 'last time')):
        return HistorianAgent.name
    return PatternAgent.name


class AgentOrchestrator:

    def __init__(
        self,
        profile: CityProfile,
        llm: LLMGateway,
        bus=None,
        memory: Optional[CityMemory] = None,
        clock: Callable[[], datetime] = utcnow,
        agent_timeout: Optional[float] = None,
        pursuit_cooldown: timedelta = timedelta(minutes=30),
    ):
        self.profile = profile
        self.city = profile.id
        self.llm = llm
        self.bus = bus
        self.memory = memory or CityMemory(profile.id)
        self.clock = clock
        self.agent_timeout = agent_timeout

        common = dict(memory=self.memory, llm=llm, profile=profile, clock=clock, timeout=agent_timeout)
        self.pursuit = PursuitAgent(cooldown=pursuit_cooldown, **common)
        self.pattern = PatternAgent(**common)
        self.predictor = PredictorAgent(**common)
        self.historian = HistorianAgent(**common)
        self.agents: Dict[str, Agent] = {
            a.name: a for a in (self.pursuit, self.pattern, self.predictor, self.historian)
        }
        self._pending_analysis: set = set()

    # ------------------------------------------------------------------
    # Event-driven path
    # ------------------------------------------------------------------

    async def record(self, incident: Incident) -> List[Prediction]:
        """
        Add the incident to memory and resolve predictions against it.

        Runs before any agent sees the incident, so an agent's own analysis
        of this incident can never affect whether a prediction hit.

        Returns:
            Predictions resolved as hits by this incident
        """
        self.memory.add(incident)
        hits, expired = self.memory.ledger.check_incident(incident)

        if expired:
            logger.info(f"[BUREAU-{self.city}] {len(expired)} prediction(s) expired")
        if hits:
            incident.matched_prediction_id = hits[0].id
            for prediction in hits:
                await self._publish_hit(prediction, incident.id)
        return hits

    async def analyze(self, incident: Incident) -> List[Insight]:
        """Run every agent on the incident concurrently, apply and publish results"""
        agents = list(self.agents.values())
        results = await asyncio.gather(
            *(agent.on_incident(incident) for agent in agents),
            return_exceptions=True,
        )
        insights = []
        for agent, result in zip(agents, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error(f"[{agent.tag}] on_incident failed: {result}", exc_info=result)
                continue
            if result is not None:
                insights.append(result)

        for insight in insights:
            await self._apply(insight)
        return insights

    async def process_incident(self, incident: Incident) -> List[Insight]:
        await self.record(incident)
        return await self.analyze(incident)

    def spawn_analysis(self, incident: Incident) -> asyncio.Task:
        """Fire-and-forget analyze(); keeps a reference so the task is not collected"""
        task = asyncio.create_task(self.analyze(incident))
        self._pending_analysis.add(task)
        task.add_done_callback(self._analysis_done)
        return task

    def _analysis_done(self, task: asyncio.Task) -> None:
        self._pending_analysis.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[BUREAU-{self.city}] analysis failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for in-flight analyses (used on shutdown and in tests)"""
        if self._pending_analysis:
            await asyncio.gather(*list(self._pending_analysis), return_exceptions=True)

    async def _apply(self, insight: Insight) -> None:
        """Write an insight's side effects into memory, then publish"""
        now = self.clock()
        if insight.pattern is not None:
            finding = insight.pattern
            pattern, created = self.memory.register_pattern(
                finding.name, finding.connections, finding.linked_ids,
                finding.confidence, now, finding.analysis,
            )
            insight.extra['patternId'] = pattern.id
            if created:
                logger.info(f"[BUREAU-{self.city}] 🔍 New pattern '{pattern.name}' ({len(pattern.linked_incident_ids)} incidents)")

        for prediction in insight.predictions:
            self.memory.ledger.add(prediction)
            if self.bus is not None:
                await self.bus.publish_prediction(prediction, self.city)

        if self.bus is not None:
            await self.bus.publish_agent_insight(
                insight.agent,
                insight.agent_icon,
                insight.incident_id,
                insight.to_dict(),
                insight.urgency,
                self.city,
            )

    async def _publish_hit(self, prediction: Prediction, incident_id: int) -> None:
        if self.bus is None:
            return
        await self.bus.publish_prediction_hit(
            prediction, incident_id, self.memory.ledger.accuracy, self.city
        )

    # ------------------------------------------------------------------
    # Timer-driven path
    # ------------------------------------------------------------------

    async def _run_tick(self, agent: Agent) -> List[Insight]:
        insights = await agent.on_tick(self.clock())
        for insight in insights:
            await self._apply(insight)
        return insights

    async def run_predictor(self) -> List[Insight]:
        return await self._run_tick(self.predictor)

    async def run_pattern_scan(self) -> List[Insight]:
        return await self._run_tick(self.pattern)

    async def sweep(self) -> List[Prediction]:
        """Expire overdue predictions and stale patterns; let CHASE stand down"""
        now = self.clock()
        expired = self.memory.ledger.sweep(now)
        stale = self.memory.expire_patterns(now)
        await self.pursuit.on_tick(now)
        if expired or stale:
            logger.info(
                f"[BUREAU-{self.city}] Sweep: {len(expired)} prediction(s) expired, "
                f"{len(stale)} pattern(s) closed"
            )
        return expired

    def register_periodic_tasks(self, scheduler, settings) -> None:
        scheduler.schedule(
            f'predictor:{self.city}', self.run_predictor,
            interval=settings.predictor_interval,
            initial_delay=settings.predictor_initial_delay,
        )
        scheduler.schedule(
            f'pattern-scan:{self.city}', self.run_pattern_scan,
            interval=settings.pattern_scan_interval,
        )
        scheduler.schedule(
            f'sweep:{self.city}', self.sweep,
            interval=settings.prediction_sweep_interval,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_agent_statuses(self) -> List[dict]:
        return [agent.describe() for agent in self.agents.values()]

    def get_prediction_stats(self) -> dict:
        return self.memory.ledger.stats()

    def get_active_patterns(self) -> List[dict]:
        return [p.to_dict() for p in self.memory.active_patterns()]

    def get_hotspots(self, n: int = 10) -> List[dict]:
        return [{'location': key, 'count': count} for key, count in self.memory.top_hotspots(n)]

    async def ask_agents(self, question: str, incident_id: Optional[int] = None) -> dict:
        """Route a user question to one agent and return its answer"""
        agent = self.agents[route_question(question)]
        ledger = self.memory.ledger
        context = [
            f"- Recent incidents: {to_prompt_json([i.brief() for i in self.memory.recent(10)])}",
            f"- Active patterns: {to_prompt_json(self.get_active_patterns())}",
            f"- Pending predictions: {to_prompt_json([p.to_dict() for p in ledger.pending_list()[:5]])}",
        ]
        if incident_id is not None:
            specific = self.memory.get(incident_id)
            if specific is not None:
                context.append(f"- Specific incident: {to_prompt_json(specific.to_dict())}")

        messages = [
            {"role": "system", "content": f"""{agent.system_prompt}

You are responding to a user question. Be helpful, specific, and reference actual data when possible.

Current prediction accuracy: {ledger.accuracy_string()}
Incidents in memory: {len(self.memory)}"""},
            {"role": "user", "content": f"Question: {question}\n\nContext:\n" + "\n".join(context)},
        ]
        answer = await agent.ask(messages, max_tokens=500)
        response = {
            'agent': agent.name,
            'agentIcon': agent.icon,
            'city': self.city,
            'timestamp': self.clock().isoformat(),
        }
        if answer is None:
            response['error'] = 'Agent unavailable'
        else:
            response['answer'] = answer
        return response

    def briefing_stats(self) -> dict:
        now = self.clock()
        ledger = self.memory.ledger
        return {
            'incidentsLastHour': len(self.memory.within(timedelta(hours=1), now)),
            'totalIncidents': len(self.memory),
            'activePatterns': len(self.memory.active_patterns()),
            'pendingPredictions': len(ledger.pending),
            'predictionAccuracy': ledger.accuracy_string(),
            'topHotspots': self.get_hotspots(BRIEFING_TOP_HOTSPOTS),
        }

    async def generate_briefing(self) -> dict:
        now = self.clock()
        stats = self.briefing_stats()
        recent = self.memory.within(timedelta(hours=1), now)
        ledger = self.memory.ledger

        messages = [
            {"role": "system", "content": f"""You are the Detective Bureau briefing system for {self.profile.name}. Synthesize reports from all agents into a cohesive briefing.

Agents reporting:
- CHASE (Pursuit Specialist)
- PATTERN (Serial Crime Analyst)
- PROPHET (Predictive Analyst) - Accuracy: {ledger.accuracy_string()}
- HISTORIAN (Historical Context)

Be concise, actionable, and highlight what matters most."""},
            {"role": "user", "content": f"""Generate a Detective Bureau briefing.

ACTIVITY SUMMARY:
{to_prompt_json(stats)}

RECENT INCIDENTS:
{to_prompt_json([i.brief() for i in recent[:15]])}

ACTIVE PATTERNS:
{to_prompt_json(self.get_active_patterns())}

CURRENT PREDICTIONS:
{to_prompt_json([p.to_dict() for p in ledger.pending_list()])}

Provide:
1. Executive Summary (2-3 sentences)
2. Key Developments (bullet points)
3. Active Threats/Patterns
4. Predictions for Next 2 Hours
5. Recommended Actions"""},
        ]
        briefing = await self.llm.complete(
            messages, max_tokens=800, timeout=self.agent_timeout, label=f"BRIEFING-{self.city}"
        )
        return {
            'city': self.city,
            'briefing': briefing,
            'stats': stats,
            'agents': self.get_agent_statuses(),
            'timestamp': now.isoformat(),
        }
