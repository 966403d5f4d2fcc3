"""
Detective Bureau Tests
======================

Agents, CityMemory and the AgentOrchestrator with a scripted LLM. Replies
are routed by the agent's system prompt so concurrent agents get the
answer meant for them.
"""
import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import T0, FakeLLM, make_incident, make_prediction
from dispatch.bureau import (
    AgentOrchestrator,
    CityMemory,
    HistorianAgent,
    PatternAgent,
    PredictorAgent,
    PursuitAgent,
    is_pursuit,
    is_similar,
    route_question,
)
from dispatch.models.domain import PatternStatus, PredictionStatus, UNKNOWN
from dispatch.services.scheduler import PeriodicScheduler


# ============================================================================
# HELPERS
# ============================================================================

def scripted(**by_agent):
    """LLM reply callable keyed by agent name ('PATTERN', 'CHASE', ...)"""
    def reply(messages):
        system = messages[0]['content']
        for agent, answer in by_agent.items():
            if f"You are {agent}" in system:
                return answer
        return None
    return reply


PATTERN_REPLY = {
    "patternDetected": True,
    "patternName": "Flatbush Gunpoint Robberies",
    "connections": ["same avenue", "evening hours"],
    "involvedIncidents": [1, 2, 3, 99],
    "confidence": "HIGH",
    "prediction": {
        "location": "Flatbush Ave",
        "borough": "Brooklyn",
        "incidentType": "Robbery",
        "timeWindow": "next 4 hours",
        "confidence": 0.8,
    },
    "analysis": "Three armed robberies along one corridor.",
}


def make_agent(cls, memory, llm, nyc, clock, **kwargs):
    return cls(memory=memory, llm=llm, profile=nyc, clock=clock, **kwargs)


@pytest.fixture
def memory():
    return CityMemory('nyc')


# ============================================================================
# TEST: CITY MEMORY
# ============================================================================

class TestCityMemory:

    def test_hotspots_and_address_history(self, memory):
        memory.add(make_incident(1, location="Fulton St"))
        memory.add(make_incident(2, location="fulton st"))
        memory.add(make_incident(3, location=UNKNOWN))
        assert memory.hotspots["Brooklyn-Fulton St"] == 1
        assert memory.address_history["fulton st"] == 2
        assert "unknown" not in memory.address_history

    def test_location_history_skips_unknown(self, memory):
        memory.add(make_incident(1, location=UNKNOWN))
        memory.add(make_incident(2, location=UNKNOWN))
        assert memory.location_history(make_incident(3, location=UNKNOWN)) == []

    def test_bounded(self):
        memory = CityMemory('nyc', max_incidents=5)
        for i in range(1, 9):
            memory.add(make_incident(i))
        assert len(memory) == 5
        assert memory.incident_ids() == {4, 5, 6, 7, 8}

    def test_register_pattern_refreshes_overlap(self, memory):
        first, created = memory.register_pattern("A", [], {1, 2}, "LOW", T0)
        assert created
        later = T0 + timedelta(hours=1)
        second, created = memory.register_pattern("B", [], {2, 3}, "HIGH", later)
        assert not created
        assert second is first
        assert first.linked_incident_ids == {1, 2, 3}
        assert first.last_activity_at == later

    def test_patterns_expire_without_activity(self, memory):
        pattern, _ = memory.register_pattern("A", [], {1, 2}, "LOW", T0)
        assert memory.expire_patterns(T0 + timedelta(hours=5)) == []
        assert memory.expire_patterns(T0 + timedelta(hours=6, minutes=1)) == [pattern]
        assert pattern.status == PatternStatus.EXPIRED
        assert memory.active_patterns() == []

    def test_pattern_list_bounded(self):
        memory = CityMemory('nyc', max_patterns=3)
        for i in range(5):
            memory.register_pattern(f"P{i}", [], {i * 10, i * 10 + 1}, "LOW", T0)
        assert [p.name for p in memory.patterns] == ["P2", "P3", "P4"]


# ============================================================================
# TEST: CHASE
# ============================================================================

class TestPursuitAgent:

    def test_keyword_trigger(self):
        assert is_pursuit(make_incident(incident_type="Vehicle Pursuit"))
        assert is_pursuit(make_incident(incident_type="Robbery", summary="suspect fled on foot"))
        assert not is_pursuit(make_incident(incident_type="Robbery", summary="victim treated"))

    @pytest.mark.asyncio
    async def test_non_pursuit_is_ignored(self, memory, nyc, clock):
        llm = FakeLLM(default="should not be called")
        agent = make_agent(PursuitAgent, memory, llm, nyc, clock)
        assert await agent.on_incident(make_incident()) is None
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_pursuit_analysis(self, memory, nyc, clock):
        llm = FakeLLM(["Suspect likely heading north on the FDR. Block 96th St exit."])
        agent = make_agent(PursuitAgent, memory, llm, nyc, clock)
        insight = await agent.on_incident(make_incident(7, incident_type="Vehicle pursuit"))
        assert insight.urgency == 'critical'
        assert insight.incident_id == 7
        assert insight.extra['predictedRoute']['direction'] == 'north'
        assert llm.requests[0]['max_tokens'] == 400
        assert agent.describe()['currentCase'] == 7

    @pytest.mark.asyncio
    async def test_superseded_result_is_discarded(self, memory, nyc, clock):
        gates = []

        class GatedLLM(FakeLLM):
            async def complete(self, messages, **kwargs):
                gate = asyncio.Event()
                gates.append(gate)
                await gate.wait()
                return "Suspect likely heading south"

        agent = make_agent(PursuitAgent, memory, GatedLLM(), nyc, clock)
        first = asyncio.create_task(agent.on_incident(make_incident(1, incident_type="Pursuit")))
        await asyncio.sleep(0)
        second = asyncio.create_task(agent.on_incident(make_incident(2, incident_type="Pursuit")))
        await asyncio.sleep(0)
        for gate in gates:
            gate.set()

        assert await first is None
        result = await second
        assert result.incident_id == 2
        assert agent.discarded == 1
        assert agent.current_case == 2

    @pytest.mark.asyncio
    async def test_result_after_cooldown_is_discarded(self, memory, nyc, clock):
        def slow_reply(messages):
            clock.advance(minutes=31)
            return "late analysis"

        agent = make_agent(PursuitAgent, memory, FakeLLM([slow_reply]), nyc, clock)
        assert await agent.on_incident(make_incident(1, incident_type="Pursuit")) is None
        assert agent.status == 'idle'
        assert agent.current_case is None

    @pytest.mark.asyncio
    async def test_result_after_tick_stand_down_is_discarded(self, memory, nyc, clock):
        gate = asyncio.Event()

        class GatedLLM(FakeLLM):
            async def complete(self, messages, **kwargs):
                await gate.wait()
                return "late tactical analysis"

        agent = make_agent(PursuitAgent, memory, GatedLLM(), nyc, clock)
        pending = asyncio.create_task(agent.on_incident(make_incident(1, incident_type="Pursuit")))
        await asyncio.sleep(0)
        assert agent.status == 'active'

        await agent.on_tick(clock.advance(minutes=31))
        assert agent.status == 'idle'
        gate.set()

        assert await pending is None
        assert agent.discarded == 1
        assert agent.insights_produced == 0

    @pytest.mark.asyncio
    async def test_stands_down_on_tick(self, memory, nyc, clock):
        agent = make_agent(PursuitAgent, memory, FakeLLM(["on it"]), nyc, clock)
        await agent.on_incident(make_incident(1, incident_type="Pursuit"))
        assert agent.status == 'active'
        await agent.on_tick(clock.now + timedelta(minutes=10))
        assert agent.status == 'active'
        await agent.on_tick(clock.now + timedelta(minutes=30))
        assert agent.status == 'idle'


# ============================================================================
# TEST: HISTORIAN
# ============================================================================

class TestHistorianAgent:

    @pytest.mark.asyncio
    async def test_silent_without_history(self, memory, nyc, clock):
        llm = FakeLLM(default="context")
        agent = make_agent(HistorianAgent, memory, llm, nyc, clock)
        incident = make_incident(1, location="Fulton St")
        memory.add(incident)
        assert await agent.on_incident(incident) is None
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_repeat_address(self, memory, nyc, clock):
        agent = make_agent(HistorianAgent, memory, FakeLLM(["Third call here tonight."]), nyc, clock)
        memory.add(make_incident(1, location="Fulton St"))
        incident = make_incident(2, location="Fulton St")
        memory.add(incident)
        insight = await agent.on_incident(incident)
        assert insight.extra == {'locationHistory': 1, 'addressCalls': 1, 'suspectMatches': 0}
        assert insight.urgency == 'low'

    @pytest.mark.asyncio
    async def test_address_history_outlives_memory_window(self, nyc, clock):
        memory = CityMemory('nyc', max_incidents=2)
        agent = make_agent(HistorianAgent, memory, FakeLLM(["Fifth call at this address."]), nyc, clock)
        for i in range(1, 5):
            memory.add(make_incident(i, location="Fulton St"))
        incident = make_incident(5, location="Fulton St")
        memory.add(incident)

        insight = await agent.on_incident(incident)

        assert insight.extra['addressCalls'] == 4
        assert insight.extra['locationHistory'] == 1
        assert insight.urgency == 'medium'

    @pytest.mark.asyncio
    async def test_unknown_location_is_not_history(self, memory, nyc, clock):
        agent = make_agent(HistorianAgent, memory, FakeLLM(default="context"), nyc, clock)
        memory.add(make_incident(1, location=UNKNOWN))
        incident = make_incident(2, location=UNKNOWN)
        memory.add(incident)
        assert await agent.on_incident(incident) is None

    @pytest.mark.asyncio
    async def test_suspect_descriptor_match(self, memory, nyc, clock):
        agent = make_agent(HistorianAgent, memory, FakeLLM(["Matches earlier robbery."]), nyc, clock)
        memory.add(make_incident(1, location="Atlantic Ave", summary="tall male, red jacket"))
        incident = make_incident(2, location="Church Ave", summary="suspect is a tall man in a red jacket")
        memory.add(incident)
        insight = await agent.on_incident(incident)
        assert insight.extra['suspectMatches'] == 1

    def test_one_shared_descriptor_is_not_a_match(self, memory, nyc, clock):
        agent = make_agent(HistorianAgent, memory, FakeLLM(), nyc, clock)
        memory.add(make_incident(1, summary="red car"))
        assert agent.suspect_matches(make_incident(2, summary="red jacket, tall")) == []


# ============================================================================
# TEST: PATTERN
# ============================================================================

class TestPatternAgent:

    def test_similarity(self):
        a = make_incident(1, "Robbery", region="Brooklyn")
        assert is_similar(a, make_incident(2, "robbery", region="Queens"))
        assert is_similar(
            make_incident(3, "Assault", region="Bronx", summary="man with knife on the train platform"),
            make_incident(4, "Stabbing", region="Bronx", summary="man with knife on train platform"),
        )
        assert not is_similar(a, make_incident(5, "Fire", region="Brooklyn", summary="smoke"))

    @pytest.mark.asyncio
    async def test_requires_two_similar_incidents(self, memory, nyc, clock):
        llm = FakeLLM(default=PATTERN_REPLY)
        agent = make_agent(PatternAgent, memory, llm, nyc, clock)
        memory.add(make_incident(1, created_at=T0))
        incident = make_incident(3, created_at=T0 + timedelta(minutes=20))
        memory.add(incident)
        assert await agent.on_incident(incident) is None
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_lookback_window(self, memory, nyc, clock):
        llm = FakeLLM(default=PATTERN_REPLY)
        agent = make_agent(PatternAgent, memory, llm, nyc, clock)
        memory.add(make_incident(1, created_at=T0 - timedelta(hours=25)))
        memory.add(make_incident(2, created_at=T0))
        incident = make_incident(3, created_at=T0 + timedelta(minutes=20))
        memory.add(incident)
        assert await agent.on_incident(incident) is None

    @pytest.mark.asyncio
    async def test_pattern_with_embedded_prediction(self, memory, nyc, clock):
        agent = make_agent(PatternAgent, memory, FakeLLM([PATTERN_REPLY]), nyc, clock)
        memory.add(make_incident(1, created_at=T0))
        memory.add(make_incident(2, created_at=T0 + timedelta(minutes=10)))
        incident = make_incident(3, created_at=T0 + timedelta(minutes=20))
        memory.add(incident)

        insight = await agent.on_incident(incident)

        assert insight.pattern.linked_ids == {1, 2, 3}
        assert insight.pattern.confidence == 'HIGH'
        assert insight.urgency == 'high'
        [prediction] = insight.predictions
        assert prediction.agent == 'PATTERN'
        assert prediction.expires_at - prediction.created_at == timedelta(hours=6)
        # Agents never write memory themselves
        assert memory.patterns == []

    @pytest.mark.asyncio
    async def test_low_confidence_prediction_dropped(self, memory, nyc, clock):
        reply = dict(PATTERN_REPLY, prediction=dict(PATTERN_REPLY['prediction'], confidence=0.5))
        agent = make_agent(PatternAgent, memory, FakeLLM([reply]), nyc, clock)
        for i in (1, 2, 3):
            memory.add(make_incident(i))
        insight = await agent.on_incident(memory.get(3))
        assert insight.predictions == []
        assert insight.urgency == 'medium'

    @pytest.mark.asyncio
    async def test_deep_scan(self, memory, nyc, clock):
        reply = {"patterns": [
            {"patternName": "Real", "linkedIncidentIds": [1, 2, 5], "confidence": "MEDIUM"},
            {"patternName": "Hallucinated", "linkedIncidentIds": [1, 404], "confidence": "HIGH"},
        ]}
        agent = make_agent(PatternAgent, memory, FakeLLM([reply]), nyc, clock)
        for i in range(1, 11):
            memory.add(make_incident(i))

        insights = await agent.on_tick(clock())

        assert [i.pattern.name for i in insights] == ["Real"]
        assert insights[0].kind == 'pattern_scan'
        assert agent.scans == 1

    @pytest.mark.asyncio
    async def test_deep_scan_needs_ten_incidents(self, memory, nyc, clock):
        llm = FakeLLM(default={"patterns": []})
        agent = make_agent(PatternAgent, memory, llm, nyc, clock)
        for i in range(1, 10):
            memory.add(make_incident(i))
        assert await agent.on_tick(clock()) == []
        assert llm.requests == []


# ============================================================================
# TEST: PROPHET
# ============================================================================

class TestPredictorAgent:

    @pytest.mark.asyncio
    async def test_needs_five_incidents(self, memory, nyc, clock):
        llm = FakeLLM(default={"predictions": []})
        agent = make_agent(PredictorAgent, memory, llm, nyc, clock)
        for i in range(1, 5):
            memory.add(make_incident(i))
        assert await agent.on_tick(clock()) == []
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_at_most_three_predictions(self, memory, nyc, clock):
        entries = [
            {"location": f"Spot {n}", "borough": "Brooklyn", "incidentType": "Robbery",
             "confidence": 0.6, "reasoning": "hotspot"}
            for n in range(4)
        ]
        entries[0]['timeWindowMinutes'] = 90
        llm = FakeLLM([{"predictions": entries, "overallAssessment": "Busy night in Brooklyn."}])
        agent = make_agent(PredictorAgent, memory, llm, nyc, clock)
        for i in range(1, 6):
            memory.add(make_incident(i))

        [insight] = await agent.on_tick(clock())

        assert len(insight.predictions) == 3
        first, second = insight.predictions[:2]
        assert first.expires_at == clock() + timedelta(minutes=90)
        assert second.expires_at == clock() + timedelta(minutes=30)
        assert insight.analysis == "Busy night in Brooklyn."
        assert agent.cycles == 1

    @pytest.mark.asyncio
    async def test_accuracy_in_system_prompt(self, memory, nyc, clock):
        memory.ledger.add(make_prediction())
        memory.ledger.check_incident(make_incident(1, created_at=T0 + timedelta(minutes=1)))
        agent = make_agent(PredictorAgent, memory, FakeLLM(), nyc, clock)
        assert "100.0% (1/1)" in agent.system_prompt

    @pytest.mark.asyncio
    async def test_does_not_react_to_incidents(self, memory, nyc, clock):
        agent = make_agent(PredictorAgent, memory, FakeLLM(default="x"), nyc, clock)
        assert await agent.on_incident(make_incident()) is None


# ============================================================================
# TEST: ORCHESTRATOR
# ============================================================================

class TestAgentOrchestrator:

    @pytest.mark.asyncio
    async def test_record_resolves_hit_and_publishes(self, nyc, bus, clock):
        orchestrator = AgentOrchestrator(nyc, FakeLLM(), bus=bus, clock=clock)
        prediction = make_prediction(location="", region="Brooklyn", incident_type="robbery")
        orchestrator.memory.ledger.add(prediction)

        incident = make_incident(1, "robbery", created_at=T0 + timedelta(minutes=10))
        hits = await orchestrator.record(incident)

        assert [h.status for h in hits] == [PredictionStatus.HIT]
        assert incident.matched_prediction_id == prediction.id
        [event] = bus.of_type('prediction_hit')
        assert event['matchedIncidentId'] == 1
        assert event['accuracy'] == 1.0
        assert event['city'] == 'nyc'
        stats = orchestrator.get_prediction_stats()
        assert (stats['total'], stats['correct']) == (1, 1)

    @pytest.mark.asyncio
    async def test_pattern_only_with_two_related_incidents(self, nyc, bus, clock):
        llm = FakeLLM(default=scripted(PATTERN=PATTERN_REPLY))
        orchestrator = AgentOrchestrator(nyc, llm, bus=bus, clock=clock)

        await orchestrator.process_incident(make_incident(1, location="Flatbush Ave", created_at=T0))
        await orchestrator.process_incident(
            make_incident(2, location="Church Ave", created_at=T0 + timedelta(minutes=10)))
        assert orchestrator.get_active_patterns() == []

        insights = await orchestrator.process_incident(
            make_incident(3, location="Nostrand Ave", created_at=T0 + timedelta(minutes=20)))

        assert [i.agent for i in insights] == ['PATTERN']
        [pattern] = orchestrator.get_active_patterns()
        assert pattern['linkedIncidentIds'] == [1, 2, 3]
        assert len(orchestrator.memory.ledger.pending) == 1
        assert len(bus.of_type('prediction')) == 1
        [insight_event] = bus.of_type('agent_insight')
        assert insight_event['agent'] == 'PATTERN'
        assert insight_event['analysis']['patternId'] == pattern['id']

    @pytest.mark.asyncio
    async def test_removed_incident_prevents_pattern(self, nyc, bus, clock):
        llm = FakeLLM(default=scripted(PATTERN=PATTERN_REPLY))
        orchestrator = AgentOrchestrator(nyc, llm, bus=bus, clock=clock)
        orchestrator.memory.add(make_incident(1, location="Flatbush Ave", created_at=T0))
        orchestrator.memory.add(make_incident(2, location="Church Ave", created_at=T0))
        orchestrator.memory.incidents.remove(orchestrator.memory.get(2))

        await orchestrator.process_incident(make_incident(3, location="Nostrand Ave"))

        assert orchestrator.get_active_patterns() == []
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_failing_agent_does_not_stop_others(self, nyc, bus, clock):
        orchestrator = AgentOrchestrator(nyc, FakeLLM(default="Context."), bus=bus, clock=clock)

        async def broken(incident):
            raise RuntimeError("boom")

        orchestrator.pursuit.on_incident = broken
        orchestrator.memory.add(make_incident(1, location="Fulton St"))
        insights = await orchestrator.process_incident(make_incident(2, location="Fulton St"))
        assert [i.agent for i in insights] == ['HISTORIAN']

    @pytest.mark.asyncio
    async def test_spawn_analysis_and_drain(self, nyc, bus, clock):
        llm = FakeLLM(default=scripted(CHASE="Suspect likely heading east"))
        orchestrator = AgentOrchestrator(nyc, llm, bus=bus, clock=clock)
        incident = make_incident(1, incident_type="Vehicle pursuit")
        await orchestrator.record(incident)
        orchestrator.spawn_analysis(incident)
        await orchestrator.drain()
        [event] = bus.of_type('agent_insight')
        assert event['agent'] == 'CHASE'
        assert event['urgency'] == 'critical'

    @pytest.mark.asyncio
    async def test_predictor_cycle_publishes(self, nyc, bus, clock):
        reply = {"predictions": [{"location": "Fulton St", "borough": "Brooklyn",
                                  "incidentType": "Robbery", "confidence": 0.6}]}
        orchestrator = AgentOrchestrator(nyc, FakeLLM(default=scripted(PROPHET=reply)), bus=bus, clock=clock)
        for i in range(1, 6):
            orchestrator.memory.add(make_incident(i))

        await orchestrator.run_predictor()

        assert len(orchestrator.memory.ledger.pending) == 1
        [event] = bus.of_type('prediction')
        assert event['agent'] == 'PROPHET'
        assert event['prediction']['location'] == "Fulton St"

    @pytest.mark.asyncio
    async def test_sweep(self, nyc, bus, clock):
        orchestrator = AgentOrchestrator(nyc, FakeLLM(), bus=bus, clock=clock)
        orchestrator.memory.ledger.add(make_prediction(window=timedelta(minutes=30)))
        orchestrator.memory.register_pattern("Old", [], {1, 2}, "LOW", T0)

        clock.advance(hours=7)
        expired = await orchestrator.sweep()

        assert len(expired) == 1
        assert orchestrator.get_active_patterns() == []
        assert orchestrator.get_prediction_stats()['total'] == 1

    @pytest.mark.asyncio
    async def test_queries(self, nyc, clock):
        orchestrator = AgentOrchestrator(nyc, FakeLLM(), clock=clock)
        for i, location in enumerate(["Fulton St", "Fulton St", "Atlantic Ave"], start=1):
            orchestrator.memory.add(make_incident(i, location=location))

        assert orchestrator.get_hotspots(1) == [{'location': "Brooklyn-Fulton St", 'count': 2}]
        names = [a['name'] for a in orchestrator.get_agent_statuses()]
        assert names == ['CHASE', 'PATTERN', 'PROPHET', 'HISTORIAN']
        stats = orchestrator.briefing_stats()
        assert stats['totalIncidents'] == 3
        assert stats['incidentsLastHour'] == 3

    def test_route_question(self):
        assert route_question("Where did the car that fled go?") == 'CHASE'
        assert route_question("What should we expect tonight?") == 'PROPHET'
        assert route_question("Has this address had calls before?") == 'HISTORIAN'
        assert route_question("Are these robberies connected?") == 'PATTERN'

    @pytest.mark.asyncio
    async def test_ask_agents(self, nyc, clock):
        llm = FakeLLM(default=scripted(PROPHET="Expect robberies near Fulton St."))
        orchestrator = AgentOrchestrator(nyc, llm, clock=clock)
        answer = await orchestrator.ask_agents("What do you predict next?")
        assert answer['agent'] == 'PROPHET'
        assert answer['answer'] == "Expect robberies near Fulton St."

    @pytest.mark.asyncio
    async def test_ask_agents_unavailable(self, nyc, clock):
        orchestrator = AgentOrchestrator(nyc, FakeLLM(), clock=clock)
        answer = await orchestrator.ask_agents("Are these connected?")
        assert answer['error'] == 'Agent unavailable'

    @pytest.mark.asyncio
    async def test_generate_briefing(self, nyc, clock):
        orchestrator = AgentOrchestrator(nyc, FakeLLM(["All quiet."]), clock=clock)
        briefing = await orchestrator.generate_briefing()
        assert briefing['briefing'] == "All quiet."
        assert briefing['city'] == 'nyc'
        assert len(briefing['agents']) == 4

    @pytest.mark.asyncio
    async def test_register_periodic_tasks(self, nyc):
        orchestrator = AgentOrchestrator(nyc, FakeLLM())
        scheduler = PeriodicScheduler()
        settings = SimpleNamespace(
            predictor_interval=900, predictor_initial_delay=120,
            pattern_scan_interval=300, prediction_sweep_interval=60,
        )
        orchestrator.register_periodic_tasks(scheduler, settings)
        assert scheduler.names == ['pattern-scan:nyc', 'predictor:nyc', 'sweep:nyc']
        await scheduler.cancel_all()
