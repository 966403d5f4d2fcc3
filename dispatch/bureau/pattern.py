"""
PATTERN - serial crime analyst

Incremental check on every incident, plus a periodic deep scan.

Similarity heuristic:
- candidate = incident in the last 24h that shares the type
  (case-insensitive), or shares the region and has Jaccard word
  similarity > 0.3 between summaries
- at least 2 candidates are required before the model is asked
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Set

from dispatch.bureau.base import Agent, Insight, PatternFinding, to_prompt_json
from dispatch.bureau.text import jaccard
from dispatch.models.domain import Incident, Prediction, UNKNOWN

logger = logging.getLogger(__name__)

LOOKBACK = timedelta(hours=24)
SIMILARITY_THRESHOLD = 0.3
MIN_SIMILAR = 2
PREDICTION_MIN_CONFIDENCE = 0.5
PREDICTION_WINDOW = timedelta(hours=6)
DEEP_SCAN_MIN_INCIDENTS = 10
DEEP_SCAN_SIZE = 50

CONFIDENCE_LEVELS = ('LOW', 'MEDIUM', 'HIGH')


def is_similar(a: Incident, b: Incident) -> bool:
    same_type = (a.incident_type or '').lower() == (b.incident_type or '').lower()
    same_region = a.region == b.region
    return same_type or (same_region and jaccard(a.summary, b.summary) > SIMILARITY_THRESHOLD)


def _confidence_level(value) -> str:
    """'HIGH' / 0.8 / None -> one of LOW, MEDIUM, HIGH"""
    if isinstance(value, (int, float)):
        if value >= 0.7:
            return 'HIGH'
        return 'MEDIUM' if value >= 0.4 else 'LOW'
    level = str(value or 'MEDIUM').upper()
    return level if level in CONFIDENCE_LEVELS else 'MEDIUM'


def _float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _ids(values: Optional[Iterable]) -> Set[int]:
    ids = set()
    for value in values or []:
        try:
            ids.add(int(value))
        except (TypeError, ValueError):
            continue
    return ids


class PatternAgent(Agent):

    name = 'PATTERN'
    role = 'Serial Crime Analyst'
    icon = '🔍'
    max_tokens = 500
    scan_max_tokens = 800

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scans = 0

    @property
    def system_prompt(self) -> str:
        return f"""You are PATTERN, an AI analyst specializing in detecting serial crimes and criminal patterns in {self.profile.name}.

Your expertise:
- Identifying MO (modus operandi) similarities
- Geographic clustering analysis
- Temporal pattern recognition
- Linking seemingly unrelated incidents

You're methodical and data-driven. You don't jump to conclusions - you build cases with evidence.

When you detect a pattern:
1. Identify the common elements
2. Estimate confidence level
3. Predict likely next occurrence
4. Suggest investigative actions"""

    def similar_incidents(self, incident: Incident) -> List[Incident]:
        cutoff = incident.created_at - LOOKBACK
        return [
            other for other in self.memory.incidents
            if other.id != incident.id
            and other.created_at >= cutoff
            and is_similar(other, incident)
        ]

    def _embedded_prediction(self, result: dict, incident: Incident, now: datetime) -> Optional[Prediction]:
        prediction = result.get('prediction')
        if not isinstance(prediction, dict):
            return None
        confidence = _float(prediction.get('confidence'))
        if confidence <= PREDICTION_MIN_CONFIDENCE:
            return None
        return Prediction.create(
            agent=self.name,
            location=prediction.get('location') or '',
            region=prediction.get('borough') or prediction.get('region') or (
                incident.region if incident.region != UNKNOWN else ''),
            incident_type=prediction.get('incidentType') or incident.incident_type,
            confidence=confidence,
            window=PREDICTION_WINDOW,
            now=now,
            reasoning=str(prediction.get('timeWindow') or ''),
        )

    async def on_incident(self, incident: Incident) -> Optional[Insight]:
        similar = self.similar_incidents(incident)
        if len(similar) < MIN_SIMILAR:
            return None

        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": f"""New incident that may be part of a pattern:
{to_prompt_json(incident.to_dict())}

Similar recent incidents:
{to_prompt_json([i.brief() for i in similar[:10]])}

Analyze:
1. Is this part of a pattern? (be skeptical, require real evidence)
2. If yes, what connects them?
3. Predicted next occurrence (location, time, type)
4. Confidence level (LOW/MEDIUM/HIGH)

Respond in JSON:
{{
  "patternDetected": true/false,
  "patternName": "string (creative name if pattern exists)",
  "connections": ["list of connecting factors"],
  "involvedIncidents": [ids],
  "confidence": "LOW/MEDIUM/HIGH",
  "prediction": {{
    "location": "specific area",
    "borough": "region",
    "incidentType": "predicted type",
    "timeWindow": "e.g., next 4 hours",
    "confidence": 0.0-1.0
  }},
  "analysis": "string explanation"
}}"""},
        ]
        self.status = 'analyzing'
        try:
            result = await self.llm.complete_json(
                messages, max_tokens=self.max_tokens, timeout=self.timeout, label=self.tag
            )
        finally:
            self.status = self.idle_status

        if not isinstance(result, dict) or not result.get('patternDetected'):
            return None

        known = self.memory.incident_ids() | {incident.id}
        linked = _ids(result.get('involvedIncidents') or result.get('linkedIncidentIds')) & known
        if len(linked) < MIN_SIMILAR:
            linked = {incident.id} | {i.id for i in similar[:10]}

        now = self.clock()
        prediction = self._embedded_prediction(result, incident, now)
        prediction_confidence = prediction.confidence if prediction else 0.0

        finding = PatternFinding(
            name=str(result.get('patternName') or ''),
            connections=[str(c) for c in result.get('connections') or []],
            linked_ids=linked,
            confidence=_confidence_level(result.get('confidence') or prediction_confidence or None),
            analysis=str(result.get('analysis') or ''),
        )
        self.insights_produced += 1
        return Insight(
            agent=self.name,
            agent_icon=self.icon,
            kind='pattern_detected',
            analysis=finding.analysis,
            urgency='high' if prediction_confidence > 0.7 else 'medium',
            incident_id=incident.id,
            predictions=[prediction] if prediction else [],
            pattern=finding,
            extra={
                'patternName': finding.name,
                'connections': finding.connections,
                'linkedIncidentIds': sorted(linked),
            },
        )

    async def on_tick(self, now: datetime) -> List[Insight]:
        """Deep scan of the most recent incidents for patterns missed incrementally"""
        if len(self.memory) < DEEP_SCAN_MIN_INCIDENTS:
            return []

        self.status = 'analyzing'
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": f"""Deep pattern analysis of recent activity:

{to_prompt_json([i.brief() for i in self.memory.recent(DEEP_SCAN_SIZE)])}

Known active patterns:
{to_prompt_json([p.to_dict() for p in self.memory.active_patterns()])}

Perform comprehensive analysis:
1. New patterns not yet detected
2. Updates to existing patterns
3. Cross-pattern connections

Be thorough but skeptical. Only report real patterns.

Respond in JSON:
{{
  "patterns": [
    {{
      "patternName": "string",
      "connections": ["connecting factors"],
      "linkedIncidentIds": [ids],
      "confidence": "LOW/MEDIUM/HIGH",
      "analysis": "string"
    }}
  ],
  "summary": "1-2 sentence overview"
}}"""},
        ]
        try:
            result = await self.llm.complete_json(
                messages, max_tokens=self.scan_max_tokens, timeout=self.timeout, label=self.tag
            )
        finally:
            self.status = self.idle_status
        self.scans += 1

        if not isinstance(result, dict):
            return []

        known = self.memory.incident_ids()
        insights = []
        for entry in result.get('patterns') or []:
            if not isinstance(entry, dict):
                continue
            linked = _ids(entry.get('linkedIncidentIds') or entry.get('involvedIncidents')) & known
            if len(linked) < MIN_SIMILAR:
                continue
            finding = PatternFinding(
                name=str(entry.get('patternName') or ''),
                connections=[str(c) for c in entry.get('connections') or []],
                linked_ids=linked,
                confidence=_confidence_level(entry.get('confidence')),
                analysis=str(entry.get('analysis') or ''),
            )
            insights.append(Insight(
                agent=self.name,
                agent_icon=self.icon,
                kind='pattern_scan',
                analysis=finding.analysis,
                urgency='medium',
                pattern=finding,
                extra={
                    'patternName': finding.name,
                    'connections': finding.connections,
                    'linkedIncidentIds': sorted(linked),
                },
            ))
        logger.info(f"[{self.tag}] Deep scan complete: {len(insights)} pattern(s) reported")
        self.insights_produced += len(insights)
        return insights

    def describe(self) -> dict:
        data = super().describe()
        data['activePatterns'] = len(self.memory.active_patterns())
        return data
