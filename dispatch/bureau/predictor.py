"""
PROPHET - predictive analyst

Runs on a timer. Turns the current hotspot ranking into a few specific,
testable forecasts. Its own track record goes into the system prompt so it
can calibrate.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from dispatch.bureau.base import Agent, Insight, to_prompt_json
from dispatch.models.domain import Incident, Prediction

logger = logging.getLogger(__name__)

MIN_INCIDENTS = 5
TOP_HOTSPOTS = 10
MAX_PREDICTIONS = 3
DEFAULT_WINDOW_MINUTES = 30
MAX_WINDOW_MINUTES = 24 * 60


def _window_minutes(value) -> int:
    try:
        minutes = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_WINDOW_MINUTES
    if minutes <= 0:
        return DEFAULT_WINDOW_MINUTES
    return min(minutes, MAX_WINDOW_MINUTES)


class PredictorAgent(Agent):

    name = 'PROPHET'
    role = 'Predictive Analyst'
    icon = '🔮'
    idle_status = 'analyzing'
    max_tokens = 600

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.cycles = 0
        self.last_assessment: Optional[str] = None

    @property
    def system_prompt(self) -> str:
        return f"""You are PROPHET, an AI specializing in predictive crime analysis for {self.profile.name}.

Your expertise:
- Forecasting crime hotspots based on historical patterns
- Predicting escalation likelihood
- Time-based crime probability modeling
- Resource allocation recommendations

You make specific, testable predictions with confidence levels. You track your accuracy rigorously. You're honest about uncertainty.

Your current prediction accuracy: {self.memory.ledger.accuracy_string()}
Be calibrated - if you've been overconfident, adjust down."""

    async def on_incident(self, incident: Incident) -> Optional[Insight]:
        # Hit checking is done by the ledger before any agent runs
        return None

    def _build_prediction(self, entry: dict, now: datetime) -> Optional[Prediction]:
        location = str(entry.get('location') or '').strip()
        incident_type = str(entry.get('incidentType') or '').strip()
        if not incident_type or not (location or entry.get('borough') or entry.get('region')):
            return None
        try:
            confidence = float(entry.get('confidence') or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        return Prediction.create(
            agent=self.name,
            location=location,
            region=str(entry.get('borough') or entry.get('region') or ''),
            incident_type=incident_type,
            confidence=confidence,
            window=timedelta(minutes=_window_minutes(entry.get('timeWindowMinutes'))),
            now=now,
            reasoning=str(entry.get('reasoning') or ''),
        )

    async def on_tick(self, now: datetime) -> List[Insight]:
        if len(self.memory) < MIN_INCIDENTS:
            return []

        hotspots = self.memory.top_hotspots(TOP_HOTSPOTS)
        self.status = 'predicting'
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": f"""Generate predictions for the next few hours.

Recent incidents:
{to_prompt_json([i.brief() for i in self.memory.recent(30)])}

Current hotspots (location -> incident count):
{to_prompt_json(hotspots)}

Current time: {now.isoformat()}
Day of week: {now.strftime('%A')}

Provide 2-3 specific predictions in JSON:
{{
  "predictions": [
    {{
      "location": "specific location",
      "borough": "one of {', '.join(self.profile.regions)}",
      "incidentType": "predicted type",
      "timeWindowMinutes": 30,
      "confidence": 0.0-1.0,
      "reasoning": "why you predict this"
    }}
  ],
  "overallAssessment": "1-2 sentence city-wide assessment"
}}"""},
        ]
        try:
            result = await self.llm.complete_json(
                messages, max_tokens=self.max_tokens, timeout=self.timeout, label=self.tag
            )
        finally:
            self.status = self.idle_status
        self.cycles += 1

        if not isinstance(result, dict):
            return []

        predictions = []
        for entry in (result.get('predictions') or [])[:MAX_PREDICTIONS]:
            if isinstance(entry, dict):
                prediction = self._build_prediction(entry, now)
                if prediction:
                    predictions.append(prediction)

        if not predictions:
            return []

        self.last_assessment = str(result.get('overallAssessment') or '')
        logger.info(f"[{self.tag}] 🔮 {len(predictions)} prediction(s) issued")
        self.insights_produced += 1
        return [Insight(
            agent=self.name,
            agent_icon=self.icon,
            kind='predictions',
            analysis=self.last_assessment,
            urgency='medium',
            predictions=predictions,
            extra={'hotspots': [[k, v] for k, v in hotspots]},
        )]

    def describe(self) -> dict:
        data = super().describe()
        data['activePredictions'] = len(self.memory.ledger.pending)
        data['accuracy'] = self.memory.ledger.accuracy_string()
        return data
