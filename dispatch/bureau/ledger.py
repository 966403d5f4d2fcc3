"""
PredictionLedger - pending predictions and their outcomes for one city

Every prediction resolves exactly once: to hit when a matching incident
arrives before expires_at, or to expired when expires_at passes first.
Resolution moves it out of the pending map into a bounded history and
folds it into PredictionStats through the pure record_hit / record_expiry
transitions.
"""
import logging
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Tuple

from dispatch.models.domain import (
    Incident,
    Prediction,
    PredictionStats,
    mark_hit,
    mark_expired,
    record_hit,
    record_expiry,
)

logger = logging.getLogger(__name__)


def prediction_matches(prediction: Prediction, incident: Incident) -> bool:
    """
    Type must match, plus region or location.

    - type:     incident type contains the predicted type (case-insensitive)
    - region:   equal (case-insensitive)
    - location: incident location contains the predicted location
    """
    p_type = prediction.incident_type.lower().strip()
    i_type = (incident.incident_type or '').lower().strip()
    if not p_type or not i_type:
        return False
    if p_type not in i_type:
        return False

    p_region = prediction.region.lower().strip()
    region_match = bool(p_region) and p_region == (incident.region or '').lower().strip()

    p_location = prediction.location.lower().strip()
    location_match = bool(p_location) and p_location in (incident.location or '').lower()

    return region_match or location_match


class PredictionLedger:

    def __init__(self, city: str, max_history: int = 100):
        self.city = city
        self.pending: Dict[str, Prediction] = {}
        self.history: Deque[Prediction] = deque(maxlen=max_history)
        self.counters = PredictionStats()

    def add(self, prediction: Prediction) -> None:
        if not prediction.is_pending:
            raise ValueError(f"Only pending predictions can be tracked, got {prediction.status.value}")
        self.pending[prediction.id] = prediction

    def pending_list(self) -> List[Prediction]:
        return sorted(self.pending.values(), key=lambda p: p.created_at)

    def _resolve_hit(self, prediction: Prediction, incident_id: int, at: datetime) -> Prediction:
        resolved = mark_hit(prediction, incident_id, at)
        del self.pending[prediction.id]
        self.history.appendleft(resolved)
        self.counters = record_hit(self.counters)
        return resolved

    def _resolve_expired(self, prediction: Prediction, at: datetime) -> Prediction:
        resolved = mark_expired(prediction, at)
        del self.pending[prediction.id]
        self.history.appendleft(resolved)
        self.counters = record_expiry(self.counters)
        return resolved

    def check_incident(self, incident: Incident) -> Tuple[List[Prediction], List[Prediction]]:
        """
        Resolve pending predictions against a new incident.

        Overdue predictions expire first so an incident arriving after
        expires_at can never count as a hit.

        Returns:
            (hits, expired) as resolved Prediction values
        """
        at = incident.created_at
        hits, expired = [], []
        for prediction in self.pending_list():
            if prediction.is_overdue(at):
                expired.append(self._resolve_expired(prediction, at))
            elif prediction_matches(prediction, incident):
                hits.append(self._resolve_hit(prediction, incident.id, at))
                logger.info(
                    f"[LEDGER-{self.city}] Prediction HIT! {prediction.id} matched incident {incident.id}"
                )
        return hits, expired

    def sweep(self, now: datetime) -> List[Prediction]:
        """Expire every overdue prediction"""
        return [
            self._resolve_expired(p, now)
            for p in self.pending_list()
            if p.is_overdue(now)
        ]

    @property
    def accuracy(self) -> float:
        return self.counters.accuracy

    def accuracy_string(self) -> str:
        return self.counters.accuracy_string()

    def stats(self) -> dict:
        return {
            'total': self.counters.total,
            'correct': self.counters.correct,
            'accuracy': self.counters.accuracy,
            'accuracyString': self.counters.accuracy_string(),
            'pending': [p.to_dict() for p in self.pending_list()],
            'recentPredictions': [p.to_dict() for p in list(self.history)[:20]],
        }
