"""
Prediction domain model and its state machine

    pending --(matching incident before expiry)--> hit
    pending --(expires_at passed)--> expired

hit and expired are terminal. Transitions are pure: they return a new
Prediction and raise InvalidPredictionTransition when the input is not
pending, so a prediction can never be resolved twice.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from dispatch.errors import InvalidPredictionTransition
from dispatch.utils.id_generator import generate_id


class PredictionStatus(str, Enum):
    PENDING = "pending"
    HIT = "hit"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Prediction:
    id: str
    agent: str
    location: str
    region: str
    incident_type: str
    confidence: float
    created_at: datetime
    expires_at: datetime
    status: PredictionStatus = PredictionStatus.PENDING
    reasoning: str = ""
    matched_incident_id: Optional[int] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        agent: str,
        location: str,
        region: str,
        incident_type: str,
        confidence: float,
        window: timedelta,
        now: datetime,
        reasoning: str = "",
    ) -> 'Prediction':
        return cls(
            id=generate_id('prediction'),
            agent=agent,
            location=location or "",
            region=region or "",
            incident_type=incident_type or "",
            confidence=max(0.0, min(1.0, float(confidence))),
            created_at=now,
            expires_at=now + window,
            reasoning=reasoning,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == PredictionStatus.PENDING

    def is_overdue(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        data = {
            'id': self.id,
            'agent': self.agent,
            'location': self.location,
            'borough': self.region,
            'incidentType': self.incident_type,
            'confidence': self.confidence,
            'createdAt': self.created_at.isoformat(),
            'expiresAt': self.expires_at.isoformat(),
            'status': self.status.value,
        }
        if self.reasoning:
            data['reasoning'] = self.reasoning
        if self.matched_incident_id is not None:
            data['matchedIncidentId'] = self.matched_incident_id
        return data


def mark_hit(prediction: Prediction, incident_id: int, at: datetime) -> Prediction:
    """pending -> hit"""
    if not prediction.is_pending:
        raise InvalidPredictionTransition(
            f"Prediction {prediction.id} is {prediction.status.value}, cannot mark hit"
        )
    return replace(
        prediction,
        status=PredictionStatus.HIT,
        matched_incident_id=incident_id,
        resolved_at=at,
    )


def mark_expired(prediction: Prediction, at: datetime) -> Prediction:
    """pending -> expired"""
    if not prediction.is_pending:
        raise InvalidPredictionTransition(
            f"Prediction {prediction.id} is {prediction.status.value}, cannot expire"
        )
    return replace(prediction, status=PredictionStatus.EXPIRED, resolved_at=at)


@dataclass(frozen=True)
class PredictionStats:
    """
    Counters derived from prediction resolutions.

    total counts resolved predictions (hit or expired), correct counts hits.
    Both only ever increase.
    """
    total: int = 0
    correct: int = 0

    @property
    def accuracy(self) -> float:
        if self.total == 0:
            return 0.0
        return self.correct / self.total

    def accuracy_string(self) -> str:
        if self.total == 0:
            return "No predictions resolved yet"
        return f"{self.accuracy * 100:.1f}% ({self.correct}/{self.total})"


def record_hit(stats: PredictionStats) -> PredictionStats:
    return PredictionStats(total=stats.total + 1, correct=stats.correct + 1)


def record_expiry(stats: PredictionStats) -> PredictionStats:
    return PredictionStats(total=stats.total + 1, correct=stats.correct)
