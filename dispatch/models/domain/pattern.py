from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Set

from dispatch.utils.id_generator import generate_id


class PatternStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class Pattern:
    """
    A cluster of related incidents found by the PATTERN agent.

    Stays active while new linked incidents keep arriving within the
    validity window; expires otherwise.
    """
    id: str
    name: str
    connections: List[str]
    linked_incident_ids: Set[int]
    confidence: str
    detected_at: datetime
    last_activity_at: datetime
    status: PatternStatus = PatternStatus.ACTIVE
    analysis: str = ""

    @classmethod
    def create(
        cls,
        name: str,
        connections: List[str],
        linked_incident_ids: Set[int],
        confidence: str,
        now: datetime,
        analysis: str = "",
    ) -> 'Pattern':
        return cls(
            id=generate_id('pattern'),
            name=name or "Unnamed pattern",
            connections=list(connections or []),
            linked_incident_ids=set(linked_incident_ids),
            confidence=confidence,
            detected_at=now,
            last_activity_at=now,
            analysis=analysis,
        )

    @property
    def is_active(self) -> bool:
        return self.status == PatternStatus.ACTIVE

    def link(self, incident_ids: Set[int], now: datetime) -> bool:
        """Attach incidents; returns True if any were new."""
        new_ids = set(incident_ids) - self.linked_incident_ids
        if new_ids:
            self.linked_incident_ids |= new_ids
            self.last_activity_at = now
        return bool(new_ids)

    def expire_if_stale(self, now: datetime, validity: timedelta) -> bool:
        if self.is_active and now - self.last_activity_at > validity:
            self.status = PatternStatus.EXPIRED
            return True
        return False

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'patternName': self.name,
            'connections': self.connections,
            'linkedIncidentIds': sorted(self.linked_incident_ids),
            'confidence': self.confidence,
            'status': self.status.value,
            'detectedAt': self.detected_at.isoformat(),
            'lastActivityAt': self.last_activity_at.isoformat(),
            'analysis': self.analysis,
        }
