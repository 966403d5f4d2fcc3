"""
Incident domain model

An Incident is created from an IncidentCandidate once the city worker has
assigned it the next id for its city. The fields copied from extraction are
never changed afterwards; agents may only annotate it (matched_prediction_id).
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

from dispatch.models.domain.camera import Camera


UNKNOWN = "Unknown"


@dataclass(frozen=True)
class IncidentCandidate:
    """Structured result of extraction, before it is accepted into CityState."""
    incident_type: str
    location: str = UNKNOWN
    region: str = UNKNOWN
    priority: str = "MEDIUM"
    summary: str = ""
    is_arrest: bool = False
    units: List[str] = field(default_factory=list)
    precinct: Optional[str] = None


@dataclass
class Incident:
    """
    A public-safety incident heard on one city's radio traffic.

    ID is monotonic per city (assigned by CityState.next_incident_id).
    """
    id: int
    incident_type: str
    location: str
    region: str
    priority: str
    summary: str
    source_transcript: str
    city: str
    created_at: datetime
    is_arrest: bool = False
    source: str = ""
    talkgroup: Optional[str] = None
    units: List[str] = field(default_factory=list)
    camera: Optional[Camera] = None

    # Downstream annotations
    matched_prediction_id: Optional[str] = None

    @classmethod
    def from_candidate(
        cls,
        incident_id: int,
        candidate: IncidentCandidate,
        transcript: str,
        city: str,
        created_at: datetime,
        source: str = "",
        talkgroup: Optional[str] = None,
    ) -> 'Incident':
        return cls(
            id=incident_id,
            incident_type=candidate.incident_type,
            location=candidate.location or UNKNOWN,
            region=candidate.region or UNKNOWN,
            priority=candidate.priority,
            summary=candidate.summary,
            source_transcript=transcript,
            city=city,
            created_at=created_at,
            is_arrest=candidate.is_arrest,
            source=source,
            talkgroup=talkgroup,
            units=list(candidate.units),
        )

    def with_camera(self, camera: Optional[Camera]) -> 'Incident':
        return replace(self, camera=camera)

    @property
    def has_location(self) -> bool:
        return bool(self.location) and self.location != UNKNOWN

    @property
    def location_key(self) -> str:
        """Hotspot key: region-location"""
        return f"{self.region}-{self.location}"

    def to_dict(self) -> dict:
        """Wire shape used on the event bus and in agent prompts."""
        data = {
            'id': self.id,
            'incidentType': self.incident_type,
            'location': self.location,
            'borough': self.region,
            'priority': self.priority,
            'summary': self.summary,
            'transcript': self.source_transcript,
            'city': self.city,
            'timestamp': self.created_at.isoformat(),
            'isArrest': self.is_arrest,
            'source': self.source,
        }
        if self.talkgroup:
            data['talkgroup'] = self.talkgroup
        if self.units:
            data['units'] = self.units
        if self.camera:
            data['camera'] = self.camera.to_dict()
            data['lat'] = self.camera.lat
            data['lng'] = self.camera.lng
        if self.matched_prediction_id:
            data['matchedPredictionId'] = self.matched_prediction_id
        return data

    def brief(self) -> dict:
        """Compact form for LLM context windows."""
        return {
            'id': self.id,
            'incidentType': self.incident_type,
            'location': self.location,
            'borough': self.region,
            'priority': self.priority,
            'summary': self.summary,
            'timestamp': self.created_at.isoformat(),
        }
