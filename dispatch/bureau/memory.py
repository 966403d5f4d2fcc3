"""
CityMemory - what the Detective Bureau remembers about one city

Owned by that city's AgentOrchestrator. Agents read it; only the
orchestrator writes to it.
"""
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Deque, Iterable, List, Optional, Set, Tuple

from dispatch.bureau.ledger import PredictionLedger
from dispatch.models.domain import Incident, Pattern


class CityMemory:

    def __init__(
        self,
        city: str,
        max_incidents: int = 200,
        max_patterns: int = 50,
        pattern_validity: timedelta = timedelta(hours=6),
    ):
        self.city = city
        self.incidents: Deque[Incident] = deque(maxlen=max_incidents)
        self.hotspots: Counter = Counter()
        self.address_history: Counter = Counter()
        self.patterns: List[Pattern] = []
        self.max_patterns = max_patterns
        self.pattern_validity = pattern_validity
        self.ledger = PredictionLedger(city)

    def __len__(self) -> int:
        return len(self.incidents)

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    def add(self, incident: Incident) -> None:
        self.incidents.appendleft(incident)
        self.hotspots[incident.location_key] += 1
        if incident.has_location:
            self.address_history[incident.location.lower()] += 1

    def recent(self, n: Optional[int] = None) -> List[Incident]:
        """Newest first"""
        items = list(self.incidents)
        return items if n is None else items[:n]

    def within(self, window: timedelta, now: datetime) -> List[Incident]:
        cutoff = now - window
        return [i for i in self.incidents if i.created_at >= cutoff]

    def get(self, incident_id: int) -> Optional[Incident]:
        for incident in self.incidents:
            if incident.id == incident_id:
                return incident
        return None

    def incident_ids(self) -> Set[int]:
        return {i.id for i in self.incidents}

    def address_calls(self, incident: Incident) -> int:
        """Calls ever recorded at this incident's address, including evicted ones"""
        if not incident.has_location:
            return 0
        return self.address_history[incident.location.lower()]

    def location_history(self, incident: Incident) -> List[Incident]:
        """Earlier incidents at the same (known) location"""
        if not self.address_calls(incident):
            return []
        location = incident.location.lower()
        return [
            i for i in self.incidents
            if i.id != incident.id and (i.location or '').lower() == location
        ]

    def top_hotspots(self, n: int = 10) -> List[Tuple[str, int]]:
        return self.hotspots.most_common(n)

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def active_patterns(self) -> List[Pattern]:
        return [p for p in self.patterns if p.is_active]

    def find_overlapping_pattern(self, incident_ids: Iterable[int]) -> Optional[Pattern]:
        ids = set(incident_ids)
        for pattern in self.active_patterns():
            if pattern.linked_incident_ids & ids:
                return pattern
        return None

    def register_pattern(
        self,
        name: str,
        connections: List[str],
        linked_ids: Set[int],
        confidence: str,
        now: datetime,
        analysis: str = "",
    ) -> Tuple[Pattern, bool]:
        """
        Store a detected pattern, or refresh the active one sharing incidents.

        Returns:
            (pattern, created)
        """
        existing = self.find_overlapping_pattern(linked_ids)
        if existing is not None:
            existing.link(linked_ids, now)
            if analysis:
                existing.analysis = analysis
            return existing, False

        pattern = Pattern.create(name, connections, linked_ids, confidence, now, analysis)
        self.patterns.append(pattern)
        self._trim_patterns()
        return pattern, True

    def _trim_patterns(self) -> None:
        # Expired patterns go first, then the oldest active ones
        while len(self.patterns) > self.max_patterns:
            expired = [p for p in self.patterns if not p.is_active]
            victim = expired[0] if expired else self.patterns[0]
            self.patterns.remove(victim)

    def expire_patterns(self, now: datetime) -> List[Pattern]:
        return [p for p in self.patterns if p.expire_if_stale(now, self.pattern_validity)]

