"""
PredictionLedger Tests
======================

Each prediction resolves exactly once (hit or expired) and the counters
move accordingly:

- hit:    total += 1, correct += 1
- expiry: total += 1
"""
from datetime import timedelta

import pytest

from conftest import T0, make_incident, make_prediction
from dispatch.bureau.ledger import PredictionLedger, prediction_matches
from dispatch.errors import InvalidPredictionTransition
from dispatch.models.domain import (
    PredictionStats,
    PredictionStatus,
    mark_expired,
    mark_hit,
    record_expiry,
    record_hit,
)


# ============================================================================
# TEST: PURE TRANSITIONS
# ============================================================================

class TestTransitions:

    def test_mark_hit_returns_new_value(self):
        p = make_prediction()
        hit = mark_hit(p, incident_id=7, at=T0)
        assert p.status == PredictionStatus.PENDING
        assert hit.status == PredictionStatus.HIT
        assert hit.matched_incident_id == 7

    def test_terminal_states_cannot_transition(self):
        expired = mark_expired(make_prediction(), T0)
        with pytest.raises(InvalidPredictionTransition):
            mark_hit(expired, 1, T0)
        with pytest.raises(InvalidPredictionTransition):
            mark_expired(expired, T0)

    def test_stats_transitions(self):
        stats = record_expiry(record_hit(record_hit(PredictionStats())))
        assert (stats.total, stats.correct) == (3, 2)
        assert stats.accuracy == 2 / 3

    def test_accuracy_zero_without_resolutions(self):
        assert PredictionStats().accuracy == 0.0


# ============================================================================
# TEST: MATCHING
# ============================================================================

class TestPredictionMatches:

    def test_type_and_region(self):
        p = make_prediction(location="", region="Brooklyn", incident_type="robbery")
        assert prediction_matches(p, make_incident(incident_type="Armed Robbery", region="brooklyn"))

    def test_type_and_location(self):
        p = make_prediction(location="Flatbush Ave", region="Queens")
        assert prediction_matches(p, make_incident(location="Flatbush Ave & Church Ave", region="Brooklyn"))

    def test_type_mismatch(self):
        p = make_prediction(incident_type="Burglary")
        assert not prediction_matches(p, make_incident(incident_type="Robbery"))

    def test_narrower_incident_type_does_not_match(self):
        p = make_prediction(location="", region="Brooklyn", incident_type="Vehicle theft")
        assert not prediction_matches(p, make_incident(incident_type="Theft", region="Brooklyn"))

    def test_type_only_is_not_enough(self):
        p = make_prediction(location="Times Square", region="Manhattan")
        assert not prediction_matches(p, make_incident(location="Fulton St", region="Brooklyn"))


# ============================================================================
# TEST: LEDGER SCENARIOS
# ============================================================================

class TestPredictionLedger:

    def test_hit_before_expiry(self):
        """A at t=0, P created, B at t=+10min resolves P as a hit exactly once."""
        ledger = PredictionLedger('nyc')
        a = make_incident(1, "robbery", location="Nostrand Ave", region="Brooklyn", created_at=T0)
        ledger.check_incident(a)

        p = make_prediction(location="", region="Brooklyn", incident_type="robbery",
                            now=T0 + timedelta(minutes=1), window=timedelta(minutes=29))
        ledger.add(p)

        b = make_incident(2, "robbery", location="Fulton St", region="Brooklyn",
                          created_at=T0 + timedelta(minutes=10))
        hits, expired = ledger.check_incident(b)

        assert [h.id for h in hits] == [p.id]
        assert hits[0].status == PredictionStatus.HIT
        assert hits[0].matched_incident_id == 2
        assert expired == []
        assert ledger.counters == PredictionStats(total=1, correct=1)
        assert p.id not in ledger.pending

        # A second matching incident cannot resolve it again
        c = make_incident(3, "robbery", region="Brooklyn", created_at=T0 + timedelta(minutes=12))
        assert ledger.check_incident(c) == ([], [])
        assert ledger.counters == PredictionStats(total=1, correct=1)

    def test_broad_prediction_not_resolved_by_vague_incident(self):
        ledger = PredictionLedger('nyc')
        p = make_prediction(location="", region="Brooklyn", incident_type="Vehicle theft",
                            window=timedelta(minutes=30))
        ledger.add(p)

        vague = make_incident(1, "Theft", region="Brooklyn", created_at=T0 + timedelta(minutes=5))
        assert ledger.check_incident(vague) == ([], [])
        assert p.id in ledger.pending
        assert ledger.counters == PredictionStats()

    def test_expired_before_match(self):
        ledger = PredictionLedger('nyc')
        p = make_prediction(region="Brooklyn", incident_type="robbery", window=timedelta(minutes=30))
        ledger.add(p)

        late = make_incident(1, "robbery", region="Brooklyn", created_at=T0 + timedelta(minutes=31))
        hits, expired = ledger.check_incident(late)

        assert hits == []
        assert [e.id for e in expired] == [p.id]
        assert expired[0].status == PredictionStatus.EXPIRED
        assert ledger.pending == {}
        assert ledger.counters == PredictionStats(total=1, correct=0)

    def test_sweep_expires_overdue_only(self):
        ledger = PredictionLedger('nyc')
        short = make_prediction(window=timedelta(minutes=10))
        long = make_prediction(window=timedelta(hours=6))
        ledger.add(short)
        ledger.add(long)

        expired = ledger.sweep(T0 + timedelta(minutes=11))

        assert [e.id for e in expired] == [short.id]
        assert list(ledger.pending) == [long.id]
        assert ledger.sweep(T0 + timedelta(minutes=12)) == []

    def test_one_incident_can_hit_several_predictions(self):
        ledger = PredictionLedger('nyc')
        by_region = make_prediction(location="", region="Brooklyn")
        by_location = make_prediction(location="Flatbush", region="")
        ledger.add(by_region)
        ledger.add(by_location)

        hits, _ = ledger.check_incident(make_incident(created_at=T0 + timedelta(minutes=5)))

        assert {h.id for h in hits} == {by_region.id, by_location.id}
        assert ledger.counters == PredictionStats(total=2, correct=2)

    def test_accuracy_has_no_drift(self):
        ledger = PredictionLedger('nyc')
        for i in range(3):
            ledger.add(make_prediction())
            ledger.check_incident(make_incident(i + 1, created_at=T0 + timedelta(minutes=1)))
        ledger.add(make_prediction(window=timedelta(minutes=1)))
        ledger.sweep(T0 + timedelta(minutes=5))

        for _ in range(5):
            assert ledger.accuracy == ledger.counters.correct / ledger.counters.total == 0.75
        assert ledger.accuracy_string() == "75.0% (3/4)"

    def test_add_rejects_resolved(self):
        ledger = PredictionLedger('nyc')
        with pytest.raises(ValueError):
            ledger.add(mark_expired(make_prediction(), T0))

    def test_stats_shape(self):
        ledger = PredictionLedger('nyc')
        ledger.add(make_prediction())
        stats = ledger.stats()
        assert stats['total'] == 0
        assert stats['accuracyString'] == "No predictions resolved yet"
        assert len(stats['pending']) == 1
