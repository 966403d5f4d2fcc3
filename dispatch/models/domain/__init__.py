"""
Domain Models - in-memory data structures for the ingestion core

- SourceFeed / StreamConnection / Call: where audio comes from
- Transcript: one transcribed chunk or call
- IncidentCandidate / Incident: extraction output and accepted record
- Accepted / Rejected / ParseError: tagged extraction results
- Pattern / Prediction: Detective Bureau outputs
"""

from .feed import SourceFeed, FeedKind, StreamConnection, StreamStatus, Call
from .transcript import Transcript
from .camera import Camera
from .incident import Incident, IncidentCandidate, UNKNOWN
from .extraction import Accepted, Rejected, ParseError, ExtractionResult
from .pattern import Pattern, PatternStatus
from .prediction import (
    Prediction,
    PredictionStatus,
    PredictionStats,
    mark_hit,
    mark_expired,
    record_hit,
    record_expiry,
)

__all__ = [
    # Sources
    'SourceFeed',
    'FeedKind',
    'StreamConnection',
    'StreamStatus',
    'Call',

    # Pipeline records
    'Transcript',
    'Camera',
    'Incident',
    'IncidentCandidate',
    'UNKNOWN',

    # Extraction results
    'Accepted',
    'Rejected',
    'ParseError',
    'ExtractionResult',

    # Bureau
    'Pattern',
    'PatternStatus',
    'Prediction',
    'PredictionStatus',
    'PredictionStats',
    'mark_hit',
    'mark_expired',
    'record_hit',
    'record_expiry',
]
