"""
Transcript Filter - drop transcripts that cannot contain dispatch traffic

Speech-to-text on scanner audio hallucinates: it echoes the vocabulary
prompt, emits stock filler ("thank you", "bye"), picks up feed adverts, or
loops on the same words when a feed is dead. Rules run in a fixed order and
the first match wins:

    1. TOO_SHORT       - fewer than 10 characters after trimming
    2. PROMPT_LEAKAGE  - contains a fragment of the vocabulary prompt
    3. NOISE           - exactly a stock filler phrase (punctuation ignored)
    4. SIGN_OFF        - radio sign-off and shorter than 50 characters
    5. ADVERTISEMENT   - feed advert or public-service message
    6. GARBAGE         - known dead-feed text; the connection should be dropped
    7. REPETITIVE      - over 20 words with under 30% unique; drop connection
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)


NOISE_PATTERNS = frozenset([
    'thank you', 'thanks for watching', 'subscribe', 'you', 'bye', 'music', 'you.', 'bye.',
])

PROMPT_LEAKAGE_PATTERNS = (
    'addresses like', 'intersections like', 'landmarks like',
    'nypd police radio dispatch',
    '10-4, 10-13, 10-85',
    'forthwith, precinct, sector, central',
    'k, forthwith, precinct',
    '42nd and lex', 'times square, penn station',
    'hennepin county police, fire and ems radio dispatch',
)

SIGN_OFF_PATTERNS = (
    'have a good night', 'have a good evening', 'have a good one',
    'good night', 'good evening', 'see you', 'take care',
    '10-4', '10-7', '10-8', '10-41', '10-42',
    'copy that', 'roger', 'affirmative',
    'going off duty', 'end of shift', 'signing off',
    'every night', 'every evening',
)

GARBAGE_PATTERNS = (
    'un.org', 'un videos', 'united nations',
    'test broadcast', 'this is a test',
    'lorem ipsum', 'placeholder',
    'stream offline', 'feed offline',
    'no audio', 'audio unavailable',
)

MIN_LENGTH = 10
SIGN_OFF_MAX_LENGTH = 50
REPETITIVE_MIN_WORDS = 20
REPETITIVE_UNIQUE_RATIO = 0.3

_PUNCTUATION = re.compile(r'[.,!?]')


class FilterReason:
    TOO_SHORT = 'too_short'
    PROMPT_LEAKAGE = 'prompt_leakage'
    NOISE = 'noise'
    SIGN_OFF = 'sign_off'
    ADVERTISEMENT = 'advertisement'
    GARBAGE = 'garbage'
    REPETITIVE = 'repetitive'


@dataclass(frozen=True)
class FilterResult:
    accepted: bool
    reason: Optional[str] = None
    drop_connection: bool = False


ACCEPT = FilterResult(accepted=True)


@dataclass
class FilterStats:
    """Per-reason rejection counters, reported in worker stats"""
    accepted: int = 0
    rejected: Dict[str, int] = field(default_factory=dict)

    def record(self, result: FilterResult) -> None:
        if result.accepted:
            self.accepted += 1
        else:
            self.rejected[result.reason] = self.rejected.get(result.reason, 0) + 1

    def to_dict(self) -> dict:
        return {'accepted': self.accepted, 'rejected': dict(self.rejected)}


def _is_advertisement(lower: str) -> bool:
    return (
        ('broadcastify' in lower and 'premium' in lower)
        or 'fema.gov' in lower
        or 'support this feed' in lower
    )


def _is_repetitive(lower: str) -> bool:
    words = lower.split()
    if len(words) <= REPETITIVE_MIN_WORDS:
        return False
    return len(set(words)) < len(words) * REPETITIVE_UNIQUE_RATIO


def classify(text: Optional[str]) -> FilterResult:
    """Pure classification of one transcript"""
    clean = (text or '').strip()
    if len(clean) < MIN_LENGTH:
        return FilterResult(False, FilterReason.TOO_SHORT)

    lower = clean.lower()

    if any(p in lower for p in PROMPT_LEAKAGE_PATTERNS):
        return FilterResult(False, FilterReason.PROMPT_LEAKAGE)

    if lower in NOISE_PATTERNS or _PUNCTUATION.sub('', lower) in NOISE_PATTERNS:
        return FilterResult(False, FilterReason.NOISE)

    if len(lower) < SIGN_OFF_MAX_LENGTH and any(p in lower for p in SIGN_OFF_PATTERNS):
        return FilterResult(False, FilterReason.SIGN_OFF)

    if _is_advertisement(lower):
        return FilterResult(False, FilterReason.ADVERTISEMENT)

    if any(p in lower for p in GARBAGE_PATTERNS):
        return FilterResult(False, FilterReason.GARBAGE, drop_connection=True)

    if _is_repetitive(lower):
        return FilterResult(False, FilterReason.REPETITIVE, drop_connection=True)

    return ACCEPT


class TranscriptFilter:
    """classify() plus counters"""

    def __init__(self):
        self.stats = FilterStats()

    def check(self, text: Optional[str], source: str = "") -> FilterResult:
        result = classify(text)
        self.stats.record(result)
        if not result.accepted:
            logger.debug(f"[FILTER] {source} rejected ({result.reason}): {(text or '')[:80]!r}")
        return result
