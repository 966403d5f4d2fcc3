from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Transcript:
    """One transcribed chunk or call. Immutable after creation."""
    text: str
    source_feed_id: Optional[str]
    source: str
    city: str
    captured_at: datetime
    talkgroup: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            'text': self.text,
            'source': self.source,
            'city': self.city,
            'timestamp': self.captured_at.isoformat(),
        }
        if self.talkgroup:
            data['talkgroup'] = self.talkgroup
        return data
