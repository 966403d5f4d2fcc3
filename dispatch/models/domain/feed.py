"""
Feed domain models - static sources and live stream connections

A SourceFeed is static configuration. A StreamConnection is the live,
per-attempt record for one feed: the connector replaces it on every
reconnect instead of mutating the old one.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class FeedKind(str, Enum):
    STREAM = "stream"
    POLL = "poll"


class StreamStatus(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    SILENT = "silent"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SourceFeed:
    """One configured external audio source (a radio channel for one agency)."""
    id: str
    display_name: str
    city: str
    kind: FeedKind = FeedKind.STREAM


@dataclass
class StreamConnection:
    """
    State of one connection attempt to a feed.

    Owned exclusively by its StreamConnector. The buffer holds raw audio
    fragments until a full chunk has accumulated.
    """
    feed: SourceFeed
    status: StreamStatus = StreamStatus.CONNECTING
    connected_at: Optional[float] = None
    last_data_at: Optional[float] = None
    chunk_started_at: Optional[float] = None
    buffer: List[bytes] = field(default_factory=list)
    bytes_received: int = 0

    def mark_streaming(self, now: float) -> None:
        self.status = StreamStatus.STREAMING
        self.connected_at = now
        self.last_data_at = now
        self.chunk_started_at = now

    def append(self, data: bytes, now: float) -> None:
        """Buffer one data fragment and refresh liveness."""
        self.buffer.append(data)
        self.bytes_received += len(data)
        self.last_data_at = now

    def buffered_seconds(self, now: float) -> float:
        if self.chunk_started_at is None:
            return 0.0
        return now - self.chunk_started_at

    def buffered_bytes(self) -> int:
        return sum(len(b) for b in self.buffer)

    def flush(self, now: float) -> bytes:
        """Return the buffered chunk as one unit and start a new one."""
        chunk = b"".join(self.buffer)
        self.buffer = []
        self.chunk_started_at = now
        return chunk

    def is_silent(self, now: float, threshold: float) -> bool:
        if self.last_data_at is None:
            return False
        return now - self.last_data_at > threshold


@dataclass(frozen=True)
class Call:
    """One entry from a call-log API (Broadcastify Calls, OpenMHz)."""
    group_id: str
    ts: datetime
    source: str
    talkgroup: Optional[str] = None
    talkgroup_name: Optional[str] = None
    audio_url: Optional[str] = None
    feed_id: Optional[str] = None

    @property
    def key(self) -> str:
        """Dedup key: feed/group id + call timestamp"""
        return f"{self.group_id}-{int(self.ts.timestamp())}"
