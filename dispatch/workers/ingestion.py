"""
Ingestion pipeline: audio -> transcript -> candidate -> incident

Feed side (runs concurrently, one task per chunk or call):
    transcribe -> filter -> fingerprint dedup -> transcript record/publish
    -> extraction

City side (one CityWorker per city, serial):
    id assignment -> camera lookup -> CityState append -> prediction check
    -> incident publish -> camera switch -> agent analysis (spawned)

Slow transcription or extraction never blocks other feeds. Everything that
mutates CityState or CityMemory for incidents goes through the city's queue,
so incident ids and hit checks follow arrival order.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from dispatch.context import CityContext
from dispatch.models.domain import (
    Accepted,
    Call,
    Incident,
    IncidentCandidate,
    ParseError,
    Rejected,
    SourceFeed,
    Transcript,
)
from dispatch.services.dedup_cache import transcript_fingerprint
from dispatch.services.extraction_gateway import ExtractionGateway
from dispatch.services.transcriber import SpeechToText
from dispatch.services.transcript_filter import TranscriptFilter
from dispatch.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Process-wide counters, saved to the state cache on the snapshot timer"""
    started_at: datetime = field(default_factory=utcnow)
    chunks_received: int = 0
    calls_received: int = 0
    transcription_failures: int = 0
    transcripts: int = 0
    duplicates: int = 0
    incidents: int = 0
    parse_errors: int = 0
    rejected: Dict[str, int] = field(default_factory=dict)
    last_transcript: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'startedAt': self.started_at.isoformat(),
            'chunksReceived': self.chunks_received,
            'callsReceived': self.calls_received,
            'transcriptionFailures': self.transcription_failures,
            'successfulTranscripts': self.transcripts,
            'duplicates': self.duplicates,
            'incidents': self.incidents,
            'parseErrors': self.parse_errors,
            'extractionRejected': dict(self.rejected),
            'lastTranscript': self.last_transcript,
        }


class CityWorker:
    """Turns accepted candidates into incidents, one at a time, for one city"""

    def __init__(self, context: CityContext, bus, clock: Callable[[], datetime] = utcnow):
        self.context = context
        self.bus = bus
        self.clock = clock
        self.queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.errors = 0

    @property
    def city(self) -> str:
        return self.context.city

    def submit(self, candidate: IncidentCandidate, transcript: Transcript) -> None:
        self.queue.put_nowait((candidate, transcript))

    async def handle(self, candidate: IncidentCandidate, transcript: Transcript) -> Incident:
        state = self.context.state
        orchestrator = self.context.orchestrator

        incident = Incident.from_candidate(
            state.next_incident_id(),
            candidate,
            transcript.text,
            self.city,
            self.clock(),
            source=transcript.source,
            talkgroup=transcript.talkgroup,
        )
        camera = state.find_nearest_camera(incident.location, incident.region)
        incident = incident.with_camera(camera)
        state.append_incident(incident)

        # Prediction hits are resolved before the incident is published or analyzed
        await orchestrator.record(incident)
        await self.bus.publish_incident(incident)

        if camera is not None and state.switch_camera(camera):
            await self.bus.publish_camera_switch(
                camera,
                f"{incident.incident_type} at {incident.location}",
                incident.priority,
                self.city,
            )

        orchestrator.spawn_analysis(incident)
        self.processed += 1
        logger.info(f"[INCIDENT {self.city}] #{incident.id} {incident.incident_type} @ {incident.location} ({incident.region})")
        return incident

    async def run(self) -> None:
        while True:
            candidate, transcript = await self.queue.get()
            try:
                await self.handle(candidate, transcript)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                logger.error(f"[WORKER {self.city}] Failed to record incident: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"city-worker:{self.city}")
        return self._task

    async def join(self) -> None:
        await self.queue.join()

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class IngestionPipeline:
    """
    Shared feed-side path for stream chunks and polled calls.

    Args:
        contexts: CityContext per city id
        transcriber: SpeechToText
        extractor: ExtractionGateway
        bus: EventBus
        supervisor: StreamSupervisor, used to drop feeds that return garbage
    """

    def __init__(
        self,
        contexts: Dict[str, CityContext],
        transcriber: SpeechToText,
        extractor: ExtractionGateway,
        bus,
        supervisor=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.contexts = contexts
        self.transcriber = transcriber
        self.extractor = extractor
        self.bus = bus
        self.supervisor = supervisor
        self.clock = clock
        self.filter = TranscriptFilter()
        self.stats = WorkerStats()
        self.workers: Dict[str, CityWorker] = {
            city: CityWorker(ctx, bus, clock=clock) for city, ctx in contexts.items()
        }
        self.pollers: List = []
        self._tasks: set = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def on_chunk(self, feed: SourceFeed, audio: bytes) -> None:
        """StreamConnector callback; must return immediately"""
        if feed.city not in self.contexts:
            return
        self.stats.chunks_received += 1
        self._spawn(self.process_audio(feed.city, audio, source=feed.display_name, feed_id=feed.id))

    def call_handler(self, city: str):
        """on_audio callback for a CallPoller bound to one city"""
        async def handle(call: Call, audio: bytes) -> None:
            self.stats.calls_received += 1
            await self.process_audio(
                city, audio, source=call.source, talkgroup=call.talkgroup_name, filename='call.mp3'
            )
        return handle

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[PIPELINE] Chunk processing failed: {task.exception()}")

    # ------------------------------------------------------------------
    # Feed side
    # ------------------------------------------------------------------

    async def process_audio(
        self,
        city: str,
        audio: bytes,
        source: str,
        feed_id: Optional[str] = None,
        talkgroup: Optional[str] = None,
        filename: str = 'chunk.mp3',
    ) -> Optional[Transcript]:
        context = self.contexts[city]
        text = await self.transcriber.transcribe(
            audio, vocabulary_hint=context.profile.vocabulary_hint, filename=filename
        )
        if not text:
            self.stats.transcription_failures += 1
            return None
        return await self.process_text(city, text, source, feed_id=feed_id, talkgroup=talkgroup)

    async def process_text(
        self,
        city: str,
        text: str,
        source: str,
        feed_id: Optional[str] = None,
        talkgroup: Optional[str] = None,
    ) -> Optional[Transcript]:
        """
        Filter, dedup, record and extract one transcript.

        Returns:
            The recorded Transcript, or None if it was filtered or a duplicate
        """
        context = self.contexts[city]
        clean = text.strip()

        verdict = self.filter.check(clean, source)
        if not verdict.accepted:
            if verdict.drop_connection and feed_id and self.supervisor is not None:
                logger.info(f"[PIPELINE] {source} produced {verdict.reason} audio, dropping feed {feed_id}")
                self.supervisor.drop(feed_id)
            return None

        if context.transcript_dedup.check_and_remember(transcript_fingerprint(clean)):
            self.stats.duplicates += 1
            return None

        transcript = Transcript(
            text=clean,
            source_feed_id=feed_id,
            source=source,
            city=city,
            captured_at=self.clock(),
            talkgroup=talkgroup,
        )
        context.state.append_transcript(transcript)
        self.stats.transcripts += 1
        self.stats.last_transcript = clean[:200]
        logger.info(f"[{source}] ✓ \"{clean[:100]}\"")
        await self.bus.publish_transcript(transcript)

        result = await self.extractor.extract(clean, context.profile)
        if isinstance(result, Accepted):
            self.workers[city].submit(result.candidate, transcript)
        elif isinstance(result, Rejected):
            self.stats.rejected[result.reason] = self.stats.rejected.get(result.reason, 0) + 1
        elif isinstance(result, ParseError):
            self.stats.parse_errors += 1
        return transcript

    # ------------------------------------------------------------------
    # Lifecycle and reporting
    # ------------------------------------------------------------------

    def start(self) -> None:
        for worker in self.workers.values():
            worker.start()

    async def drain(self) -> None:
        """Wait until every spawned chunk task and queued candidate is handled"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for worker in self.workers.values():
            await worker.join()
        self.stats.incidents = sum(w.processed for w in self.workers.values())

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for worker in self.workers.values():
            await worker.stop()
        for context in self.contexts.values():
            await context.orchestrator.drain()

    def status(self) -> dict:
        self.stats.incidents = sum(w.processed for w in self.workers.values())
        data = self.stats.to_dict()
        data['filter'] = self.filter.stats.to_dict()
        data['streams'] = self.supervisor.status() if self.supervisor is not None else []
        data['pollers'] = [p.status() for p in self.pollers]
        data['cities'] = {
            city: {
                'incidents': len(ctx.state.incidents),
                'lastIncidentId': ctx.state.last_incident_id,
                'predictions': ctx.orchestrator.get_prediction_stats()['accuracyString'],
            }
            for city, ctx in self.contexts.items()
        }
        return data

    async def publish_snapshot(self, cache) -> Tuple[dict, List[dict]]:
        """Save stats and per-city snapshots for the gateway process"""
        stats = self.status()
        snapshots = []
        for context in self.contexts.values():
            snapshot = context.state.snapshot()
            snapshot['agents'] = context.orchestrator.get_agent_statuses()
            snapshot['predictionStats'] = context.orchestrator.get_prediction_stats()
            snapshot['patterns'] = context.orchestrator.get_active_patterns()
            snapshot['hotspots'] = context.orchestrator.get_hotspots()
            await cache.save_city(snapshot)
            snapshots.append(snapshot)
        await cache.save_stats(stats)
        await self.bus.publish_worker_status(stats)
        return stats, snapshots
