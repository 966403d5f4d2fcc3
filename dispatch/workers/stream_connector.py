"""
Live stream ingestion

StreamConnector keeps one feed connected:

    connecting -> streaming -> silent -> reconnecting -> streaming ...
                            -> (ended | error) -> reconnecting -> streaming ...

Every connection attempt gets a fresh StreamConnection record. Audio is
buffered until a chunk's worth of time has passed, then flushed downstream
as one unit. A liveness task force-closes a connection that has been silent
longer than the threshold.

StreamSupervisor enforces MAX_CONCURRENT_STREAMS: it starts feeds greedily
from the static list and, when a connector gives up its slot (rejected by
the server, or dropped for producing garbage), starts the next unconnected
feed after a delay.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from dispatch.models.domain import SourceFeed, StreamConnection, StreamStatus

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'

# Connector exit reasons (the slot is released on every one of these)
EXIT_REJECTED = 'rejected'
EXIT_DROPPED = 'dropped'
EXIT_STOPPED = 'stopped'

# Reasons a streaming connection ends (followed by a reconnect)
END_SILENT = 'silent'
END_ENDED = 'ended'
END_ERROR = 'error'


class StreamHandle:
    """What an opener yields: an HTTP status and an async byte iterator"""

    def __init__(self, status: int, chunks: AsyncIterator[bytes]):
        self.status = status
        self.chunks = chunks


class BroadcastifyStreamOpener:
    """Opens authenticated Broadcastify mp3 streams with aiohttp"""

    def __init__(
        self,
        username: str,
        password: str,
        host: str = "https://audio.broadcastify.com",
        connect_timeout: float = 15.0,
    ):
        self.auth = aiohttp.BasicAuth(username, password)
        self.host = host.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers={'User-Agent': USER_AGENT})

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    @asynccontextmanager
    async def __call__(self, feed: SourceFeed):
        await self._ensure_session()
        async with self.session.get(
            f"{self.host}/{feed.id}.mp3", auth=self.auth, timeout=self.timeout
        ) as resp:
            yield StreamHandle(resp.status, resp.content.iter_any())


class StreamConnector:
    """
    One feed's connect / buffer / reconnect loop.

    Args:
        feed: Feed to keep connected
        opener: Callable returning an async context manager that yields a StreamHandle
        on_chunk: Called with (feed, chunk_bytes) for every flushed chunk; must not block
        settings: Settings (chunk_duration, silence_threshold, liveness_interval,
                  reconnect_delay, error_reconnect_delay, min_chunk_bytes)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        feed: SourceFeed,
        opener,
        on_chunk: Callable[[SourceFeed, bytes], None],
        settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.feed = feed
        self.opener = opener
        self.on_chunk = on_chunk
        self.settings = settings
        self.clock = clock
        self.connection: Optional[StreamConnection] = None
        self._drop = asyncio.Event()
        self._stop = asyncio.Event()

        # Counters
        self.connects = 0
        self.chunks_flushed = 0
        self.chunks_discarded = 0
        self.silence_episodes = 0
        self.reconnects = 0

    @property
    def tag(self) -> str:
        return f"STREAM {self.feed.city}/{self.feed.id}"

    @property
    def status(self) -> StreamStatus:
        return self.connection.status if self.connection else StreamStatus.STOPPED

    def drop(self) -> None:
        """Close for good and give the slot back (garbage / looping audio)."""
        self._drop.set()

    def stop(self) -> None:
        self._stop.set()

    async def connect(self) -> str:
        """
        Run until the feed is rejected, dropped or stopped.

        Silence, stream end and mid-stream errors reconnect the same feed
        after a fixed delay without giving up the slot.

        Returns:
            Exit reason: 'rejected', 'dropped' or 'stopped'
        """
        while True:
            if self._drop.is_set():
                return self._finish(EXIT_DROPPED)
            if self._stop.is_set():
                return self._finish(EXIT_STOPPED)

            connection = StreamConnection(feed=self.feed)
            self.connection = connection
            logger.info(f"[{self.tag}] Connecting to {self.feed.display_name}")

            try:
                end = await self._run_connection(connection)
            except asyncio.CancelledError:
                connection.status = StreamStatus.STOPPED
                raise

            if end == EXIT_REJECTED:
                return self._finish(EXIT_REJECTED)
            if end in (EXIT_DROPPED, EXIT_STOPPED):
                return self._finish(end)

            connection.status = StreamStatus.RECONNECTING
            self.reconnects += 1
            delay = self.settings.error_reconnect_delay if end == END_ERROR else self.settings.reconnect_delay
            logger.info(f"[{self.tag}] {end}, reconnecting in {delay}s")
            await self._wait_interruptible(delay)

    def _finish(self, reason: str) -> str:
        if self.connection:
            self.connection.status = StreamStatus.STOPPED
        logger.info(f"[{self.tag}] Connector exiting: {reason}")
        return reason

    async def _wait_interruptible(self, delay: float) -> None:
        """Sleep, waking early on drop/stop"""
        waiters = [asyncio.create_task(self._drop.wait()), asyncio.create_task(self._stop.wait())]
        try:
            await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()

    async def _run_connection(self, connection: StreamConnection) -> str:
        try:
            async with self.opener(self.feed) as handle:
                if handle.status != 200:
                    logger.warning(f"[{self.tag}] {self.feed.display_name} returned {handle.status}")
                    return EXIT_REJECTED

                connection.mark_streaming(self.clock())
                self.connects += 1
                logger.info(f"[{self.tag}] ✓ Connected to {self.feed.display_name}")
                return await self._supervise(connection, handle)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            if connection.status == StreamStatus.STREAMING:
                logger.warning(f"[{self.tag}] stream error: {e}")
                return END_ERROR
            logger.warning(f"[{self.tag}] failed to open: {e}")
            return EXIT_REJECTED

    async def _supervise(self, connection: StreamConnection, handle: StreamHandle) -> str:
        reader = asyncio.create_task(self._read(connection, handle))
        watcher = asyncio.create_task(self._watch_liveness(connection))
        dropper = asyncio.create_task(self._drop.wait())
        stopper = asyncio.create_task(self._stop.wait())
        tasks = {reader, watcher, dropper, stopper}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if reader in done:
            error = reader.exception()
            if error is not None:
                if not isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, OSError)):
                    logger.error(f"[{self.tag}] unexpected read error: {error}", exc_info=error)
                else:
                    logger.warning(f"[{self.tag}] stream error: {error}")
                return END_ERROR
            return END_ENDED
        if dropper in done:
            return EXIT_DROPPED
        if stopper in done:
            return EXIT_STOPPED
        return END_SILENT

    async def _read(self, connection: StreamConnection, handle: StreamHandle) -> None:
        async for data in handle.chunks:
            if not data:
                continue
            now = self.clock()
            connection.append(data, now)
            if connection.buffered_seconds(now) >= self.settings.chunk_duration:
                self._flush(connection, now)

    def _flush(self, connection: StreamConnection, now: float) -> None:
        chunk = connection.flush(now)
        if len(chunk) < self.settings.min_chunk_bytes:
            self.chunks_discarded += 1
            return
        self.chunks_flushed += 1
        logger.debug(f"[{self.tag}] Processing chunk ({len(chunk) // 1024}KB)")
        try:
            self.on_chunk(self.feed, chunk)
        except Exception as e:
            logger.error(f"[{self.tag}] chunk handler failed: {e}", exc_info=True)

    async def _watch_liveness(self, connection: StreamConnection) -> None:
        """Returns (once) when the connection has been silent past the threshold."""
        while True:
            await asyncio.sleep(self.settings.liveness_interval)
            now = self.clock()
            if connection.is_silent(now, self.settings.silence_threshold):
                silent_for = now - connection.last_data_at
                connection.status = StreamStatus.SILENT
                self.silence_episodes += 1
                logger.info(f"[{self.tag}] silent for {silent_for:.0f}s, reconnecting...")
                return


class StreamSupervisor:
    """
    Keeps at most max_concurrent connectors running.

    Args:
        feeds: Static feed list, in greedy start order
        max_concurrent: MAX_CONCURRENT_STREAMS
        connector_factory: feed -> StreamConnector
    """

    def __init__(
        self,
        feeds: List[SourceFeed],
        max_concurrent: int,
        connector_factory: Callable[[SourceFeed], StreamConnector],
        stagger: float = 2.0,
        release_delay: float = 5.0,
        drop_delay: float = 3.0,
    ):
        self.feeds = list(feeds)
        self.max_concurrent = max_concurrent
        self.connector_factory = connector_factory
        self.stagger = stagger
        self.release_delay = release_delay
        self.drop_delay = drop_delay
        self.active: Dict[str, StreamConnector] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._timers: set = set()
        self._stopping = False
        self.peak_active = 0

    @property
    def capacity(self) -> int:
        return self.max_concurrent - len(self.active)

    async def start(self, initial: Optional[List[SourceFeed]] = None) -> None:
        """Connect the initial feeds, staggered so they do not all open at once"""
        first = True
        for feed in (initial or self.feeds)[:self.max_concurrent]:
            if not first and self.stagger:
                await asyncio.sleep(self.stagger)
            first = False
            self._launch(feed)
        logger.info(f"[SUPERVISOR] {len(self.active)}/{self.max_concurrent} streams started")

    def _launch(self, feed: SourceFeed) -> bool:
        if self._stopping or feed.id in self.active or self.capacity <= 0:
            return False
        connector = self.connector_factory(feed)
        self.active[feed.id] = connector
        task = asyncio.create_task(connector.connect(), name=f"stream:{feed.id}")
        self._tasks[feed.id] = task
        task.add_done_callback(lambda t, fid=feed.id: self._on_exit(fid, t))
        self.peak_active = max(self.peak_active, len(self.active))
        return True

    def _on_exit(self, feed_id: str, task: asyncio.Task) -> None:
        self.active.pop(feed_id, None)
        self._tasks.pop(feed_id, None)
        if self._stopping or task.cancelled():
            return
        if task.exception() is not None:
            logger.error(f"[SUPERVISOR] Connector {feed_id} crashed: {task.exception()}")
            reason = EXIT_REJECTED
        else:
            reason = task.result()
        if reason == EXIT_STOPPED:
            return
        delay = self.drop_delay if reason == EXIT_DROPPED else self.release_delay
        self._later(delay, feed_id)

    def _later(self, delay: float, exclude: str) -> None:
        async def _run():
            await asyncio.sleep(delay)
            self.start_next_available(exclude=exclude)

        timer = asyncio.create_task(_run())
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    def start_next_available(self, exclude: Optional[str] = None) -> Optional[SourceFeed]:
        """
        Start the first feed in list order that is not connected.

        A feed that just gave up its slot is only retried if nothing else
        is available.
        """
        if self._stopping or self.capacity <= 0:
            return None
        available = [f for f in self.feeds if f.id not in self.active]
        preferred = [f for f in available if f.id != exclude] or available
        if not preferred:
            return None
        feed = preferred[0]
        self._launch(feed)
        return feed

    def drop(self, feed_id: str) -> bool:
        connector = self.active.get(feed_id)
        if connector is None:
            return False
        logger.info(f"[SUPERVISOR] Dropping {feed_id}")
        connector.drop()
        return True

    def status(self) -> List[dict]:
        return [
            {
                'feedId': fid,
                'name': c.feed.display_name,
                'city': c.feed.city,
                'status': c.status.value,
                'chunks': c.chunks_flushed,
                'reconnects': c.reconnects,
            }
            for fid, c in self.active.items()
        ]

    async def stop(self) -> None:
        self._stopping = True
        for timer in list(self._timers):
            timer.cancel()
        for connector in self.active.values():
            connector.stop()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[SUPERVISOR] All streams stopped")
