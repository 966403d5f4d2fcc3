"""
Call-log polling (Broadcastify Calls, OpenMHz)

Call-log APIs return discrete recorded transmissions instead of a live
stream. CallPoller asks its client for calls newer than a high-water mark
on a fixed interval, dedups them by call key, downloads the audio and hands
it to the same pipeline stream chunks go through.

Fail-stop: after `failure_threshold` consecutive fetch failures the poller
disables itself and its loop exits. restart() clears the state.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

import aiohttp
from jose import jwt

from dispatch.config.cities import BCFY_CALLS_FEED
from dispatch.errors import AuthExpired, PollerDisabled, TransientNetworkError
from dispatch.models.domain import Call
from dispatch.services.dedup_cache import DedupCache
from dispatch.utils.datetime_utils import parse_call_time, to_epoch_ms, utcnow

logger = logging.getLogger(__name__)


class HttpCallClient:
    """Shared aiohttp session handling and audio download"""

    name = 'calls'

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: float = 30.0):
        self.session = session
        self.timeout = timeout
        self.headers: dict = {}

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers=self.headers)

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    def _client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)

    async def download(self, url: str) -> bytes:
        await self._ensure_session()
        try:
            async with self.session.get(url, timeout=self._client_timeout()) as resp:
                if resp.status != 200:
                    raise TransientNetworkError(f"Download failed: {resp.status}")
                return await resp.read()
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Download timed out after {self.timeout}s: {url}")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Download error: {e}") from e

    async def fetch_calls(self, since: Optional[datetime]) -> List[Call]:
        raise NotImplementedError(f"{self.__class__.__name__} must implement fetch_calls()")

    async def resolve_audio_url(self, call: Call) -> Optional[str]:
        return call.audio_url


class BroadcastifyCallsClient(HttpCallClient):
    """
    Broadcastify Calls API client

    Auth is two-layered:
    - every request carries a fresh HS256 JWT (iss=app id, iat, exp,
      header kid=key id), signed with the API key secret
    - a user session (userId + userToken from /common/v1/auth) is cached
      until it expires and embedded in the JWT as sub/utk
    A 401 invalidates the session and the request is retried once.
    """

    name = 'bcfy'

    def __init__(
        self,
        api_url: str,
        key_id: str,
        key_secret: str,
        app_id: str,
        username: str,
        password: str,
        system_id: int = 7636,
        token_ttl: int = 3600,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(session=session, timeout=timeout)
        self.api_url = api_url.rstrip('/')
        self.key_id = key_id
        self.key_secret = key_secret
        self.app_id = app_id
        self.username = username
        self.password = password
        self.system_id = system_id
        self.token_ttl = token_ttl
        self.clock = clock
        self.user_id: Optional[str] = None
        self.user_token: Optional[str] = None
        self.session_expires_at = 0.0
        self.auth_count = 0

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def make_jwt(self, include_user: bool = True) -> str:
        now = int(self.clock())
        claims = {'iss': self.app_id, 'iat': now, 'exp': now + self.token_ttl}
        if include_user and self.user_id and self.user_token:
            claims['sub'] = self.user_id
            claims['utk'] = self.user_token
        return jwt.encode(claims, self.key_secret, algorithm='HS256', headers={'kid': self.key_id})

    @property
    def has_session(self) -> bool:
        return bool(self.user_id and self.user_token) and self.clock() < self.session_expires_at

    def invalidate_session(self) -> None:
        self.user_id = None
        self.user_token = None
        self.session_expires_at = 0.0

    async def authenticate(self) -> None:
        """Fetch a user session unless a valid one is cached"""
        if self.has_session:
            return
        await self._ensure_session()
        headers = {'Authorization': f"Bearer {self.make_jwt(include_user=False)}"}
        try:
            async with self.session.post(
                f"{self.api_url}/common/v1/auth",
                json={'username': self.username, 'password': self.password},
                headers=headers,
                timeout=self._client_timeout(),
            ) as resp:
                if resp.status in (401, 403):
                    raise AuthExpired(f"Broadcastify auth rejected: {resp.status}")
                if resp.status != 200:
                    raise TransientNetworkError(f"Broadcastify auth failed: {resp.status}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise TransientNetworkError("Broadcastify auth timed out")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Broadcastify auth error: {e}") from e

        if not data.get('userId') or not data.get('userToken'):
            raise AuthExpired("No userId/userToken in auth response")
        self.user_id = str(data['userId'])
        self.user_token = str(data['userToken'])
        self.session_expires_at = self.clock() + self.token_ttl
        self.auth_count += 1
        logger.info(f"[BCFY AUTH] Authenticated, userId: {self.user_id}")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _get(self, endpoint: str) -> dict:
        await self.authenticate()
        headers = {'Authorization': f"Bearer {self.make_jwt()}", 'Content-Type': 'application/json'}
        try:
            async with self.session.get(
                f"{self.api_url}{endpoint}", headers=headers, timeout=self._client_timeout()
            ) as resp:
                if resp.status == 401:
                    raise AuthExpired(f"API 401 on {endpoint}")
                if resp.status != 200:
                    text = await resp.text()
                    raise TransientNetworkError(f"API {resp.status}: {text[:200]}")
                return await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"API timeout on {endpoint}")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"API error on {endpoint}: {e}") from e

    async def request(self, endpoint: str) -> dict:
        """GET with one re-authentication on AuthExpired"""
        try:
            return await self._get(endpoint)
        except AuthExpired:
            logger.info("[BCFY AUTH] Session rejected, re-authenticating once")
            self.invalidate_session()
            return await self._get(endpoint)

    def _parse_call(self, raw: dict) -> Optional[Call]:
        ts = parse_call_time(raw.get('ts'))
        group_id = raw.get('groupId')
        if ts is None or group_id is None:
            return None
        return Call(
            group_id=str(group_id),
            ts=ts,
            source=f"BCFY Calls: {group_id}",
            talkgroup=str(raw['tg']) if raw.get('tg') is not None else None,
            talkgroup_name=raw.get('tgName') or raw.get('groupName'),
            audio_url=raw.get('audioUrl') or raw.get('url'),
            feed_id=BCFY_CALLS_FEED.id,
        )

    async def fetch_calls(self, since: Optional[datetime]) -> List[Call]:
        endpoint = f"/calls/v1/live?sid={self.system_id}"
        if since is not None:
            endpoint += f"&pos={int(since.timestamp())}"
        data = await self.request(endpoint)
        raw_calls = data.get('calls', []) if isinstance(data, dict) else data
        calls = [self._parse_call(c) for c in raw_calls or [] if isinstance(c, dict)]
        return [c for c in calls if c is not None]

    async def resolve_audio_url(self, call: Call) -> Optional[str]:
        if call.audio_url:
            return call.audio_url
        details = await self.request(f"/calls/v1/call/{call.group_id}/{int(call.ts.timestamp())}")
        if not isinstance(details, dict):
            return None
        return details.get('audioUrl') or details.get('url')

    async def fetch_groups(self) -> list:
        data = await self.request(f"/calls/v1/groups?sid={self.system_id}")
        if isinstance(data, dict):
            return data.get('groups', [])
        return data or []


class OpenMHzClient(HttpCallClient):
    """Unauthenticated OpenMHz 'calls newer than' polling for one system"""

    name = 'openmhz'

    def __init__(
        self,
        system: str,
        api_url: str = "https://api.openmhz.com",
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ):
        super().__init__(session=session, timeout=timeout)
        self.system = system
        self.api_url = api_url.rstrip('/')
        self.headers = {
            'User-Agent': 'Mozilla/5.0',
            'Accept': 'application/json',
            'Origin': 'https://openmhz.com',
            'Referer': 'https://openmhz.com/',
        }

    def _parse_call(self, raw: dict) -> Optional[Call]:
        ts = parse_call_time(raw.get('time'))
        if ts is None:
            return None
        talkgroup = raw.get('talkgroupNum')
        name = raw.get('talkgroupDescription') or raw.get('talkgroupTag') or f"TG {talkgroup}"
        return Call(
            group_id=str(talkgroup),
            ts=ts,
            source=f"OpenMHz: {name}",
            talkgroup=str(talkgroup) if talkgroup is not None else None,
            talkgroup_name=name,
            audio_url=raw.get('url'),
            feed_id=f"{self.name}:{self.system}",
        )

    async def fetch_calls(self, since: Optional[datetime]) -> List[Call]:
        await self._ensure_session()
        time_param = to_epoch_ms(since) if since else 0
        url = f"{self.api_url}/{self.system}/calls/newer?time={time_param}"
        try:
            async with self.session.get(url, timeout=self._client_timeout()) as resp:
                if resp.status != 200:
                    raise TransientNetworkError(f"OpenMHz {self.system} returned {resp.status}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"OpenMHz {self.system} timed out")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"OpenMHz {self.system} error: {e}") from e

        raw_calls = data.get('calls', []) if isinstance(data, dict) else data
        calls = [self._parse_call(c) for c in raw_calls or [] if isinstance(c, dict)]
        return [c for c in calls if c is not None]


AudioHandler = Callable[[Call, bytes], Awaitable[None]]


class CallPoller:
    """
    Polls one call-log source for one city.

    Args:
        name: Log tag, e.g. 'OPENMHZ-NYC'
        city: City id the calls belong to
        client: BroadcastifyCallsClient / OpenMHzClient
        on_audio: Coroutine (call, audio_bytes) -> None, the ingestion path
        call_dedup: The city's call-key DedupCache
        interval: Seconds between polls
        failure_threshold: Consecutive fetch failures before disabling
        max_calls_per_poll: Calls taken per poll, oldest first
        min_audio_bytes: Smaller downloads are discarded
        lookback: Initial high-water mark is now - lookback
    """

    def __init__(
        self,
        name: str,
        city: str,
        client: HttpCallClient,
        on_audio: AudioHandler,
        call_dedup: DedupCache,
        interval: float = 30.0,
        failure_threshold: int = 5,
        max_calls_per_poll: int = 10,
        min_audio_bytes: int = 1000,
        lookback: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.city = city
        self.client = client
        self.on_audio = on_audio
        self.call_dedup = call_dedup
        self.interval = interval
        self.failure_threshold = failure_threshold
        self.max_calls_per_poll = max_calls_per_poll
        self.min_audio_bytes = min_audio_bytes
        self.lookback = lookback
        self.clock = clock

        self.high_water: Optional[datetime] = clock() - lookback
        self.consecutive_failures = 0
        self.disabled = False
        self._task: Optional[asyncio.Task] = None

        # Counters
        self.polls = 0
        self.calls_fetched = 0
        self.calls_processed = 0
        self.duplicates = 0
        self.errors = 0
        self.last_poll: Optional[datetime] = None

    async def poll(self) -> List[Call]:
        """
        Fetch calls newer than the high-water mark.

        Raises:
            PollerDisabled: if the poller has been disabled
        """
        if self.disabled:
            raise PollerDisabled(f"{self.name} is disabled")

        self.polls += 1
        try:
            calls = await self.client.fetch_calls(self.high_water)
        except (TransientNetworkError, AuthExpired) as e:
            self.errors += 1
            self.consecutive_failures += 1
            logger.warning(f"[{self.name}] Poll failed ({self.consecutive_failures}/{self.failure_threshold}): {e}")
            if self.consecutive_failures >= self.failure_threshold:
                self.disabled = True
                logger.error(f"[{self.name}] API unavailable - disabled after {self.consecutive_failures} failures")
            return []

        self.consecutive_failures = 0
        self.last_poll = self.clock()

        fresh = sorted(
            (c for c in calls if self.high_water is None or c.ts > self.high_water),
            key=lambda c: c.ts,
        )[:self.max_calls_per_poll]
        if fresh:
            self.high_water = fresh[-1].ts
            self.calls_fetched += len(fresh)
            logger.info(f"[{self.name}] Fetched {len(fresh)} new calls")
        return fresh

    async def process_call(self, call: Call) -> bool:
        """
        Dedup, resolve, download and hand on one call.

        Returns:
            True if audio was handed to the pipeline
        """
        if self.call_dedup.check_and_remember(call.key):
            self.duplicates += 1
            return False

        try:
            audio_url = await self.client.resolve_audio_url(call)
            if not audio_url:
                logger.info(f"[{self.name}] No audio URL for call {call.key}")
                return False
            audio = await self.client.download(audio_url)
        except (TransientNetworkError, AuthExpired) as e:
            self.errors += 1
            logger.warning(f"[{self.name}] Call {call.key} skipped: {e}")
            return False

        if len(audio) < self.min_audio_bytes:
            return False

        await self.on_audio(call, audio)
        self.calls_processed += 1
        return True

    async def run(self) -> None:
        """Poll loop; exits when the poller disables itself"""
        logger.info(f"[{self.name}] Polling every {self.interval}s")
        while not self.disabled:
            try:
                for call in await self.poll():
                    await self.process_call(call)
            except asyncio.CancelledError:
                logger.info(f"[{self.name}] Received cancellation signal")
                raise
            except PollerDisabled:
                break
            except Exception as e:
                self.errors += 1
                logger.error(f"[{self.name}] Poll loop error: {e}", exc_info=True)
            if self.disabled:
                break
            await asyncio.sleep(self.interval)
        logger.info(f"[{self.name}] Stopped (fetched={self.calls_fetched}, processed={self.calls_processed})")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"poller:{self.name}")
        return self._task

    def restart(self) -> asyncio.Task:
        """Clear the fail-stop state and start polling again"""
        self.disabled = False
        self.consecutive_failures = 0
        self.high_water = self.clock() - self.lookback
        logger.info(f"[{self.name}] Restarted")
        return self.start()

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def status(self) -> dict:
        return {
            'name': self.name,
            'city': self.city,
            'disabled': self.disabled,
            'polls': self.polls,
            'callsFetched': self.calls_fetched,
            'callsProcessed': self.calls_processed,
            'duplicates': self.duplicates,
            'errors': self.errors,
            'lastPoll': self.last_poll.isoformat() if self.last_poll else None,
        }
