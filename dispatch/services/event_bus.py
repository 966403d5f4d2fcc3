"""
Redis-based event bus for live fan-out

Uses PUBLISH/SUBSCRIBE on named channels. Publisher and subscriber use
separate connections (a connection in subscribe mode cannot publish).

Channels:
- 'dispatch:incidents'       -> incident
- 'dispatch:transcripts'     -> transcript
- 'dispatch:cameras'         -> camera_switch
- 'dispatch:agent_insights'  -> agent_insight
- 'dispatch:predictions'     -> prediction, prediction_hit
- 'dispatch:worker_status'   -> worker_status

Without Redis (no URL, or the connection failed) publish() delivers to the
handlers registered in this process. Delivery is best-effort either way.
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import redis.asyncio as redis

from dispatch.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


class Channels:
    INCIDENTS = 'dispatch:incidents'
    TRANSCRIPTS = 'dispatch:transcripts'
    CAMERAS = 'dispatch:cameras'
    AGENT_INSIGHTS = 'dispatch:agent_insights'
    PREDICTIONS = 'dispatch:predictions'
    WORKER_STATUS = 'dispatch:worker_status'

    ALL = (INCIDENTS, TRANSCRIPTS, CAMERAS, AGENT_INSIGHTS, PREDICTIONS, WORKER_STATUS)


Handler = Callable[[str, dict], Union[None, Awaitable[None]]]


def _timestamp() -> str:
    return utcnow().isoformat()


class EventBus:
    """
    Pub/sub over Redis with in-process fallback

    Example:
        bus = EventBus('redis://localhost:6379')
        await bus.connect()
        await bus.subscribe(Channels.INCIDENTS, on_incident)
        await bus.publish_incident(incident)
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.publisher = None
        self.pubsub = None
        self._subscriber = None
        self._handlers: Dict[str, List[Handler]] = {}
        self._listener: Optional[asyncio.Task] = None
        self.published = 0
        self.publish_errors = 0

    @property
    def connected(self) -> bool:
        return self.publisher is not None

    async def connect(self) -> bool:
        """
        Initialize Redis connections.

        Returns False (and keeps running in-process) if Redis is not
        configured or unreachable.
        """
        if not self.redis_url:
            logger.info("[BUS] No REDIS_URL, running with in-process delivery only")
            return False
        publisher = subscriber = None
        try:
            publisher = redis.from_url(self.redis_url, decode_responses=True)
            await publisher.ping()
            subscriber = redis.from_url(self.redis_url, decode_responses=True)
            self.pubsub = subscriber.pubsub()
            self._subscriber = subscriber
            self.publisher = publisher
            logger.info("[BUS] Redis publisher/subscriber connected")
            return True
        except (redis.RedisError, OSError) as e:
            logger.error(f"[BUS] Redis connection failed: {e}")
            logger.info("[BUS] Running without Redis - in-process delivery only")
            for client in (subscriber, publisher):
                if client is not None:
                    await client.aclose()
            self.publisher = None
            self.pubsub = None
            self._subscriber = None
            return False

    async def close(self):
        """Stop the listener and close Redis connections"""
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self.pubsub:
            await self.pubsub.aclose()
        if self._subscriber:
            await self._subscriber.aclose()
        if self.publisher:
            await self.publisher.aclose()
        self.publisher = None
        self.pubsub = None
        self._subscriber = None

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, channel: str, handler: Handler) -> None:
        """Register handler(channel, payload). Sync and async handlers both work."""
        first = channel not in self._handlers
        self._handlers.setdefault(channel, []).append(handler)
        if self.pubsub is not None and first:
            await self.pubsub.subscribe(channel)
            if self._listener is None:
                self._listener = asyncio.create_task(self._listen())

    def unsubscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers.get(channel, [])
        if handler in handlers:
            handlers.remove(handler)

    async def _listen(self):
        """Read pubsub messages and dispatch to local handlers"""
        while True:
            try:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    payload = json.loads(message['data'])
                except (TypeError, json.JSONDecodeError):
                    logger.warning(f"[BUS] Dropping non-JSON message on {message.get('channel')}")
                    continue
                await self._dispatch(message['channel'], payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[BUS] Listener error: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _dispatch(self, channel: str, payload: dict) -> None:
        for handler in list(self._handlers.get(channel, [])):
            try:
                result = handler(channel, payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[BUS] Handler {getattr(handler, '__name__', handler)} failed on {channel}: {e}")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, channel: str, payload: dict) -> bool:
        """
        Publish one event.

        Returns:
            True if handed to Redis, False if delivered in-process or dropped
        """
        if self.publisher is None:
            # Round-trip through JSON so local handlers see the same shape as Redis subscribers
            await self._dispatch(channel, json.loads(json.dumps(payload, default=str)))
            return False
        try:
            await self.publisher.publish(channel, json.dumps(payload, default=str))
            self.published += 1
            return True
        except redis.RedisError as e:
            self.publish_errors += 1
            logger.error(f"[BUS] Publish error on {channel}: {e}")
            return False

    async def publish_incident(self, incident) -> bool:
        return await self.publish(Channels.INCIDENTS, {
            'type': 'incident',
            'incident': incident.to_dict(),
            'city': incident.city,
            'timestamp': _timestamp(),
        })

    async def publish_transcript(self, transcript) -> bool:
        payload = {'type': 'transcript', **transcript.to_dict()}
        return await self.publish(Channels.TRANSCRIPTS, payload)

    async def publish_camera_switch(self, camera, reason: str, priority: str, city: str) -> bool:
        return await self.publish(Channels.CAMERAS, {
            'type': 'camera_switch',
            'camera': camera.to_dict(),
            'reason': reason,
            'priority': priority,
            'city': city,
            'timestamp': _timestamp(),
        })

    async def publish_agent_insight(
        self,
        agent: str,
        agent_icon: str,
        incident_id: Optional[int],
        analysis: Any,
        urgency: str,
        city: str,
    ) -> bool:
        return await self.publish(Channels.AGENT_INSIGHTS, {
            'type': 'agent_insight',
            'agent': agent,
            'agentIcon': agent_icon,
            'incidentId': incident_id,
            'analysis': analysis,
            'urgency': urgency,
            'city': city,
            'timestamp': _timestamp(),
        })

    async def publish_prediction(self, prediction, city: str) -> bool:
        return await self.publish(Channels.PREDICTIONS, {
            'type': 'prediction',
            'agent': prediction.agent,
            'prediction': prediction.to_dict(),
            'city': city,
            'timestamp': _timestamp(),
        })

    async def publish_prediction_hit(self, prediction, incident_id: int, accuracy: float, city: str) -> bool:
        return await self.publish(Channels.PREDICTIONS, {
            'type': 'prediction_hit',
            'agent': prediction.agent,
            'prediction': prediction.to_dict(),
            'matchedIncidentId': incident_id,
            'accuracy': accuracy,
            'city': city,
            'timestamp': _timestamp(),
        })

    async def publish_worker_status(self, stats: dict) -> bool:
        return await self.publish(Channels.WORKER_STATUS, {
            'type': 'worker_status',
            'stats': stats,
            'timestamp': _timestamp(),
        })


class StateCache:
    """
    JSON values in Redis with expiry, for the gateway's init snapshot.

    Keys:
    - 'dispatch:worker:stats'   worker counters (60s)
    - 'dispatch:city:{id}'      CityState snapshot (300s)

    Without Redis, values live in this process only.
    """

    STATS_KEY = 'dispatch:worker:stats'
    STATS_TTL = 60
    CITY_TTL = 300

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.redis = None
        self._local: Dict[str, Any] = {}

    @staticmethod
    def city_key(city: str) -> str:
        return f'dispatch:city:{city}'

    async def connect(self) -> bool:
        if not self.redis_url:
            return False
        client = None
        try:
            client = redis.from_url(self.redis_url, decode_responses=True)
            await client.ping()
            self.redis = client
            return True
        except (redis.RedisError, OSError) as e:
            logger.error(f"[CACHE] Redis connection failed: {e}")
            if client is not None:
                await client.aclose()
            return False

    async def close(self):
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        if self.redis is None:
            self._local[key] = value
            return
        try:
            await self.redis.set(key, json.dumps(value, default=str), ex=ttl)
        except redis.RedisError as e:
            logger.warning(f"[CACHE] set {key} failed: {e}")

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return self._local.get(key)
        try:
            raw = await self.redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"[CACHE] get {key} failed: {e}")
            return None
        return json.loads(raw) if raw else None

    async def save_city(self, snapshot: dict) -> None:
        await self.set(self.city_key(snapshot['city']), snapshot, self.CITY_TTL)

    async def load_city(self, city: str) -> Optional[dict]:
        return await self.get(self.city_key(city))

    async def save_stats(self, stats: dict) -> None:
        await self.set(self.STATS_KEY, stats, self.STATS_TTL)

    async def load_stats(self) -> Optional[dict]:
        return await self.get(self.STATS_KEY)
