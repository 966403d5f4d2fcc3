"""
Live WebSocket API - the BroadcastGateway's client edge

GET /health
WS  /ws?city=nyc

On connect the client gets an 'init' message built from the worker's last
snapshot in the StateCache, then every bus event for its city. A client
switches city by sending {"type": "subscribe_city", "city": "mpls"}.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from dispatch.services.broadcast_gateway import BroadcastGateway
from dispatch.services.event_bus import EventBus, StateCache
from dispatch.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


async def build_init_message(cache: StateCache, city: str) -> dict:
    snapshot = await cache.load_city(city) or {}
    stats = await cache.load_stats()
    return {
        'type': 'init',
        'city': city,
        'incidents': snapshot.get('incidents', []),
        'transcripts': snapshot.get('transcripts', []),
        'cameras': snapshot.get('cameras', []),
        'currentCamera': snapshot.get('currentCamera'),
        'agents': snapshot.get('agents', []),
        'predictionStats': snapshot.get('predictionStats'),
        'patterns': snapshot.get('patterns', []),
        'hotspots': snapshot.get('hotspots', []),
        'workerStats': stats,
        'timestamp': utcnow().isoformat(),
    }


@router.get("/health")
async def health(request: Request):
    gateway: BroadcastGateway = request.app.state.gateway
    bus: EventBus = request.app.state.bus
    return {
        "status": "ok",
        "service": "dispatch-gateway",
        "redis": bus.connected,
        "clients": {city: gateway.client_count(city) for city in gateway.cities},
    }


@router.websocket("/ws")
async def live_socket(websocket: WebSocket, city: Optional[str] = Query(None)):
    gateway: BroadcastGateway = websocket.app.state.gateway
    cache: StateCache = websocket.app.state.cache

    await websocket.accept()
    city = gateway.add_client(websocket, city)
    try:
        await websocket.send_json(await build_init_message(cache, city))
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                continue
            if message.get('type') == 'subscribe_city':
                city = gateway.move_client(websocket, message.get('city'))
                await websocket.send_json(await build_init_message(cache, city))
    except WebSocketDisconnect:
        pass
    except ValueError as e:
        # receive_json on a non-JSON frame
        logger.info(f"[GATEWAY] Closing client after bad message: {e}")
    finally:
        gateway.remove_client(websocket)
        logger.info(f"[GATEWAY] Client left {city} ({gateway.client_count(city)} remaining)")


def create_app(
    cities: List[str],
    bus: Optional[EventBus] = None,
    cache: Optional[StateCache] = None,
    redis_url: Optional[str] = None,
) -> FastAPI:
    """
    Build the gateway app.

    Bus and cache are connected in the lifespan when they are created here;
    injected ones are used as given.
    """
    owns_connections = bus is None
    bus = bus or EventBus(redis_url)
    cache = cache or StateCache(redis_url)
    gateway = BroadcastGateway(cities)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_connections:
            await bus.connect()
            await cache.connect()
        await gateway.attach(bus)
        logger.info(f"[GATEWAY] Serving cities: {', '.join(cities)}")
        try:
            yield
        finally:
            if owns_connections:
                await bus.close()
                await cache.close()

    app = FastAPI(
        title="Dispatch Live Gateway",
        description="Per-city live fan-out of incidents, transcripts and agent insights",
        version="0.4.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.gateway = gateway
    app.state.bus = bus
    app.state.cache = cache
    app.include_router(router)
    return app
