"""
Broadcast Gateway - fan bus events out to live clients, per city

A client is anything with an async send_json(payload) (a FastAPI
WebSocket in production, a fake in tests). Events carrying a 'city' go to
that city's clients; events without one (worker status) go to everyone.
A client whose send fails is dropped.
"""
import asyncio
import logging
from typing import Dict, Optional, Set

from dispatch.services.event_bus import Channels, EventBus

logger = logging.getLogger(__name__)


class BroadcastGateway:

    def __init__(self, cities):
        self.cities = list(cities)
        self._clients: Dict[str, Set] = {city: set() for city in self.cities}
        self.delivered = 0
        self.dropped_clients = 0

    def client_count(self, city: Optional[str] = None) -> int:
        if city is not None:
            return len(self._clients.get(city, ()))
        return sum(len(c) for c in self._clients.values())

    def _normalize_city(self, city: Optional[str]) -> str:
        city = (city or '').lower()
        return city if city in self._clients else self.cities[0]

    def add_client(self, client, city: Optional[str] = None) -> str:
        """Register client under a city; unknown cities fall back to the first one."""
        city = self._normalize_city(city)
        self._clients[city].add(client)
        logger.info(f"[GATEWAY] Client connected to {city} ({self.client_count(city)} total)")
        return city

    def remove_client(self, client) -> None:
        for clients in self._clients.values():
            clients.discard(client)

    def move_client(self, client, city: Optional[str]) -> str:
        """Handle subscribe_city: a client belongs to exactly one city."""
        self.remove_client(client)
        return self.add_client(client, city)

    async def attach(self, bus: EventBus) -> None:
        for channel in Channels.ALL:
            await bus.subscribe(channel, self.handle_event)

    async def handle_event(self, channel: str, payload: dict) -> None:
        city = payload.get('city')
        if city:
            targets = list(self._clients.get(city, ()))
        else:
            targets = [c for clients in self._clients.values() for c in clients]
        if not targets:
            return
        await asyncio.gather(*(self._send(client, payload) for client in targets))

    async def _send(self, client, payload: dict) -> None:
        try:
            await client.send_json(payload)
            self.delivered += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.dropped_clients += 1
            logger.info(f"[GATEWAY] Dropping client after send failure: {e}")
            self.remove_client(client)
