#!/usr/bin/env python3
"""
Dispatch Gateway Runner
=======================

Serves the live WebSocket fan-out. Reads events from the Redis bus and the
worker's snapshots from the state cache; holds no city state of its own.

Usage:
    python -m dispatch.run_gateway
    dispatch-gateway
    PORT=3000 dispatch-gateway
"""
import logging
import os

import uvicorn
from dotenv import load_dotenv

from dispatch.api.live import create_app
from dispatch.config import get_settings

logger = logging.getLogger(__name__)


def build_app():
    settings = get_settings()
    if not settings.redis_url:
        logger.warning("⚠️  REDIS_URL not set, the gateway will only see events published in this process")
    return create_app(settings.city_ids, redis_url=settings.redis_url)


def cli():
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    port = int(os.getenv('PORT', 3000))
    print(f"📡 Dispatch gateway on port {port}")
    uvicorn.run(build_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    cli()
