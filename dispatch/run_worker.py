#!/usr/bin/env python3
"""
Dispatch Worker Runner
======================

Runs ingestion and the Detective Bureau for every enabled city in one
process:
- Broadcastify live streams (up to MAX_CONCURRENT_STREAMS)
- Broadcastify Calls and OpenMHz call-log pollers
- per-city incident workers and agent timers
- state snapshots for the gateway process

Usage:
    python -m dispatch.run_worker
    dispatch-worker
"""
import asyncio
import logging
import signal
from datetime import timedelta
from typing import List

from dotenv import load_dotenv
from openai import AsyncOpenAI

from dispatch.config import get_settings, feeds_for, initial_stream_feeds
from dispatch.config.cities import BCFY_CALLS_FEED
from dispatch.config.connections import create_event_bus, create_state_cache
from dispatch.context import build_contexts
from dispatch.services.city_state import CameraDirectory
from dispatch.services.extraction_gateway import ExtractionGateway
from dispatch.services.llm_gateway import LLMGateway
from dispatch.services.scheduler import PeriodicScheduler
from dispatch.services.transcriber import SpeechToText
from dispatch.workers.call_poller import BroadcastifyCallsClient, CallPoller, OpenMHzClient
from dispatch.workers.ingestion import IngestionPipeline
from dispatch.workers.stream_connector import BroadcastifyStreamOpener, StreamConnector, StreamSupervisor

logger = logging.getLogger(__name__)


def build_pollers(settings, pipeline: IngestionPipeline) -> List[CallPoller]:
    pollers = []
    cities = settings.city_ids

    if settings.bcfy_enabled and BCFY_CALLS_FEED.city in cities:
        client = BroadcastifyCallsClient(
            api_url=settings.bcfy_api_url,
            key_id=settings.bcfy_api_key_id,
            key_secret=settings.bcfy_api_key_secret,
            app_id=settings.bcfy_app_id,
            username=settings.broadcastify_username,
            password=settings.broadcastify_password,
            system_id=settings.bcfy_system_id,
            token_ttl=settings.bcfy_token_ttl,
            timeout=settings.download_timeout,
        )
        pollers.append(CallPoller(
            'BCFY-CALLS',
            BCFY_CALLS_FEED.city,
            client,
            pipeline.call_handler(BCFY_CALLS_FEED.city),
            pipeline.contexts[BCFY_CALLS_FEED.city].call_dedup,
            interval=settings.bcfy_poll_interval,
            failure_threshold=settings.poll_failure_threshold,
            max_calls_per_poll=settings.max_calls_per_poll,
            min_audio_bytes=settings.min_call_audio_bytes,
        ))
    else:
        logger.info("[BCFY-CALLS] Not configured, skipping")

    for city in cities:
        context = pipeline.contexts[city]
        if not context.profile.openmhz_system:
            continue
        pollers.append(CallPoller(
            f'OPENMHZ-{city.upper()}',
            city,
            OpenMHzClient(context.profile.openmhz_system, api_url=settings.openmhz_api_url,
                          timeout=settings.download_timeout),
            pipeline.call_handler(city),
            context.call_dedup,
            interval=settings.openmhz_poll_interval,
            failure_threshold=settings.poll_failure_threshold,
            max_calls_per_poll=settings.max_calls_per_poll,
            min_audio_bytes=settings.min_call_audio_bytes,
            lookback=timedelta(seconds=settings.openmhz_lookback),
        ))
    return pollers


async def log_talkgroups(pollers: List[CallPoller]) -> None:
    for poller in pollers:
        if not isinstance(poller.client, BroadcastifyCallsClient):
            continue
        try:
            groups = await poller.client.fetch_groups()
            logger.info(f"[{poller.name}] {len(groups)} talkgroups available")
        except Exception as e:
            logger.warning(f"[{poller.name}] Could not fetch talkgroups: {e}")


async def main():
    """Run the dispatch worker until SIGINT/SIGTERM."""
    settings = get_settings()
    cities = settings.city_ids

    print("=" * 60)
    print("🚨 DISPATCH WORKER")
    print(f"   Cities: {', '.join(cities)}")
    print(f"   Max concurrent streams: {settings.max_concurrent_streams}")
    print(f"   Redis: {settings.redis_url or 'disabled (in-process bus)'}")
    print("=" * 60)

    openai_client = AsyncOpenAI(api_key=settings.openai_api_key or None)
    agent_llm = LLMGateway(openai_client, model=settings.agent_model, timeout=settings.agent_timeout)
    extraction_llm = LLMGateway(openai_client, model=settings.extraction_model, timeout=settings.extraction_timeout)
    transcriber = SpeechToText(openai_client, model=settings.transcription_model,
                               timeout=settings.transcription_timeout)

    bus = await create_event_bus(settings.redis_url or '')
    cache = await create_state_cache(settings.redis_url or '')

    contexts = build_contexts(agent_llm, bus=bus, settings=settings)
    cameras = CameraDirectory()
    for city, context in contexts.items():
        context.state.set_cameras(await cameras.load(city))
    await cameras.close()

    pipeline = IngestionPipeline(
        contexts,
        transcriber,
        ExtractionGateway(extraction_llm, timeout=settings.extraction_timeout),
        bus,
    )
    pipeline.start()

    # Live streams
    opener = None
    supervisor = None
    if settings.streams_enabled:
        opener = BroadcastifyStreamOpener(
            settings.broadcastify_username,
            settings.broadcastify_password,
            host=settings.broadcastify_stream_host,
        )
        supervisor = StreamSupervisor(
            feeds_for(cities),
            settings.max_concurrent_streams,
            lambda feed: StreamConnector(feed, opener, pipeline.on_chunk, settings),
            stagger=settings.stream_stagger,
        )
        pipeline.supervisor = supervisor
    else:
        logger.warning("⚠️  BROADCASTIFY_USERNAME/PASSWORD not set, live streams disabled")

    # Call-log pollers
    pollers = build_pollers(settings, pipeline)
    pipeline.pollers = pollers
    await log_talkgroups(pollers)
    for poller in pollers:
        poller.start()

    # Timers
    scheduler = PeriodicScheduler()
    for context in contexts.values():
        context.orchestrator.register_periodic_tasks(scheduler, settings)

    async def snapshot():
        await pipeline.publish_snapshot(cache)

    scheduler.schedule('snapshot', snapshot, interval=settings.snapshot_interval, initial_delay=0)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if supervisor is not None:
        await supervisor.start(initial_stream_feeds(settings.max_concurrent_streams, cities))

    logger.info("✅ Dispatch worker running")
    try:
        await stop.wait()
    finally:
        logger.info("🛑 Shutting down...")
        await scheduler.cancel_all()
        for poller in pollers:
            await poller.stop()
            await poller.client.close()
        if supervisor is not None:
            await supervisor.stop()
        if opener is not None:
            await opener.close()
        await pipeline.stop()
        await bus.close()
        await cache.close()
        logger.info("👋 Dispatch worker stopped")


def cli():
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(main())


if __name__ == "__main__":
    cli()
