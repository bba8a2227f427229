#!/usr/bin/env python3
"""
Engagement Statistics Service

Consumes engagement events from Kafka, maintains running totals and
day/week/month/year rollups, and serves statistics queries over HTTP.
Provides health check endpoints and metrics collection.
"""

import asyncio
import os
import signal
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response
import uvicorn
import structlog

from shared.logging_config import configure_logging
from shared.models import EngagementEvent

from .config import load_engine_config_from_env
from .engine import EngagementStatsEngine
from .errors import InvalidFilter, PersistenceUnavailable
from .event_consumer import EngagementEventConsumer
from .stats_store import InMemoryStatsStore, RedisStatsStore

logger = structlog.get_logger(__name__)

# Global service instances
engine: Optional[EngagementStatsEngine] = None
event_consumer: Optional[EngagementEventConsumer] = None
shutdown_event = asyncio.Event()

# FastAPI app for queries, health checks and metrics
app = FastAPI(title="Engagement Stats", version="1.0.0")


def get_engine() -> EngagementStatsEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


def set_engine(new_engine: Optional[EngagementStatsEngine]) -> None:
    global engine
    engine = new_engine


def build_engine_from_env() -> EngagementStatsEngine:
    """Create the engine with the store selected by STATS_STORE (memory or redis)."""
    store_kind = os.getenv("STATS_STORE", "redis").lower()
    if store_kind == "memory":
        store = InMemoryStatsStore()
    elif store_kind == "redis":
        store = RedisStatsStore(
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD"),
        )
    else:
        raise ValueError(f"Unknown STATS_STORE: {store_kind}")

    return EngagementStatsEngine(store=store, config=load_engine_config_from_env())


def _raise_http(e: Exception) -> None:
    if isinstance(e, (InvalidFilter, ValueError)):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, PersistenceUnavailable):
        logger.error("Stats backend unavailable", error=str(e))
        raise HTTPException(status_code=503, detail=str(e))
    raise e


@app.get("/health")
def health_check() -> Dict[str, Any]:
    """Health check endpoint for Docker health checks."""
    if engine is None:
        return {"status": "starting", "service": "engagement-stats"}

    health = engine.health_check()
    health["service"] = "engagement-stats"
    if event_consumer is not None:
        health["consumer_running"] = event_consumer.running
    return health


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
def root() -> Dict[str, Any]:
    """Root endpoint with service information."""
    base_info = {
        "service": "engagement-stats",
        "status": "running",
        "description": "Multi-resolution engagement statistics with day/week/month/year rollups"
    }

    if engine:
        base_info["engine_stats"] = engine.get_stats_summary()

    if event_consumer:
        base_info["consumer_stats"] = event_consumer.get_stats()

    return base_info


@app.get("/stats/{user_id}")
def get_user_stats(
    user_id: str,
    time_range: str = "30d",
    group_by: str = "day",
    metric: str = "views",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    cumulative: bool = False,
) -> Dict[str, Any]:
    """Summary and time series for a user."""
    stats_engine = get_engine()
    filter_options = {
        "time_range": time_range,
        "group_by": group_by,
        "metric": metric,
        "start_date": start_date,
        "end_date": end_date,
        "cumulative": cumulative,
    }

    try:
        return stats_engine.get_stats(user_id, filter_options).to_dict()
    except (InvalidFilter, ValueError, PersistenceUnavailable) as e:
        _raise_http(e)


@app.get("/stats/{user_id}/totals")
def get_user_totals(user_id: str) -> Dict[str, Any]:
    """Running totals of a user."""
    stats_engine = get_engine()
    try:
        return stats_engine.snapshot(user_id).to_dict()
    except PersistenceUnavailable as e:
        _raise_http(e)


@app.post("/events", status_code=202)
def post_event(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    """Apply one engagement event sent over HTTP."""
    stats_engine = get_engine()
    try:
        event = EngagementEvent.from_dict(payload)
        stats_engine.emit_event(event)
    except (ValueError, PersistenceUnavailable) as e:
        _raise_http(e)

    return {"status": "accepted", "event": event.to_dict()}


async def consume_events() -> None:
    """Run the Kafka consumer until shutdown, restarting it after failures."""
    global event_consumer

    log = logger.bind(component="event_consumer")
    kafka_servers = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    kafka_topic = os.getenv("KAFKA_TOPIC_ENGAGEMENT_EVENTS", "engagement-events")

    while not shutdown_event.is_set():
        try:
            event_consumer = EngagementEventConsumer(get_engine(), kafka_servers, kafka_topic)
            log.info("Starting event consumer", servers=kafka_servers, topic=kafka_topic)
            await event_consumer.start_processing()
        except Exception as e:
            log.error("Event consumer failed", error=str(e))
            await asyncio.sleep(5)


async def shutdown_handler() -> None:
    """Handle graceful shutdown."""
    logger.info("Shutting down Engagement Stats service...")
    shutdown_event.set()

    if event_consumer:
        event_consumer.stop()

    if engine and isinstance(engine.store, RedisStatsStore):
        engine.store.close()
        logger.info("Redis connection closed")

    logger.info("Shutdown complete")


def signal_handler(signum: int, frame) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}, initiating shutdown...")
    asyncio.create_task(shutdown_handler())


async def main() -> None:
    """Main application entry point."""
    log_level = os.getenv("LOG_LEVEL", "INFO")
    port = int(os.getenv("PORT", "8000"))
    configure_logging(log_level)

    logger.info("Starting Engagement Stats service...")
    set_engine(build_engine_from_env())

    logger.info("Configuration loaded",
                store=type(engine.store).__name__,
                grace_seconds=engine.config.late_write_grace_seconds,
                port=port)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    consumer_task = asyncio.create_task(consume_events())

    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level=log_level.lower()
    )
    server = uvicorn.Server(config)

    try:
        await asyncio.gather(
            server.serve(),
            consumer_task,
            return_exceptions=True
        )
    except Exception as e:
        logger.error("Error in main loop", error=str(e))
    finally:
        await shutdown_handler()


if __name__ == "__main__":
    asyncio.run(main())
