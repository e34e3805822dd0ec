"""Command line entry point: run the demo pipeline or inspect key assignment."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import typer

from .assigner import assign as assign_partition
from .config import RunMode, Settings, get_settings
from .engine import DeliveryEngine
from .exceptions import InvalidTopologyError, TransportError
from .simulation import FailureMarkerHandler, ProducerSimulator

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from .topology import TopologyConfig

logger = logging.getLogger("partitioned_messaging.cli")

app = typer.Typer(help="Partitioned messaging pipeline (ordered partitions, DLQ, reprocessing)")


class Backend(str, Enum):
    LOCAL = "local"
    RABBITMQ = "rabbitmq"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s - %(message)s",
    )


def _rng(seed: int | None, offset: int) -> random.Random:
    return random.Random(None if seed is None else seed + offset)  # noqa: S311


def build_producers(
    settings: Settings,
    topology: TopologyConfig,
    publish: Callable[[str, bytes], Awaitable[object]],
    count: int | None,
) -> list[ProducerSimulator]:
    # Without a dead-letter queue nothing is ever rejected, so no FAIL markers.
    failure_probability = settings.FAILURE_PROBABILITY if topology.dead_letter_enabled else 0.0
    return [
        ProducerSimulator(
            publish,
            settings.partition_keys,
            rng=_rng(settings.RANDOM_SEED, producer_id),
            failure_probability=failure_probability,
            min_delay=settings.PUBLISH_DELAY_MIN_MS / 1000,
            max_delay=settings.PUBLISH_DELAY_MAX_MS / 1000,
            count=count,
            producer_id=producer_id,
        )
        for producer_id in range(1, settings.PRODUCER_COUNT + 1)
    ]


async def _wait(duration: float | None) -> None:
    if duration is None:
        await asyncio.Event().wait()
    else:
        await asyncio.sleep(duration)


async def _supervise(duration: float | None, watched: Iterable[asyncio.Future[Any]]) -> None:
    """Run for *duration* seconds, re-raising the first failure of a watched task.

    Watched tasks that finish cleanly (a producer reaching its count) do not
    end the run early.
    """
    timer = asyncio.ensure_future(_wait(duration))
    pending: set[asyncio.Future[Any]] = {timer, *watched}
    try:
        while timer in pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is timer or task.cancelled():
                    continue
                error = task.exception()
                if error is not None:
                    raise error
    finally:
        timer.cancel()


def _producer_tasks(producers: Iterable[ProducerSimulator]) -> list[asyncio.Future[Any]]:
    return [p.task for p in producers if p.task is not None]


async def run_local(
    settings: Settings, topology: TopologyConfig, duration: float | None, count: int | None
) -> DeliveryEngine:
    handler = FailureMarkerHandler(
        rng=_rng(settings.RANDOM_SEED, 0),
        max_delay=settings.PROCESSING_DELAY_MAX_MS / 1000,
    )
    engine = DeliveryEngine(topology, handler)
    async with engine:
        producers = build_producers(settings, topology, engine.publish, count)
        for producer in producers:
            engine.add_producer(producer)
            await producer.start()
        await _supervise(duration, _producer_tasks(producers))
        await engine.shutdown(settings.SHUTDOWN_GRACE_SECONDS)
    health = engine.health()
    logger.info(
        "Run finished: acked=%d rejected=%d expired=%d reprocessed=%d dlq=%d parked=%d",
        health.acked,
        health.rejected,
        health.expired,
        health.reprocessed,
        health.dead_letter_size,
        health.parked,
    )
    return engine


async def run_rabbitmq(
    settings: Settings, topology: TopologyConfig, duration: float | None, count: int | None
) -> None:
    from .adapters.rabbitmq import RabbitMQConnectionManager, RabbitMQTransport
    from .relay import BrokerRelay

    handler = FailureMarkerHandler(
        rng=_rng(settings.RANDOM_SEED, 0),
        max_delay=settings.PROCESSING_DELAY_MAX_MS / 1000,
    )
    transport = RabbitMQTransport(RabbitMQConnectionManager(settings.amqp_url))
    relay = BrokerRelay(transport, topology, handler)
    await relay.start()
    producers = build_producers(settings, topology, relay.publish, count)
    relay_failure = asyncio.ensure_future(relay.wait_failed())
    try:
        for producer in producers:
            await producer.start()
        await _supervise(duration, [*_producer_tasks(producers), relay_failure])
    finally:
        relay_failure.cancel()
        for producer in producers:
            await producer.stop()
        await relay.stop()


@app.command()
def run(
    mode: Optional[RunMode] = typer.Option(None, help="Run mode (default: RABBITMQ_MODE)"),
    backend: Backend = typer.Option(Backend.RABBITMQ, help="Where the queues live"),
    duration: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
    count: Optional[int] = typer.Option(None, help="Messages per producer (default: unbounded)"),
) -> None:
    """Run producers, partition consumers and the DLQ reprocessor."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    selected = mode or settings.RABBITMQ_MODE
    logger.info("Starting partitioned messaging in mode: %s (%s)", selected.value, backend.value)

    async def _main() -> None:
        topology = settings.to_topology(selected)
        if settings.STARTUP_DELAY_SECONDS > 0:
            await asyncio.sleep(settings.STARTUP_DELAY_SECONDS)
        if backend is Backend.LOCAL:
            await run_local(settings, topology, duration, count)
        else:
            await run_rabbitmq(settings, topology, duration, count)

    try:
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(_main())
    except (InvalidTopologyError, TransportError) as e:
        logger.error("Pipeline failed: %s", e)
        raise typer.Exit(code=1) from e


@app.command()
def assign(
    keys: list[str] = typer.Argument(..., help="Partition keys to place"),
    partitions: int = typer.Option(3, help="Number of partitions"),
    weights: Optional[str] = typer.Option(None, help="Comma list of weights (default: 10 each)"),
) -> None:
    """Print the partition each key is assigned to."""
    try:
        weight_list = (
            [int(w) for w in weights.split(",")] if weights else [10] * max(partitions, 0)
        )
        for key in keys:
            typer.echo(f"{key}\t{assign_partition(key, partitions, weight_list)}")
    except ValueError as e:
        typer.echo(f"Invalid weights: {e}", err=True)
        raise typer.Exit(code=1) from e
    except InvalidTopologyError as e:
        typer.echo(f"Invalid topology: {e}", err=True)
        raise typer.Exit(code=1) from e


if __name__ == "__main__":
    app()
