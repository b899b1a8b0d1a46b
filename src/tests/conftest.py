from collections.abc import AsyncGenerator, Generator

import aio_pika
import pytest
import pytest_asyncio
from aio_pika.abc import AbstractConnection
from redis.asyncio import Redis
from testcontainers.rabbitmq import RabbitMqContainer  # type: ignore[import-untyped]
from testcontainers.redis import RedisContainer  # type: ignore[import-untyped]

from queue_migration.metrics import metrics

# Queues every integration test starts from empty
SOURCE_QUEUES = ("test-source", "fail-queue")
DESTINATION_QUEUES = ("test-source", "test-dest")


def _rabbitmq_url() -> Generator[str, None, None]:
    rabbitmq = RabbitMqContainer("rabbitmq:4.1")
    try:
        rabbitmq.start()
    except Exception as exc:
        pytest.skip(f"Cannot start a RabbitMQ container: {exc}")
    try:
        yield (
            f"amqp://{rabbitmq.username}:{rabbitmq.password}@{rabbitmq.get_container_host_ip()}:"
            f"{rabbitmq.get_exposed_port(rabbitmq.port)}/"
        )
    finally:
        rabbitmq.stop()


@pytest.fixture(autouse=True)
def disable_metrics() -> Generator[None, None, None]:
    metrics.enable_metrics(False)
    yield
    metrics.enable_metrics(False)


@pytest.fixture(scope="session")
def source_url() -> Generator[str, None, None]:
    yield from _rabbitmq_url()


@pytest.fixture(scope="session")
def destination_url() -> Generator[str, None, None]:
    yield from _rabbitmq_url()


@pytest.fixture(scope="session")
def redis_url() -> Generator[str, None, None]:
    redis = RedisContainer("redis:7-alpine")
    try:
        redis.start()
    except Exception as exc:
        pytest.skip(f"Cannot start a Redis container: {exc}")
    try:
        yield f"redis://{redis.get_container_host_ip()}:{redis.get_exposed_port(6379)}/9"
    finally:
        redis.stop()


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def source_connection(source_url: str) -> AsyncGenerator[AbstractConnection, None]:
    """Test-side connection to the source broker.

    Topology: fanout exchange `test-exchange` bound to queue `test-source`, and a `fail-queue` that
    has no counterpart on the destination.
    """
    connection = await aio_pika.connect(source_url)
    async with connection:
        channel = await connection.channel()
        exchange = await channel.declare_exchange(
            "test-exchange", aio_pika.ExchangeType.FANOUT, durable=True
        )
        for queue_name in SOURCE_QUEUES:
            await channel.declare_queue(queue_name, durable=True)
        source_queue = await channel.get_queue("test-source")
        await source_queue.bind(exchange)
        await channel.close()
        yield connection


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def destination_connection(
    destination_url: str,
) -> AsyncGenerator[AbstractConnection, None]:
    """Test-side connection to the destination broker.

    Topology: fanout exchange `test-exchange` bound to queues `test-source` and `test-dest`.
    """
    connection = await aio_pika.connect(destination_url)
    async with connection:
        channel = await connection.channel()
        exchange = await channel.declare_exchange(
            "test-exchange", aio_pika.ExchangeType.FANOUT, durable=True
        )
        for queue_name in DESTINATION_QUEUES:
            queue = await channel.declare_queue(queue_name, durable=True)
            await queue.bind(exchange)
        await channel.close()
        yield connection


@pytest_asyncio.fixture(loop_scope="session")
async def clean_queues(
    source_connection: AbstractConnection, destination_connection: AbstractConnection
) -> AsyncGenerator[None, None]:
    """Empty the test queues after each test to ensure test isolation"""
    yield
    for connection, queue_names in (
        (source_connection, SOURCE_QUEUES),
        (destination_connection, DESTINATION_QUEUES),
    ):
        channel = await connection.channel()
        for queue_name in queue_names:
            queue = await channel.get_queue(queue_name)
            await queue.purge()
        await channel.close()


@pytest_asyncio.fixture(loop_scope="session")
async def redis_client(redis_url: str) -> AsyncGenerator[Redis, None]:
    client = Redis.from_url(redis_url)
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()
