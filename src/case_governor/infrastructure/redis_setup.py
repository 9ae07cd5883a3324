"""Redis connection factory for the broadcast channel.

Supports standalone Redis (development, docker-compose) and Redis Sentinel
(HA deployments). Configuration comes from the REDIS_* environment
variables unless passed explicitly.

Environment Variables:
    REDIS_MODE: "standalone" (default) or "sentinel"
    REDIS_HOST / REDIS_PORT: Standalone address (default: localhost:6379)
    REDIS_DB: Database index (default: 0)
    REDIS_PASSWORD: Password (optional)
    REDIS_SENTINEL_HOSTS: Comma-separated "host:port" pairs (sentinel mode)
    REDIS_MASTER_SET: Sentinel master set name (default: "mymaster")
"""

import logging
import os
from typing import List, Optional, Tuple

from redis.asyncio import Redis
from redis.asyncio.sentinel import Sentinel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from case_governor.utils.resilience import create_custom_retry

logger = logging.getLogger(__name__)

DEFAULT_SENTINEL_PORT = 26379

# Redis may still be starting when the service boots (2s, 4s, 8s, 16s)
redis_startup_retry = create_custom_retry(
    max_attempts=5,
    min_wait=2,
    max_wait=32,
    multiplier=1,
    retry_on=(RedisConnectionError, RedisTimeoutError, OSError),
)


def parse_sentinel_hosts(hosts_str: str) -> List[Tuple[str, int]]:
    """Parse "host1:26379,host2" into [("host1", 26379), ("host2", 26379)]."""
    sentinels = []
    for host_port in hosts_str.split(","):
        host_port = host_port.strip()
        if not host_port:
            continue
        if ":" in host_port:
            host, port_str = host_port.rsplit(":", 1)
            sentinels.append((host, int(port_str)))
        else:
            sentinels.append((host_port, DEFAULT_SENTINEL_PORT))
    return sentinels


@redis_startup_retry
async def verify_redis_connection(client: Redis) -> None:
    await client.ping()
    logger.info("Redis connection verified")


async def create_redis_client(
    mode: Optional[str] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
    password: Optional[str] = None,
    sentinel_hosts: Optional[str] = None,
    master_set: Optional[str] = None,
    health_check_interval: int = 30,
    verify: bool = True,
) -> Redis:
    """Create an async Redis client for the broadcast channel.

    Responses are decoded to str; channel payloads are JSON text.

    Raises:
        ValueError: If sentinel mode is selected without sentinel hosts
        redis.exceptions.ConnectionError: If Redis stays unreachable after retries
    """
    mode = (mode or os.getenv("REDIS_MODE", "standalone")).lower()
    db_index = db if db is not None else int(os.getenv("REDIS_DB", "0"))
    password = password or os.getenv("REDIS_PASSWORD")

    if mode == "sentinel":
        sentinel_hosts_str = sentinel_hosts or os.getenv("REDIS_SENTINEL_HOSTS", "")
        master_name = master_set or os.getenv("REDIS_MASTER_SET", "mymaster")
        sentinels = parse_sentinel_hosts(sentinel_hosts_str)
        if not sentinels:
            raise ValueError("REDIS_SENTINEL_HOSTS is required for sentinel mode")

        logger.info(f"Connecting to Redis Sentinel: master={master_name}, sentinels={sentinels}")
        sentinel = Sentinel(
            sentinels,
            sentinel_kwargs={"password": password} if password else {},
            health_check_interval=health_check_interval,
        )
        client = sentinel.master_for(
            master_name,
            db=db_index,
            password=password,
            decode_responses=True,
            health_check_interval=health_check_interval,
        )
    else:
        redis_host = host or os.getenv("REDIS_HOST", "localhost")
        redis_port = port if port is not None else int(os.getenv("REDIS_PORT", "6379"))
        logger.info(f"Connecting to standalone Redis: {redis_host}:{redis_port}/{db_index}")
        client = Redis(
            host=redis_host,
            port=redis_port,
            db=db_index,
            password=password,
            decode_responses=True,
            health_check_interval=health_check_interval,
            socket_connect_timeout=5,
        )

    if verify:
        await verify_redis_connection(client)
    return client
