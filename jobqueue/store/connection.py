"""
Job store connection management.
Handles the shared async Redis client.
"""

import logging

from redis.asyncio import Redis

from jobqueue.config import get_settings

logger = logging.getLogger(__name__)

# Global client instance
_client: Redis | None = None


def create_client(redis_url: str | None = None) -> Redis:
    """
    Create a new async Redis client.

    Args:
        redis_url: Redis URL. Defaults to the configured one.

    Returns:
        Redis: A client decoding responses to str.
    """
    settings = get_settings()
    return Redis.from_url(
        redis_url or settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        health_check_interval=30,
    )


def get_client() -> Redis:
    """
    Get the shared Redis client.

    Returns:
        Redis: The initialized client.

    Raises:
        RuntimeError: If the store is not initialized.
    """
    if _client is None:
        raise RuntimeError("Job store not initialized. Call init_store() first.")
    return _client


async def init_store(client: Redis | None = None) -> Redis:
    """
    Initialize the shared client.
    Should be called on process startup.

    Args:
        client: Optional pre-built client (used by tests).
    """
    global _client
    if _client is None:
        _client = client or create_client()
        logger.info("Job store connection initialized")
    return _client


async def close_store() -> None:
    """
    Close the shared client.
    Should be called on process shutdown.
    """
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("Job store connection closed")
