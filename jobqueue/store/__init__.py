"""
Job store module.
Contains the Redis connection, atomic scripts, and the store implementation.
"""

from jobqueue.store.connection import (
    close_store,
    create_client,
    get_client,
    init_store,
)
from jobqueue.store.repository import JobStore, StoreKeys

__all__ = [
    "create_client",
    "get_client",
    "init_store",
    "close_store",
    "JobStore",
    "StoreKeys",
]
