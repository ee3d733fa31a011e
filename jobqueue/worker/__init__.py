"""
Worker module.
Contains the dispatcher loop, the worker pool, and the handler registry.
"""

from jobqueue.worker.handlers import HandlerRegistry, create_default_registry
from jobqueue.worker.main import Dispatcher, WorkerPool, run

__all__ = [
    "Dispatcher",
    "WorkerPool",
    "HandlerRegistry",
    "create_default_registry",
    "run",
]
