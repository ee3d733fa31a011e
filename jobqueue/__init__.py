"""
Background Job Queue

A shared, Redis-backed job queue with atomic claims, lease-based crash
recovery, bounded retries and a dead-letter list, consumed by a pool of
independent dispatcher loops.
"""

__version__ = "1.0.0"
