"""
Reaper module.
Contains the lease reaper for recovering orphaned in-flight jobs.
"""

from jobqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
