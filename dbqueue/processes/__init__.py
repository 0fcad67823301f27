"""
Registered process runtime: registration, heartbeats and poll loops.
"""

from dbqueue.processes.base import BaseProcess, Poller

__all__ = ["BaseProcess", "Poller"]
