"""
Database-backed Job Queue

A job queue engine that coordinates many worker processes exclusively through
relational tables: race-free claims with SKIP LOCKED, per-key concurrency
semaphores, scheduled and recurring dispatch, and supervised worker processes
with crash recovery.
"""

__version__ = "1.0.0"
