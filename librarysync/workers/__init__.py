"""Durable job queue used by the scheduler loop."""
