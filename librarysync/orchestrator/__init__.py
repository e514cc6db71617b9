"""Scheduler loop, dispatcher and sync algorithms."""
