"""Utility helpers for the sync engine."""
