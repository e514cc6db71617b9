"""Background library synchronisation engine."""

__version__ = "0.1.0"
