"""Autonomous trading cycle engine."""

__version__ = "0.1.0"
