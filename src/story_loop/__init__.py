"""Autonomous agent loop that drives PRD stories to completion."""

__version__ = "0.3.0"
