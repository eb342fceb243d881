"""Zooplankton community tables and statistics for two-pulse mesocosm experiments."""

__version__ = "0.1.0"
