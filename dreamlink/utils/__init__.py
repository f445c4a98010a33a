"""Utility helpers for the client."""

from .logging import configure_logging
from .profiles import load_config, read_profiles

__all__ = ["configure_logging", "load_config", "read_profiles"]
