"""Exceptions raised while building a force field or simulation."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Fatal configuration problem detected at initialization."""
