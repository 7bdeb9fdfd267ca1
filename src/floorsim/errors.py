from __future__ import annotations


class FloorSimError(Exception):
    """Base class for errors raised by floorsim."""


class LayoutError(FloorSimError):
    """Room or table geometry that agents cannot be placed in."""
