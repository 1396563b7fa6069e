"""Squad initiative aggregation and morale engine for turn-based combat trackers."""

__version__ = "0.1.0"
