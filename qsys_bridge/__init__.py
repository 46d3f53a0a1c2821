"""Q-SYS control bridge: exposes a Core's components and controls as tools."""

__version__ = "0.1.0"
