"""Child-process lifecycle handles for asyncio programs."""

__version__ = "0.1.0"
