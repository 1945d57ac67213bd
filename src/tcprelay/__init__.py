"""tcprelay - self-supervising TCP relay."""

__version__ = "1.0.0"
