"""Community bot: feedback collection, support tickets and a small dashboard API."""

__version__ = "1.0.0"
