"""Device administration helpers for comma devices."""

__version__ = "3.1.0"
