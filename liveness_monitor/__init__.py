"""Health-check driven restart monitor for a single OS service."""

__version__ = "0.1.0"
