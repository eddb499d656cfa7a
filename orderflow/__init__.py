"""Order and payment saga coordinator service."""

__version__ = "1.0.0"
