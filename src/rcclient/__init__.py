"""RC Construções offline-first client data core."""

__version__ = "0.3.0"
