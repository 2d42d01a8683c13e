"""FarmBot configuration tracker package initialisation."""

__version__ = "5.0.0"
