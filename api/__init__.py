"""HTTP API for Report Pilot."""

__version__ = "0.1.0"
