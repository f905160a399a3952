"""Permit Expediter: builds roofing permit applications from business records."""

__version__ = "0.1.0"
