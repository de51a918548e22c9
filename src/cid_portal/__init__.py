"""CID portal session and request-security core."""

__version__ = "0.1.0"
