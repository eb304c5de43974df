"""Order checkout and EasyKash payment reconciliation service."""

__version__ = "1.0.0"
