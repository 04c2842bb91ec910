"""promptlib - versioned, multi-provider prompt records."""

__version__ = "0.1.0"
