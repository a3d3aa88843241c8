"""Local container engine for staging and running CF-style applications."""

__version__ = "0.1.0"
