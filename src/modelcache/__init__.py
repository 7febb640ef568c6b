"""Local cache and atomic installer for model repositories."""

__version__ = "0.1.0"
