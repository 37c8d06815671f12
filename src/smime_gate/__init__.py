"""SMIME Gate - store-and-forward S/MIME mail gateway."""

__version__ = "0.1.0"
