"""Portal — single HTTP(S) entry point for a composed web-proxy front end."""

__version__ = "1.0.0"
