"""bwsr: share long-running browser sessions between short-lived commands."""

__version__ = "0.3.0"
