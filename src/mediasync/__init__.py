"""mediasync - keeps local media folders uploaded to a media server."""

__version__ = "0.1.0"
