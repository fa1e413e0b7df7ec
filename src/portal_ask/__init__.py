"""portal-ask: streaming Ask/Search client for a video portal."""

__version__ = "0.1.0"
