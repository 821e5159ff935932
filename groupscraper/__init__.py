"""Cancellable group-feed scraping jobs with live progress streaming."""

__version__ = "1.0.0"
