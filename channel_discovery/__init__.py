"""Account-rotating discovery crawler for channel recommendation graphs."""

__version__ = "0.1.0"
