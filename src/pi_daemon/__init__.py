"""Background automation daemon for declaratively configured workflows."""

__version__ = "0.4.0"
