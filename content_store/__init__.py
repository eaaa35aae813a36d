"""Content-addressed blob store with inline and chunked storage tiers."""

__version__ = "0.1.0"
