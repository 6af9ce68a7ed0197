"""routestream: encrypted batch ingestion into minute buckets."""

__version__ = "0.1.0"
