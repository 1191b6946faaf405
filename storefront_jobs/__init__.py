"""Storefront background jobs: Redis-backed queue, worker and HTTP surface."""

__version__ = "0.1.0"
