"""Clients for remote services."""

from .batch_client import BatchApiClient

__all__ = ["BatchApiClient"]
