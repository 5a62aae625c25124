"""
Error taxonomy shared by the ingest, sync and pricing passes.

Batch passes catch these per item and report them in their summary;
single-item operations let them propagate to the route handler, which maps
them onto an HTTP status via ``http_status``.
"""

from __future__ import annotations


class ShelfLifeError(Exception):
    http_status = 500


class ConfigError(ShelfLifeError):
    pass


class ValidationError(ShelfLifeError):
    """Bad input: a CSV row, a form field, a missing required value."""

    http_status = 400


class NotFoundError(ShelfLifeError):
    http_status = 404


class ExternalAPIError(ShelfLifeError):
    """Transport failure or a GraphQL-level error from Shopify."""

    http_status = 502


class ShopifyUserError(ExternalAPIError):
    """Shopify accepted the request but rejected the input (userErrors)."""

    def __init__(self, operation: str, user_errors: list[dict]):
        self.operation = operation
        self.user_errors = user_errors or []
        first = self.user_errors[0].get("message") if self.user_errors else "unknown error"
        super().__init__(f"{operation} userErrors: {first}")


class PersistenceError(ShelfLifeError):
    """A table write failed (or lost an optimistic-concurrency race)."""

    http_status = 500


class RunInProgressError(ShelfLifeError):
    """A batch pass for the same shop is already running."""

    http_status = 409
