# app/core/errors.py
from __future__ import annotations

from typing import Any


class AffiliateError(Exception):
    """
    Base for every error the attribution / commission core raises.

    `code` is the stable machine-readable identifier surfaced to API callers,
    `status_code` is the HTTP status the API layer maps it to.
    """

    code = "AFFILIATE_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"error": self.code, "message": self.message}
        detail.update({k: v for k, v in self.context.items() if v is not None})
        return detail


class ConfigurationError(AffiliateError):
    """Commission rules are missing required fields. Not retryable."""

    code = "CONFIGURATION_ERROR"
    status_code = 422


class ValidationError(AffiliateError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Invalid status transition from {current} to {target}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class NotFoundError(AffiliateError):
    code = "NOT_FOUND"
    status_code = 404


class DuplicateError(AffiliateError):
    """Already recorded: conversion key conflict or pre-existing commission."""

    code = "DUPLICATE"
    status_code = 409


class InfrastructureError(AffiliateError):
    """Datastore unavailable. Writes must be retried by the caller."""

    code = "INFRASTRUCTURE_ERROR"
    status_code = 503
