from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for errors raised by the reconciliation core."""


class InvalidInputError(ReconciliationError, ValueError):
    """Raised for malformed wallet addresses, token ids or token keys."""


def describe_failure(exc: BaseException) -> str:
    # asyncio.TimeoutError carries no message.
    return str(exc) or exc.__class__.__name__


__all__ = ["InvalidInputError", "ReconciliationError", "describe_failure"]
