from __future__ import annotations


class UpstreamError(Exception):
    """Raised when a collaborator API fails (transport, HTTP status, RPC error, bad payload)."""

    def __init__(self, source: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class UpstreamNotConfigured(UpstreamError):
    """Raised when a collaborator has no endpoint configured."""

    def __init__(self, source: str) -> None:
        super().__init__(source, "not configured", status_code=503)


__all__ = ["UpstreamError", "UpstreamNotConfigured"]
