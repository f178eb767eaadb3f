"""
Failure taxonomy for ipamsync.

Every failure is scoped to a single reconciliation call and carries enough
context (operation, entity kind, ID or name) to diagnose it. Nothing here
is retried.
"""

from typing import Any


class IPAMError(Exception):
    """Base exception for all ipamsync failures."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        kind: str = "",
        identifier: str = "",
    ) -> None:
        self.message = message
        self.operation = operation
        self.kind = kind
        self.identifier = identifier
        super().__init__(message)

    def with_context(
        self, operation: str = "", kind: str = "", identifier: str = ""
    ) -> "IPAMError":
        """Fill in context fields that are not already set. Returns self."""
        self.operation = self.operation or operation
        self.kind = self.kind or kind
        self.identifier = self.identifier or identifier
        return self

    def describe(self) -> str:
        """Human-readable one-liner including context."""
        prefix = " ".join(p for p in (self.operation, self.kind, self.identifier) if p)
        return f"{prefix}: {self.message}" if prefix else self.message


class ValidationError(IPAMError):
    """Desired state is malformed. Raised before any remote call."""


class DependencyError(IPAMError):
    """A reference points at an entity that is absent or failed to apply."""


class AmbiguousLookupError(IPAMError):
    """A name- or list-based lookup did not yield exactly one match."""

    def __init__(self, message: str, *, matches: int, **context: Any) -> None:
        self.matches = matches
        super().__init__(message, **context)


class RemoteInconsistencyError(IPAMError):
    """The remote service returned something that contradicts the request.

    The entity the service returned is kept on the exception so the caller
    can still record it: the remote object exists.
    """

    def __init__(self, message: str, *, entity: Any = None, **context: Any) -> None:
        self.entity = entity
        super().__init__(message, **context)


# --- Remote failures ---


class RemoteError(IPAMError):
    """A remote call failed. Base for rejections and transport failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        method: str = "",
        path: str = "",
        **context: Any,
    ) -> None:
        self.status_code = status_code
        self.method = method
        self.path = path
        super().__init__(message, **context)

    @property
    def status_class(self) -> str:
        """HTTP status class ("4xx", "5xx"), or "transport" when no response arrived."""
        if self.status_code is None:
            return "transport"
        return f"{self.status_code // 100}xx"

    def describe(self) -> str:
        base = super().describe()
        if self.method and self.path:
            return f"{base} (API {self.method} {self.path}, {self.status_class})"
        return base


class RemoteRejectionError(RemoteError):
    """The remote service rejected the request (4xx)."""


class NotFoundError(RemoteRejectionError):
    """The remote service reported the entity does not exist (404)."""


class ConflictError(RemoteRejectionError):
    """The remote service reported a conflict (409), e.g. overlapping CIDRs."""


class TransportError(RemoteError):
    """Connection failure, timeout, or a 5xx response."""
