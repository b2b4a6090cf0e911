"""
Tracebar Faults - structured error types.

Defines:
- Severity levels
- FaultDomain (explicit fault domains)
- Fault base class (structured fault objects)
- Concrete faults raised by the toolbar itself
- abort() helper and fault -> HTTP status mapping
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any, Optional


class Severity(str, Enum):
    """
    Fault severity levels.

    Determines the logging level used when a fault is reported.
    """
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class FaultDomain:
    """
    Fault domains (taxonomy).

    Identifies the functional area where a fault occurred.
    """

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.value = name
        self.description = description

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"FaultDomain(name='{self.name}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, FaultDomain):
            return self.name == other.name
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(self.name)


# Standard Domains
FaultDomain.CONFIG = FaultDomain("config", "Configuration errors")
FaultDomain.ROUTING = FaultDomain("routing", "Route matching errors")
FaultDomain.FLOW = FaultDomain("flow", "Handler execution errors")
FaultDomain.IO = FaultDomain("io", "I/O operations")
FaultDomain.SECURITY = FaultDomain("security", "Security and auth")
FaultDomain.SYSTEM = FaultDomain("system", "System level faults")


DOMAIN_DEFAULTS = {
    FaultDomain.CONFIG: Severity.FATAL,
    FaultDomain.ROUTING: Severity.ERROR,
    FaultDomain.FLOW: Severity.ERROR,
    FaultDomain.IO: Severity.WARN,
    FaultDomain.SECURITY: Severity.ERROR,
    FaultDomain.SYSTEM: Severity.FATAL,
}


class Fault(Exception):
    """
    Base fault class - structured, typed fault object.

    Attributes:
        code: Stable machine-readable identifier (e.g., "ASSET_NOT_FOUND")
        message: Human-readable summary
        severity: Fault severity (INFO, WARN, ERROR, FATAL)
        domain: Fault domain (CONFIG, ROUTING, FLOW, ...)
        public: Whether safe to expose to client
        metadata: Additional context data
    """

    def __init__(
        self,
        code: str | None = None,
        message: str | None = None,
        *,
        domain: FaultDomain | None = None,
        severity: Optional[Severity] = None,
        public: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ):
        # Fallback to class attributes if not provided
        self.code = code if code is not None else getattr(self, "code", None)
        self.message = message if message is not None else getattr(self, "message", None)
        self.domain = domain if domain is not None else getattr(self, "domain", None)

        if self.code is None or self.message is None or self.domain is None:
            raise TypeError(f"{self.__class__.__name__} missing required code, message, or domain")

        super().__init__(self.message)

        self.severity = severity or DOMAIN_DEFAULTS.get(self.domain, Severity.ERROR)
        self.public = public
        self.metadata = metadata or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"Fault(code={self.code!r}, domain={self.domain.value}, "
            f"severity={self.severity.value}, public={self.public})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a JSON error body."""
        return {
            "code": self.code,
            "message": self.message,
            "domain": self.domain.value,
            "severity": self.severity.value,
        }


class TraceConfigFault(Fault):
    """Invalid toolbar configuration."""
    code = "TRACE_CONFIG_INVALID"
    message = "Invalid trace configuration"
    domain = FaultDomain.CONFIG

    def __init__(self, message: str = None, **metadata):
        super().__init__(
            code=self.code,
            message=message or self.message,
            metadata=metadata,
        )


class AssetNotFound(Fault):
    """Requested panel asset does not exist."""
    code = "ASSET_NOT_FOUND"
    message = "Asset not found"
    domain = FaultDomain.ROUTING

    def __init__(self, name: str):
        super().__init__(
            code=self.code,
            message=f"Asset '{name}' not found",
            public=True,
            metadata={"name": name},
        )


class HTTPAbort(Fault):
    """
    Short-circuits a handler with an HTTP status.

    Raised by ``abort()``. It never goes through the report phase: the
    middleware renders it directly.
    """
    code = "HTTP_ABORT"
    domain = FaultDomain.FLOW

    def __init__(self, status_code: int, message: str | None = None, **metadata):
        self.status_code = status_code
        super().__init__(
            code=self.code,
            message=message or _default_reason(status_code),
            severity=Severity.WARN if status_code < 500 else Severity.ERROR,
            public=True,
            metadata=metadata,
        )


def abort(status_code: int, message: str | None = None, **metadata) -> None:
    """Abort the current request with ``status_code``."""
    raise HTTPAbort(status_code, message, **metadata)


def _default_reason(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def fault_status(exc: BaseException) -> int:
    """Map an exception to the HTTP status it should be rendered with."""
    if isinstance(exc, HTTPAbort):
        return exc.status_code
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and 400 <= status < 600:
        return status
    if isinstance(exc, Fault):
        if exc.domain == FaultDomain.ROUTING:
            return 404
        if exc.domain == FaultDomain.SECURITY:
            return 403
        if exc.domain == FaultDomain.IO:
            return 502
    return 500
