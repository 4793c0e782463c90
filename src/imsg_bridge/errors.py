"""Bridge exception taxonomy."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BridgeError(RuntimeError):
    """Base class for bridge failures raised to callers."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self._details: Dict[str, Any] = {}
        for key, value in details.items():
            if value is None:
                continue
            self._details[str(key)] = value

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self._details)


def error_summary(exc: BaseException) -> str:
    segments = [str(exc) or exc.__class__.__name__]
    if isinstance(exc, BridgeError):
        for key in ("method", "code", "request_id"):
            value = exc.details.get(key)
            if value in ("", None):
                continue
            segments.append("{0}={1}".format(key, value))
    return " | ".join(segments)


class StartupFailure(BridgeError):
    """Raised when the `imsg rpc` subprocess cannot be spawned or dies at launch."""


class NotRunning(BridgeError):
    """Raised when an rpc call is attempted without a live subprocess."""


class RpcError(BridgeError):
    """Raised when the backend answers a request with an error envelope."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        **details: Any,
    ) -> None:
        super().__init__(message, code=code, **details)
        self.code = code
        self.data = data


class RpcTimeout(BridgeError):
    """Raised when no response arrives before the request deadline."""


class ProcessTerminated(BridgeError):
    """Raised for in-flight calls when the subprocess exits or is stopped."""


class BackendFault(BridgeError):
    """Backend-side fault pushed through an `error` notification."""


class HostInjectError(BridgeError):
    """Raised by a host when it cannot produce a response."""


class ConfigError(BridgeError):
    """Raised when project configuration is missing or invalid."""
