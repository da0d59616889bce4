"""
Error types for xping.

Every error here is fatal for a run: the CLI prints the message and
details, tears the proxy process down and exits with status 1.
Per-probe failures are not exceptions, see ``xping.prober.ProbeResult``.
"""

from typing import Optional


class XpingError(Exception):
    """Base class for fatal run errors."""

    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])


class BinaryNotFound(XpingError):
    """Raised when the xray binary cannot be invoked."""

    def __init__(self, searched: str):
        super().__init__("Xray not found!", [f"Searched for: {searched}"])
        self.searched = searched


class MalformedDescriptor(XpingError):
    """Raised when a vless:// URL is missing a required segment."""
    pass


class InputNotRecognized(XpingError):
    """Raised when the input is neither a vless:// URL nor an existing file."""
    pass


class NoProxyOutbound(XpingError):
    """Raised when a config file has no vless/vmess/trojan outbound."""
    pass


class NoLocalInbound(XpingError):
    """Raised when a config file has no http/mixed/socks inbound to probe through."""
    pass


class InvalidJSON(XpingError):
    """Raised when a config file is not well-formed JSON."""
    pass


class ConfigValidationFailed(XpingError):
    """Raised when ``xray -test`` rejects a configuration."""
    pass


class ProcessLaunchFailed(XpingError):
    """Raised when xray cannot be spawned or reports a fatal startup error."""
    pass


class ProcessExitedEarly(XpingError):
    """Raised when xray exits before it is ready, or at any point afterwards."""

    def __init__(self, exit_code: Optional[int], details: Optional[list[str]] = None):
        super().__init__(f"Xray exited with code: {exit_code}", details)
        self.exit_code = exit_code


class StartupTimeout(XpingError):
    """Raised when xray shows no readiness signal before the startup deadline."""
    pass
