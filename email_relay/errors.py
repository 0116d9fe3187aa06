"""
Exception types raised by the relay
"""


class RelayError(Exception):
    """Base class for relay errors"""


class TransportError(RelayError):
    """Mailbox connectivity failure; retried with backoff"""


class EmailParseError(RelayError):
    """A single message could not be fetched or parsed"""


class InjectionError(RelayError):
    """Base class for injection failures"""

    code = "injection_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail


class SessionNotFoundError(InjectionError):
    code = "session_not_found"


class AutomationUnavailableError(InjectionError):
    code = "automation_unavailable"


class LaunchFailedError(InjectionError):
    code = "launch_failed"


class InjectionFailedError(InjectionError):
    code = "injection_failed"


class RelayAlreadyRunningError(RelayError):
    """Another relay instance holds the lock file"""
