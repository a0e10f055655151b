"""
Error taxonomy for head commands, key material and transaction building.

Every error carries a ``kind`` tag so callers (CLI, API wrappers) can surface
a structured ``{"kind", "message", ...}`` payload instead of a bare string.
"""
from typing import Any, Dict, List, Optional


class HydraError(Exception):
    """Base class for all errors surfaced by hydrahead"""

    kind = "HydraError"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        data.update({k: v for k, v in self.details.items() if v is not None})
        return data


class InvalidInput(HydraError):
    kind = "InvalidInput"


class KeyNotFound(HydraError):
    kind = "KeyNotFound"

    def __init__(self, message: str, path: Optional[str] = None, party: Optional[str] = None):
        super().__init__(message, path=path, party=party)
        self.path = path
        self.party = party


class SigningKeyNotFound(KeyNotFound):
    kind = "SigningKeyNotFound"


class MalformedKeyFile(HydraError):
    kind = "MalformedKeyFile"


class ChannelTimeout(HydraError):
    kind = "ChannelTimeout"


class ChannelTransportError(HydraError):
    kind = "ChannelTransportError"


class UpstreamUnavailable(HydraError):
    """Connection refused / timeout / network error talking to a party's node"""

    kind = "UpstreamUnavailable"

    def __init__(self, message: str, port: Optional[int] = None, party: Optional[str] = None,
                 reason: str = "network", hint: Optional[str] = None):
        super().__init__(message, port=port, party=party, reason=reason, hint=hint)
        self.port = port
        self.party = party
        self.reason = reason
        self.hint = hint


class UpstreamError(HydraError):
    """Node answered with a non-2xx status"""

    kind = "UpstreamError"

    def __init__(self, message: str, status_code: int, body: Any = None, party: Optional[str] = None):
        super().__init__(message, status_code=status_code, body=body, party=party)
        self.status_code = status_code
        self.body = body
        self.party = party

    @property
    def service_unavailable(self) -> bool:
        return self.status_code >= 500


class CliFailure(HydraError):
    kind = "CliFailure"

    def __init__(self, message: str, command: List[str], stdout: str = "", stderr: str = "",
                 returncode: Optional[int] = None):
        super().__init__(message, command=" ".join(command), stdout=stdout, stderr=stderr,
                         returncode=returncode)
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


class MalformedCliOutput(HydraError):
    kind = "MalformedCliOutput"


class HeadNotOpen(HydraError):
    kind = "HeadNotOpen"


class TransactionRejected(HydraError):
    kind = "TransactionRejected"
