"""
Exception types raised by the session uploader.

Everything derives from ``SessionUploadError`` so the CLI has a single
place to decide whether a failure skips a job, aborts the run, or is
reported at the end.
"""

import ssl
from pathlib import Path
from typing import Optional

import httpx
from botocore.exceptions import (
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    SSLError as BotoSSLError,
)


class SessionUploadError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Targets / manifests
# ---------------------------------------------------------------------------

class MalformedTargetError(SessionUploadError):
    def __init__(self, target: str, missing: str) -> None:
        self.target = target
        self.missing = missing
        super().__init__(f"Upload target '{target}' does not contain '{missing}'")


class ManifestParseError(SessionUploadError):
    """A candidate XML file could not be read as a session manifest.

    Provisional until the resolver has seen every manifest in the tree:
    the file may simply be auxiliary XML referenced by one of them.
    """

    def __init__(self, path: Path, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


class ManifestResolutionError(SessionUploadError):
    def __init__(self, errors: dict) -> None:
        self.errors = dict(errors)
        names = ", ".join(str(p) for p in sorted(self.errors))
        super().__init__(f"{len(self.errors)} XML file(s) are not valid manifests: {names}")


class MissingReferencedFileError(SessionUploadError):
    def __init__(self, path: Path, manifest: Path) -> None:
        self.path = Path(path)
        self.manifest = Path(manifest)
        super().__init__(f"File does not exist: {self.path} (referenced by {self.manifest.name})")


# ---------------------------------------------------------------------------
# REST job resource
# ---------------------------------------------------------------------------

class UnexpectedStatusError(SessionUploadError):
    def __init__(self, operation: str, expected: int, actual: int, body: Optional[str]) -> None:
        self.operation = operation
        self.expected = expected
        self.actual = actual
        self.body = body
        super().__init__(
            f"{operation}: expected HTTP {expected}, got {actual}. Response body:\n{body or ''}"
        )


class AuthenticationError(SessionUploadError):
    pass


# ---------------------------------------------------------------------------
# Multipart transfer
# ---------------------------------------------------------------------------

class TransferError(SessionUploadError):
    def __init__(self, message: str, key: str, upload_id: Optional[str] = None) -> None:
        self.key = key
        self.upload_id = upload_id
        super().__init__(message)


class TransferOpenError(TransferError):
    pass


class TransferPartError(TransferError):
    def __init__(self, message: str, key: str, upload_id: Optional[str], part_number: int) -> None:
        self.part_number = part_number
        super().__init__(message, key, upload_id)


class TransferCloseError(TransferError):
    pass


class EmptyFileError(TransferError):
    pass


class LocalFileError(SessionUploadError):
    """A local file could not be inspected or read."""

    def __init__(self, path: Path, reason: OSError) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Cannot read {self.path}: {reason}")


# ---------------------------------------------------------------------------
# Transport / run control
# ---------------------------------------------------------------------------

class TransportError(SessionUploadError):
    """The request never produced an HTTP response."""


class TransportTimeoutError(TransportError):
    pass


class TransportConnectionError(TransportError):
    pass


class TransportTLSError(TransportError):
    pass


class PollTimeoutError(SessionUploadError):
    pass


class OperationCancelledError(SessionUploadError):
    pass


def _is_tls_failure(exc: BaseException) -> bool:
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, ssl.SSLError):
            return True
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return False


def classify_httpx_error(exc: httpx.TransportError, what: str) -> TransportError:
    """Map an httpx transport failure onto a TransportError subclass."""
    detail = f"{what}: {type(exc).__name__}: {exc}"
    if isinstance(exc, httpx.TimeoutException):
        return TransportTimeoutError(detail)
    if _is_tls_failure(exc) or "CERTIFICATE_VERIFY_FAILED" in str(exc):
        return TransportTLSError(detail)
    return TransportConnectionError(detail)


def classify_botocore_error(exc: Exception, what: str) -> TransportError:
    """Map a botocore connection failure onto a TransportError subclass."""
    detail = f"{what}: {type(exc).__name__}: {exc}"
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return TransportTimeoutError(detail)
    if isinstance(exc, BotoSSLError) or _is_tls_failure(exc):
        return TransportTLSError(detail)
    return TransportConnectionError(detail)


# botocore failures that mean "no response arrived", as opposed to an error reply
BOTO_TRANSPORT_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, BotoSSLError)
