"""
The ``sessionUpload`` REST resource: one server-side job per manifest.
"""

import enum
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .config import TransportConfig
from .errors import UnexpectedStatusError, classify_httpx_error

URI_STEM_FORMAT = "https://{server}/Panopto/PublicAPI/REST"
AUTH_COOKIE_NAME = ".ASPXAUTH"
JOB_NOUN = "sessionUpload"


class UploadState(str, enum.Enum):
    # declaration order matches the server's integer codes
    UPLOADING = "Uploading"
    UPLOAD_COMPLETE = "UploadComplete"
    UPLOAD_CANCELLED = "UploadCancelled"
    PROCESSING = "Processing"
    COMPLETE = "Complete"
    PROCESSING_ERROR = "ProcessingError"
    DELETING_FILES = "DeletingFiles"
    DELETED = "Deleted"
    DELETING_ERROR = "DeletingError"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_error(self) -> bool:
        return self in (UploadState.PROCESSING_ERROR, UploadState.DELETING_ERROR)

    def can_reach(self, other: "UploadState") -> bool:
        """True if ``other`` is this state or reachable from it in the lifecycle graph."""
        seen = {self}
        frontier = [self]
        while frontier:
            for nxt in _TRANSITIONS[frontier.pop()]:
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        return other in seen


TERMINAL_STATES = frozenset({
    UploadState.COMPLETE,
    UploadState.PROCESSING_ERROR,
    UploadState.UPLOAD_CANCELLED,
    UploadState.DELETED,
    UploadState.DELETING_ERROR,
})

_TRANSITIONS: dict[UploadState, frozenset] = {
    UploadState.UPLOADING: frozenset({
        UploadState.UPLOAD_COMPLETE, UploadState.UPLOAD_CANCELLED, UploadState.DELETING_FILES,
    }),
    UploadState.UPLOAD_COMPLETE: frozenset({
        UploadState.PROCESSING, UploadState.UPLOAD_CANCELLED, UploadState.DELETING_FILES,
    }),
    UploadState.PROCESSING: frozenset({
        UploadState.COMPLETE, UploadState.PROCESSING_ERROR,
        UploadState.UPLOAD_CANCELLED, UploadState.DELETING_FILES,
    }),
    UploadState.UPLOAD_CANCELLED: frozenset({UploadState.DELETING_FILES}),
    UploadState.COMPLETE: frozenset({UploadState.DELETING_FILES}),
    UploadState.PROCESSING_ERROR: frozenset({UploadState.DELETING_FILES}),
    UploadState.DELETING_FILES: frozenset({UploadState.DELETED, UploadState.DELETING_ERROR}),
    UploadState.DELETED: frozenset(),
    UploadState.DELETING_ERROR: frozenset(),
}

_STATE_BY_CODE = list(UploadState)


class UploadJob(BaseModel):
    """Wire form of a session upload; field aliases are the server's JSON names."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="ID")
    message_id: Optional[int] = Field(default=None, alias="MessageID")
    message: Optional[str] = Field(default=None, alias="Message")
    upload_target: Optional[str] = Field(default=None, alias="UploadTarget")
    state: UploadState = Field(default=UploadState.UPLOADING, alias="State")
    folder_id: Optional[str] = Field(default=None, alias="FolderId")
    session_id: Optional[str] = Field(default=None, alias="SessionId")

    @field_validator("state", mode="before")
    @classmethod
    def _state_from_code(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            if not 0 <= value < len(_STATE_BY_CODE):
                raise ValueError(f"unknown upload state code {value}")
            return _STATE_BY_CODE[value]
        return value

    @field_serializer("state")
    def _state_to_code(self, state: UploadState) -> int:
        # the server reads and writes states as integer codes
        return _STATE_BY_CODE.index(state)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class UploadJobClient:
    """Create, read, update and delete ``sessionUpload`` jobs."""

    def __init__(
        self,
        server_dns: str,
        auth_cookie: str,
        transport_config: TransportConfig = TransportConfig(),
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.logger = logger or logging.getLogger("session_uploader")
        self._client = httpx.Client(
            base_url=URI_STEM_FORMAT.format(server=server_dns),
            headers={"Content-Type": "application/json; charset=utf-8"},
            cookies={AUTH_COOKIE_NAME: auth_cookie} if auth_cookie else None,
            verify=transport_config.verify_tls,
            timeout=httpx.Timeout(
                transport_config.read_timeout, connect=transport_config.connect_timeout
            ),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "UploadJobClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    def create(self, folder_id: str) -> UploadJob:
        job = UploadJob(folder_id=folder_id)
        return self._send("create", "POST", JOB_NOUN, 201, job)

    def read(self, job_id: str) -> UploadJob:
        return self._send("read", "GET", f"{JOB_NOUN}/{job_id}", 200)

    def update(self, job_id: str, job: UploadJob) -> UploadJob:
        return self._send("update", "PUT", f"{JOB_NOUN}/{job_id}", 200, job)

    def delete(self, job_id: str) -> UploadJob:
        return self._send("delete", "DELETE", f"{JOB_NOUN}/{job_id}", 200)

    def mark_upload_complete(self, job: UploadJob) -> UploadJob:
        """Tell the server every file is in place and processing may start."""
        body = job.model_copy(update={"state": UploadState.UPLOAD_COMPLETE})
        return self.update(job.id, body)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _send(
        self,
        operation: str,
        method: str,
        path: str,
        expected: int,
        body: Optional[UploadJob] = None,
    ) -> UploadJob:
        what = f"{method} {path}"
        try:
            resp = self._client.request(
                method,
                path,
                json=body.to_wire() if body is not None else None,
            )
        except httpx.TransportError as exc:
            raise classify_httpx_error(exc, what) from exc

        self.logger.debug(f"{what} -> HTTP {resp.status_code}")
        if resp.status_code != expected:
            raise UnexpectedStatusError(f"{operation} {JOB_NOUN}", expected, resp.status_code, resp.text)

        try:
            return UploadJob.model_validate(resp.json())
        except ValueError as exc:
            # pydantic.ValidationError and json.JSONDecodeError are both ValueErrors
            raise UnexpectedStatusError(
                f"{operation} {JOB_NOUN} (unparsable body: {exc})", expected, resp.status_code, resp.text
            ) from exc
