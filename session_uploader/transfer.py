"""
Chunked file transfer over the S3 multipart protocol.

One file goes through open -> send parts -> close.  Parts are read at
fixed offsets and may be sent by several threads at once; confirmation
tags are collected by part number and handed to close in part order, so
completion order never matters.  On any failure the caller aborts the
session to release server-side storage.
"""

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlsplit

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import MiB, TransportConfig
from .errors import (
    BOTO_TRANSPORT_ERRORS,
    EmptyFileError,
    LocalFileError,
    OperationCancelledError,
    TransferCloseError,
    TransferOpenError,
    TransferPartError,
    classify_botocore_error,
)
from .targets import BUCKET_NAME

DEFAULT_PART_SIZE = 5 * MiB

# The storage endpoint ignores credentials but the protocol requires some.
_ACCESS_KEY_ID = "foo"
_SECRET_ACCESS_KEY = "bar"

# granularity at which a backoff wait notices cancellation
_PAUSE_SLICE = 0.2


@dataclass(frozen=True)
class UploadPart:
    part_number: int
    offset: int
    length: int
    etag: Optional[str] = None


def plan_parts(file_size: int, part_size: int) -> list[UploadPart]:
    """Split ``file_size`` bytes into parts numbered from 1; the last may be short."""
    if part_size <= 0:
        raise ValueError("part_size must be positive")
    parts = []
    offset = 0
    number = 1
    while offset < file_size:
        length = min(part_size, file_size - offset)
        parts.append(UploadPart(part_number=number, offset=offset, length=length))
        offset += length
        number += 1
    return parts


def _zero_content_length(request, **kwargs) -> None:
    # Some endpoints reject an initiate request whose Content-Length is absent.
    request.headers["Content-Length"] = "0"


def create_s3_client(endpoint: str, transport_config: TransportConfig, max_connections: int = 10):
    """Build a storage client for a service endpoint derived from an upload target."""
    session = boto3.session.Session()
    client = session.client(
        "s3",
        endpoint_url=endpoint,
        aws_access_key_id=_ACCESS_KEY_ID,
        aws_secret_access_key=_SECRET_ACCESS_KEY,
        region_name="us-east-1",
        use_ssl=urlsplit(endpoint).scheme != "http",
        verify=transport_config.verify_tls,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            connect_timeout=transport_config.connect_timeout,
            read_timeout=transport_config.read_timeout,
            retries={"total_max_attempts": 1},
            max_pool_connections=max_connections,
        ),
    )
    client.meta.events.register(
        "before-sign.s3.CreateMultipartUpload", _zero_content_length
    )
    return client


def _error_text(exc: ClientError) -> str:
    err = exc.response.get("Error", {})
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return f"HTTP {status} {err.get('Code', '')}: {err.get('Message', exc)}"


class MultipartTransferEngine:
    """Drives the open / send-parts / close / abort steps for single files."""

    def __init__(
        self,
        transport_config: TransportConfig = TransportConfig(),
        part_size: int = DEFAULT_PART_SIZE,
        concurrency: int = 4,
        max_retries: int = 3,
        retry_base_delay: float = 2,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None,
        client_factory: Optional[Callable] = None,
    ) -> None:
        self.transport_config = transport_config
        self.part_size = part_size
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.logger = logger or logging.getLogger("session_uploader")
        self.cancel_event = cancel_event or threading.Event()
        self._client_factory = client_factory or (
            lambda endpoint: create_s3_client(
                endpoint, self.transport_config, max_connections=max(10, self.concurrency)
            )
        )
        self._clients: dict = {}
        self._clients_lock = threading.Lock()
        self._parts_sent: dict[str, int] = {}

    def client(self, endpoint: str):
        with self._clients_lock:
            if endpoint not in self._clients:
                self._clients[endpoint] = self._client_factory(endpoint)
            return self._clients[endpoint]

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    def open(self, endpoint: str, key: str) -> str:
        """Start a transfer session for ``key``; return its upload id."""
        try:
            resp = self.client(endpoint).create_multipart_upload(Bucket=BUCKET_NAME, Key=key)
        except ClientError as exc:
            raise TransferOpenError(f"Cannot open upload of {key}: {_error_text(exc)}", key) from exc
        except BOTO_TRANSPORT_ERRORS as exc:
            raise classify_botocore_error(exc, f"open {key}") from exc

        upload_id = resp.get("UploadId")
        if not upload_id:
            raise TransferOpenError(f"Open of {key} returned no upload id", key)
        self.logger.debug(f"Opened upload {upload_id} for {key}")
        return upload_id

    def send_parts(
        self,
        endpoint: str,
        key: str,
        upload_id: str,
        file_path: Path,
        part_size: Optional[int] = None,
    ) -> list[UploadPart]:
        """Upload every part of ``file_path``; return confirmed parts in part order."""
        file_path = Path(file_path)
        part_size = part_size or self.part_size
        try:
            file_size = file_path.stat().st_size
        except OSError as exc:
            raise LocalFileError(file_path, exc) from exc
        if file_size == 0:
            raise EmptyFileError(f"{file_path} is empty; nothing to upload", key, upload_id)

        parts = plan_parts(file_size, part_size)
        total = len(parts)
        client = self.client(endpoint)
        confirmed: dict[int, UploadPart] = {}
        # set on the first failure so sibling parts stop retrying
        stop = threading.Event()

        t0 = time.monotonic()
        bytes_sent = 0
        with ThreadPoolExecutor(max_workers=min(self.concurrency, total)) as pool:
            futures = {
                pool.submit(self._send_part_with_retry, client, key, upload_id, file_path, part, stop): part
                for part in parts
            }
            try:
                for future in as_completed(futures):
                    if self.cancel_event.is_set():
                        raise OperationCancelledError(f"Upload of {file_path.name} cancelled.")
                    done = future.result()
                    confirmed[done.part_number] = done

                    bytes_sent += done.length
                    elapsed = max(time.monotonic() - t0, 0.001)
                    speed_mb = (bytes_sent / elapsed) / MiB
                    eta_s = (file_size - bytes_sent) / (bytes_sent / elapsed)
                    self.logger.debug(
                        f"[{len(confirmed) / total * 100:5.1f}%] {file_path.name} part "
                        f"{done.part_number}/{total}  speed={speed_mb:.1f} MB/s  eta={_fmt_seconds(eta_s)}"
                    )
            except BaseException:
                stop.set()
                for f in futures:
                    f.cancel()
                raise

        self._parts_sent[upload_id] = total
        return [confirmed[n] for n in sorted(confirmed)]

    def close(self, endpoint: str, key: str, upload_id: str, parts: list[UploadPart]) -> dict:
        """Complete the upload with every part's tag, in part order."""
        numbers = [p.part_number for p in parts]
        if not parts or numbers != list(range(1, len(parts) + 1)):
            raise TransferCloseError(
                f"Parts for {key} must be numbered 1..n in order with no gaps; got {numbers}",
                key,
                upload_id,
            )
        if any(not p.etag for p in parts):
            raise TransferCloseError(f"Parts for {key} are missing confirmation tags", key, upload_id)
        expected = self._parts_sent.get(upload_id)
        if expected is not None and expected != len(parts):
            raise TransferCloseError(
                f"{len(parts)} tag(s) given for {key} but {expected} part(s) were sent",
                key,
                upload_id,
            )

        try:
            resp = self.client(endpoint).complete_multipart_upload(
                Bucket=BUCKET_NAME,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [{"ETag": p.etag, "PartNumber": p.part_number} for p in parts]
                },
            )
        except ClientError as exc:
            raise TransferCloseError(f"Cannot complete upload of {key}: {_error_text(exc)}", key, upload_id) from exc
        except BOTO_TRANSPORT_ERRORS as exc:
            raise classify_botocore_error(exc, f"close {key}") from exc

        self._parts_sent.pop(upload_id, None)
        self.logger.debug(f"Closed upload {upload_id} for {key}")
        return resp

    def abort(self, endpoint: str, key: str, upload_id: str) -> None:
        """Best effort: release the session; failures are logged, never raised."""
        self._parts_sent.pop(upload_id, None)
        try:
            self.client(endpoint).abort_multipart_upload(
                Bucket=BUCKET_NAME, Key=key, UploadId=upload_id
            )
        except (ClientError, BotoCoreError) as exc:
            self.logger.warning(f"Abort of upload {upload_id} ({key}) failed: {exc}")
            return
        self.logger.info(f"Aborted upload {upload_id} ({key}).")

    # ------------------------------------------------------------------
    # Part helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_part(file_path: Path, part: UploadPart) -> bytes:
        try:
            with file_path.open("rb") as fh:
                fh.seek(part.offset)
                return fh.read(part.length)
        except OSError as exc:
            raise LocalFileError(file_path, exc) from exc

    def _send_part_with_retry(
        self,
        client,
        key: str,
        upload_id: str,
        file_path: Path,
        part: UploadPart,
        stop: Optional[threading.Event] = None,
    ) -> UploadPart:
        """Upload one part, retrying transport failures with exponential backoff."""
        stop = stop or threading.Event()
        data = self._read_part(file_path, part)
        last_exc: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 2):  # attempt 1 = first try
            if self.cancel_event.is_set() or stop.is_set():
                raise OperationCancelledError(f"Upload of {file_path.name} cancelled.")
            try:
                resp = client.upload_part(
                    Bucket=BUCKET_NAME,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=part.part_number,
                    Body=data,
                    ContentLength=part.length,
                )
                return replace(part, etag=resp["ETag"])
            except BOTO_TRANSPORT_ERRORS as exc:
                last_exc = classify_botocore_error(exc, f"part {part.part_number} of {key}")
                if attempt > self.max_retries:
                    break
                delay = self.retry_base_delay ** attempt
                self.logger.warning(
                    f"Part {part.part_number}: transient error (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay}s: {last_exc}"
                )
                if self._pause(delay, stop):
                    raise OperationCancelledError(f"Upload of {file_path.name} cancelled.")
            except ClientError as exc:
                raise TransferPartError(
                    f"Part {part.part_number} of {key} rejected: {_error_text(exc)}",
                    key,
                    upload_id,
                    part.part_number,
                ) from exc

        raise TransferPartError(
            f"Part {part.part_number} of {key} failed after {self.max_retries} retries: {last_exc}",
            key,
            upload_id,
            part.part_number,
        ) from last_exc

    def _pause(self, delay: float, stop: threading.Event) -> bool:
        """Sleep up to ``delay`` seconds; return True early if the run or this transfer is stopped."""
        deadline = time.monotonic() + delay
        while not (self.cancel_event.is_set() or stop.is_set()):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            stop.wait(min(remaining, _PAUSE_SLICE))
        return True


def _fmt_seconds(s: float) -> str:
    if s <= 0 or math.isinf(s):
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"
