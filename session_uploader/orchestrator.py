"""
Upload orchestration: one job per manifest, every file transferred,
then the job handed to the server for processing.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import ErrorPolicy
from .errors import (
    EmptyFileError,
    LocalFileError,
    MissingReferencedFileError,
    OperationCancelledError,
    SessionUploadError,
)
from .jobs import UploadJob, UploadJobClient
from .targets import object_key, service_endpoint
from .transfer import MultipartTransferEngine


@dataclass
class ManifestOutcome:
    manifest: Path
    job: Optional[UploadJob] = None
    uploaded: list[Path] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)
    error: Optional[SessionUploadError] = None

    @property
    def submitted(self) -> bool:
        return self.error is None and self.job is not None


class UploadOrchestrator:
    def __init__(
        self,
        job_client: UploadJobClient,
        engine: MultipartTransferEngine,
        folder_id: str,
        policy: ErrorPolicy = ErrorPolicy.STRICT,
        job_workers: int = 1,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.job_client = job_client
        self.engine = engine
        self.folder_id = folder_id
        self.policy = policy
        self.job_workers = job_workers
        self.logger = logger or logging.getLogger("session_uploader")
        self.cancel_event = cancel_event or threading.Event()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def upload_all(self, referenced_files: dict[Path, list[Path]]) -> list[ManifestOutcome]:
        """Upload every manifest with its files.

        Under STRICT policy the first failure propagates.  Under LENIENT the
        failure is logged, recorded on the outcome, and the rest continue.
        """
        items = list(referenced_files.items())
        if self.job_workers <= 1 or len(items) <= 1:
            return [self._upload_guarded(manifest, files) for manifest, files in items]

        with ThreadPoolExecutor(max_workers=self.job_workers) as pool:
            futures = [pool.submit(self._upload_guarded, manifest, files) for manifest, files in items]
            try:
                return [f.result() for f in futures]
            except BaseException:
                self.cancel_event.set()
                for f in futures:
                    f.cancel()
                raise

    def upload_manifest(
        self, manifest: Path, files: list[Path], outcome: Optional[ManifestOutcome] = None
    ) -> ManifestOutcome:
        """Create a job, transfer the manifest and its files, mark the job complete."""
        outcome = outcome or ManifestOutcome(manifest=manifest)
        to_upload = [manifest] + self._existing_files(manifest, files, outcome)

        self.logger.info("")
        self.logger.info(f"Uploading {manifest} and {len(to_upload) - 1} file(s)")

        job = self.job_client.create(self.folder_id)
        outcome.job = job
        self.logger.info(f"Created upload {job.id} at {job.upload_target}. Uploading files now.")

        for file_path in to_upload:
            if self.cancel_event.is_set():
                raise OperationCancelledError(f"Upload of {manifest.name} cancelled.")
            self.transfer_file(job.upload_target, file_path)
            outcome.uploaded.append(file_path)

        self.logger.info(f"All files of {manifest.name} finished. Telling server to process files now.")
        outcome.job = self.job_client.mark_upload_complete(job)
        return outcome

    def transfer_file(self, upload_target: str, file_path: Path) -> dict:
        """Move one file to the job's storage location, aborting the session on failure."""
        endpoint = service_endpoint(upload_target)
        key = object_key(upload_target, str(file_path))
        try:
            size = file_path.stat().st_size
        except OSError as exc:
            raise LocalFileError(file_path, exc) from exc
        self.logger.info(f"Uploading {file_path.name} ({size:,} bytes) -> {key}")

        upload_id = self.engine.open(endpoint, key)
        try:
            parts = self.engine.send_parts(endpoint, key, upload_id, file_path)
            result = self.engine.close(endpoint, key, upload_id, parts)
        except BaseException as exc:
            self.logger.error(f"Transfer of {file_path.name} failed: {exc}")
            self.engine.abort(endpoint, key, upload_id)
            raise
        self.logger.info(f"Uploaded {file_path.name} in {len(parts)} part(s).")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _upload_guarded(self, manifest: Path, files: list[Path]) -> ManifestOutcome:
        outcome = ManifestOutcome(manifest=manifest)
        try:
            return self.upload_manifest(manifest, files, outcome)
        except OperationCancelledError:
            raise
        except SessionUploadError as exc:
            if self.policy is ErrorPolicy.STRICT:
                raise
            self.logger.error(f"Upload of {manifest.name} failed, continuing with the rest: {exc}")
            outcome.error = exc
            return outcome

    def _existing_files(self, manifest: Path, files: list[Path], outcome: ManifestOutcome) -> list[Path]:
        """Drop referenced files that are missing or empty, or refuse under STRICT policy."""
        keep = []
        for path in files:
            problem: Optional[SessionUploadError] = None
            try:
                if not path.is_file():
                    problem = MissingReferencedFileError(path, manifest)
                elif path.stat().st_size == 0:
                    problem = EmptyFileError(f"{path} is empty; nothing to upload", path.name)
            except OSError as exc:
                problem = LocalFileError(path, exc)
            if problem is None:
                keep.append(path)
                continue

            self.logger.warning(str(problem))
            if self.policy is ErrorPolicy.STRICT:
                self.logger.error("Fix or remove the invalid file reference before continuing.")
                raise problem
            self.logger.warning("Continuing on error: skipping file.")
            outcome.skipped.append(path)
        return keep
