"""
Polls upload jobs until the server reports a terminal state for each.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from .config import ErrorPolicy
from .errors import OperationCancelledError, PollTimeoutError, SessionUploadError
from .jobs import UploadJob, UploadJobClient

DEFAULT_POLL_INTERVAL = 10.0


class StatusPoller:
    def __init__(
        self,
        job_client: UploadJobClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: Optional[float] = None,
        policy: ErrorPolicy = ErrorPolicy.STRICT,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None,
        on_update: Optional[Callable[[Path, UploadJob], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_client = job_client
        self.interval = interval
        self.timeout = timeout or None
        self.policy = policy
        self.logger = logger or logging.getLogger("session_uploader")
        self.cancel_event = cancel_event or threading.Event()
        self.on_update = on_update
        self.clock = clock

    def poll(self, jobs: dict[Path, UploadJob]) -> dict[Path, UploadJob]:
        """Re-read every unfinished job each round until all are terminal.

        Jobs already terminal are never read again.  Under LENIENT policy a
        job whose read fails is reported and dropped from the result; under
        STRICT the failure propagates.
        """
        tracked = dict(jobs)
        deadline = self.clock() + self.timeout if self.timeout else None

        while any(not job.state.is_terminal for job in tracked.values()):
            self.logger.info("")
            for i, (manifest, job) in enumerate(list(tracked.items())):
                if job.state.is_terminal:
                    continue
                try:
                    fresh = self.job_client.read(job.id)
                except SessionUploadError as exc:
                    if self.policy is ErrorPolicy.STRICT:
                        raise
                    self.logger.error(f"Upload {i} ({manifest.name}): status read failed, dropping it: {exc}")
                    del tracked[manifest]
                    continue

                if not job.state.can_reach(fresh.state):
                    self.logger.warning(
                        f"Upload {i} ({manifest.name}) moved from {job.state.value} to "
                        f"{fresh.state.value}, which the upload lifecycle does not allow."
                    )
                tracked[manifest] = fresh
                self._report(i, manifest, fresh)

            if all(job.state.is_terminal for job in tracked.values()):
                break
            if deadline is not None and self.clock() >= deadline:
                pending = [m.name for m, j in tracked.items() if not j.state.is_terminal]
                raise PollTimeoutError(
                    f"{len(pending)} upload(s) still processing after {self.timeout:g}s: {', '.join(pending)}"
                )
            if self.cancel_event.wait(self.interval):
                raise OperationCancelledError("Status polling cancelled.")

        return tracked

    def _report(self, index: int, manifest: Path, job: UploadJob) -> None:
        session = f" (session id = {job.session_id})" if job.session_id else ""
        self.logger.info(f"Upload {index} ({manifest.name}) processing state is {job.state.value}{session}.")
        if job.message:
            log = self.logger.error if job.state.is_error else self.logger.info
            log(f"Upload {index} ({manifest.name}) processing message is {job.message}.")
        if self.on_update is not None:
            self.on_update(manifest, job)
