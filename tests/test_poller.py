import logging
import threading
from pathlib import Path

import pytest

from session_uploader.config import ErrorPolicy
from session_uploader.errors import OperationCancelledError, PollTimeoutError, UnexpectedStatusError
from session_uploader.jobs import UploadState
from session_uploader.poller import StatusPoller

A = Path("/data/a.xml")
B = Path("/data/b.xml")


def submitted(job_client, count=1):
    jobs = []
    for _ in range(count):
        jobs.append(job_client.mark_upload_complete(job_client.create("folder-1")))
    return jobs


def test_processing_error_is_reported_and_not_polled_again(job_client, job_server, logger, caplog):
    a, b = submitted(job_client, 2)
    job_server.scripts[a.id] = [
        {"State": 5, "Message": "Unsupported codec", "SessionId": "sess-a"},
    ]
    job_server.scripts[b.id] = [{"State": 3}, {"State": 3}, {"State": 4, "SessionId": "sess-b"}]
    updates = []
    poller = StatusPoller(job_client, interval=0, logger=logger, on_update=lambda m, j: updates.append((m, j.state)))

    with caplog.at_level(logging.INFO, logger=logger.name):
        final = poller.poll({A: a, B: b})

    assert final[A].state is UploadState.PROCESSING_ERROR
    assert final[A].message == "Unsupported codec"
    assert final[B].state is UploadState.COMPLETE
    assert job_server.gets(a.id) == 1
    assert job_server.gets(b.id) == 3
    assert (A, UploadState.PROCESSING_ERROR) in updates
    errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert any("Unsupported codec" in m for m in errors)
    assert "session id = sess-b" in caplog.text


def test_terminal_jobs_are_not_read(job_client, job_server, logger):
    (job,) = submitted(job_client)
    done = job.model_copy(update={"state": UploadState.COMPLETE})

    final = StatusPoller(job_client, interval=0, logger=logger).poll({A: done})

    assert final[A] is done
    assert job_server.gets(job.id) == 0


def test_timeout(job_client, job_server, logger):
    (job,) = submitted(job_client)
    job_server.scripts[job.id] = [{"State": 3}] * 10
    ticks = iter(range(0, 1000, 5))

    poller = StatusPoller(job_client, interval=0, timeout=12, logger=logger, clock=lambda: next(ticks))

    with pytest.raises(PollTimeoutError) as info:
        poller.poll({A: job})
    assert "a.xml" in str(info.value)


def test_cancel_stops_polling(job_client, job_server, logger):
    (job,) = submitted(job_client)
    job_server.scripts[job.id] = [{"State": 3}] * 5
    cancel = threading.Event()
    cancel.set()

    poller = StatusPoller(job_client, interval=60, logger=logger, cancel_event=cancel)
    with pytest.raises(OperationCancelledError):
        poller.poll({A: job})
    assert job_server.gets(job.id) == 1


def test_lenient_drops_unreadable_job(job_client, job_server, logger):
    a, b = submitted(job_client, 2)
    job_server.jobs.pop(a.id)
    job_server.scripts[b.id] = [{"State": 4}]

    final = StatusPoller(job_client, interval=0, policy=ErrorPolicy.LENIENT, logger=logger).poll({A: a, B: b})

    assert list(final) == [B]
    assert final[B].state is UploadState.COMPLETE


def test_strict_propagates_read_failure(job_client, job_server, logger):
    (job,) = submitted(job_client)
    job_server.jobs.pop(job.id)

    with pytest.raises(UnexpectedStatusError):
        StatusPoller(job_client, interval=0, logger=logger).poll({A: job})


def test_backwards_transition_is_warned(job_client, job_server, logger, caplog):
    (job,) = submitted(job_client)
    job_server.scripts[job.id] = [{"State": 3}, {"State": 0}, {"State": 4}]

    with caplog.at_level(logging.WARNING, logger=logger.name):
        final = StatusPoller(job_client, interval=0, logger=logger).poll({A: job})

    assert final[A].state is UploadState.COMPLETE
    assert "moved from Processing to Uploading" in caplog.text
