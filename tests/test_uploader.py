import json
import logging
import signal
from pathlib import Path

import pytest

from conftest import v1_manifest
from session_uploader import config, uploader
from session_uploader.config import Config
from session_uploader.errors import ManifestResolutionError, SessionUploadError
from session_uploader.jobs import UploadJob, UploadState
from session_uploader.orchestrator import ManifestOutcome


@pytest.fixture
def cfg(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    for name in ("SERVER_DNS", "FOLDER_ID", "AUTH_COOKIE", "UPLOAD_USERNAME", "UPLOAD_PASSWORD",
                 "CONTINUE_ON_ERROR", "CONCURRENCY", "POLL_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOG_PATH", str(tmp_path / "logs"))
    return Config()


@pytest.fixture
def app_logger():
    yield logging.getLogger("session_uploader")
    app = logging.getLogger("session_uploader")
    for handler in list(app.handlers):
        app.removeHandler(handler)
        handler.close()


def test_save_results_writes_json_atomically(tmp_path):
    a, b = Path("/data/a.xml"), Path("/data/b.xml")
    job_a = UploadJob(id="job-1", state=UploadState.UPLOAD_COMPLETE, folder_id="f")
    outcomes = [
        ManifestOutcome(manifest=a, job=job_a, skipped=[Path("/data/missing.png")]),
        ManifestOutcome(manifest=b, error=SessionUploadError("boom")),
    ]
    final = {a: job_a.model_copy(update={"state": UploadState.COMPLETE, "session_id": "sess-1"})}
    out = tmp_path / "results.json"

    uploader.save_results(out, outcomes, final)

    records = json.loads(out.read_text(encoding="utf-8"))
    assert records[0]["manifest"] == "a.xml"
    assert records[0]["state"] == "Complete"
    assert records[0]["upload"]["State"] == 4
    assert records[0]["upload"]["SessionId"] == "sess-1"
    assert records[0]["skipped"] == [str(Path("/data/missing.png"))]
    assert records[1] == {"manifest": "b.xml", "state": None, "upload": None, "skipped": [], "error": "boom"}
    assert not (tmp_path / "results.json.tmp").exists()


def test_overrides_take_precedence(cfg):
    args = uploader._parse_args(
        ["/data", "--server", "other.example.com", "--folder-id", "f-2", "--continue-on-error",
         "--concurrency", "8", "--poll-timeout", "600"]
    )
    uploader._apply_overrides(cfg, args)

    assert cfg.server_dns == "other.example.com"
    assert cfg.folder_id == "f-2"
    assert cfg.concurrency == 8
    assert cfg.poll_timeout == 600
    assert cfg.policy.value == "lenient"


def test_overrides_are_validated(cfg):
    args = uploader._parse_args(["/data", "--concurrency", "0"])
    with pytest.raises(ValueError):
        uploader._apply_overrides(cfg, args)


def test_dry_run_lists_without_contacting_server(cfg, write, tmp_path, logger, caplog):
    write("s/session.xml", v1_manifest(videos=["lecture.mp4"]))

    with caplog.at_level(logging.INFO, logger=logger.name):
        code = uploader.run(cfg, tmp_path, logger, dry_run=True)

    assert code == uploader.EXIT_OK
    assert "lecture.mp4  (missing)" in caplog.text


def test_strict_run_stops_on_invalid_xml(cfg, write, tmp_path, logger):
    write("s/session.xml", v1_manifest(videos=["lecture.mp4"]))
    write("s/broken.xml", "<broken")

    with pytest.raises(ManifestResolutionError):
        uploader.run(cfg, tmp_path, logger)


def test_run_requires_server(cfg, write, tmp_path, logger):
    write("s/session.xml", v1_manifest(videos=["lecture.mp4"]))
    with pytest.raises(ValueError, match="SERVER_DNS"):
        uploader.run(cfg, tmp_path, logger)


def test_run_without_manifests_is_a_no_op(cfg, tmp_path, logger):
    assert uploader.run(cfg, tmp_path, logger) == uploader.EXIT_OK


def test_summary_exit_codes(logger):
    a, b = Path("a.xml"), Path("b.xml")
    ok = UploadJob(id="1", state=UploadState.COMPLETE)
    bad = UploadJob(id="2", state=UploadState.PROCESSING_ERROR)

    assert uploader._summarize(logger, [ManifestOutcome(a, ok)], {a: ok}) == uploader.EXIT_OK
    assert uploader._summarize(
        logger, [ManifestOutcome(a, ok), ManifestOutcome(b, bad)], {a: ok, b: bad}
    ) == uploader.EXIT_PARTIAL
    assert uploader._summarize(
        logger, [ManifestOutcome(a, ok), ManifestOutcome(b, error=SessionUploadError("x"))], {a: ok}
    ) == uploader.EXIT_PARTIAL


class TestMain:
    @pytest.fixture(autouse=True)
    def no_signal_handlers(self, monkeypatch):
        monkeypatch.setattr(signal, "signal", lambda *args: None)

    def test_dry_run_exits_cleanly(self, cfg, app_logger, write, tmp_path):
        write("sessions/s.xml", v1_manifest(videos=["v.mp4"]))
        with pytest.raises(SystemExit) as info:
            uploader.main([str(tmp_path / "sessions"), "--dry-run"])
        assert info.value.code == uploader.EXIT_OK
        assert (tmp_path / "logs" / "session_uploader.log").exists()

    def test_missing_directory_is_fatal(self, cfg, app_logger, tmp_path):
        with pytest.raises(SystemExit) as info:
            uploader.main([str(tmp_path / "nope")])
        assert info.value.code == uploader.EXIT_FATAL

    def test_invalid_configuration_is_fatal(self, cfg, app_logger, monkeypatch, tmp_path):
        monkeypatch.setenv("CONCURRENCY", "0")
        with pytest.raises(SystemExit) as info:
            uploader.main([str(tmp_path)])
        assert info.value.code == uploader.EXIT_FATAL

    def test_missing_credentials_is_fatal(self, cfg, app_logger, monkeypatch, write, tmp_path):
        write("sessions/s.xml", v1_manifest(videos=["v.mp4"]))
        write("sessions/v.mp4", b"data")
        monkeypatch.setenv("SERVER_DNS", "demo.example.com")
        monkeypatch.setenv("FOLDER_ID", "f-1")
        with pytest.raises(SystemExit) as info:
            uploader.main([str(tmp_path / "sessions")])
        assert info.value.code == uploader.EXIT_FATAL
