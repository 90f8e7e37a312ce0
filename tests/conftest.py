import itertools
import json
import logging
import threading
from pathlib import Path
from typing import Optional

import httpx
import pytest
from botocore.exceptions import ClientError

from session_uploader.config import TransportConfig
from session_uploader.jobs import UploadJobClient
from session_uploader.transfer import MultipartTransferEngine

V1_NS = "http://panopto.com/PanoptoSession/v1"
V2_NS = "http://panopto.com/PanoptoSession/v2"
SERVER = "demo.example.com"
TARGET_ROOT = f"https://{SERVER}/Panopto/Upload/"


def v1_manifest(videos=(), presentations=(), images=(), attachments=(), transcripts=(), title="Lecture 1"):
    """Render a v1 manifest; transcripts are attached to the first video."""
    def entries(tag, names, extra=""):
        return "".join(
            f"<{tag}><Filename LocalFilename='C:\\src\\{n}'>{n}</Filename>{extra}</{tag}>" for n in names
        )

    transcript_xml = "".join(
        f"<Transcript><Filename>{t}</Filename><LCID>1033</LCID></Transcript>" for t in transcripts
    )
    video_xml = ""
    for i, name in enumerate(videos):
        extra = f"<Transcripts>{transcript_xml}</Transcripts>" if i == 0 and transcripts else ""
        video_xml += (
            f"<Video><Start>PT0S</Start><Filename>{name}</Filename>"
            f"<Type>{'Primary' if i == 0 else 'Secondary'}</Type>{extra}</Video>"
        )
    return (
        f"<?xml version='1.0' encoding='utf-8'?>"
        f"<PanoptoSession xmlns='{V1_NS}'>"
        f"<Title>{title}</Title><Date>2024-03-01T09:00:00Z</Date>"
        f"<Videos>{video_xml}</Videos>"
        f"<Presentations>{entries('Presentation', presentations)}</Presentations>"
        f"<Images>{entries('Image', images, '<Time>PT10S</Time>')}</Images>"
        f"<Tags><Tag>physics</Tag></Tags>"
        f"<Attachments>{entries('Attachment', attachments, '<MimeType>application/pdf</MimeType>')}</Attachments>"
        f"</PanoptoSession>"
    )


def v2_manifest(videos=(), thumbnail=None, attachments=()):
    thumb = f"<Thumbnail>{thumbnail}</Thumbnail>" if thumbnail else ""
    video_xml = "".join(f"<Video><File>{v}</File></Video>" for v in videos)
    attachment_xml = "".join(f"<Attachment><File>{a}</File></Attachment>" for a in attachments)
    return (
        f"<Session xmlns='{V2_NS}'><Title>v2</Title>{thumb}"
        f"<Videos>{video_xml}</Videos><Attachments>{attachment_xml}</Attachments></Session>"
    )


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("session_uploader.tests")


# ---------------------------------------------------------------------------
# Storage endpoint double
# ---------------------------------------------------------------------------

class FakeS3:
    """In-memory multipart endpoint that enforces part ordering on complete."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.parts: dict[str, dict[int, bytes]] = {}
        self.objects: dict[str, bytes] = {}
        self.fail_parts: dict[int, Exception] = {}
        self.open_error: Optional[Exception] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_multipart_upload(self, Bucket, Key):
        with self._lock:
            self.calls.append(("open", Key))
        if self.open_error is not None:
            raise self.open_error
        upload_id = f"up-{next(self._ids)}"
        self.parts[upload_id] = {}
        return {"UploadId": upload_id, "Bucket": Bucket, "Key": Key}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body, ContentLength):
        with self._lock:
            self.calls.append(("part", Key, PartNumber, ContentLength))
            failure = self.fail_parts.get(PartNumber)
        if failure is not None:
            raise failure
        assert len(Body) == ContentLength
        self.parts[UploadId][PartNumber] = Body
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        numbers = [p["PartNumber"] for p in MultipartUpload["Parts"]]
        with self._lock:
            self.calls.append(("close", Key, numbers))
        if numbers != sorted(self.parts[UploadId]):
            raise client_error("InvalidPartOrder", 400)
        self.objects[Key] = b"".join(self.parts[UploadId][n] for n in numbers)
        return {"Key": Key, "ETag": '"done"'}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        with self._lock:
            self.calls.append(("abort", Key, UploadId))
        self.parts.pop(UploadId, None)
        return {}

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]


def lock_file(monkeypatch, name: str) -> None:
    """Make opening any file called ``name`` fail as if permissions forbade it."""
    real_open = Path.open

    def guarded_open(self, *args, **kwargs):
        if self.name == name:
            raise PermissionError(13, "Permission denied", str(self))
        return real_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", guarded_open)


def client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def engine(fake_s3, logger) -> MultipartTransferEngine:
    return MultipartTransferEngine(
        part_size=4,
        concurrency=3,
        max_retries=2,
        retry_base_delay=0,
        logger=logger,
        client_factory=lambda endpoint: fake_s3,
    )


# ---------------------------------------------------------------------------
# Job resource double
# ---------------------------------------------------------------------------

class FakeJobServer:
    """Serves the sessionUpload resource; ``scripts`` queues states per job id for GETs."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict] = {}
        self.requests: list[tuple[str, str, Optional[dict]]] = []
        self.scripts: dict[str, list[dict]] = {}
        self.status_override: dict[str, int] = {}
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append((request.method, path, body))

        status = self.status_override.get(request.method)
        if status is not None:
            return httpx.Response(status, text="server says no")
        if body is not None and not isinstance(body.get("State", 0), int):
            return httpx.Response(400, text=f"State must be an integer code, got {body['State']!r}")

        if request.method == "POST":
            job_id = f"job-{next(self._ids)}"
            self.jobs[job_id] = {
                "ID": job_id,
                "FolderId": body["FolderId"],
                "UploadTarget": f"{TARGET_ROOT}{job_id}",
                "State": 0,
                "SessionId": None,
            }
            return httpx.Response(201, json=self.jobs[job_id])

        job_id = path.rsplit("/", 1)[-1]
        if job_id not in self.jobs:
            return httpx.Response(404, text="not found")
        if request.method == "PUT":
            self.jobs[job_id].update(body)
        elif request.method == "GET" and self.scripts.get(job_id):
            self.jobs[job_id].update(self.scripts[job_id].pop(0))
        return httpx.Response(200, json=self.jobs[job_id])

    def gets(self, job_id: str) -> int:
        return sum(1 for m, p, _ in self.requests if m == "GET" and p.endswith(job_id))


@pytest.fixture
def job_server() -> FakeJobServer:
    return FakeJobServer()


@pytest.fixture
def job_client(job_server, logger):
    client = UploadJobClient(
        SERVER,
        "cookie-value",
        TransportConfig(),
        logger=logger,
        transport=httpx.MockTransport(job_server.handler),
    )
    yield client
    client.close()


@pytest.fixture
def write(tmp_path):
    """Write a file relative to tmp_path, creating directories."""
    def _write(rel: str, content="x" * 10) -> Path:
        p = tmp_path / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            p.write_bytes(content)
        else:
            p.write_text(content, encoding="utf-8")
        return p
    return _write
