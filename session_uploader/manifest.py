"""
Session manifests and the resolver that finds them.

A manifest is an XML document describing one session: its videos,
presentations, images, attachments, transcripts and (schema v2) a
thumbnail.  Manifests share the ``.xml`` extension with auxiliary files
they reference (transcripts, slide decks exported as XML, ...), so a
directory scan cannot tell them apart up front.  ``ManifestResolver``
parses every candidate, then forgives parse failures for files that some
successfully parsed manifest references.

Two schema versions are understood:

    v1: <PanoptoSession xmlns="http://panopto.com/PanoptoSession/v1">,
        file names in <Filename LocalFilename="...">value</Filename>
    v2: <Session xmlns=".../v2">, file names in <File>, plus <Thumbnail>
"""

import logging
import re
import xml.etree.ElementTree as ET
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import ErrorPolicy
from .errors import ManifestParseError, ManifestResolutionError

V1_NAMESPACE = "http://panopto.com/PanoptoSession/v1"
V1_ROOT = "PanoptoSession"
V2_ROOT = "Session"

MANIFEST_EXTENSION = ".xml"

VIDEO_TYPES = ("Primary", "Secondary", "Audio")

# xs:dateTime allows any number of fraction digits; datetime wants at most six
_FRACTION = re.compile(r"\.(\d+)")


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileRef:
    value: str
    local_filename: Optional[str] = None


@dataclass
class Cut:
    start: Optional[str] = None
    duration: Optional[str] = None


@dataclass
class Marker:
    """A table-of-contents entry, slide change or timed image."""

    title: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    time: Optional[str] = None
    slide_number: Optional[int] = None


@dataclass
class Transcript:
    file: FileRef
    lcid: Optional[str] = None
    source: Optional[str] = None
    visible: bool = True


@dataclass
class Video:
    file: FileRef
    start: Optional[str] = None
    type: Optional[str] = None
    cuts: list[Cut] = field(default_factory=list)
    table_of_contents: list[Marker] = field(default_factory=list)
    transcripts: list[Transcript] = field(default_factory=list)


@dataclass
class Presentation:
    file: FileRef
    start: Optional[str] = None
    slide_changes: list[Marker] = field(default_factory=list)


@dataclass
class Image:
    file: FileRef
    marker: Marker = field(default_factory=Marker)


@dataclass
class Attachment:
    file: FileRef
    mime_type: Optional[str] = None


@dataclass
class Manifest:
    path: Path
    version: int
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[datetime] = None
    videos: list[Video] = field(default_factory=list)
    presentations: list[Presentation] = field(default_factory=list)
    images: list[Image] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    cuts: list[Cut] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    extensions: dict[str, Optional[str]] = field(default_factory=dict)
    thumbnail: Optional[str] = None

    @property
    def directory(self) -> Path:
        return self.path.parent

    def referenced_files(self) -> list[str]:
        """Every file name the session needs, duplicates kept.

        Order: thumbnail (v2 only), videos, transcripts, presentations,
        images, attachments.
        """
        names: list[str] = []
        if self.version >= 2 and self.thumbnail:
            names.append(self.thumbnail)
        names.extend(v.file.value for v in self.videos)
        names.extend(t.file.value for v in self.videos for t in v.transcripts)
        names.extend(p.file.value for p in self.presentations)
        names.extend(i.file.value for i in self.images)
        names.extend(a.file.value for a in self.attachments)
        return names

    def referenced_paths(self) -> list[Path]:
        """Referenced files resolved against the manifest's directory, first occurrence wins."""
        seen: dict[Path, None] = {}
        for name in self.referenced_files():
            seen.setdefault(_resolve(self.directory, name), None)
        return list(seen)


def _resolve(directory: Path, name: str) -> Path:
    # Manifests written on Windows use backslashes
    return (directory / name.replace("\\", "/")).resolve()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class _Reader:
    """Namespace-aware accessors for one manifest document."""

    def __init__(self, path: Path, namespace: str, file_tag: str) -> None:
        self.path = path
        self.ns = namespace
        self.file_tag = file_tag

    def q(self, tag: str) -> str:
        return f"{{{self.ns}}}{tag}" if self.ns else tag

    def text(self, elem: ET.Element, tag: str) -> Optional[str]:
        child = elem.find(self.q(tag))
        if child is None or child.text is None:
            return None
        return child.text.strip()

    def items(self, elem: ET.Element, container: str, item: str) -> list[ET.Element]:
        box = elem.find(self.q(container))
        if box is None:
            return []
        return box.findall(self.q(item))

    def file_ref(self, elem: ET.Element, what: str) -> FileRef:
        child = elem.find(self.q(self.file_tag))
        value = (child.text or "").strip() if child is not None else ""
        if not value:
            raise ManifestParseError(self.path, f"{what} has no <{self.file_tag}> value")
        return FileRef(value=value, local_filename=child.get("LocalFilename"))

    def cuts(self, elem: ET.Element) -> list[Cut]:
        return [
            Cut(start=self.text(c, "Start"), duration=self.text(c, "Duration"))
            for c in self.items(elem, "Cuts", "Cut")
        ]

    def marker(self, elem: ET.Element) -> Marker:
        number = self.text(elem, "SlideNumber")
        if number is not None:
            try:
                number = int(number)
            except ValueError:
                raise ManifestParseError(self.path, f"SlideNumber '{number}' is not an integer")
        return Marker(
            title=self.text(elem, "Title"),
            description=self.text(elem, "Description"),
            url=self.text(elem, "Url"),
            time=self.text(elem, "Time"),
            slide_number=number,
        )


def _parse_date(path: Path, value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        normalized = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
        return datetime.fromisoformat(normalized.replace("Z", "+00:00"))
    except ValueError:
        raise ManifestParseError(path, f"Date '{value}' is not an ISO 8601 timestamp")


def _parse_bool(path: Path, value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    if value in ("true", "1"):
        return True
    if value in ("false", "0"):
        return False
    raise ManifestParseError(path, f"'{value}' is not a boolean")


def _detect_schema(path: Path, root: ET.Element) -> tuple[int, str]:
    if root.tag.startswith("{"):
        namespace, _, local = root.tag[1:].partition("}")
    else:
        namespace, local = "", root.tag

    if local == V1_ROOT and namespace == V1_NAMESPACE:
        return 1, namespace
    if local == V2_ROOT and namespace.rstrip("/").endswith("/v2"):
        return 2, namespace
    raise ManifestParseError(path, f"root element <{local}> ({namespace or 'no namespace'}) is not a session manifest")


def parse_manifest(path: Path) -> Manifest:
    """Parse one file as a session manifest, raising ManifestParseError on any mismatch."""
    path = Path(path).resolve()
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise ManifestParseError(path, f"not well-formed XML ({exc})")
    except OSError as exc:
        raise ManifestParseError(path, f"cannot be read ({exc})")

    version, namespace = _detect_schema(path, root)
    r = _Reader(path, namespace, "Filename" if version == 1 else "File")

    videos = []
    for v in r.items(root, "Videos", "Video"):
        video_type = r.text(v, "Type")
        if video_type is not None and video_type not in VIDEO_TYPES:
            raise ManifestParseError(path, f"unknown video Type '{video_type}'")
        videos.append(
            Video(
                file=r.file_ref(v, "Video"),
                start=r.text(v, "Start"),
                type=video_type,
                cuts=r.cuts(v),
                table_of_contents=[r.marker(e) for e in r.items(v, "TableOfContents", "Entry")],
                transcripts=[
                    Transcript(
                        file=r.file_ref(t, "Transcript"),
                        lcid=r.text(t, "LCID"),
                        source=r.text(t, "Source"),
                        visible=_parse_bool(path, r.text(t, "Visible"), True),
                    )
                    for t in r.items(v, "Transcripts", "Transcript")
                ],
            )
        )

    presentations = [
        Presentation(
            file=r.file_ref(p, "Presentation"),
            start=r.text(p, "Start"),
            slide_changes=[r.marker(s) for s in r.items(p, "SlideChanges", "SlideChange")],
        )
        for p in r.items(root, "Presentations", "Presentation")
    ]
    images = [
        Image(file=r.file_ref(i, "Image"), marker=r.marker(i))
        for i in r.items(root, "Images", "Image")
    ]
    attachments = [
        Attachment(file=r.file_ref(a, "Attachment"), mime_type=r.text(a, "MimeType"))
        for a in r.items(root, "Attachments", "Attachment")
    ]
    extensions = {}
    for e in r.items(root, "Extensions", "Extension"):
        name = r.text(e, "Name")
        if name:
            extensions[name] = r.text(e, "Value")

    return Manifest(
        path=path,
        version=version,
        title=r.text(root, "Title"),
        description=r.text(root, "Description"),
        date=_parse_date(path, r.text(root, "Date")),
        videos=videos,
        presentations=presentations,
        images=images,
        attachments=attachments,
        cuts=r.cuts(root),
        tags=[(t.text or "").strip() for t in r.items(root, "Tags", "Tag")],
        extensions=extensions,
        thumbnail=r.text(root, "Thumbnail") if version >= 2 else None,
    )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass
class Resolution:
    manifests: dict[Path, Manifest]
    errors: dict[Path, ManifestParseError]

    @property
    def referenced_files(self) -> dict[Path, list[Path]]:
        return {path: m.referenced_paths() for path, m in self.manifests.items()}

    def enforce(self, policy: ErrorPolicy, logger: logging.Logger) -> None:
        """Report genuine parse errors; under STRICT policy refuse to continue."""
        if not self.errors:
            return
        for path, err in sorted(self.errors.items()):
            logger.error(f"Error reading XML file {path} as a session manifest: {err.reason}")
        if policy is ErrorPolicy.STRICT:
            logger.error("Fix or remove the invalid XML files before continuing.")
            raise ManifestResolutionError(self.errors)
        logger.warning(
            f"Continuing on error: {len(self.errors)} invalid XML file(s) ignored, "
            f"{len(self.manifests)} manifest(s) will be uploaded."
        )


class ManifestResolver:
    """Two-pass scan: parse every candidate, then reconcile failures against references."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        extension: str = MANIFEST_EXTENSION,
    ) -> None:
        self.logger = logger or logging.getLogger("session_uploader")
        self.extension = extension.lower()

    def candidates(self, root: Path) -> list[Path]:
        """Return every file with the manifest extension under root, sorted."""
        return sorted(
            f.resolve()
            for f in Path(root).rglob("*")
            if f.is_file() and f.suffix.lower() == self.extension
        )

    def resolve(self, root: Path) -> Resolution:
        root = Path(root)
        if not root.is_dir():
            raise NotADirectoryError(f"Not a directory: {root}")

        manifests: dict[Path, Manifest] = {}
        provisional: dict[Path, ManifestParseError] = {}

        for path in self.candidates(root):
            try:
                manifests[path] = parse_manifest(path)
            except ManifestParseError as exc:
                # may just be an XML file some manifest references
                self.logger.debug(f"Provisional parse failure: {exc}")
                provisional[path] = exc

        owners: dict[Path, list[Path]] = defaultdict(list)
        for manifest_path, manifest in manifests.items():
            for ref in manifest.referenced_paths():
                owners[ref].append(manifest_path)

        errors = {p: e for p, e in provisional.items() if p not in owners}
        forgiven = len(provisional) - len(errors)
        if forgiven:
            self.logger.debug(f"{forgiven} XML file(s) are referenced by a manifest, not manifests.")

        for ref, sharing in owners.items():
            if len(sharing) > 1:
                self.logger.warning(
                    f"{ref} is referenced by {len(sharing)} manifests "
                    f"({', '.join(p.name for p in sharing)}); each upload gets its own copy."
                )

        self.logger.info(
            f"Found {len(manifests)} manifest(s) and {len(errors)} invalid XML file(s) under {root}"
        )
        return Resolution(manifests=manifests, errors=errors)
