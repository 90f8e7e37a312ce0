"""
Session Uploader - bulk session ingest CLI
Finds session manifests under a directory, uploads each manifest with the
media files it references, and waits for the server to process them.

Usage:
    python -m session_uploader <directory> [--folder-id ID] [--server DNS]
                               [--output FILE] [--continue-on-error] [--dry-run]

Features:
    - Tells manifests apart from auxiliary XML files they reference
    - Multipart chunked transfer with parallel parts per file
    - Exponential-backoff retry on transient network failures
    - Strict (stop on first problem) or lenient (skip and continue) policy
    - Status polling until every upload reaches a final state
"""

import argparse
import getpass
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from .auth import logon_and_get_cookie
from .config import Config, ErrorPolicy, MiB
from .errors import (
    ManifestResolutionError,
    OperationCancelledError,
    SessionUploadError,
)
from .jobs import UploadJob, UploadJobClient
from .manifest import ManifestResolver, Resolution
from .orchestrator import ManifestOutcome, UploadOrchestrator
from .poller import StatusPoller
from .transfer import MultipartTransferEngine

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2
EXIT_INTERRUPTED = 130

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _build_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "session_uploader.log"

    logger = logging.getLogger("session_uploader")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console)
    logger.addHandler(fh)
    return logger


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def save_results(
    path: Path,
    outcomes: list[ManifestOutcome],
    final_jobs: dict[Path, UploadJob],
) -> None:
    """Write one record per manifest; atomic via a temporary file."""
    records = []
    for outcome in outcomes:
        job = final_jobs.get(outcome.manifest, outcome.job)
        records.append(
            {
                "manifest": outcome.manifest.name,
                "state": job.state.value if job is not None else None,
                "upload": job.to_wire() if job is not None else None,
                "skipped": [str(p) for p in outcome.skipped],
                "error": str(outcome.error) if outcome.error else None,
            }
        )
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(records, fh, indent=2)
    tmp.replace(path)  # atomic rename


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------

def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="session-uploader",
        description=(
            "Upload every session manifest found under a directory, together with "
            "the media files it references, and wait for server-side processing."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Upload a directory of sessions into a folder\n"
            "  python -m session_uploader /data/lectures --folder-id 6f1c...\n\n"
            "  # Keep going past invalid XML files and missing media\n"
            "  python -m session_uploader /data/lectures --continue-on-error\n\n"
            "  # Dry run: list manifests and their files without uploading\n"
            "  python -m session_uploader /data/lectures --dry-run\n"
        ),
    )
    parser.add_argument("directory", help="Directory with XML manifests and media files, walked recursively.")
    parser.add_argument("--server", default=None, metavar="DNS",
                        help="Server domain name, no protocol or slashes. Overrides SERVER_DNS.")
    parser.add_argument("--folder-id", default=None, metavar="ID",
                        help="Destination folder id for the new sessions. Overrides FOLDER_ID.")
    parser.add_argument("--username", default=None, help="Login user name. Overrides UPLOAD_USERNAME.")
    parser.add_argument("--output", default=None, metavar="FILE",
                        help="Write the final state of every upload to this JSON file.")
    parser.add_argument("--continue-on-error", action="store_true", default=None,
                        help="Skip invalid XML files, missing media and failed uploads instead of stopping.")
    parser.add_argument("--ignore-ssl-errors", action="store_true", default=None,
                        help="Do not verify TLS certificates (test servers only).")
    parser.add_argument("--concurrency", type=int, default=None,
                        help="Parts uploaded in parallel per file. Overrides CONCURRENCY.")
    parser.add_argument("--poll-timeout", type=float, default=None, metavar="SECONDS",
                        help="Give up polling after this many seconds (0 = wait forever).")
    parser.add_argument("--dry-run", action="store_true",
                        help="Resolve manifests and list their files without contacting the server.")
    return parser.parse_args(argv)


def _apply_overrides(cfg: Config, args: argparse.Namespace) -> None:
    if args.server:
        cfg.server_dns = args.server
    if args.folder_id:
        cfg.folder_id = args.folder_id
    if args.username:
        cfg.username = args.username
    if args.continue_on_error is not None:
        cfg.continue_on_error = args.continue_on_error
    if args.ignore_ssl_errors is not None:
        cfg.ignore_ssl_errors = args.ignore_ssl_errors
    if args.concurrency is not None:
        cfg.concurrency = args.concurrency
    if args.poll_timeout is not None:
        cfg.poll_timeout = args.poll_timeout
    cfg.validate()


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def _log_dry_run(logger: logging.Logger, resolution: Resolution) -> None:
    logger.info("[DRY RUN] Manifests that would be uploaded:")
    for manifest, files in resolution.referenced_files.items():
        logger.info(f"  {manifest}")
        for f in files:
            marker = "" if f.is_file() else "  (missing)"
            logger.info(f"      {f}{marker}")
    logger.info("[DRY RUN] No files were uploaded.")


def _auth_cookie(cfg: Config, logger: logging.Logger) -> str:
    if cfg.auth_cookie:
        return cfg.auth_cookie
    if not cfg.username:
        raise ValueError("No credentials: set AUTH_COOKIE, or UPLOAD_USERNAME/--username and a password.")
    password = cfg.password
    if not password and sys.stdin.isatty():
        password = getpass.getpass(f"Password for {cfg.username}: ")
    if not password:
        raise ValueError("No password: set UPLOAD_PASSWORD or run interactively.")
    return logon_and_get_cookie(cfg.server_dns, cfg.username, password, cfg.transport, logger)


def run(cfg: Config, directory: Path, logger: logging.Logger, output: Optional[Path] = None,
        dry_run: bool = False, cancel_event: Optional[threading.Event] = None) -> int:
    """Resolve, upload and poll; return the process exit code."""
    cancel_event = cancel_event or threading.Event()
    policy = cfg.policy

    resolution = ManifestResolver(logger).resolve(directory)
    resolution.enforce(policy, logger)

    if dry_run:
        _log_dry_run(logger, resolution)
        return EXIT_OK
    if not resolution.manifests:
        logger.warning(f"No session manifests found under {directory}.")
        return EXIT_OK

    if not cfg.server_dns:
        raise ValueError("No server: set SERVER_DNS or pass --server.")
    if not cfg.folder_id:
        raise ValueError("No destination folder: set FOLDER_ID or pass --folder-id.")

    cookie = _auth_cookie(cfg, logger)
    engine = MultipartTransferEngine(
        transport_config=cfg.transport,
        part_size=cfg.part_size,
        concurrency=cfg.concurrency,
        max_retries=cfg.max_retries,
        retry_base_delay=cfg.retry_base_delay,
        logger=logger,
        cancel_event=cancel_event,
    )

    with UploadJobClient(cfg.server_dns, cookie, cfg.transport, logger) as job_client:
        orchestrator = UploadOrchestrator(
            job_client,
            engine,
            cfg.folder_id,
            policy=policy,
            job_workers=cfg.job_workers,
            logger=logger,
            cancel_event=cancel_event,
        )
        outcomes = orchestrator.upload_all(resolution.referenced_files)
        submitted = {o.manifest: o.job for o in outcomes if o.submitted}

        logger.info("")
        logger.info("All uploads submitted. Polling for status until all have finished processing.")
        poller = StatusPoller(
            job_client,
            interval=cfg.poll_interval,
            timeout=cfg.poll_timeout,
            policy=policy,
            logger=logger,
            cancel_event=cancel_event,
        )
        final_jobs = poller.poll(submitted)
        logger.info("All uploads finished.")

    if output is not None:
        logger.info(f"Saving results to {output}")
        save_results(output, outcomes, final_jobs)

    return _summarize(logger, outcomes, final_jobs)


def _summarize(logger: logging.Logger, outcomes: list[ManifestOutcome], final_jobs: dict[Path, UploadJob]) -> int:
    failed = [o for o in outcomes if not o.submitted or o.manifest not in final_jobs]
    errored = [j for j in final_jobs.values() if j.state.is_error]
    skipped = sum(len(o.skipped) for o in outcomes)

    logger.info("")
    logger.info("=" * 60)
    logger.info(f"  Summary: {len(outcomes) - len(failed)}/{len(outcomes)} manifests submitted")
    for o in failed:
        logger.warning(f"    - {o.manifest.name}" + (f"  ({o.error})" if o.error else ""))
    if skipped:
        logger.warning(f"  {skipped} referenced file(s) were skipped.")
    if errored:
        logger.warning(f"  {len(errored)} upload(s) ended in an error state.")
    logger.info("=" * 60)

    return EXIT_PARTIAL if failed or errored else EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)

    try:
        cfg = Config()
        _apply_overrides(cfg, args)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(EXIT_FATAL)

    base_dir = Path.cwd()
    logger = _build_logger(Path(cfg.log_path) if cfg.log_path else base_dir / "logs")

    logger.info("=" * 60)
    logger.info("  Session Uploader - bulk session ingest")
    logger.info("=" * 60)

    directory = Path(args.directory).expanduser().resolve()
    if not directory.is_dir():
        logger.error(f"Specified directory {directory} does not exist.")
        sys.exit(EXIT_FATAL)

    logger.info(f"Source    : {directory}")
    logger.info(f"Server    : {cfg.server_dns or '-'}")
    logger.info(f"Folder    : {cfg.folder_id or '-'}")
    logger.info(f"Policy    : {cfg.policy.value}")
    logger.info(f"Part      : {cfg.part_size // MiB} MB  |  Threads: {cfg.concurrency}")

    cancel_event = threading.Event()

    def _handle_interrupt(signum, frame):  # type: ignore[override]
        logger.warning("Interrupt received. Aborting open transfers and exiting...")
        cancel_event.set()

    signal.signal(signal.SIGINT, _handle_interrupt)
    signal.signal(signal.SIGTERM, _handle_interrupt)

    output = Path(args.output).expanduser() if args.output else None
    try:
        code = run(cfg, directory, logger, output=output, dry_run=args.dry_run, cancel_event=cancel_event)
    except OperationCancelledError as exc:
        logger.error(str(exc))
        sys.exit(EXIT_INTERRUPTED)
    except ManifestResolutionError:
        sys.exit(EXIT_FATAL)
    except (SessionUploadError, OSError, ValueError) as exc:
        logger.error(f"Fatal: {exc}")
        sys.exit(EXIT_FATAL)

    logger.info("Exiting.")
    sys.exit(code)


if __name__ == "__main__":
    main()
