from __future__ import annotations

import argparse
import codecs
import gzip
import json
import os
import queue
import re
import sys
import time
import zlib
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from threading import Event, Lock
from typing import IO, Any, Callable, Iterator, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import requests
from tqdm import tqdm

import s3

_DEFAULT_URL = "http://localhost:8484/"
_RESTORE_NAMESPACE = "/.cbfs/backup/restore/"
_EXPIRATION_HEADER = "X-CBFS-Expiration"
_JSON_WHITESPACE = " \t\n\r"
_READ_SIZE = 64 * 1024
_MAX_RECORD_SIZE = 16 * 1024 * 1024
_JSON_LITERALS = ("true", "false", "null", "NaN", "Infinity", "-Infinity")
_NUMBER_TAIL = re.compile(r"(?:\.\d*)?(?:[eE][+-]?\d*)?\Z")
_PUT_POLL = 0.1
_SENTINEL = object()


class RecordDecodeError(ValueError):
    """A record in the backup stream is malformed; the rest of the stream is unusable."""


@dataclass(frozen=True)
class PipelineConfig:
    """Restore settings, captured once at startup."""

    base_url: str = _DEFAULT_URL
    force: bool = False
    noop: bool = False
    verbose: bool = False
    match: str = ".*"
    workers: int = 4
    expire: int = -1

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError("workers must be >= 1")


@dataclass(frozen=True)
class WorkItem:
    path: str
    meta: Any = None


class RestoreStatus(Enum):
    RESTORED = "restored"
    SKIPPED_CONFLICT = "skipped_conflict"
    FAILED = "failed"
    FATAL = "fatal"


@dataclass(frozen=True)
class RestoreOutcome:
    status: RestoreStatus
    path: str
    detail: Optional[str] = None


@dataclass
class RestoreSummary:
    """
    Result of one restore run.

    ``accepted`` counts records that passed the path filter and were
    dispatched. ``aborted`` holds the reason when a fatal condition cut the
    run short, otherwise None.
    """

    accepted: int = 0
    restored: int = 0
    skipped: int = 0
    failed: int = 0
    elapsed: float = 0.0
    aborted: Optional[str] = None


def _format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.3f}ms"
    if seconds < 60:
        return f"{seconds:.3f}s"
    minutes, rest = divmod(seconds, 60)
    return f"{int(minutes)}m{rest:.3f}s"


def compile_path_filter(pattern: str) -> Callable[[str], bool]:
    """Compile ``pattern`` into a path predicate (unanchored regex search)."""
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"Error parsing match pattern {pattern!r}: {exc}") from exc
    return lambda path: regex.search(path) is not None


def open_backup_stream(path: str) -> IO[bytes]:
    """
    Open a gzip-compressed backup stream for reading.

    ``-`` reads from stdin. The gzip header is checked here so a file that
    is not compressed fails before any restore work starts.
    """
    if path == "-":
        stream = gzip.GzipFile(fileobj=sys.stdin.buffer, mode="rb")
    else:
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Backup file not found: {path}")
        stream = gzip.open(path, "rb")

    try:
        stream.peek(1)
    except (OSError, EOFError, zlib.error) as exc:
        stream.close()
        raise ValueError(f"Error uncompressing backup file {path}: {exc}") from exc
    return stream


def _work_item(record: Any) -> WorkItem:
    if not isinstance(record, dict):
        raise RecordDecodeError(f"Backup record is not an object: {record!r:.80}")
    path = record.get("Path")
    if not isinstance(path, str) or not path:
        raise RecordDecodeError(f"Backup record has no Path: {record!r:.80}")
    return WorkItem(path=path, meta=record.get("Meta"))


def _is_truncated(buffer: str, exc: json.JSONDecodeError) -> bool:
    """True when ``exc`` only means the record continues past ``buffer``."""
    if exc.pos >= len(buffer.rstrip(_JSON_WHITESPACE)):
        return True
    if exc.msg.startswith("Unterminated string"):
        return True
    if exc.msg.startswith("Invalid \\uXXXX escape"):
        return exc.pos + 6 > len(buffer)
    rest = buffer[exc.pos:]
    if exc.pos > 0 and buffer[exc.pos - 1].isdigit() and _NUMBER_TAIL.match(rest):
        return True
    return any(literal.startswith(rest) for literal in _JSON_LITERALS)


def iter_work_items(
    stream: IO[bytes],
    read_size: int = _READ_SIZE,
    max_record_size: int = _MAX_RECORD_SIZE,
) -> Iterator[WorkItem]:
    """
    Lazily decode consecutive JSON records from a decompressed stream.

    Only the current partial record is buffered, up to ``max_record_size``
    characters. Raises RecordDecodeError at the first malformed record, on
    an oversized record, or on a corrupt stream.
    """
    decoder = json.JSONDecoder()
    text = codecs.getincrementaldecoder("utf-8")()
    buffer = ""
    eof = False

    while True:
        buffer = buffer.lstrip(_JSON_WHITESPACE)
        if buffer:
            try:
                record, end = decoder.raw_decode(buffer)
            except json.JSONDecodeError as exc:
                if eof or not _is_truncated(buffer, exc):
                    raise RecordDecodeError(f"Malformed record in backup stream: {exc}") from exc
                if len(buffer) > max_record_size:
                    raise RecordDecodeError(
                        f"Backup record exceeds {max_record_size} characters"
                    ) from exc
            else:
                buffer = buffer[end:]
                yield _work_item(record)
                continue
        elif eof:
            return

        try:
            chunk = stream.read(read_size)
            eof = not chunk
            buffer += text.decode(chunk, final=eof)
        except (OSError, EOFError, zlib.error, UnicodeDecodeError) as exc:
            raise RecordDecodeError(f"Corrupt backup stream: {exc}") from exc


def create_http_session() -> requests.Session:
    return requests.Session()


def restore_url(base_url: str, path: str) -> str:
    """Address of the restore endpoint for ``path`` on the server at ``base_url``."""
    if "://" not in base_url:
        base_url = f"http://{base_url}"
    parts = urlsplit(base_url)
    endpoint = _RESTORE_NAMESPACE + quote(path.lstrip("/"), safe="/")
    return urlunsplit((parts.scheme, parts.netloc, endpoint, "", ""))


def restore_file(
    session: requests.Session,
    base_url: str,
    path: str,
    meta: Any,
    config: PipelineConfig,
) -> RestoreOutcome:
    """
    Ask the server at ``base_url`` to recreate ``path`` from ``meta``.

    201 means restored. 409 means the file already exists, which is only a
    failure when ``config.force`` is set. An unreachable server is FATAL;
    anything else is a per-file FAILED outcome.
    """
    if config.noop:
        print(f"[INFO] NOOP would restore {path}")
        return RestoreOutcome(RestoreStatus.RESTORED, path, "noop")

    url = restore_url(base_url, path)
    try:
        body = json.dumps(meta).encode("utf-8")
    except (TypeError, ValueError) as exc:
        return RestoreOutcome(RestoreStatus.FAILED, path, f"Error encoding metadata: {exc}")

    headers = {
        "Content-Type": "application/json",
        _EXPIRATION_HEADER: str(config.expire),
    }

    try:
        res = session.post(url, data=body, headers=headers)
    except requests.ConnectionError as exc:
        return RestoreOutcome(
            RestoreStatus.FATAL, path, f"Error executing POST to {url} - {exc}"
        )
    except requests.RequestException as exc:
        return RestoreOutcome(RestoreStatus.FAILED, path, str(exc))

    try:
        if res.status_code == 201:
            print(f"[INFO] Restored {path}")
            return RestoreOutcome(RestoreStatus.RESTORED, path)
        if res.status_code == 409 and not config.force:
            return RestoreOutcome(RestoreStatus.SKIPPED_CONFLICT, path)
        return RestoreOutcome(
            RestoreStatus.FAILED,
            path,
            f"restore error on {path} - {res.status_code} {res.reason}\n{res.text}",
        )
    finally:
        res.close()


def _restore_worker(
    items: queue.Queue,
    config: PipelineConfig,
    record: Callable[[RestoreOutcome], None],
) -> None:
    session = create_http_session()
    try:
        while True:
            item = items.get()
            if item is _SENTINEL:
                return
            try:
                outcome = restore_file(session, config.base_url, item.path, item.meta, config)
            except Exception as exc:
                outcome = RestoreOutcome(RestoreStatus.FAILED, item.path, repr(exc))
            try:
                if outcome.status in (RestoreStatus.FAILED, RestoreStatus.FATAL):
                    print(f"[WARN] Error restoring {item.path}: {outcome.detail}")
            finally:
                record(outcome)
    finally:
        session.close()


def _dispatch(items: queue.Queue, item: Any, workers: list[Future]) -> bool:
    """Put ``item`` on the queue; False once no worker is left to take it."""
    while True:
        try:
            items.put(item, timeout=_PUT_POLL)
            return True
        except queue.Full:
            if all(worker.done() for worker in workers):
                return False


def _run_pipeline(
    stream: IO[bytes],
    matches: Callable[[str], bool],
    config: PipelineConfig,
) -> RestoreSummary:
    summary = RestoreSummary()
    summary_lock = Lock()
    abort = Event()
    items: queue.Queue = queue.Queue(maxsize=config.workers)
    progress = tqdm(unit="file", desc="restore")

    def _record(outcome: RestoreOutcome) -> None:
        with summary_lock:
            if outcome.status is RestoreStatus.RESTORED:
                summary.restored += 1
            elif outcome.status is RestoreStatus.SKIPPED_CONFLICT:
                summary.skipped += 1
            else:
                summary.failed += 1
            if outcome.status is RestoreStatus.FATAL and summary.aborted is None:
                summary.aborted = outcome.detail
                abort.set()
            progress.update(1)

    start = time.monotonic()
    try:
        with ThreadPoolExecutor(
            max_workers=config.workers, thread_name_prefix="restore"
        ) as pool:
            workers = [
                pool.submit(_restore_worker, items, config, _record)
                for _ in range(config.workers)
            ]
            records = iter_work_items(stream)
            try:
                while not abort.is_set():
                    try:
                        item = next(records)
                    except StopIteration:
                        break
                    if not matches(item.path):
                        continue
                    if config.verbose:
                        print(f"[DEBUG] Dispatching {item.path}")
                    if not _dispatch(items, item, workers):
                        break
                    summary.accepted += 1
            except RecordDecodeError as exc:
                with summary_lock:
                    if summary.aborted is None:
                        summary.aborted = f"Error reading backup file: {exc}"
            finally:
                for _ in workers:
                    if not _dispatch(items, _SENTINEL, workers):
                        break

            for worker in workers:
                worker.result()
    finally:
        progress.close()

    summary.elapsed = time.monotonic() - start
    return summary


@contextmanager
def _backup_source(
    source: str,
    s3_config: Optional[s3.S3Config],
    region: Optional[str],
) -> Iterator[IO[bytes]]:
    downloaded: Optional[str] = None
    if s3.is_s3_url(source):
        downloaded = s3.download_backup_from_s3(s3_config or s3.S3Config(), source, region)
    try:
        stream = open_backup_stream(downloaded or source)
        try:
            yield stream
        finally:
            stream.close()
    finally:
        if downloaded is not None:
            try:
                os.remove(downloaded)
            except OSError:
                pass


def restore_from_backup(
    source: str,
    config: PipelineConfig,
    *,
    s3_config: Optional[s3.S3Config] = None,
    region: Optional[str] = None,
) -> RestoreSummary:
    """
    Replay the backup stream at ``source`` against the server in ``config``.

    ``source`` is a local path, ``-`` for stdin, or an ``s3://bucket/key``
    URL. Startup problems (bad pattern, missing or uncompressed source)
    raise before any worker starts. Fatal problems mid-run stop the reading
    of new records, let dispatched records drain, and are reported in
    ``RestoreSummary.aborted``.
    """
    matches = compile_path_filter(config.match)

    with _backup_source(source, s3_config, region) as stream:
        summary = _run_pipeline(stream, matches, config)

    duration = _format_duration(summary.elapsed)
    if summary.aborted is not None:
        print(
            f"[ERROR] Restore aborted after dispatching {summary.accepted} files "
            f"in {duration}: {summary.aborted}"
        )
    else:
        print(f"[INFO] Restored {summary.accepted} files in {duration}")
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cbfs-restore",
        description="Restore files into a cbfs server from a compressed backup stream.",
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("CBFS_URL", _DEFAULT_URL),
        help="Base URL of the cbfs server (default: $CBFS_URL or %(default)s).",
    )
    parser.add_argument("-f", "--force", action="store_true", help="Overwrite existing files.")
    parser.add_argument("-n", "--noop", action="store_true", help="Don't restore, just log.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose restore.")
    parser.add_argument("--match", default=".*", help="Regex for paths to match.")
    parser.add_argument("--workers", type=int, default=4, help="Number of restore workers.")
    parser.add_argument(
        "--expire",
        type=int,
        default=-1,
        help="Override expiration time (in seconds, or abs unix time).",
    )
    parser.add_argument(
        "--s3-properties",
        default=None,
        help="Credentials file used for s3:// backup sources.",
    )
    parser.add_argument("--region", default=None, help="Region used for s3:// backup sources.")
    parser.add_argument("backup", help="Backup file to read (local path, '-' or s3://bucket/key).")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = PipelineConfig(
            base_url=args.url,
            force=args.force,
            noop=args.noop,
            verbose=args.verbose,
            match=args.match,
            workers=args.workers,
            expire=args.expire,
        )
        s3_config = s3.load_s3_config(args.s3_properties) if s3.is_s3_url(args.backup) else None
        summary = restore_from_backup(
            args.backup, config, s3_config=s3_config, region=args.region
        )
    except (ValueError, OSError) as exc:
        print(f"[ERROR] {exc}")
        return 1

    return 0 if summary.aborted is None else 1


if __name__ == "__main__":
    sys.exit(main())
