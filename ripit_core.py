# ripit_core.py
# RIPIT CORE ENGINE
# Version: 1.0.0

"""
RIPIT CORE ENGINE
=================
A sequential, interruptible media ripper for Reddit listings.

PIPELINE:
- Paginator: walks listing pages with an `after` cursor
- EntryClassifier: filter chain + media URL resolution
- Downloader: probe, size policy, throttled transfer, partial-file cleanup
- TerminationController: single-winner teardown and the final report

The pipeline runs on one worker thread. The caller waits on the
TerminationController while signal handlers may call `RipCore.interrupt()`.
"""

import html
import json
import sys
import threading
import time
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional, Pattern, Tuple
from urllib.parse import urlsplit, urlunsplit

import jinja2
import requests

from ripit_utils import (
    compile_template,
    extract_og_url,
    format_size,
    is_false_value,
    link_fields,
    render_template,
    sanitize_filename,
    terminal_columns,
)

# =========================================================
# CONSTANTS
# =========================================================

# User-Agent sent with every request
USER_AGENT = "ripit/1.0 (Reddit Media Ripper; CLI Tool)"

LISTING_BASE_URL = "https://www.reddit.com"
DEFAULT_ENTRIES_LIMIT = 100

# Sentinel for "no limit" on max files / storage / size
UNLIMITED = -1

# Download Chunk Size (128KB)
DOWNLOAD_CHUNK_SIZE = 131072

# Progress notifications need both thresholds passed since the last one
PROGRESS_MIN_BYTES = 10 * 1024
PROGRESS_MIN_SECONDS = 0.5

MEDIA_EXTENSIONS = (".jpeg", ".gif", ".mp4", ".jpg", ".png")
GIFV_HOSTS = ("i.imgur.com", "imgur.com")
GIFV_TARGET_HOST = "i.imgur.com"

# A page is scraped for og: links at most once per entry
MAX_SCRAPE_DEPTH = 1
# og: lookups only read the page head, up to this many bytes
SCRAPE_CHUNK_SIZE = 16384
MAX_SCRAPE_BYTES = 1024 * 1024

MAX_TITLE_LENGTH = 194
TRUNCATED_TITLE_LENGTH = 192

POST_ID_PREFIX = "t3_"

SORT_MODES = (
    "best", "hot", "new", "rising",
    "top-hour", "top-day", "top-week", "top-month", "top-year", "top-all",
)

DEFAULT_MEDIA_LINK_FORMAT = "{{ final_url }}"

DEBUG_LOG_MAXLEN = 50000
PIPELINE_JOIN_TIMEOUT = 2
WAIT_POLL_SECONDS = 0.5


# =========================================================
# ERRORS
# =========================================================
class ListingDecodeError(Exception):
    """A listing page could not be decoded. Fatal for the run."""


class TerminationReason(Enum):
    PAGES_EXHAUSTED = "pages-exhausted"
    FILE_CAP_REACHED = "file-cap-reached"
    STORAGE_CAP_WOULD_EXCEED = "storage-cap-would-exceed"
    USER_INTERRUPT = "user-interrupt"


class RunTerminated(Exception):
    """Unwinds the pipeline once a termination reason has been recorded."""

    def __init__(self, reason: TerminationReason):
        super().__init__(reason.value)
        self.reason = reason


class DownloadOutcome(Enum):
    SAVED = "saved"
    REPEATED = "repeated"
    FAILED = "failed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


# =========================================================
# DATA MODEL
# =========================================================
@dataclass(frozen=True)
class PreviewVariant:
    url: str
    width: int
    height: int

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PreviewVariant":
        # preview links come HTML-escaped in the listing JSON
        return cls(
            url=html.unescape(data.get("url") or ""),
            width=int(data.get("width") or 0),
            height=int(data.get("height") or 0),
        )


@dataclass(frozen=True)
class ListingEntry:
    """One post of a listing page."""

    url: str
    name: str
    title: str
    score: int = 0
    subreddit: str = ""
    author: str = ""
    flair: Optional[str] = None
    preview_source: Optional[PreviewVariant] = None
    preview_resolutions: Tuple[PreviewVariant, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def id(self) -> str:
        if self.name.startswith(POST_ID_PREFIX):
            return self.name[len(POST_ID_PREFIX):]
        return self.name

    @property
    def has_preview(self) -> bool:
        return self.preview_source is not None or bool(self.preview_resolutions)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ListingEntry":
        if not isinstance(data, dict):
            raise ListingDecodeError(f"Malformed post record: {data!r}")

        source = None
        resolutions: Tuple[PreviewVariant, ...] = ()
        images = (data.get("preview") or {}).get("images") or []
        if images:
            first = images[0]
            if first.get("source"):
                source = PreviewVariant.from_api(first["source"])
            resolutions = tuple(
                PreviewVariant.from_api(item) for item in first.get("resolutions") or []
            )

        return cls(
            url=data.get("url") or "",
            name=data.get("name") or "",
            title=data.get("title") or "",
            score=int(data.get("score") or 0),
            subreddit=data.get("subreddit") or "",
            author=data.get("author") or "",
            flair=data.get("link_flair_text"),
            preview_source=source,
            preview_resolutions=resolutions,
            raw=data,
        )


@dataclass(frozen=True)
class ResolvedTarget:
    url: str
    extension: str
    filename: str
    entry: ListingEntry


@dataclass(frozen=True)
class RunConfig:
    """
    Immutable run configuration built by the CLI.

    Size limits are in bytes; UNLIMITED (-1) disables a limit.
    preview_width None selects the unscaled preview source.
    """

    path: str = ""
    folder: Path = Path(".")
    after: str = ""
    sort: str = ""
    search: str = ""
    entries_limit: int = DEFAULT_ENTRIES_LIMIT
    user_agent: str = USER_AGENT

    template_filter: Optional[jinja2.Template] = None
    title_contains: Optional[Pattern] = None
    flair_contains: Optional[Pattern] = None
    link_contains: Optional[Pattern] = None
    title_not_contains: Optional[Pattern] = None
    flair_not_contains: Optional[Pattern] = None
    link_not_contains: Optional[Pattern] = None
    min_score: int = 0
    download_preview: bool = False
    prefer_preview: bool = False
    preview_width: Optional[int] = None
    og_type: Optional[str] = None

    max_files: int = UNLIMITED
    max_storage: int = UNLIMITED
    max_size: int = UNLIMITED

    dry_run: bool = False
    debug: bool = False
    allow_special_chars: bool = False
    print_post_data: bool = False

    post_links_file: Optional[IO[str]] = None
    media_links_file: Optional[IO[str]] = None
    media_link_format: Optional[jinja2.Template] = None
    post_data_output: Optional[IO[str]] = None
    status_stream: Optional[IO[str]] = None
    log_file: Optional[Path] = None

    @property
    def is_top_sort(self) -> bool:
        return self.sort.startswith("top-")


# =========================================================
# STATS
# =========================================================
class Stats:
    """
    Run counters. Mutated only through the record_* accessors.

    Invariant: saved + failed + repeated <= processed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._processed = 0
        self._saved = 0
        self._failed = 0
        self._repeated = 0
        self._copied_bytes = 0

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def saved(self) -> int:
        return self._saved

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def repeated(self) -> int:
        return self._repeated

    @property
    def copied_bytes(self) -> int:
        return self._copied_bytes

    @property
    def other(self) -> int:
        return self._processed - self._saved - self._failed - self._repeated

    def record_processed(self):
        with self._lock:
            self._processed += 1

    def record_saved(self):
        with self._lock:
            self._saved += 1

    def record_failed(self):
        with self._lock:
            self._failed += 1

    def record_repeated(self):
        with self._lock:
            self._repeated += 1

    def add_copied_bytes(self, count: int):
        with self._lock:
            self._copied_bytes += count

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                "processed": self._processed,
                "saved": self._saved,
                "failed": self._failed,
                "repeated": self._repeated,
                "other": self.other,
                "copied_bytes": self._copied_bytes,
            }

    def summary_lines(self, width: int = 80) -> List[str]:
        snap = self.snapshot()
        rule = "-" * width
        return [
            rule,
            f"Processed Posts:  {snap['processed']}",
            f"Already Downloaded:  {snap['repeated']}",
            f"Failed:  {snap['failed']}",
            f"Saved:  {snap['saved']}",
            f"Other:  {snap['other']}",
            rule,
            f"Approx. Storage Used: {format_size(snap['copied_bytes'])}",
            rule,
        ]


# =========================================================
# EVENT LOG
# =========================================================
class EventLog:
    """
    Timestamped run log kept in memory and optionally on disk.

    Debug lines are echoed to the stream only in debug mode;
    info/warning/error lines are always echoed.
    """

    def __init__(self, debug: bool = False, log_file: Optional[Path] = None,
                 stream: Optional[IO[str]] = None, maxlen: int = DEBUG_LOG_MAXLEN):
        self.debug = debug
        self.log_file = log_file
        self.stream = stream
        self.lines = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def log(self, message: str, level: str = "debug"):
        """
        Record a log line.

        Args:
            message: Log message
            level: Log level (debug, info, warning, error)
        """
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted = f"[{timestamp}] [{level.upper()}] {message}"

        with self._lock:
            self.lines.append(formatted)
            if self.log_file is not None:
                try:
                    with open(self.log_file, "a", encoding="utf-8") as f:
                        f.write(formatted + "\n")
                except OSError:
                    # unwritable log file: keep running with in-memory log only
                    self.log_file = None

        if self.stream is not None and (self.debug or level != "debug"):
            print(message, file=self.stream, flush=True)

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        """
        Get log entries from a specific index.

        Returns:
            Tuple of (log_lines, new_index)
        """
        with self._lock:
            lines = list(self.lines)
        return lines[from_index:], len(lines)


# =========================================================
# CANCELLATION + TERMINATION
# =========================================================
class CancelToken:
    """Set-once interrupt flag polled by the pipeline at safe points."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise RunTerminated(TerminationReason.USER_INTERRUPT)


class TerminationController:
    """
    Single authority that ends the run.

    The first finish() wins: it prints the summary and resolves the run
    future. Later calls are no-ops. An interrupt also closes and removes the
    destination file of an in-progress transfer before the report.
    """

    def __init__(self, stats: Stats, cancel_token: CancelToken, event_log: EventLog,
                 status_stream: Optional[IO[str]] = None, columns: int = 80):
        self.stats = stats
        self.cancel_token = cancel_token
        self.event_log = event_log
        self.status_stream = status_stream or sys.stderr
        self.columns = columns
        self.reason: Optional[TerminationReason] = None

        self._future: Future = Future()
        self._lock = threading.RLock()
        self._active_path: Optional[Path] = None
        self._active_handle: Optional[IO[bytes]] = None

    @property
    def finished(self) -> bool:
        return self._future.done()

    def finish(self, reason: TerminationReason) -> bool:
        """
        End the run with the given reason.

        Returns:
            True if this call won, False if the run had already ended
        """
        with self._lock:
            if self._future.done():
                return False
            if reason is TerminationReason.USER_INTERRUPT:
                self.cancel_token.cancel()
                self._discard_active_download()
            self.reason = reason
            self.event_log.log(f"Run finished: {reason.value}", "info")
            self.print_stats()
            self._future.set_result(reason)
            return True

    def interrupt(self) -> bool:
        self._status("Interrupt received, Exiting...")
        return self.finish(TerminationReason.USER_INTERRUPT)

    def fail(self, exc: BaseException) -> bool:
        """Resolve the run with a fatal error instead of a reason."""
        with self._lock:
            if self._future.done():
                return False
            self.cancel_token.cancel()
            self._future.set_exception(exc)
            return True

    def open_destination(self, path: Path) -> IO[bytes]:
        """
        Create the destination file of a transfer.

        The interrupt flag is polled right before the file is created, under
        the same lock an interrupt uses to discard the active file.
        """
        with self._lock:
            self.cancel_token.raise_if_cancelled()
            if self._future.done():
                raise RunTerminated(self.reason or TerminationReason.USER_INTERRUPT)
            handle = open(path, "wb")
            self._active_path = path
            self._active_handle = handle
            return handle

    def release_destination(self, handle: IO[bytes]):
        with self._lock:
            if self._active_handle is handle:
                self._active_handle = None
                self._active_path = None
            if not handle.closed:
                handle.close()

    def _discard_active_download(self):
        if self._active_handle is not None and not self._active_handle.closed:
            self._active_handle.close()
        if self._active_path is not None:
            self._status(f"Removing possibly incomplete file: '{self._active_path}'")
            self._active_path.unlink(missing_ok=True)
        self._active_handle = None
        self._active_path = None

    def print_stats(self):
        for line in self.stats.summary_lines(self.columns):
            self._status(line)

    def _status(self, text: str):
        print(text, file=self.status_stream, flush=True)

    def wait(self, poll_interval: float = WAIT_POLL_SECONDS) -> TerminationReason:
        """
        Block until the run ends.

        Polls so signal handlers on the waiting thread keep running.
        Re-raises a fatal pipeline error.
        """
        while True:
            try:
                return self._future.result(timeout=poll_interval)
            except FutureTimeoutError:
                continue


# =========================================================
# RUN CONTEXT
# =========================================================
@dataclass
class RunContext:
    """Everything one run shares, passed explicitly to each component."""

    config: RunConfig
    stats: Stats
    session: requests.Session
    cancel_token: CancelToken
    controller: TerminationController
    event_log: EventLog
    status_stream: IO[str]
    columns: int = 80

    def log(self, message: str, level: str = "debug"):
        self.event_log.log(message, level)

    def echo(self, text: str):
        self.status_stream.write(text)
        self.status_stream.flush()

    def end_run(self, reason: TerminationReason):
        self.controller.finish(reason)
        raise RunTerminated(reason)


class ProgressWriter:
    """
    Wraps a binary writer and reports the running total.

    The callback fires only when more than min_bytes were written AND more
    than min_seconds elapsed since the previous call (the first call only
    needs the byte threshold).
    """

    def __init__(self, writer, callback: Callable[[int], None],
                 min_bytes: int = PROGRESS_MIN_BYTES,
                 min_seconds: float = PROGRESS_MIN_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.writer = writer
        self.callback = callback
        self.min_bytes = min_bytes
        self.min_seconds = min_seconds
        self.clock = clock
        self.total = 0
        self._last_total = 0
        self._last_call: Optional[float] = None

    def write(self, data: bytes) -> int:
        written = self.writer.write(data)
        if written is None:
            written = len(data)
        self.total += written

        if self.total - self._last_total > self.min_bytes:
            now = self.clock()
            if self._last_call is None or now - self._last_call > self.min_seconds:
                self._last_call = now
                self._last_total = self.total
                self.callback(self.total)
        return written


# =========================================================
# ENTRY CLASSIFIER
# =========================================================
def pick_preview(entry: ListingEntry, width: Optional[int]) -> Optional[PreviewVariant]:
    """Preview with the given width, or the unscaled source when width is None."""
    if width is None:
        return entry.preview_source
    for variant in entry.preview_resolutions:
        if variant.width == width:
            return variant
    return None


def derive_filename(entry: ListingEntry, extension: str, allow_special_chars: bool = False) -> str:
    title = entry.title.replace("/", "|").strip()
    title = html.unescape(title)
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:TRUNCATED_TITLE_LENGTH] + ".."
    return sanitize_filename(f"{title} [{entry.id}]{extension}", allow_special_chars)


def _chooses(pattern: Optional[Pattern], text: Optional[str]) -> bool:
    # no pattern chooses everything
    return pattern is None or pattern.search(text or "") is not None


def _skips(pattern: Optional[Pattern], text: Optional[str]) -> bool:
    return pattern is not None and pattern.search(text or "") is not None


class EntryClassifier:
    """
    Turns a listing entry into a ResolvedTarget, or drops it.

    Drop rules run in order, first match wins: template filter, positive
    regexes, negative regexes, score threshold, preview selection. Then the
    URL must resolve to a known media extension.
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    def rejection(self, entry: ListingEntry) -> Optional[str]:
        """Reason the filter chain drops an entry, None if it passes."""
        cfg = self.ctx.config

        if cfg.template_filter is not None:
            rendered = render_template(cfg.template_filter, entry.raw)
            if is_false_value(rendered):
                return f"Template filter evaluated to: {json.dumps(rendered)}"

        if not _chooses(cfg.title_contains, entry.title):
            return f"Title not match regex: {json.dumps(entry.title)}"
        if not _chooses(cfg.flair_contains, entry.flair):
            return f"Flair not match regex: {json.dumps(entry.title)} {json.dumps(entry.flair)}"
        if not _chooses(cfg.link_contains, entry.url):
            return f"Link not match regex: {json.dumps(entry.title)} {entry.url}"

        if _skips(cfg.title_not_contains, entry.title):
            return f"Title skipped by regex: {json.dumps(entry.title)}"
        if _skips(cfg.flair_not_contains, entry.flair):
            return f"Flair skipped by regex: {json.dumps(entry.title)} {json.dumps(entry.flair)}"
        if _skips(cfg.link_not_contains, entry.url):
            return f"Posted link skipped by regex: {json.dumps(entry.title)} {entry.url}"

        return None

    def classify(self, entry: ListingEntry) -> Optional[ResolvedTarget]:
        cfg = self.ctx.config

        reason = self.rejection(entry)
        if reason:
            self.ctx.log(reason)
            return None

        if entry.score < cfg.min_score:
            self.ctx.log(f"Skipped due to less score: {entry.title} | Score: {entry.score} | {entry.url}")
            if cfg.is_top_sort:
                # top listings are ranked by score, nothing later can pass
                self.ctx.echo(f"Skipping posts with less points, since sort={cfg.sort}\n")
                self.ctx.end_run(TerminationReason.PAGES_EXHAUSTED)
            return None

        url = self._select_url(entry)
        if url is None:
            return None

        if cfg.post_links_file is not None:
            cfg.post_links_file.write(entry.url + "\n")

        resolved = self.resolve_url(url)
        if resolved is None:
            self.ctx.log(f"Skip non-imagelike entry: {entry.title} | {url}")
            return None
        final_url, extension = resolved

        if cfg.media_links_file is not None:
            template = cfg.media_link_format or compile_template(DEFAULT_MEDIA_LINK_FORMAT)
            cfg.media_links_file.write(render_template(template, link_fields(entry, final_url)) + "\n")

        filename = derive_filename(entry, extension, cfg.allow_special_chars)
        self.ctx.log(f"URL: {url} | Score: {entry.score}")
        if final_url != url:
            self.ctx.log(f"-> {final_url}")
        return ResolvedTarget(url=final_url, extension=extension, filename=filename, entry=entry)

    def _select_url(self, entry: ListingEntry) -> Optional[str]:
        cfg = self.ctx.config
        if not (cfg.download_preview or cfg.prefer_preview):
            return entry.url

        self.ctx.log(f"Original URL: {entry.url}")
        self.ctx.log("Choosing preview URL")
        preview = pick_preview(entry, cfg.preview_width) if entry.has_preview else None
        if preview is not None and preview.url:
            return preview.url

        self.ctx.log(f"No preview found: {json.dumps(entry.title)}")
        if cfg.download_preview:
            return None
        return entry.url

    def resolve_url(self, url: str, depth: int = 0) -> Optional[Tuple[str, str]]:
        """
        Resolve a posted link to (media_url, extension).

        Args:
            url: Link to resolve
            depth: Number of pages already scraped for this entry

        Returns:
            (final_url, extension), or None for non-media links
        """
        parts = urlsplit(url)
        path = parts.path

        # imgur gifv pages are mp4 videos
        if parts.netloc in GIFV_HOSTS and path.endswith(".gifv"):
            final = urlunsplit((parts.scheme or "https", GIFV_TARGET_HOST,
                                path[:-len(".gifv")] + ".mp4", parts.query, parts.fragment))
            return final, ".mp4"

        for extension in MEDIA_EXTENSIONS:
            if path.endswith(extension):
                return url, extension

        if self.ctx.config.og_type and depth < MAX_SCRAPE_DEPTH:
            og_url = self._scrape_og_url(url)
            if og_url:
                return self.resolve_url(og_url, depth + 1)

        return None

    def _scrape_og_url(self, url: str) -> Optional[str]:
        self.ctx.cancel_token.raise_if_cancelled()
        self.ctx.log(f"REQUEST PAGE: {url}")
        try:
            with self.ctx.session.get(url, stream=True) as response:
                content_type = response.headers.get("Content-Type", "")
                if not content_type.lower().startswith("text/html"):
                    self.ctx.log("Unsupported Content-Type when looking for og: url")
                    return None
                return extract_og_url(self._read_head(response), self.ctx.config.og_type)
        except requests.RequestException as e:
            self.ctx.log(str(e))
            return None

    def _read_head(self, response: requests.Response) -> bytes:
        """Read a page up to the end of its <head>, at most MAX_SCRAPE_BYTES."""
        page = bytearray()
        for chunk in response.iter_content(chunk_size=SCRAPE_CHUNK_SIZE):
            self.ctx.cancel_token.raise_if_cancelled()
            page += chunk
            if len(page) >= MAX_SCRAPE_BYTES or b"</head>" in page.lower():
                break
        return bytes(page[:MAX_SCRAPE_BYTES])


# =========================================================
# DOWNLOADER
# =========================================================
def _content_length(response: requests.Response) -> Optional[int]:
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class Downloader:
    """
    Saves one ResolvedTarget at a time.

    Outcomes are echoed on the status stream as they happen and counted in
    Stats. Only the storage cap, the file cap and an interrupt end the run.
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    @property
    def _name_width(self) -> int:
        return max(self.ctx.columns - 24, 16)

    def _print_name(self, filename: str):
        width = self._name_width
        self.ctx.echo(f"\r{filename:<{width}.{width}}")

    def download(self, target: ResolvedTarget) -> DownloadOutcome:
        cfg = self.ctx.config
        stats = self.ctx.stats
        destination = cfg.folder / target.filename

        self._print_name(target.filename)

        if destination.exists():
            self.ctx.echo("    [Already Saved]\n")
            stats.record_repeated()
            return DownloadOutcome.REPEATED

        # dry runs still count toward the file cap
        if cfg.dry_run:
            self.ctx.echo("    [Dry Run]\n")
            stats.record_saved()
            self._check_file_cap()
            return DownloadOutcome.SAVED

        try:
            probe = self._probe(target.url)
        except requests.RequestException as e:
            return self._fail("Request", e)

        content_type = probe.headers.get("Content-Type", "")
        if not content_type.startswith(("image/", "video/")):
            self.ctx.echo(f"    [Unexpected Content-Type: {content_type}]\n")
            return DownloadOutcome.REJECTED

        length = _content_length(probe)
        if self._too_large(length):
            self.ctx.echo(f"    [Too Large: {format_size(length)}]\n")
            return DownloadOutcome.SKIPPED

        if cfg.max_storage != UNLIMITED and stats.copied_bytes + length > cfg.max_storage:
            self.ctx.echo(f"    [{format_size(length)} | Crosses storage limit]\n\n")
            self.ctx.end_run(TerminationReason.STORAGE_CAP_WOULD_EXCEED)

        return self._transfer(target, destination, length)

    def _probe(self, url: str) -> requests.Response:
        response = self.ctx.session.head(url, allow_redirects=True)
        response.close()
        response.raise_for_status()
        return response

    def _too_large(self, length: Optional[int]) -> bool:
        cfg = self.ctx.config
        if cfg.max_size != UNLIMITED and (length is None or length > cfg.max_size):
            return True
        # storage accounting needs a known length
        return cfg.max_storage != UNLIMITED and length is None

    def _transfer(self, target: ResolvedTarget, destination: Path,
                  length: Optional[int]) -> DownloadOutcome:
        stats = self.ctx.stats
        controller = self.ctx.controller

        try:
            output = controller.open_destination(destination)
        except OSError as e:
            self.ctx.echo(" [Can't create file]\n")
            self.ctx.log(f"Cannot create {destination}: {e}", "error")
            stats.record_failed()
            return DownloadOutcome.FAILED

        progress = _ProgressLine(self, target.filename, length)
        writer = ProgressWriter(output, progress.update)

        try:
            with self.ctx.session.get(target.url, stream=True) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    self.ctx.cancel_token.raise_if_cancelled()
                    if chunk:
                        writer.write(chunk)
            controller.release_destination(output)
        except RunTerminated:
            self._abandon(output, destination, writer.total)
            raise
        except (requests.RequestException, OSError, ValueError) as e:
            self._abandon(output, destination, writer.total)
            if self.ctx.cancel_token.cancelled:
                raise RunTerminated(TerminationReason.USER_INTERRUPT) from e
            return self._fail("Transfer", e)

        # partial bytes still count as bandwidth, see _abandon
        stats.add_copied_bytes(writer.total)
        # an interrupt before the release already removed the file
        self.ctx.cancel_token.raise_if_cancelled()

        self._print_name(target.filename)
        self.ctx.echo(f"{'    [Complete: ' + format_size(writer.total) + ']':<{progress.width}}\n")
        stats.record_saved()
        self._check_file_cap()
        return DownloadOutcome.SAVED

    def _abandon(self, output: IO[bytes], destination: Path, copied: int):
        self.ctx.stats.add_copied_bytes(copied)
        self.ctx.controller.release_destination(output)
        self.ctx.log(f"Try remove file: {destination}")
        destination.unlink(missing_ok=True)

    def _fail(self, what: str, error: Exception) -> DownloadOutcome:
        self.ctx.stats.record_failed()
        self.ctx.echo(f"    [{what} Error: {error}]\n")
        return DownloadOutcome.FAILED

    def _check_file_cap(self):
        max_files = self.ctx.config.max_files
        if max_files != UNLIMITED and self.ctx.stats.saved == max_files:
            self.ctx.end_run(TerminationReason.FILE_CAP_REACHED)


class _ProgressLine:
    """Redraws `name    [done/total]` in place, never shrinking the line."""

    def __init__(self, downloader: Downloader, filename: str, length: Optional[int]):
        self.downloader = downloader
        self.filename = filename
        self.length = length
        self.width = 0

    def update(self, total: int):
        self.downloader._print_name(self.filename)
        text = f"    [{format_size(total)}/{format_size(self.length)}]"
        self.downloader.ctx.echo(f"{text:<{self.width}}")
        self.width = max(self.width, len(text))


# =========================================================
# PAGINATOR
# =========================================================
def split_sort(sort: str) -> Tuple[str, str]:
    """
    Map a sort option to (listing sort, time period).

    >>> split_sort("top-week")
    ('top', 'week')
    """
    if sort in ("", "best"):
        return "", ""
    if sort in ("hot", "new", "rising"):
        return sort, ""
    if sort in SORT_MODES and sort.startswith("top-"):
        return "top", sort[len("top-"):]
    raise ValueError(f"Invalid sort option: {sort}")


def decode_listing(response: requests.Response) -> List[ListingEntry]:
    """Decode one listing page. Raises ListingDecodeError."""
    try:
        payload = response.json()
    except ValueError as e:
        raise ListingDecodeError(
            f"Cannot decode listing response (HTTP {response.status_code})"
        ) from e

    try:
        children = payload["data"]["children"]
    except (KeyError, TypeError) as e:
        raise ListingDecodeError(
            f"Listing response has no data.children (HTTP {response.status_code})"
        ) from e
    if not isinstance(children, list):
        raise ListingDecodeError("Listing data.children is not a list")

    entries = []
    for child in children:
        if not isinstance(child, dict):
            raise ListingDecodeError(f"Malformed listing child: {child!r}")
        entries.append(ListingEntry.from_api(child.get("data")))
    return entries


class Paginator:
    """
    Walks listing pages until the run ends.

    There is no last-page marker in the API: a page that does not advance
    the processed counter ends the run with PAGES_EXHAUSTED.
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    def listing_request(self) -> Tuple[str, Dict[str, str]]:
        """
        Build the listing URL and its fixed query parameters.

        Returns:
            (url, params) without the `after` cursor
        """
        cfg = self.ctx.config
        path = cfg.path.strip("/")
        target = f"{LISTING_BASE_URL}/{path}" if path else LISTING_BASE_URL

        sort = cfg.sort
        if not path and not cfg.search and not sort:
            sort = "hot"
        sort_name, period = split_sort(sort)

        params: Dict[str, str] = {}
        if cfg.search:
            target += "/search"
            if sort_name:
                params["sort"] = sort_name
        elif sort_name:
            target += "/" + sort_name
        target += ".json"

        params["limit"] = str(cfg.entries_limit)
        if period:
            params["t"] = period
        if cfg.search:
            params["q"] = cfg.search
            params["restrict_sr"] = "true"
        return target, params

    def fetch_page(self, url: str, params: Dict[str, str]) -> requests.Response:
        self.ctx.log(f"Request: {url} {params}")
        return self.ctx.session.get(url, params=params, headers={"Accept": "application/json"})

    def handle_page(self, response: requests.Response,
                    handler: Callable[[ListingEntry], Any]) -> Optional[str]:
        """
        Feed every entry of a page to the handler, in order.

        Returns:
            Name of the last entry (the next cursor), None for an empty page
        """
        entries = decode_listing(response)
        rule = "-" * self.ctx.columns
        last = None
        for entry in entries:
            self.ctx.cancel_token.raise_if_cancelled()
            self.ctx.stats.record_processed()
            handler(entry)
            self.ctx.log(rule)
            last = entry.name
        self.ctx.log(rule)
        return last

    def traverse(self, handler: Callable[[ListingEntry], Any]):
        """Fetch pages until a termination reason ends the run."""
        url, params = self.listing_request()
        after = self.ctx.config.after

        while True:
            self.ctx.cancel_token.raise_if_cancelled()
            page_params = dict(params)
            if after:
                page_params["after"] = after

            with self.fetch_page(url, page_params) as response:
                processed = self.ctx.stats.processed
                last = self.handle_page(response, handler)

            if self.ctx.stats.processed == processed:
                self.ctx.end_run(TerminationReason.PAGES_EXHAUSTED)
            after = last


# =========================================================
# RIPIT CORE
# =========================================================
class RipCore:
    """
    Owns one run: stats, session, components and the pipeline thread.

    Usage:
        core = RipCore(config)
        reason = core.run()
    """

    def __init__(self, config: RunConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.status_stream = config.status_stream or sys.stderr
        columns = terminal_columns()

        self.stats = Stats()
        self.event_log = EventLog(debug=config.debug, log_file=config.log_file,
                                  stream=self.status_stream)
        self.cancel_token = CancelToken()
        self.controller = TerminationController(self.stats, self.cancel_token, self.event_log,
                                                self.status_stream, columns)

        # ===== SESSION =====
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": config.user_agent})

        self.ctx = RunContext(
            config=config,
            stats=self.stats,
            session=self.session,
            cancel_token=self.cancel_token,
            controller=self.controller,
            event_log=self.event_log,
            status_stream=self.status_stream,
            columns=columns,
        )
        self.classifier = EntryClassifier(self.ctx)
        self.downloader = Downloader(self.ctx)
        self.paginator = Paginator(self.ctx)
        self.pipeline_thread: Optional[threading.Thread] = None

        # no folder is created for dry runs
        if not config.dry_run:
            Path(config.folder).mkdir(parents=True, exist_ok=True)

    def handle_entry(self, entry: ListingEntry) -> Optional[DownloadOutcome]:
        cfg = self.config
        if cfg.print_post_data and cfg.post_data_output is not None:
            cfg.post_data_output.write(json.dumps(entry.raw, indent=2) + "\n")

        target = self.classifier.classify(entry)
        if target is None:
            return None
        return self.downloader.download(target)

    def _pipeline(self):
        try:
            self.paginator.traverse(self.handle_entry)
        except RunTerminated as e:
            self.event_log.log(f"Pipeline stopped: {e.reason.value}")
        except Exception as e:
            self.event_log.log(f"Fatal error: {e}", "error")
            self.controller.fail(e)

    def start(self):
        """Start the pipeline thread."""
        self.pipeline_thread = threading.Thread(target=self._pipeline, name="ripit-pipeline",
                                                daemon=True)
        self.pipeline_thread.start()
        self.event_log.log(f"Pipeline started: {self.config.path or 'front page'}")

    def wait(self) -> TerminationReason:
        try:
            return self.controller.wait()
        finally:
            if self.pipeline_thread is not None and self.pipeline_thread.is_alive():
                self.pipeline_thread.join(timeout=PIPELINE_JOIN_TIMEOUT)

    def run(self) -> TerminationReason:
        """Run the pipeline to completion and return why it ended."""
        self.start()
        return self.wait()

    def interrupt(self) -> bool:
        """Stop the run as a user interrupt. Safe to call from a signal handler."""
        return self.controller.interrupt()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.snapshot()
        stats["finished"] = self.controller.finished
        stats["reason"] = self.controller.reason.value if self.controller.reason else None
        return stats

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        return self.event_log.get_logs(from_index)
