#!/usr/bin/env python3
"""
magiclip: search the subtitles of a video library and cut the matching
lines into standalone clips.

Every video found under the given paths is scanned once: its embedded
subtitle streams (and any sidecar .srt files) are extracted with ffmpeg,
parsed, and kept in a JSON scan cache.  Later runs only re-scan videos
whose ctime/mtime moved past the recorded scan time.  All cached lines
are offered in fzf; every selected line is re-encoded into its own clip.

Usage:
    magiclip ~/Videos/Movies
    magiclip --profile flac --namespace-by-profile ~/Videos/Anime
    find ~/Videos -name '*.mkv' | magiclip --output-dir ~/clips
    magiclip --scan-only ~/Videos
"""

__version__ = "0.2.0"

import argparse
import glob
import json
import logging
import os
import platform
import re
import signal
import subprocess
import sys
import tempfile
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from itertools import groupby
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional,
    TextIO, Tuple, Union,
)

import srt

# ============================================================
# Constants
# ============================================================

VIDEO_EXTENSIONS = {
    ".mp4", ".mkv", ".avi", ".mov", ".m4v", ".wmv", ".flv", ".webm",
    ".ts", ".mpg", ".mpeg", ".3gp", ".ogv", ".vob", ".mts", ".m2ts",
    ".divx", ".asf",
}

_SYSTEM = platform.system()

if _SYSTEM == "Windows":
    _appdata = os.environ.get("APPDATA", os.path.expanduser("~"))
    DATA_DIR = os.path.join(_appdata, "magiclip")
elif _SYSTEM == "Darwin":
    DATA_DIR = os.path.expanduser("~/Library/Application Support/magiclip")
else:
    DATA_DIR = os.path.join(
        os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share")),
        "magiclip")

DB_FILE = os.path.join(DATA_DIR, "subdb.json")
CLIP_DIR = os.path.join(DATA_DIR, "clips")
LOG_FILE = os.path.join(DATA_DIR, "magiclip.log")

# Tag wrapping the entry map on disk; any other tag is refused.
SCHEMA_TAG = "v1"

LINE_BREAK = "\n"
LINE_BREAK_MARK = "↳"
EMPTY_STEM = "…empty…"

_SIDECAR_SUFFIX = r"(\.\w{2,3})?\.srt"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_NS_PER_SEC = 10 ** 9
_I64_MIN = -(2 ** 63)
_I64_MAX = 2 ** 63 - 1


@dataclass(frozen=True)
class ClipConstants:
    FFPROBE_TIMEOUT: int = 60
    WORKERS: int = 4
    SUBPROCESS_POLL_INTERVAL: float = 0.1
    # Byte budget for the cue text and for the video stem inside a clip
    # filename; both are cut on a UTF-8 character boundary.
    MAX_NAME_PART_BYTES: int = 64


CONSTANTS = ClipConstants()


@dataclass(frozen=True)
class EncodingSettings:
    ext: str
    params: Tuple[Tuple[str, str], ...]
    description: str = ""

    def args(self) -> List[str]:
        out: List[str] = []
        for flag, value in self.params:
            out.append(flag)
            if value:
                out.append(value)
        return out


ENCODING_PROFILES: Dict[str, EncodingSettings] = {
    "AV1": EncodingSettings(
        ext="mkv",
        params=(
            ("-c:v", "libsvtav1"),
            ("-crf:v", "10"),
            ("-preset:v", "6"),
            ("-svtav1-params",
             "tune=0:film-grain=50:film-grain-denoise=0"
             ":enable-variance-boost=1"),
            ("-c:a", "libopus"),
            ("-b:a", "92k"),
            ("-ac", "2"),
        ),
        description="video+audio"),
    "FLAC": EncodingSettings(
        ext="flac",
        params=(("-vn", ""), ("-c:a", "flac"), ("-ac", "2")),
        description="audio-only"),
}

logger = logging.getLogger(__name__)
_logging_configured = False
_shutdown_requested = False
_active_processes: List[subprocess.Popen] = []
_process_lock = threading.Lock()


def _signal_handler(signum, frame):
    global _shutdown_requested
    if _shutdown_requested:
        # Snapshot the list while holding the lock, then operate outside
        # it to prevent deadlock when a worker thread owns _process_lock.
        with _process_lock:
            procs = list(_active_processes)
        for proc in procs:
            try:
                proc.kill()
            except OSError:
                pass
        sys.stderr.write("\nForced shutdown.\n")
        os._exit(130)
    _shutdown_requested = True
    with _process_lock:
        procs = list(_active_processes)
    for proc in procs:
        try:
            proc.terminate()
        except OSError:
            pass
    sys.stderr.write(
        "\nShutdown requested, saving scan cache… "
        "(press Ctrl+C again to force)\n")


def _setup_logging():
    global _logging_configured
    if _logging_configured:
        return
    os.makedirs(DATA_DIR, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8",
                                errors="backslashreplace"),
            logging.StreamHandler(sys.stderr),
        ],
    )
    _logging_configured = True


# ============================================================
# Utility helpers
# ============================================================


def escape_for_unix_filename(name: str) -> str:
    """Replace characters that are awkward in a filename.

    Path separators, shell globs, quotes, colons, pipes and NUL become
    ``_``; line breaks become ``___``; a leading ``-`` is replaced so the
    name is never mistaken for a command-line option.
    """
    name = name.replace("\r", "___").replace("\n", "___")
    name = re.sub(r"[/*?:|'\"\0]", "_", name)
    if name.startswith("-"):
        name = "_" + name[1:]
    return name


def _truncate_utf8(text: str, max_bytes: int) -> str:
    # surrogateescape: undecodable filename bytes count as one byte each
    used = 0
    for i, ch in enumerate(text):
        used += len(ch.encode("utf-8", errors="surrogateescape"))
        if used > max_bytes:
            return text[:i]
    return text


def format_time(seconds: float) -> str:
    if seconds < 0:
        return f"-{format_time(-seconds)}"
    if seconds < 3600:
        return f"{int(seconds // 60)}:{int(seconds % 60):02d}"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    s = int(seconds % 60)
    return f"{h}:{m:02d}:{s:02d}"


def _remove_if_exists(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as exc:
        logger.warning("Could not remove partial output %s: %s", path, exc)


class ProgressTracker:
    def __init__(self, total: int, operation: str):
        self.total = total
        self.operation = operation
        self.start_time = time.monotonic()
        self.completed = 0

    def update(self, current: int, extra: str = ""):
        self.completed = current
        elapsed = time.monotonic() - self.start_time
        msg = f"  [{current}/{self.total}] {self.operation}"
        if current > 0 and elapsed > 2.0:
            eta = elapsed / current * (self.total - current)
            msg += f" (ETA: {format_time(eta)})"
        if extra:
            msg += f" {extra}"
        logger.info(msg)


# ============================================================
# Errors
# ============================================================


class MagiclipError(Exception):
    """Base class for every user-facing failure."""


class UnsupportedSchemaError(MagiclipError):
    pass


class CorruptDatabaseError(MagiclipError):
    pass


class ToolError(MagiclipError):
    """An external tool could not be run or exited non-zero."""


class SubtitleParseError(MagiclipError):
    pass


class ScanError(MagiclipError):
    pass


class SelectorError(MagiclipError):
    pass


class ClipError(MagiclipError):
    pass


class DuplicateSelectionError(MagiclipError):
    def __init__(self, duplicates: Dict[str, int], what: str = "selection"):
        self.duplicates = dict(duplicates)
        lines = [f"  {count}x {text}"
                 for text, count in sorted(self.duplicates.items())]
        super().__init__(
            f"{len(self.duplicates)} duplicate {what}(s), refusing to clip:\n"
            + "\n".join(lines))


class InvariantViolation(AssertionError):
    """Internal logic error: state that the pipeline itself guarantees
    is missing.  Never handled per item."""


@dataclass(frozen=True)
class ItemError:
    phase: str
    path: str
    message: str

    def __str__(self) -> str:
        return f"[{self.phase}] {self.path}: {self.message}"


# ============================================================
# Data model
# ============================================================


@dataclass(frozen=True, order=True)
class Key:
    video_path: str

    @classmethod
    def for_path(cls, path: Union[str, "os.PathLike[str]"]) -> "Key":
        return cls(os.path.abspath(os.fspath(path)))


@dataclass(frozen=True, order=True)
class CueTime:
    hours: int
    minutes: int
    seconds: int
    milliseconds: int

    @classmethod
    def from_millis(cls, total: int) -> "CueTime":
        if total < 0:
            raise ValueError(f"negative subtitle time: {total} ms")
        secs, ms = divmod(total, 1000)
        mins, secs = divmod(secs, 60)
        hours, mins = divmod(mins, 60)
        return cls(hours, mins, secs, ms)

    @classmethod
    def from_timedelta(cls, delta: timedelta) -> "CueTime":
        return cls.from_millis(delta // timedelta(milliseconds=1))

    def to_millis(self) -> int:
        return (((self.hours * 60 + self.minutes) * 60 + self.seconds)
                * 1000 + self.milliseconds)

    def ffmpeg(self) -> str:
        # ffmpeg duration syntax: [HH:]MM:SS[.m...]
        return (f"{self.hours:02d}:{self.minutes:02d}:{self.seconds:02d}"
                f".{self.milliseconds:03d}")

    def __str__(self) -> str:
        return (f"{self.hours:02d}:{self.minutes:02d}:{self.seconds:02d}"
                f",{self.milliseconds:03d}")


@dataclass(frozen=True)
class Cue:
    number: int
    start: CueTime
    end: CueTime
    text: str


@dataclass(frozen=True)
class InternalStream:
    stream_index: int


@dataclass(frozen=True)
class ExternalFile:
    path: str


SubtitleSource = Union[InternalStream, ExternalFile]
SubFile = Tuple[SubtitleSource, Tuple[Cue, ...]]


@dataclass(frozen=True)
class Metadata:
    video_path: str
    # When the scan that produced the entry began, not the video's mtime.
    time: datetime


@dataclass(frozen=True)
class Entry:
    meta: Metadata
    sub_files: Tuple[SubFile, ...] = ()

    def cues(self) -> Iterator[Cue]:
        for _source, cues in self.sub_files:
            yield from cues


class Freshness(Enum):
    FRESH = "fresh"
    STALE = "stale"
    GONE = "gone"


class LookupStatus(Enum):
    NOT_PRESENT = "not-present"
    GONE = "gone"
    STALE = "stale"
    FRESH = "fresh"


class Lookup(NamedTuple):
    status: LookupStatus
    # Only set when status is FRESH.
    entry: Optional[Entry] = None


@dataclass(frozen=True)
class Selection:
    key: Key
    cue: Cue
    ident: str


ScanFunction = Callable[[str], Tuple[Entry, List[ItemError]]]


# ============================================================
# Staleness
# ============================================================


def _check_i64(value: int, what: str) -> int:
    if not _I64_MIN <= value <= _I64_MAX:
        raise OverflowError(
            f"{what} ({value} ns) does not fit in 64 bits; either the "
            f"scan cache is corrupt or the clock is past year 2262")
    return value


def datetime_to_ns(moment: datetime) -> int:
    delta = moment - _EPOCH
    ns = ((delta.days * 86400 + delta.seconds) * _NS_PER_SEC
          + delta.microseconds * 1000)
    return _check_i64(ns, "scan time")


def relevant_timestamp_ns(st: os.stat_result) -> int:
    # ctime catches renames and metadata touches, mtime catches edits.
    ctime = _check_i64(st.st_ctime_ns, "file ctime")
    mtime = _check_i64(st.st_mtime_ns, "file mtime")
    return max(ctime, mtime)


def classify_entry(entry: Entry) -> Freshness:
    path = entry.meta.video_path
    if not os.path.isfile(path):
        return Freshness.GONE
    scan_ns = datetime_to_ns(entry.meta.time)
    changed_ns = relevant_timestamp_ns(os.stat(path))
    # A change at exactly the scan time counts as a change.
    if changed_ns >= scan_ns:
        return Freshness.STALE
    return Freshness.FRESH


# ============================================================
# Serialization
# ============================================================


def _time_from_json(data: Dict[str, Any]) -> CueTime:
    parts = CueTime(int(data["hours"]), int(data["minutes"]),
                    int(data["seconds"]), int(data["milliseconds"]))
    return CueTime.from_millis(parts.to_millis())


def _cue_to_json(cue: Cue) -> Dict[str, Any]:
    return {
        "num": cue.number,
        "start_time": asdict(cue.start),
        "end_time": asdict(cue.end),
        "text": cue.text,
    }


def _cue_from_json(data: Dict[str, Any]) -> Cue:
    return Cue(int(data["num"]), _time_from_json(data["start_time"]),
               _time_from_json(data["end_time"]), str(data["text"]))


def _source_to_json(source: SubtitleSource) -> Dict[str, Any]:
    if isinstance(source, InternalStream):
        return {"InternalStream": {"stream_index": source.stream_index}}
    if isinstance(source, ExternalFile):
        return {"ExternalFile": {"path": source.path}}
    raise InvariantViolation(f"unknown subtitle source {source!r}")


def _source_from_json(data: Dict[str, Any]) -> SubtitleSource:
    if "InternalStream" in data:
        return InternalStream(int(data["InternalStream"]["stream_index"]))
    if "ExternalFile" in data:
        return ExternalFile(str(data["ExternalFile"]["path"]))
    raise ValueError(f"unknown subtitle source {sorted(data)}")


def entry_to_json(entry: Entry) -> Dict[str, Any]:
    return {
        "meta": {
            "video_path": entry.meta.video_path,
            "time": entry.meta.time.isoformat(timespec="microseconds"),
        },
        "sub_files": [
            [_source_to_json(source), [_cue_to_json(c) for c in cues]]
            for source, cues in entry.sub_files
        ],
    }


def entry_from_json(data: Dict[str, Any]) -> Entry:
    scanned = datetime.fromisoformat(data["meta"]["time"])
    if scanned.tzinfo is None:
        raise ValueError(f"scan time without UTC offset: {scanned}")
    meta = Metadata(str(data["meta"]["video_path"]),
                    scanned.astimezone(timezone.utc))
    sub_files = tuple(
        (_source_from_json(source),
         tuple(_cue_from_json(c) for c in cues))
        for source, cues in data["sub_files"])
    return Entry(meta, sub_files)


# ============================================================
# FFmpeg / FFprobe / fzf
# ============================================================


def _find_binary(name: str) -> str:
    script_dir = os.path.dirname(os.path.abspath(__file__))
    explicit = os.path.join(script_dir, "ffmpeg-custom", name)
    if os.path.isfile(explicit) and os.access(explicit, os.X_OK):
        return explicit
    for pattern in (
        os.path.join(script_dir, f"ffmpeg-*-static/{name}"),
        os.path.join(script_dir, f"ffmpeg-*/{name}"),
    ):
        for match in sorted(glob.glob(pattern), reverse=True):
            if os.path.isfile(match) and os.access(match, os.X_OK):
                return match
    return name


def validate_ffmpeg(ffmpeg_path: str) -> bool:
    try:
        r = subprocess.run(
            [ffmpeg_path, "-version"],
            capture_output=True, text=True, timeout=10)
        return r.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError, OSError):
        return False


FFMPEG = _find_binary("ffmpeg")
FFPROBE = _find_binary("ffprobe")
FZF = "fzf"


def _run_subprocess_interruptible(
    cmd: List[str], timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run *cmd* with cooperative shutdown/timeout and pipe-drain threads.

    Background reader threads continuously drain stdout and stderr so
    the subprocess never blocks on the OS pipe buffer.  *timeout* of
    ``None`` waits for as long as the tool runs; a shutdown request
    (SIGINT/SIGTERM) terminates the child and raises KeyboardInterrupt.
    """
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    with _process_lock:
        _active_processes.append(proc)

    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []

    def _drain(stream, collector: List[bytes]):
        try:
            for chunk in iter(lambda: stream.read(65536), b""):
                collector.append(chunk)
        except OSError:
            pass

    t_out = threading.Thread(
        target=_drain, args=(proc.stdout, stdout_chunks), daemon=True)
    t_err = threading.Thread(
        target=_drain, args=(proc.stderr, stderr_chunks), daemon=True)
    t_out.start()
    t_err.start()

    try:
        deadline = (time.monotonic() + timeout
                    if timeout is not None else None)
        while proc.poll() is None:
            if _shutdown_requested:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                raise KeyboardInterrupt("Shutdown requested")
            if deadline is not None and time.monotonic() > deadline:
                proc.kill()
                proc.wait()
                raise subprocess.TimeoutExpired(cmd, timeout)
            time.sleep(CONSTANTS.SUBPROCESS_POLL_INTERVAL)

        t_out.join(timeout=5)
        t_err.join(timeout=5)

        return subprocess.CompletedProcess(
            args=cmd, returncode=proc.returncode,
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        )
    finally:
        if proc.poll() is None:
            proc.kill()
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                pass
        with _process_lock:
            try:
                _active_processes.remove(proc)
            except ValueError:
                pass


def _run_tool(
    cmd: List[str], timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    tool = os.path.basename(cmd[0])
    try:
        result = _run_subprocess_interruptible(cmd, timeout=timeout)
    except FileNotFoundError as exc:
        raise ToolError(f"{tool} not found ({cmd[0]})") from exc
    except subprocess.TimeoutExpired as exc:
        raise ToolError(f"{tool} timed out after {timeout}s") from exc
    if result.returncode != 0:
        raise ToolError(
            f"{tool} exited with status {result.returncode}: "
            f"{result.stderr.strip() or '(no output)'}")
    return result


def count_subtitle_streams(
    video_path: str, timeout: Optional[float] = None,
) -> int:
    cmd = [FFPROBE, "-v", "error", "-select_streams", "s",
           "-show_entries", "stream=index", "-of", "json", video_path]
    if timeout is None:
        timeout = CONSTANTS.FFPROBE_TIMEOUT
    result = _run_tool(cmd, timeout=timeout)
    try:
        return len(json.loads(result.stdout or "{}").get("streams", []))
    except (json.JSONDecodeError, AttributeError) as exc:
        raise ToolError(f"unreadable ffprobe output: {exc}") from exc


def extract_subtitle_stream(
    video_path: str, stream_index: int, output_path: str,
    timeout: Optional[float] = None,
):
    cmd = [FFMPEG, "-nostdin", "-v", "error", "-i", video_path,
           "-map", f"0:s:{stream_index}", "-f", "srt", output_path, "-y"]
    try:
        _run_tool(cmd, timeout=timeout)
    except (ToolError, KeyboardInterrupt):
        _remove_if_exists(output_path)
        raise


def clip_video(
    video_path: str, output_base: str, start: CueTime, end: CueTime,
    profile: str, timeout: Optional[float] = None,
) -> str:
    """Re-encode ``[start, end)`` of *video_path* with *profile*.

    The profile's container extension is appended to *output_base*; the
    final path is returned.  A partially written file is removed when
    ffmpeg fails or the run is interrupted.
    """
    if end <= start:
        raise ClipError(f"cue ends before it starts ({start} -> {end})")
    settings = ENCODING_PROFILES[profile]
    output_path = f"{output_base}.{settings.ext}"
    duration = CueTime.from_millis(end.to_millis() - start.to_millis())
    cmd = [FFMPEG, "-nostdin", "-v", "error",
           # seek in the input, then stop after the cue's duration
           "-ss", start.ffmpeg(), "-i", video_path, "-t", duration.ffmpeg()]
    cmd += settings.args()
    cmd += ["-y", output_path]
    try:
        _run_tool(cmd, timeout=timeout)
    except (ToolError, KeyboardInterrupt):
        _remove_if_exists(output_path)
        raise
    return output_path


def fzf_select(candidates: List[str]) -> List[str]:
    """Let the user pick any number of *candidates* in fzf."""
    payload = LINE_BREAK.join(candidates).encode(
        "utf-8", errors="surrogateescape")
    try:
        result = subprocess.run(
            [FZF, "-m"], input=payload, stdout=subprocess.PIPE)
    except FileNotFoundError as exc:
        raise SelectorError(f"{FZF} not found") from exc
    if result.returncode != 0:
        raise SelectorError(f"fzf failed (status {result.returncode})")
    chosen = result.stdout.decode("utf-8", errors="surrogateescape")
    return [line for line in chosen.split(LINE_BREAK) if line]


# ============================================================
# Subtitle scanning
# ============================================================


def parse_subtitle_file(path: str) -> Tuple[Cue, ...]:
    with open(path, "rb") as f:
        raw = f.read()
    text = raw.decode("utf-8-sig", errors="replace")
    try:
        return tuple(
            Cue(sub.index, CueTime.from_timedelta(sub.start),
                CueTime.from_timedelta(sub.end), sub.content)
            for sub in srt.parse(text))
    except (srt.SRTParseError, ValueError) as exc:
        raise SubtitleParseError(f"{path}: {exc}") from exc


def find_sidecar_subtitles(video_path: str) -> List[str]:
    """Return ``<stem>.srt`` / ``<stem>.<lang>.srt`` files beside a video."""
    video = Path(video_path)
    pattern = re.compile(
        re.escape(video.stem) + _SIDECAR_SUFFIX + "$", re.IGNORECASE)
    try:
        return sorted(
            str(p) for p in video.parent.iterdir()
            if p.is_file() and pattern.match(p.name))
    except OSError as exc:
        logger.warning("Cannot list %s: %s", video.parent, exc)
        return []


def scan_video(
    video_path: str, timeout: Optional[float] = None,
) -> Tuple[Entry, List[ItemError]]:
    """Extract and parse every subtitle source of one video.

    Sources that fail are reported as ItemErrors and left out; the entry
    is built from the rest.  ScanError is raised only when the video
    cannot be probed at all.
    """
    scan_time = datetime.now(timezone.utc)
    errors: List[ItemError] = []
    sub_files: List[SubFile] = []

    try:
        n_streams = count_subtitle_streams(video_path, timeout)
    except ToolError as exc:
        raise ScanError(f"cannot probe subtitle streams: {exc}") from exc

    with tempfile.TemporaryDirectory(prefix="magiclip-") as tmp:
        for idx in range(n_streams):
            if _shutdown_requested:
                raise KeyboardInterrupt("Shutdown requested")
            out = os.path.join(tmp, f"{idx}.srt")
            try:
                extract_subtitle_stream(video_path, idx, out, timeout)
                cues = parse_subtitle_file(out)
            except (ToolError, SubtitleParseError, OSError) as exc:
                errors.append(ItemError(
                    "extract", video_path, f"subtitle stream {idx}: {exc}"))
                continue
            sub_files.append((InternalStream(idx), cues))

    for sidecar in find_sidecar_subtitles(video_path):
        try:
            cues = parse_subtitle_file(sidecar)
        except (SubtitleParseError, OSError) as exc:
            errors.append(ItemError("parse", video_path, str(exc)))
            continue
        sub_files.append((ExternalFile(sidecar), cues))

    entry = Entry(Metadata(video_path, scan_time), tuple(sub_files))
    return entry, errors


# ============================================================
# Scan cache
# ============================================================


class ScanStore:
    """Scan results keyed by video path, persisted as one JSON file.

    The entry map is only mutated through ``lookup_or_rescan`` and
    ``remove``.  Entries are immutable, so snapshots handed out by
    ``entries`` stay valid while the store changes.  Use the store as a
    context manager: ``close`` writes the file once on the way out.
    """

    def __init__(
        self, db_path: Optional[str] = None,
        entries: Optional[Dict[Key, Entry]] = None,
        scanner: Optional[ScanFunction] = None,
    ):
        self.db_path = db_path
        self._entries: Dict[Key, Entry] = dict(entries or {})
        self._scan = scanner if scanner is not None else scan_video
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def load(
        cls, db_path: str, scanner: Optional[ScanFunction] = None,
    ) -> "ScanStore":
        if not os.path.exists(db_path):
            logger.info("No scan cache at %s, starting empty", db_path)
            return cls(db_path, scanner=scanner)
        try:
            with open(db_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CorruptDatabaseError(
                f"scan cache {db_path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict) or len(payload) != 1:
            raise CorruptDatabaseError(
                f"scan cache {db_path} has no schema tag")
        tag, pairs = next(iter(payload.items()))
        if tag != SCHEMA_TAG:
            raise UnsupportedSchemaError(
                f"scan cache {db_path} uses schema {tag!r}, "
                f"only {SCHEMA_TAG!r} is supported")
        try:
            entries = {
                Key(str(k["video_path"])): entry_from_json(e)
                for k, e in pairs
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptDatabaseError(
                f"scan cache {db_path} is malformed: {exc}") from exc
        logger.info("Loaded %d cached scans from %s", len(entries), db_path)
        return cls(db_path, entries, scanner=scanner)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.close()
        except (OSError, ValueError, TypeError) as exc:
            if exc_type is None:
                raise
            logger.error("Failed to save scan cache %s: %s",
                         self.db_path, exc)
        return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Key) -> bool:
        with self._lock:
            return key in self._entries

    def save(self):
        if self.db_path is None:
            raise ValueError("scan store has no backing file")
        with self._lock:
            items = sorted(self._entries.items())
        payload = {SCHEMA_TAG: [
            [{"video_path": key.video_path}, entry_to_json(entry)]
            for key, entry in items
        ]}
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        # ASCII escapes keep undecodable filenames (lone surrogates) intact.
        text = json.dumps(payload)
        # Overwrites in place: a crash mid-write leaves a broken file.
        with open(self.db_path, "w", encoding="utf-8") as f:
            f.write(text)
        logger.info("Scan cache written to %s (%d entries)",
                    self.db_path, len(items))

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self.db_path is not None:
            self.save()

    def get(self, key: Key) -> Optional[Entry]:
        with self._lock:
            return self._entries.get(key)

    def entries(self) -> List[Tuple[Key, Entry]]:
        with self._lock:
            return sorted(self._entries.items())

    def remove(self, key: Key):
        with self._lock:
            self._entries.pop(key, None)

    def lookup(self, key: Key) -> Lookup:
        entry = self.get(key)
        if entry is None:
            return Lookup(LookupStatus.NOT_PRESENT)
        state = classify_entry(entry)
        if state is Freshness.GONE:
            return Lookup(LookupStatus.GONE)
        if state is Freshness.STALE:
            return Lookup(LookupStatus.STALE)
        if state is Freshness.FRESH:
            return Lookup(LookupStatus.FRESH, entry)
        raise InvariantViolation(f"unhandled freshness {state!r}")

    def lookup_or_rescan(
        self, key: Key, errors: Optional[List[ItemError]] = None,
    ) -> Optional[Entry]:
        """Return a fresh entry for *key*, scanning the video if needed.

        Not safe to call for the same key from several threads at once.
        """
        found = self.lookup(key)
        status = found.status
        if status is LookupStatus.GONE:
            logger.info("Dropping %s: file no longer exists",
                        key.video_path)
            self.remove(key)
            return None
        if status is LookupStatus.FRESH:
            return found.entry
        if status in (LookupStatus.STALE, LookupStatus.NOT_PRESENT):
            logger.info("%s %s",
                        "Re-scanning" if status is LookupStatus.STALE
                        else "Scanning", key.video_path)
            entry, scan_errors = self._scan(key.video_path)
            if errors is not None:
                errors.extend(scan_errors)
            with self._lock:
                self._entries[key] = entry
            return entry
        raise InvariantViolation(f"unhandled lookup status {status!r}")


# ============================================================
# Scanner
# ============================================================


def _walk(path: Path, errors: List[ItemError]) -> Iterator[str]:
    if path.is_symlink():
        errors.append(ItemError("walk", str(path), "symlink, skipped"))
        return
    if path.is_dir():
        try:
            children = sorted(path.iterdir())
        except OSError as exc:
            errors.append(ItemError("walk", str(path), str(exc)))
            return
        for child in children:
            yield from _walk(child, errors)
    elif path.is_file():
        if path.suffix.lower() in VIDEO_EXTENSIONS:
            yield os.path.abspath(path)
    else:
        errors.append(ItemError(
            "walk", str(path), "neither a file nor a directory, skipped"))


def iter_media_files(
    paths: Iterable[str], errors: List[ItemError],
) -> Iterator[str]:
    for raw in paths:
        yield from _walk(Path(raw).expanduser(), errors)


def scan_paths(
    store: ScanStore, paths: Iterable[str],
) -> Tuple[List[Key], List[ItemError]]:
    """Bring the cache up to date for every video under *paths*.

    Runs sequentially: this is the only phase that writes to the store.
    Returns the keys that have an entry afterwards and every per-item
    error met on the way.
    """
    errors: List[ItemError] = []
    videos = list(dict.fromkeys(iter_media_files(paths, errors)))
    logger.info("Found %d videos", len(videos))

    keys: List[Key] = []
    prog = ProgressTracker(len(videos), "Scanning")
    for idx, video in enumerate(videos, 1):
        if _shutdown_requested:
            break
        key = Key.for_path(video)
        try:
            entry = store.lookup_or_rescan(key, errors)
        except (ScanError, OSError) as exc:
            errors.append(ItemError("scan", video, str(exc)))
        else:
            if entry is not None:
                keys.append(key)
        prog.update(idx, os.path.basename(video))
    return keys, errors


# ============================================================
# Identifying strings and selection
# ============================================================


def identifying_string(video_path: str, cue: Cue) -> str:
    text = cue.text.replace("\r\n", LINE_BREAK).replace("\r", LINE_BREAK)
    text = text.replace(LINE_BREAK, LINE_BREAK_MARK)
    return f"{text} ({video_path}, [{cue.start}])"


def _entry_strings(key: Key, entry: Entry) -> List[Tuple[str, Cue]]:
    return [(identifying_string(key.video_path, cue), cue)
            for cue in entry.cues()]


def identifying_strings(
    store: ScanStore, workers: int = CONSTANTS.WORKERS,
) -> List[Tuple[Key, str]]:
    snapshot = store.entries()

    def _strings_for(item: Tuple[Key, Entry]) -> List[Tuple[Key, str]]:
        key, entry = item
        return [(key, ident) for ident, _cue in _entry_strings(key, entry)]

    if workers > 1 and len(snapshot) > 1:
        nw = min(workers, len(snapshot))
        with ThreadPoolExecutor(max_workers=nw) as pool:
            chunks = list(pool.map(_strings_for, snapshot))
    else:
        chunks = [_strings_for(item) for item in snapshot]
    return [pair for chunk in chunks for pair in chunk]


def find_duplicates(selected: Iterable[str]) -> Dict[str, int]:
    dups: Dict[str, int] = {}
    for text, group in groupby(sorted(selected)):
        count = sum(1 for _ in group)
        if count > 1:
            dups[text] = count
    return dups


def correlate_selection(
    store: ScanStore, selected: List[str],
) -> List[Selection]:
    """Map selected identifying strings back to (key, cue) pairs.

    Raises DuplicateSelectionError before anything else when a string
    was selected more than once.  The strings are matched against freshly
    recomputed ones, so the store may have been reloaded in between.
    """
    dups = find_duplicates(selected)
    if dups:
        raise DuplicateSelectionError(dups)

    index: Dict[str, Tuple[Key, Cue]] = {}
    for key, entry in store.entries():
        for ident, cue in _entry_strings(key, entry):
            index.setdefault(ident, (key, cue))

    out: List[Selection] = []
    for ident in selected:
        hit = index.get(ident)
        if hit is None:
            raise InvariantViolation(
                f"selected line not found in scan cache: {ident}")
        out.append(Selection(hit[0], hit[1], ident))
    return out


# ============================================================
# Clip batch
# ============================================================


def build_output_path(
    selection: Selection, profile: str, output_dir: str,
    namespace_by_profile: bool = False,
) -> str:
    """Output path without extension; clip_video appends it."""
    limit = CONSTANTS.MAX_NAME_PART_BYTES
    stem = Path(selection.key.video_path).stem or EMPTY_STEM
    name = escape_for_unix_filename(
        f"{_truncate_utf8(selection.cue.text, limit)} "
        f"({_truncate_utf8(stem, limit)}, [{selection.cue.start}], "
        f"p={profile})")
    if namespace_by_profile:
        output_dir = os.path.join(output_dir, profile)
    return os.path.join(output_dir, name)


def _locate_cue(key: Key, entry: Entry, ident: str) -> Cue:
    for candidate, cue in _entry_strings(key, entry):
        if candidate == ident:
            return cue
    raise InvariantViolation(
        f"cue vanished from fresh entry {key.video_path}: {ident}")


def clip_selection(
    store: ScanStore, selection: Selection, profile: str,
    output_dir: str, namespace_by_profile: bool = False,
    timeout: Optional[float] = None,
) -> str:
    key = selection.key
    found = store.lookup(key)
    status = found.status
    if status is LookupStatus.GONE:
        raise ClipError("video no longer exists")
    if status is LookupStatus.STALE:
        raise ClipError("video changed since it was scanned, rescan first")
    if status is LookupStatus.NOT_PRESENT:
        raise InvariantViolation(
            f"selected video missing from scan cache: {key.video_path}")
    if status is not LookupStatus.FRESH or found.entry is None:
        raise InvariantViolation(f"unhandled lookup status {status!r}")

    cue = _locate_cue(key, found.entry, selection.ident)
    output_base = build_output_path(
        selection, profile, output_dir, namespace_by_profile)
    os.makedirs(os.path.dirname(output_base), exist_ok=True)
    return clip_video(key.video_path, output_base, cue.start, cue.end,
                      profile, timeout=timeout)


def _clip_worker(
    args_tuple: Tuple,
) -> Tuple[Selection, Optional[str], Optional[ItemError]]:
    (store, sel, profile, out_dir, ns, timeout) = args_tuple
    try:
        out = clip_selection(store, sel, profile, out_dir, ns, timeout)
    except (MagiclipError, OSError) as exc:
        return sel, None, ItemError("clip", sel.key.video_path,
                                    f"{sel.ident}: {exc}")
    return sel, out, None


def _check_output_collisions(
    selections: List[Selection], profile: str, output_dir: str,
    namespace_by_profile: bool,
):
    targets = [build_output_path(s, profile, output_dir,
                                 namespace_by_profile)
               for s in selections]
    dups = find_duplicates(targets)
    if dups:
        raise DuplicateSelectionError(dups, what="output file")


def run_clip_batch(
    store: ScanStore, selections: List[Selection], profile: str,
    output_dir: str, namespace_by_profile: bool = False,
    workers: int = CONSTANTS.WORKERS, timeout: Optional[float] = None,
) -> Tuple[List[str], List[ItemError]]:
    """Clip every selection; one failure never cancels the others."""
    _check_output_collisions(selections, profile, output_dir,
                             namespace_by_profile)
    tasks = [(store, sel, profile, output_dir, namespace_by_profile,
              timeout) for sel in selections]
    outputs: List[str] = []
    errors: List[ItemError] = []
    prog = ProgressTracker(len(tasks), f"{profile} clips")

    def _collect(done: int, result):
        sel, out, err = result
        if err is not None:
            errors.append(err)
        else:
            outputs.append(out)
        prog.update(done, sel.ident)

    if workers > 1 and len(tasks) > 1:
        nw = min(workers, len(tasks))
        with ThreadPoolExecutor(max_workers=nw) as pool:
            futs = [pool.submit(_clip_worker, t) for t in tasks]
            for done, f in enumerate(as_completed(futs), 1):
                if _shutdown_requested:
                    for ff in futs:
                        ff.cancel()
                    break
                _collect(done, f.result())
    else:
        for done, task in enumerate(tasks, 1):
            if _shutdown_requested:
                break
            _collect(done, _clip_worker(task))
    return outputs, errors


# ============================================================
# CLI
# ============================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="magiclip",
        description="Search video subtitles with fzf and cut the "
                    "selected lines into clips.",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")
    parser.add_argument("paths", nargs="*", metavar="PATH",
                        help="video files or directories (recursive); "
                             "read from stdin when omitted")
    parser.add_argument("--db", type=str, default=DB_FILE,
                        help="scan cache file")
    parser.add_argument("--output-dir", type=str, default=CLIP_DIR)
    parser.add_argument(
        "--profile", type=str.upper, default="AV1",
        choices=list(ENCODING_PROFILES),
        help="encoding profile: " + ", ".join(
            f"{name} ({s.description}, .{s.ext})"
            for name, s in ENCODING_PROFILES.items()))
    parser.add_argument("--namespace-by-profile", action="store_true",
                        help="write clips to OUTPUT_DIR/PROFILE/")
    parser.add_argument("--workers", type=int, default=CONSTANTS.WORKERS)
    parser.add_argument("--no-parallel", action="store_true")
    parser.add_argument("--ffmpeg-timeout", type=float)
    parser.add_argument("--scan-only", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--clear-cache", action="store_true")
    return parser


def validate_cli_args(args: argparse.Namespace) -> bool:
    errors: List[str] = []
    if args.workers < 1:
        errors.append("workers must be ≥ 1")
    if args.ffmpeg_timeout is not None and args.ffmpeg_timeout <= 0:
        errors.append("ffmpeg timeout must be > 0")
    if os.path.isfile(args.output_dir):
        errors.append(f"output dir is a file: {args.output_dir}")
    for e in errors:
        logger.error(e)
    return len(errors) == 0


def read_input_paths(paths: List[str], stdin: TextIO) -> List[str]:
    if paths:
        return paths
    if stdin is None or stdin.isatty():
        return []
    return [line.strip() for line in stdin if line.strip()]


def _report(errors: List[ItemError], phase: str):
    if not errors:
        return
    logger.warning("%d problem(s) during %s:", len(errors), phase)
    for err in errors:
        logger.warning("  %s", err)


def _run_session(
    store: ScanStore, args: argparse.Namespace, paths: List[str],
    workers: int, timeout: Optional[float],
) -> int:
    """Scan, select and clip; returns the process exit code."""
    _keys, scan_errors = scan_paths(store, paths)
    _report(scan_errors, "scan")
    if _shutdown_requested:
        return 130
    if args.scan_only:
        print(f"Cached videos: {len(store)}")
        return 1 if scan_errors else 0

    strings = identifying_strings(store, workers)
    if not strings:
        logger.error("No subtitle lines in the scan cache.")
        return 1
    chosen = fzf_select([ident for _key, ident in strings])
    if not chosen:
        logger.info("Nothing selected.")
        return 0
    selections = correlate_selection(store, chosen)

    if args.dry_run:
        for sel in selections:
            print(build_output_path(
                sel, args.profile, args.output_dir,
                args.namespace_by_profile))
        return 0

    outputs, clip_errors = run_clip_batch(
        store, selections, args.profile, args.output_dir,
        args.namespace_by_profile, workers=workers, timeout=timeout)
    for out in sorted(outputs):
        print(out)
    _report(clip_errors, "clipping")
    if _shutdown_requested:
        return 130
    return 1 if clip_errors else 0


def main():
    _setup_logging()
    signal.signal(signal.SIGINT, _signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _signal_handler)

    parser = build_parser()
    args = parser.parse_args()

    if args.clear_cache:
        _remove_if_exists(args.db)
        print("Cache cleared.")
        return

    if not validate_cli_args(args):
        sys.exit(1)

    paths = read_input_paths(args.paths, sys.stdin)
    if not paths:
        parser.print_help()
        print("\nError: no input paths")
        sys.exit(1)

    if not validate_ffmpeg(FFMPEG):
        logger.error("ffmpeg not found: %s", FFMPEG)
        sys.exit(1)

    workers = 1 if args.no_parallel else args.workers
    timeout = args.ffmpeg_timeout

    def scanner(video_path: str) -> Tuple[Entry, List[ItemError]]:
        return scan_video(video_path, timeout=timeout)

    try:
        with ScanStore.load(args.db, scanner=scanner) as store:
            exit_code = _run_session(store, args, paths, workers, timeout)
    except DuplicateSelectionError as exc:
        # Clips for duplicates would overwrite each other.
        logger.error("Aborting: %s", exc)
        exit_code = 1
    except MagiclipError as exc:
        logger.error("Error: %s", exc)
        exit_code = 1
    except KeyboardInterrupt:
        exit_code = 130
    except Exception as exc:
        logger.error("Error: %s", exc)
        traceback.print_exc()
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
