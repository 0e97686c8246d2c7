from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from magiclip import Cue, CueTime, Entry, InternalStream, Metadata

SRT_HELLO = "1\n00:00:05,000 --> 00:00:07,000\nHello\n\n"


def make_cue(number: int, start_ms: int, end_ms: int, text: str) -> Cue:
    return Cue(number, CueTime.from_millis(start_ms),
               CueTime.from_millis(end_ms), text)


def make_entry(video: Path, cues, when: datetime | None = None,
               source=InternalStream(0)) -> Entry:
    if when is None:
        # Ahead of any ctime the test can produce, so the entry is fresh.
        when = datetime.now(timezone.utc) + timedelta(hours=1)
    return Entry(Metadata(str(video), when), ((source, tuple(cues)),))


class CountingScanner:
    """Stands in for scan_video: one stream with a single 'Hello' cue."""

    def __init__(self, errors=None) -> None:
        self.calls: list[str] = []
        self.errors = list(errors or [])

    def __call__(self, video_path: str):
        self.calls.append(video_path)
        entry = Entry(
            Metadata(video_path, datetime.now(timezone.utc)),
            ((InternalStream(0), (make_cue(1, 5000, 7000, "Hello"),)),),
        )
        return entry, list(self.errors)


@pytest.fixture
def cue_factory():
    return make_cue


@pytest.fixture
def entry_factory():
    return make_entry


@pytest.fixture
def counting_scanner() -> CountingScanner:
    return CountingScanner()


@pytest.fixture
def scanner_factory():
    return CountingScanner


@pytest.fixture
def video(tmp_path: Path) -> Path:
    path = tmp_path / "library" / "movie.mkv"
    path.parent.mkdir()
    path.write_bytes(b"not really a video")
    return path
