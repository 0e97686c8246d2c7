from __future__ import annotations

import os
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import magiclip
from magiclip import (
    CueTime, DuplicateSelectionError, InvariantViolation, Key, ScanStore,
    Selection, ToolError, clip_video, correlate_selection,
    datetime_to_ns, identifying_strings, run_clip_batch, scan_paths,
)

SRT_HELLO = "1\n00:00:05,000 --> 00:00:07,000\nHello\n\n"


class FakeTools:
    """Replaces _run_tool: one subtitle stream, clips written as stubs."""

    def __init__(self) -> None:
        self.probes = 0
        self.extractions = 0
        self.clips: list[list[str]] = []

    def __call__(self, cmd, timeout=None):
        if "-select_streams" in cmd:
            self.probes += 1
            return subprocess.CompletedProcess(
                cmd, 0, stdout='{"streams": [{"index": 2}]}', stderr="")
        if "-map" in cmd:
            self.extractions += 1
            Path(cmd[-2]).write_text(SRT_HELLO, encoding="utf-8")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        self.clips.append(list(cmd))
        Path(cmd[-1]).write_bytes(b"clip")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


def _run_pipeline(db: Path, library: Path, out_dir: Path):
    with ScanStore.load(str(db)) as store:
        _keys, scan_errors = scan_paths(store, [str(library)])
        strings = identifying_strings(store)
        selections = correlate_selection(store, [s for _k, s in strings])
        outputs, clip_errors = run_clip_batch(
            store, selections, "AV1", str(out_dir))
    return outputs, scan_errors + clip_errors


def _fake_clip(calls):
    def fake(video_path, output_base, start, end, profile, timeout=None):
        calls.append(video_path)
        out = f"{output_base}.mkv"
        Path(out).write_bytes(b"clip")
        return out
    return fake


def test_movie_scenario_clips_once_and_reuses_cache(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
) -> None:
    library = tmp_path / "library"
    library.mkdir()
    (library / "movie.mkv").write_bytes(b"not really a video")
    tools = FakeTools()
    monkeypatch.setattr(magiclip, "_run_tool", tools)
    db = tmp_path / "subdb.json"
    out_dir = tmp_path / "clips"

    outputs, errors = _run_pipeline(db, library, out_dir)

    assert errors == []
    assert outputs == [
        str(out_dir / "Hello (movie, [00_00_05,000], p=AV1).mkv")]
    assert Path(outputs[0]).read_bytes() == b"clip"
    assert tools.extractions == 1
    clip_cmd = tools.clips[0]
    assert clip_cmd[clip_cmd.index("-ss") + 1] == "00:00:05.000"
    assert clip_cmd[clip_cmd.index("-t") + 1] == "00:00:02.000"

    outputs, errors = _run_pipeline(db, library, out_dir)

    assert errors == []
    assert len(outputs) == 1
    assert tools.probes == 1
    assert tools.extractions == 1


def test_one_stale_video_does_not_stop_the_batch(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    entry_factory, cue_factory,
) -> None:
    videos = []
    entries = {}
    for name in ("a.mkv", "b.mkv", "c.mkv"):
        video = tmp_path / name
        video.write_bytes(b"video")
        videos.append(video)
        entries[Key.for_path(video)] = entry_factory(
            video, [cue_factory(1, 1000, 2000, f"line from {name}")])
    store = ScanStore(None, entries)
    selections = correlate_selection(
        store, [s for _k, s in identifying_strings(store)])
    calls: list[str] = []
    monkeypatch.setattr(magiclip, "clip_video", _fake_clip(calls))

    # b.mkv is modified after the user picked its line
    later = datetime.now(timezone.utc) + timedelta(hours=2)
    os.utime(videos[1], ns=(datetime_to_ns(later),) * 2)

    outputs, errors = run_clip_batch(
        store, selections, "AV1", str(tmp_path / "out"), workers=3)

    assert len(outputs) == 2
    assert all(Path(o).exists() for o in outputs)
    assert sorted(calls) == [str(videos[0]), str(videos[2])]
    assert [(e.phase, e.path) for e in errors] == [("clip", str(videos[1]))]
    assert "changed" in errors[0].message


def test_deleted_video_fails_only_its_item(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    entry_factory, cue_factory,
) -> None:
    keep = tmp_path / "keep.mkv"
    gone = tmp_path / "gone.mkv"
    for video in (keep, gone):
        video.write_bytes(b"video")
    store = ScanStore(None, {
        Key.for_path(keep): entry_factory(keep, [cue_factory(1, 0, 500, "k")]),
        Key.for_path(gone): entry_factory(gone, [cue_factory(1, 0, 500, "g")]),
    })
    selections = correlate_selection(
        store, [s for _k, s in identifying_strings(store)])
    monkeypatch.setattr(magiclip, "clip_video", _fake_clip([]))
    gone.unlink()

    outputs, errors = run_clip_batch(
        store, selections, "AV1", str(tmp_path / "out"), workers=1)

    assert len(outputs) == 1
    assert [e.path for e in errors] == [str(gone)]
    assert "no longer exists" in errors[0].message


def test_uncuttable_cue_is_reported_without_running_ffmpeg(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    entry_factory, cue_factory,
) -> None:
    video = tmp_path / "movie.mkv"
    video.write_bytes(b"video")
    store = ScanStore(None, {
        Key.for_path(video): entry_factory(
            video, [cue_factory(1, 5000, 5000, "zero length")]),
    })
    selections = correlate_selection(
        store, [s for _k, s in identifying_strings(store)])

    def no_tool(cmd, timeout=None):
        raise AssertionError("ffmpeg must not run")

    monkeypatch.setattr(magiclip, "_run_tool", no_tool)

    outputs, errors = run_clip_batch(
        store, selections, "AV1", str(tmp_path / "out"))

    assert outputs == []
    assert len(errors) == 1
    assert "ends before it starts" in errors[0].message


def test_failed_encode_removes_partial_output(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
) -> None:
    def failing_tool(cmd, timeout=None):
        Path(cmd[-1]).write_bytes(b"half a clip")
        raise ToolError("ffmpeg exited with status 1: encoder missing")

    monkeypatch.setattr(magiclip, "_run_tool", failing_tool)
    base = tmp_path / "clip"

    with pytest.raises(ToolError):
        clip_video(str(tmp_path / "movie.mkv"), str(base),
                   CueTime.from_millis(1000), CueTime.from_millis(2000),
                   "FLAC")

    assert not (tmp_path / "clip.flac").exists()


def test_colliding_output_files_abort_the_batch(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    entry_factory, cue_factory,
) -> None:
    entries = {}
    for folder in ("first", "second"):
        video = tmp_path / folder / "movie.mkv"
        video.parent.mkdir()
        video.write_bytes(b"video")
        entries[Key.for_path(video)] = entry_factory(
            video, [cue_factory(1, 5000, 7000, "Hello")])
    store = ScanStore(None, entries)
    selections = correlate_selection(
        store, [s for _k, s in identifying_strings(store)])
    calls: list[str] = []
    monkeypatch.setattr(magiclip, "clip_video", _fake_clip(calls))

    with pytest.raises(DuplicateSelectionError):
        run_clip_batch(store, selections, "AV1", str(tmp_path / "out"))

    assert calls == []


def test_selection_missing_from_store_is_a_logic_error(
    tmp_path: Path, cue_factory,
) -> None:
    cue = cue_factory(1, 0, 1000, "orphan")
    video = str(tmp_path / "orphan.mkv")
    selection = Selection(Key(video), cue, magiclip.identifying_string(
        video, cue))

    with pytest.raises(InvariantViolation):
        run_clip_batch(ScanStore(None), [selection], "AV1",
                       str(tmp_path / "out"), workers=1)
