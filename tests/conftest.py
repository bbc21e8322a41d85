from __future__ import annotations

import os
import threading
import time
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

import pytest

from cleanscribe.config.configuration import ConfigurationManager
from cleanscribe.utils.process_utils import RunResult


OK = RunResult(returncode=0, stdout="", stderr="")


class FakeRunner:
    """Stands in for run_command; records every argv and dispatches on the tool name."""

    def __init__(self, handlers: Dict[str, Callable[[List[str]], RunResult]], delay: float = 0.0):
        self.handlers = handlers
        self.delay = delay
        self.calls: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def __call__(self, args, timeout_s=None, env=None) -> RunResult:
        args = list(args)
        tool = Path(args[0]).name
        with self._lock:
            self.calls.append(args)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if tool not in self.handlers:
                raise FileNotFoundError(2, "No such file or directory", tool)
            return self.handlers[tool](args)
        finally:
            with self._lock:
                self.in_flight -= 1

    def calls_to(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if Path(c[0]).name == tool]


def ffmpeg_handler(fail_names=()) -> Callable[[List[str]], RunResult]:
    def handle(args: List[str]) -> RunResult:
        src = Path(args[args.index("-i") + 1])
        if src.name in fail_names:
            return RunResult(returncode=1, stdout="", stderr=f"{src.name}: Invalid data found")
        Path(args[-1]).write_bytes(b"RIFF\x00\x00\x00\x00WAVEfmt fake")
        return OK
    return handle


def whisperx_handler(fail_when_diarized: bool = False, fail_always: bool = False):
    """Native whisperx: argv = whisperx <wav> ... --output_dir <dir>."""
    def handle(args: List[str]) -> RunResult:
        if fail_always or (fail_when_diarized and "--diarize" in args):
            return RunResult(returncode=1, stdout="", stderr="CUDA out of memory")
        out = Path(args[args.index("--output_dir") + 1])
        stem = Path(args[1]).stem
        (out / f"{stem}.json").write_text('{"segments": []}', encoding="utf-8")
        (out / f"{stem}.srt").write_text("", encoding="utf-8")
        return OK
    return handle


def docker_handler(workdir: Path, fail_when_diarized: bool = False, fail_always: bool = False):
    """docker run ... IMAGE whisperx /work/<in> ... --output_dir /work/<out>."""
    def to_host(p: str) -> Path:
        return workdir.joinpath(*PurePosixPath(p).relative_to("/work").parts)

    def handle(args: List[str]) -> RunResult:
        if fail_always or (fail_when_diarized and "--diarize" in args):
            return RunResult(returncode=1, stdout="", stderr="pyannote: 401 Unauthorized")
        in_c = args[args.index("whisperx") + 1]
        out = to_host(args[args.index("--output_dir") + 1])
        stem = PurePosixPath(in_c).stem
        (out / f"{stem}.json").write_text('{"segments": []}', encoding="utf-8")
        (out / f"{stem}.srt").write_text("", encoding="utf-8")
        return OK
    return handle


def make_audio(path: Path, size: int = 100, mtime: int = 1000) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x01" * size)
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Dict[str, Path]:
    dirs = {
        "root": tmp_path,
        "input": tmp_path / "input",
        "clean": tmp_path / "clean",
        "output": tmp_path / "output",
    }
    dirs["input"].mkdir()
    return dirs


@pytest.fixture
def make_run_config(workspace):
    def factory(extension: str = "m4a", mode: str = "native", **sections):
        overrides = {
            "paths": {
                "input_dir": str(workspace["input"]),
                "clean_dir": str(workspace["clean"]),
                "output_dir": str(workspace["output"]),
                "logs_root": str(workspace["root"] / "logs"),
                "artifacts_root": str(workspace["root"] / "artifacts"),
            },
            "transcription": {"diarize": False},
            "docker": {"workdir": str(workspace["root"]), "cache_dir": str(workspace["root"] / "cache")},
            "concurrency": {"clean_jobs": 1},
            "run": {"show_progress": False, "write_report": False},
        }
        for section, values in sections.items():
            overrides.setdefault(section, {}).update(values)
        cfg = ConfigurationManager(config_path=workspace["root"] / "no_such_config.yaml", overrides=overrides)
        return cfg.get_run_config(extension=extension, run_id="test_run", mode=mode)
    return factory


@pytest.fixture
def tools_on_path(monkeypatch):
    """Every external command resolves, as if ffmpeg/whisperx/docker were installed."""
    monkeypatch.setattr("cleanscribe.utils.process_utils.shutil.which", lambda name: f"/usr/bin/{name}")
