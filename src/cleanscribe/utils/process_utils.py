"""Blocking subprocess helpers for the external tools (ffmpeg, whisperx, docker).

Every work unit ends in exactly one of these calls, so this is the only
place the orchestrator waits.
"""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional, Sequence


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def tail(self, n_lines: int = 5) -> str:
        """Last lines of stderr (or stdout), for log lines and unit details."""
        text = (self.stderr or self.stdout or "").strip()
        return "\n".join(text.splitlines()[-n_lines:])


# (args, timeout_s, env) -> RunResult; tests inject fakes with this shape.
CommandRunner = Callable[[Sequence[str], Optional[float], Optional[Mapping[str, str]]], RunResult]


def run_command(
    args: Sequence[str],
    timeout_s: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunResult:
    """
    Run one external process to completion.

    Raises FileNotFoundError when the executable is missing. On timeout the
    child is killed (``subprocess.run`` does this) and ``timed_out`` is set.
    """
    try:
        cp = subprocess.run(
            list(args),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            timeout=timeout_s,
            env=dict(env) if env is not None else None,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        return RunResult(
            returncode=-1,
            stdout=_as_text(exc.stdout),
            stderr=_as_text(exc.stderr),
            timed_out=True,
        )
    return RunResult(
        returncode=int(cp.returncode),
        stdout=cp.stdout or "",
        stderr=cp.stderr or "",
    )


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


def missing_commands(names: Iterable[str]) -> list[str]:
    """Names from ``names`` that are not resolvable on PATH."""
    return [n for n in names if shutil.which(n) is None]


def redact(args: Sequence[str], secrets: Iterable[Optional[str]]) -> str:
    """Printable command line with secret values masked."""
    hidden = [s for s in secrets if s]
    parts = []
    for a in args:
        for s in hidden:
            a = a.replace(s, "***")
        parts.append(a)
    return " ".join(parts)
