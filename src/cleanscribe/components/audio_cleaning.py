"""
Stage 01: Audio Cleaning

One source file -> ``<clean-dir>/<stem>_clean.wav`` (mono, 16 kHz,
pcm_s16le, filtered by the configured ffmpeg ``-af`` chain), plus its
fingerprint sidecar.
"""
from __future__ import annotations

import os
import time
from pathlib import Path
from typing import List, Optional

from cleanscribe.components.fingerprint_store import FingerprintStore, compute_fingerprint
from cleanscribe.components.source_discovery import clean_path_for
from cleanscribe.entity.artifact_entity import FailureReason, SourceFile, UnitResult, UnitStatus
from cleanscribe.entity.config_entity import CleaningConfig
from cleanscribe.logging.logger import get_logger
from cleanscribe.utils.io_utils import ensure_dir
from cleanscribe.utils.process_utils import CommandRunner, run_command

logger = get_logger(__name__)

STAGE = "clean"


def build_ffmpeg_command(config: CleaningConfig, in_path: Path, out_path: Path) -> List[str]:
    return [
        config.ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-y",
        "-i", str(in_path), "-vn",
        "-ac", str(config.channels), "-ar", str(config.sample_rate), "-c:a", config.codec,
        "-af", config.audio_filter,
        "-f", "wav",
        str(out_path),
    ]


class AudioCleaning:
    """Stage 01: ffmpeg normalization with a fingerprint cache."""

    def __init__(
        self,
        config: CleaningConfig,
        store: Optional[FingerprintStore] = None,
        runner: CommandRunner = run_command,
    ):
        self.config = config
        self.store = store or FingerprintStore()
        self.runner = runner
        self.filter_sha = compute_fingerprint(config.audio_filter)

    def target_for(self, source: SourceFile) -> Path:
        return clean_path_for(source, self.config.clean_dir)

    def _result(self, source: SourceFile, status: UnitStatus, t0: float, **kw) -> UnitResult:
        return UnitResult(stage=STAGE, item=source.path, status=status, duration_sec=time.monotonic() - t0, **kw)

    def run(self, source: SourceFile) -> UnitResult:
        t0 = time.monotonic()
        out = self.target_for(source)

        rerun_reason: Optional[str] = None
        if not self.config.force and self.config.skip_existing:
            miss = self.store.check(source, out, self.filter_sha)
            if miss is None:
                logger.info(f"Skipping clean (match): {out}")
                return self._result(source, UnitStatus.SKIPPED, t0, detail="fingerprint match")
            if out.exists():
                rerun_reason = miss
        elif self.config.force and out.exists():
            rerun_reason = "forced"
        if rerun_reason:
            logger.info(f"Re-cleaning ({rerun_reason}): {out}")

        ensure_dir(out.parent)
        # Stale sidecar must not survive a failed regeneration.
        self.store.invalidate(out)
        tmp = out.with_name(f".{out.name}.part")

        logger.info(f"Cleaning: {source.path} -> {out}")
        cmd = build_ffmpeg_command(self.config, source.path, tmp)
        try:
            res = self.runner(cmd, self.config.timeout_sec, None)
        except FileNotFoundError as e:
            tmp.unlink(missing_ok=True)
            logger.error(f"ffmpeg not found while cleaning {source.path}: {e}")
            return self._result(
                source, UnitStatus.FAILED, t0,
                reason=FailureReason.TOOL_NOT_FOUND, detail=str(e),
            )

        if res.timed_out:
            tmp.unlink(missing_ok=True)
            logger.error(f"Cleaning timed out after {self.config.timeout_sec}s: {source.path}")
            return self._result(
                source, UnitStatus.FAILED, t0,
                reason=FailureReason.TIMEOUT, detail=f"timeout after {self.config.timeout_sec}s",
            )

        if res.returncode != 0:
            tmp.unlink(missing_ok=True)
            logger.error(f"Cleaning failed (exit {res.returncode}): {source.path}\n{res.tail()}")
            return self._result(
                source, UnitStatus.FAILED, t0,
                reason=FailureReason.NONZERO_EXIT, detail=res.tail(), returncode=res.returncode,
            )

        if not tmp.is_file():
            logger.error(f"ffmpeg exited 0 but wrote nothing: {tmp}")
            return self._result(
                source, UnitStatus.FAILED, t0,
                reason=FailureReason.NONZERO_EXIT, detail="no output written", returncode=res.returncode,
            )

        os.replace(tmp, out)
        self.store.record(source, out, self.filter_sha)
        detail = f"re-cleaned: {rerun_reason}" if rerun_reason else None
        return self._result(source, UnitStatus.SUCCEEDED, t0, detail=detail, returncode=0)
