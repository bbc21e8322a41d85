"""
Stage 02: Transcription

Runs whisperx on one clean WAV, either directly ("native") or through
``docker run`` ("docker"). Outputs land in ``<output-dir>/<base>.<ext>``,
named by whisperx after the input's base name.

Docker mode only: a diarized run that fails is retried once without
diarization. The unit then counts as DEGRADED: transcript present,
speaker labels absent.
"""
from __future__ import annotations

import os
import threading
import time
from contextlib import nullcontext
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from cleanscribe.components.docker_runner import build_docker_command, build_kill_command, container_name_for
from cleanscribe.components.fingerprint_store import FingerprintStore, compute_fingerprint
from cleanscribe.components.source_discovery import snapshot_source
from cleanscribe.entity.artifact_entity import CleanArtifact, FailureReason, SourceFile, UnitResult, UnitStatus
from cleanscribe.entity.config_entity import TranscriptionConfig
from cleanscribe.exception.exception import ContainerPathError
from cleanscribe.logging.logger import get_logger
from cleanscribe.utils.io_utils import ensure_dir
from cleanscribe.utils.process_utils import CommandRunner, RunResult, redact, run_command

logger = get_logger(__name__)

STAGE = "transcribe"
KILL_TIMEOUT_SEC = 30.0

_Failure = Tuple[FailureReason, str, Optional[int]]


class Transcription:
    """Stage 02: whisperx, native or dockerized."""

    def __init__(
        self,
        config: TranscriptionConfig,
        gpu_semaphore: Optional[threading.Semaphore] = None,
        runner: CommandRunner = run_command,
        environ: Optional[Mapping[str, str]] = None,
        store: Optional[FingerprintStore] = None,
    ):
        if config.mode not in ("native", "docker"):
            raise ValueError(f"transcription mode must be resolved to native/docker, got {config.mode!r}")
        if config.mode == "docker" and config.docker is None:
            raise ValueError("docker mode requires a DockerConfig")
        self.config = config
        self.gpu_semaphore = gpu_semaphore
        self.runner = runner
        self.environ = environ if environ is not None else os.environ
        self.store = store or FingerprintStore()

    # ---- naming / cache helpers ----
    def output_paths(self, wav_path: Path) -> List[Path]:
        return [self.config.output_dir / f"{wav_path.stem}.{ext}" for ext in self.config.output_extensions]

    def existing_outputs(self, wav_path: Path) -> List[Path]:
        return [p for p in self.output_paths(wav_path) if p.is_file()]

    def meta_path_for(self, wav_path: Path) -> Path:
        return self.config.output_dir / f"{wav_path.stem}.meta"

    def params_hash(self, diarize: bool) -> str:
        c = self.config
        return compute_fingerprint(
            f"model={c.model};device={c.device};compute_type={c.compute_type};"
            f"batch_size={c.batch_size};diarize={int(diarize)}"
        )

    def _whisperx_args(self) -> List[str]:
        c = self.config
        return [
            "--model", c.model,
            "--device", c.device,
            "--compute_type", c.compute_type,
            "--batch_size", str(c.batch_size),
        ]

    def build_command(
        self, wav_path: Path, diarize: bool, token: Optional[str], container_name: Optional[str] = None,
    ) -> List[str]:
        c = self.config
        if c.mode == "docker":
            return build_docker_command(
                docker=c.docker,
                whisperx_args=self._whisperx_args(),
                in_path=wav_path,
                output_dir=c.output_dir,
                credential_env=c.credential_env,
                token=token,
                diarize=diarize,
                container_name=container_name,
            )
        cmd = [c.whisperx_bin, str(wav_path), *self._whisperx_args()]
        if diarize:
            cmd += ["--diarize", "--hf_token", token or ""]
        cmd += ["--output_dir", str(c.output_dir)]
        return cmd

    def _gpu_slot(self):
        return self.gpu_semaphore if self.gpu_semaphore is not None else nullcontext()

    def _kill_container(self, name: str) -> None:
        """Stop a container whose ``docker run`` client was killed on timeout."""
        try:
            res = self.runner(build_kill_command(self.config.docker, name), KILL_TIMEOUT_SEC, None)
        except FileNotFoundError as e:
            logger.error(f"Could not kill container {name}: {e}")
            return
        if res.ok:
            logger.warning(f"Killed timed-out container {name}")
        else:
            logger.warning(f"docker kill {name} failed (exit={res.returncode}): {res.tail()}")

    def _attempt(self, wav_path: Path, diarize: bool, token: Optional[str]) -> Optional[_Failure]:
        """One whisperx invocation. None on success, else (reason, detail, returncode)."""
        name = container_name_for(wav_path) if self.config.mode == "docker" else None
        try:
            cmd = self.build_command(wav_path, diarize, token, container_name=name)
        except ContainerPathError as e:
            return FailureReason.INVALID_PATH, str(e), None

        logger.debug(f"Running: {redact(cmd, [token])}")
        try:
            with self._gpu_slot():
                res: RunResult = self.runner(cmd, self.config.timeout_sec, None)
                if res.timed_out and name:
                    self._kill_container(name)
        except FileNotFoundError as e:
            return FailureReason.TOOL_NOT_FOUND, str(e), None

        if res.timed_out:
            return FailureReason.TIMEOUT, f"timeout after {self.config.timeout_sec}s", None
        if res.returncode != 0:
            return FailureReason.NONZERO_EXIT, redact([res.tail()], [token]), res.returncode
        return None

    # ---- unit of work ----
    def run(self, clean: CleanArtifact | Path) -> UnitResult:
        t0 = time.monotonic()
        wav_path = clean.path if isinstance(clean, CleanArtifact) else Path(clean)
        c = self.config

        def result(status: UnitStatus, **kw) -> UnitResult:
            return UnitResult(stage=STAGE, item=wav_path, status=status, duration_sec=time.monotonic() - t0, **kw)

        if c.skip_existing:
            existing = self.existing_outputs(wav_path)
            if existing and not c.use_fingerprint:
                logger.info(f"Skipping transcribe (exists): {wav_path} -> {existing[0].name}")
                return result(UnitStatus.SKIPPED, detail=f"output exists: {existing[0].name}")
            if existing:
                miss = self.store.check(
                    wav_path, existing[0], self.params_hash(c.diarize), meta_path=self.meta_path_for(wav_path)
                )
                if miss is None:
                    logger.info(f"Skipping transcribe (match): {wav_path}")
                    return result(UnitStatus.SKIPPED, detail="transcript fingerprint match")
                logger.info(f"Re-transcribing ({miss}): {wav_path}")

        token = self.environ.get(c.credential_env) or None
        if c.diarize and not token:
            logger.error(f"{c.credential_env} is not set (required for diarization): {wav_path}")
            return result(
                UnitStatus.FAILED,
                reason=FailureReason.MISSING_CREDENTIAL,
                detail=f"{c.credential_env} is not set",
            )

        ensure_dir(c.output_dir)
        snapshot = self._snapshot(wav_path)
        logger.info(f"Transcribing ({c.mode}): {wav_path}")
        failure = self._attempt(wav_path, c.diarize, token)
        diarized = c.diarize
        warnings: Tuple[str, ...] = ()

        if failure is not None and c.mode == "docker" and c.diarize and failure[0] != FailureReason.INVALID_PATH:
            reason, detail, code = failure
            msg = f"diarization run failed for {wav_path} ({reason.value}, exit={code}): {detail}"
            logger.warning(msg)
            logger.warning("Retrying without diarization so outputs are produced...")
            warnings = (msg,)
            failure = self._attempt(wav_path, False, token)
            diarized = False
            if failure is None:
                self._record(snapshot, wav_path, diarized)
                logger.warning(f"Transcribed WITHOUT diarization: {wav_path}")
                return result(UnitStatus.DEGRADED, detail="diarization dropped", warnings=warnings, returncode=0)

        if failure is not None:
            reason, detail, code = failure
            logger.error(f"Transcription failed ({reason.value}, exit={code}): {wav_path}\n{detail}")
            return result(UnitStatus.FAILED, reason=reason, detail=detail, warnings=warnings, returncode=code)

        self._record(snapshot, wav_path, diarized)
        return result(UnitStatus.SUCCEEDED, returncode=0)

    def _snapshot(self, wav_path: Path) -> Optional[SourceFile]:
        """Input stat taken before whisperx runs; recorded with the transcript."""
        if not self.config.use_fingerprint:
            return None
        try:
            return snapshot_source(wav_path, "wav")
        except OSError as e:
            logger.warning(f"Cannot stat {wav_path}, transcript fingerprint will not be written: {e}")
            return None

    def _record(self, snapshot: Optional[SourceFile], wav_path: Path, diarized: bool) -> None:
        if snapshot is None:
            return
        existing = self.existing_outputs(wav_path)
        if not existing:
            logger.warning(f"whisperx exited 0 but no recognized outputs for {wav_path}")
            return
        self.store.record(
            snapshot, existing[0], self.params_hash(diarized),
            meta_path=self.meta_path_for(wav_path),
        )
