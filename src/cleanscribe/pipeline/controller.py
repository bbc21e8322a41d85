"""
Whole-run orchestration: environment checks -> clean all -> transcribe all.

Stage 2 works from whatever ``*_clean.wav`` files are in the clean dir
after stage 1, so artifacts kept from earlier runs are transcribed too.
"""
from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd
import soundfile as sf
from dotenv import load_dotenv

from cleanscribe.components.audio_cleaning import AudioCleaning
from cleanscribe.components.dispatcher import ParallelDispatcher
from cleanscribe.components.docker_runner import container_path
from cleanscribe.components.fingerprint_store import FingerprintStore
from cleanscribe.components.source_discovery import clean_path_for, discover_clean_artifacts, discover_sources
from cleanscribe.components.transcription import Transcription
from cleanscribe.entity.artifact_entity import FailureReason, PipelineArtifact, StageReport, UnitResult
from cleanscribe.entity.config_entity import RunConfig
from cleanscribe.exception.exception import ContainerPathError, EnvironmentCheckError, wrap_exception
from cleanscribe.logging.logger import get_logger
from cleanscribe.utils.io_utils import ensure_dir, write_json, write_parquet
from cleanscribe.utils.process_utils import CommandRunner, missing_commands, run_command

logger = get_logger(__name__)

FATAL_CLEAN_TOOL_MISSING = "clean-tool-not-found"
FATAL_NO_CLEAN_ARTIFACTS = "no-clean-artifacts"

_REPORT_COLUMNS = [
    "stage", "item", "status", "reason", "detail", "warnings",
    "returncode", "duration_sec", "audio_duration_sec", "audio_sample_rate",
]


def _describe_audio(path: Path) -> Dict[str, Any]:
    try:
        info = sf.info(str(path))
        return {"audio_duration_sec": float(info.duration), "audio_sample_rate": int(info.samplerate)}
    except Exception as e:
        logger.warning(f"Failed reading audio info for {path.name}: {e}")
        return {"audio_duration_sec": None, "audio_sample_rate": None}


class PipelineController:
    """Runs both stages for one RunConfig and aggregates the outcome."""

    def __init__(
        self,
        config: RunConfig,
        runner: CommandRunner = run_command,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.runner = runner
        self._environ = environ
        self.store = FingerprintStore()
        self.gpu_semaphore: Optional[threading.BoundedSemaphore] = None
        if config.transcription.device.lower() != "cpu":
            self.gpu_semaphore = threading.BoundedSemaphore(config.gpu_slots)

    @property
    def environ(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    # ---- checks ----
    def check_environment(self, include_cleaning: bool = True) -> None:
        """Everything that would make every unit fail; raises before any dispatch."""
        cfg = self.config
        tr = cfg.transcription
        if self._environ is None:
            load_dotenv()

        required = [cfg.cleaning.ffmpeg_bin] if include_cleaning else []
        if tr.mode == "docker":
            required.append(tr.docker.docker_bin)
        else:
            required.append(tr.whisperx_bin)
        missing = missing_commands(required)
        if missing:
            raise EnvironmentCheckError(f"missing command: {', '.join(missing)}", context={"mode": tr.mode})

        if tr.diarize and not self.environ.get(tr.credential_env):
            raise EnvironmentCheckError(f"{tr.credential_env} is not set (required for diarization)")

        if include_cleaning and not cfg.input_dir.is_dir():
            raise EnvironmentCheckError(f"input_dir not found: {cfg.input_dir}")

        if tr.mode == "docker":
            for p in (cfg.cleaning.clean_dir, tr.output_dir):
                try:
                    container_path(p, tr.docker.workdir)
                except ContainerPathError as e:
                    raise EnvironmentCheckError(
                        f"{p} is not inside the docker workdir {tr.docker.workdir}", cause=e,
                    )

    # ---- stages ----
    def clean_all(self, sources) -> StageReport:
        cleaner = AudioCleaning(self.config.cleaning, store=self.store, runner=self.runner)
        dispatcher = ParallelDispatcher(self.config.clean_jobs, "clean", show_progress=self.config.show_progress)
        return dispatcher.run(sources, cleaner.run)

    def transcribe_all(self, clean_artifacts) -> StageReport:
        tr = self.config.transcription
        if self.config.transcribe_jobs > 1 and tr.device.lower() != "cpu":
            logger.warning(
                f"whisper jobs={self.config.transcribe_jobs} on device={tr.device}: "
                f"concurrent runs share GPU memory; at most {self.config.gpu_slots} will run at once"
            )
        transcriber = Transcription(
            tr, gpu_semaphore=self.gpu_semaphore, runner=self.runner,
            environ=self.environ, store=self.store,
        )
        dispatcher = ParallelDispatcher(
            self.config.transcribe_jobs, "transcribe", show_progress=self.config.show_progress,
        )
        return dispatcher.run(clean_artifacts, transcriber.run)

    # ---- whole run ----
    def run(self) -> PipelineArtifact:
        cfg = self.config
        self.check_environment()

        ensure_dir(cfg.cleaning.clean_dir)
        ensure_dir(cfg.transcription.output_dir)

        logger.info(f"Mode: {cfg.mode}")
        logger.info(f"Input:  {cfg.input_dir.resolve()} (.{cfg.extension})")
        logger.info(f"Clean:  {cfg.cleaning.clean_dir}")
        logger.info(f"Output: {cfg.transcription.output_dir}")
        logger.info(f"ffmpeg jobs={cfg.clean_jobs}, whisper jobs={cfg.transcribe_jobs}, gpu slots={cfg.gpu_slots}")
        logger.info(
            f"skip-clean={int(cfg.cleaning.skip_existing)} force-clean={int(cfg.cleaning.force)} "
            f"skip-transcribe={int(cfg.transcription.skip_existing)} "
            f"transcribe-fingerprint={int(cfg.transcription.use_fingerprint)}"
        )

        sources = discover_sources(cfg.input_dir, cfg.extension, clean_dir=cfg.cleaning.clean_dir)
        if not sources:
            logger.info(f"No input files found for extension: .{cfg.extension} in {cfg.input_dir}")
            return self._finish(0, StageReport("clean"), StageReport("transcribe"), n_sources=0, n_clean=0)

        cleaning = self.clean_all(sources)

        if cleaning.failures(FailureReason.TOOL_NOT_FOUND):
            logger.error("ffmpeg could not be executed; aborting before transcription")
            return self._finish(
                1, cleaning, StageReport("transcribe"), n_sources=len(sources), n_clean=0,
                fatal_reason=FATAL_CLEAN_TOOL_MISSING,
            )

        clean_artifacts = discover_clean_artifacts(cfg.cleaning.clean_dir)
        if not clean_artifacts:
            logger.error(f"No cleaned wavs found in {cfg.cleaning.clean_dir} (unexpected).")
            return self._finish(
                1, cleaning, StageReport("transcribe"), n_sources=len(sources), n_clean=0,
                fatal_reason=FATAL_NO_CLEAN_ARTIFACTS,
            )

        transcription = self.transcribe_all(clean_artifacts)

        exit_code = 0
        if cfg.fail_on_unit_error and (cleaning.n_failed or transcription.n_failed):
            exit_code = 1
        return self._finish(
            exit_code, cleaning, transcription,
            n_sources=len(sources), n_clean=len(clean_artifacts),
            clean_artifacts=[a.path for a in clean_artifacts],
        )

    # ---- reporting ----
    def _finish(
        self,
        exit_code: int,
        cleaning: StageReport,
        transcription: StageReport,
        n_sources: int,
        n_clean: int,
        fatal_reason: Optional[str] = None,
        clean_artifacts: Optional[List[Path]] = None,
    ) -> PipelineArtifact:
        cfg = self.config
        for unit in cleaning.failures() + transcription.failures():
            logger.warning(f"[{unit.stage}] FAILED {unit.item} ({unit.reason.value if unit.reason else '?'})")
        for unit in transcription.results:
            for w in unit.warnings:
                logger.warning(f"[{unit.stage}] {w}")

        units_path = summary_path = None
        if cfg.write_report:
            units_path = cfg.report_dir / "units.parquet"
            summary_path = cfg.report_dir / "summary.json"
            try:
                write_parquet(self._units_frame(cleaning, transcription), units_path)
                write_json(
                    {
                        "run_id": cfg.run_id,
                        "mode": cfg.mode,
                        "extension": cfg.extension,
                        "input_dir": str(cfg.input_dir),
                        "clean_dir": str(cfg.cleaning.clean_dir),
                        "output_dir": str(cfg.transcription.output_dir),
                        "n_sources": n_sources,
                        "n_clean_artifacts": n_clean,
                        "clean_artifacts": [str(p) for p in (clean_artifacts or [])],
                        "cleaning": cleaning.summary(),
                        "transcription": transcription.summary(),
                        "exit_code": exit_code,
                        "fatal_reason": fatal_reason,
                    },
                    summary_path,
                )
            except Exception as e:
                raise wrap_exception(
                    "Writing run report failed", e,
                    context={"units_parquet_path": str(units_path), "summary_json_path": str(summary_path)},
                )

        artifact = PipelineArtifact(
            run_id=cfg.run_id,
            mode=cfg.mode,
            n_sources=n_sources,
            n_clean_artifacts=n_clean,
            cleaning=cleaning,
            transcription=transcription,
            exit_code=exit_code,
            fatal_reason=fatal_reason,
            units_parquet_path=units_path,
            summary_json_path=summary_path,
        )
        logger.info(
            f"Done. exit={exit_code} clean={cleaning.summary()} transcribe={transcription.summary()} "
            f"| Cleaned audio: {cfg.cleaning.clean_dir}   Outputs: {cfg.transcription.output_dir}"
        )
        return artifact

    def _units_frame(self, cleaning: StageReport, transcription: StageReport) -> pd.DataFrame:
        rows: List[Dict[str, Any]] = []
        for unit in cleaning.results + transcription.results:
            row = self._unit_row(unit)
            if unit.stage == "clean" and unit.ok:
                out = clean_path_for(unit.item, self.config.cleaning.clean_dir)
                row.update(_describe_audio(out))
            rows.append(row)
        if not rows:
            return pd.DataFrame(columns=_REPORT_COLUMNS)
        return pd.DataFrame(rows, columns=_REPORT_COLUMNS)

    @staticmethod
    def _unit_row(unit: UnitResult) -> Dict[str, Any]:
        return {
            "stage": unit.stage,
            "item": str(unit.item),
            "status": unit.status.value,
            "reason": unit.reason.value if unit.reason else None,
            "detail": unit.detail,
            "warnings": "; ".join(unit.warnings),
            "returncode": unit.returncode,
            "duration_sec": float(unit.duration_sec),
            "audio_duration_sec": None,
            "audio_sample_rate": None,
        }
