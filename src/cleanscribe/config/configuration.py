from __future__ import annotations

import copy
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from cleanscribe.utils.io_utils import read_yaml, make_run_id
from cleanscribe.entity.config_entity import (
    ALLOWED_EXTENSIONS,
    DEFAULT_AUDIO_FILTER,
    EXECUTION_MODES,
    CleaningConfig,
    DockerConfig,
    RunConfig,
    TranscriptionConfig,
)
from cleanscribe.exception.exception import ConfigurationError


DEFAULTS: Dict[str, Dict[str, Any]] = {
    "paths": {
        "input_dir": ".",
        "clean_dir": "./clean",
        "output_dir": "./output",
        "logs_root": "logs",
        "artifacts_root": "artifacts/runs",
    },
    "cleaning": {
        "audio_filter": DEFAULT_AUDIO_FILTER,
        "sample_rate": 16000,
        "channels": 1,
        "codec": "pcm_s16le",
        "timeout_sec": None,
        "ffmpeg_bin": "ffmpeg",
    },
    "transcription": {
        "mode": "auto",
        "model": "large-v2",
        "device": "cuda",
        "compute_type": "float16",
        "batch_size": 16,
        "diarize": True,
        "credential_env": "HUGGINGFACE_TOKEN",
        "output_extensions": ["json", "srt"],
        "timeout_sec": None,
        "whisperx_bin": "whisperx",
    },
    "docker": {
        "image": "whisperx:torch241-cu121",
        "cache_dir": "~/.cache/whisperx-docker",
        "workdir": ".",
        "docker_bin": "docker",
        "gpus": "all",
    },
    "cache": {
        "skip_clean_existing": True,
        "force_clean": False,
        "skip_transcribe_existing": False,
        "transcribe_fingerprint": False,
    },
    "concurrency": {
        "clean_jobs": None,          # None -> os.cpu_count()
        "transcribe_jobs": 1,
        "gpu_slots": 1,
    },
    "run": {
        "write_report": True,
        "show_progress": True,
        "fail_on_unit_error": False,
    },
}


def _merge(base: Dict[str, Any], extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Section-wise merge; None values in ``extra`` leave ``base`` alone."""
    out = copy.deepcopy(base)
    for section, values in (extra or {}).items():
        if not isinstance(values, dict):
            raise ConfigurationError(f"config section '{section}' must be a mapping")
        target = out.setdefault(section, {})
        for key, value in values.items():
            if value is not None:
                target[key] = value
    return out


def resolve_mode(mode: str, docker_bin: str = "docker") -> str:
    """'auto' -> docker when the docker CLI is on PATH, else native."""
    mode = (mode or "auto").lower()
    if mode not in EXECUTION_MODES:
        raise ConfigurationError(f"unknown mode: {mode}", context={"allowed": list(EXECUTION_MODES)})
    if mode == "auto":
        return "docker" if shutil.which(docker_bin) else "native"
    return mode


def _positive_int(value: Any, name: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer", context={name: value})
    if n < 1:
        raise ConfigurationError(f"{name} must be >= 1", context={name: value})
    return n


def _optional_float(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number", context={name: value})
    if f <= 0:
        raise ConfigurationError(f"{name} must be > 0", context={name: value})
    return f


@dataclass
class ConfigurationManager:
    """
    Layers code defaults < configs/config.yaml < CLI overrides.

    ``overrides`` uses the YAML shape ({"cleaning": {"audio_filter": ...}}).
    A missing YAML file just means defaults.
    """
    config_path: Path = Path("configs/config.yaml")
    overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        self.config_path = Path(self.config_path)
        file_cfg = read_yaml(self.config_path) if self.config_path.exists() else {}
        self.config: Dict[str, Any] = _merge(_merge(DEFAULTS, file_cfg), self.overrides)

    # ---- helpers ----
    def get_logs_root(self) -> Path:
        return Path(self.config["paths"]["logs_root"])

    def make_run_id(self) -> str:
        return make_run_id()

    # ---- Stage 01: Audio Cleaning ----
    def get_cleaning_config(self) -> CleaningConfig:
        cl = self.config["cleaning"]
        cache = self.config["cache"]
        return CleaningConfig(
            clean_dir=Path(self.config["paths"]["clean_dir"]),
            audio_filter=str(cl["audio_filter"]),
            sample_rate=int(cl["sample_rate"]),
            channels=int(cl["channels"]),
            codec=str(cl["codec"]),
            skip_existing=bool(cache["skip_clean_existing"]),
            force=bool(cache["force_clean"]),
            timeout_sec=_optional_float(cl.get("timeout_sec"), "cleaning.timeout_sec"),
            ffmpeg_bin=str(cl.get("ffmpeg_bin", "ffmpeg")),
        )

    # ---- Isolation boundary ----
    def get_docker_config(self) -> DockerConfig:
        dk = self.config["docker"]
        return DockerConfig(
            image=str(dk["image"]),
            cache_dir=Path(str(dk["cache_dir"])).expanduser(),
            workdir=Path(str(dk["workdir"])),
            docker_bin=str(dk.get("docker_bin", "docker")),
            gpus=str(dk.get("gpus", "all")),
        )

    # ---- Stage 02: Transcription ----
    def get_transcription_config(self, mode: Optional[str] = None) -> TranscriptionConfig:
        tr = self.config["transcription"]
        cache = self.config["cache"]
        docker = self.get_docker_config()
        resolved = resolve_mode(mode or tr["mode"], docker.docker_bin)
        return TranscriptionConfig(
            output_dir=Path(self.config["paths"]["output_dir"]),
            mode=resolved,
            model=str(tr["model"]),
            device=str(tr["device"]),
            compute_type=str(tr["compute_type"]),
            batch_size=_positive_int(tr["batch_size"], "transcription.batch_size"),
            diarize=bool(tr["diarize"]),
            skip_existing=bool(cache["skip_transcribe_existing"]),
            use_fingerprint=bool(cache["transcribe_fingerprint"]),
            output_extensions=tuple(str(e).lstrip(".").lower() for e in tr["output_extensions"]),
            credential_env=str(tr["credential_env"]),
            timeout_sec=_optional_float(tr.get("timeout_sec"), "transcription.timeout_sec"),
            whisperx_bin=str(tr.get("whisperx_bin", "whisperx")),
            docker=docker if resolved == "docker" else None,
        )

    # ---- Whole run ----
    def get_run_config(self, extension: str, run_id: Optional[str] = None, mode: Optional[str] = None) -> RunConfig:
        ext = str(extension).lower().lstrip(".")
        if ext not in ALLOWED_EXTENSIONS:
            raise ConfigurationError(f"unsupported extension: {extension}", context={"allowed": list(ALLOWED_EXTENSIONS)})

        paths = self.config["paths"]
        cc = self.config["concurrency"]
        run = self.config["run"]
        clean_jobs = cc.get("clean_jobs")
        if clean_jobs is None:
            clean_jobs = os.cpu_count() or 4

        return RunConfig(
            run_id=run_id or make_run_id(),
            extension=ext,
            input_dir=Path(paths["input_dir"]),
            cleaning=self.get_cleaning_config(),
            transcription=self.get_transcription_config(mode=mode),
            clean_jobs=_positive_int(clean_jobs, "concurrency.clean_jobs"),
            transcribe_jobs=_positive_int(cc["transcribe_jobs"], "concurrency.transcribe_jobs"),
            gpu_slots=_positive_int(cc["gpu_slots"], "concurrency.gpu_slots"),
            logs_root=Path(paths["logs_root"]),
            artifacts_root=Path(paths["artifacts_root"]),
            write_report=bool(run["write_report"]),
            show_progress=bool(run["show_progress"]),
            fail_on_unit_error=bool(run["fail_on_unit_error"]),
        )
