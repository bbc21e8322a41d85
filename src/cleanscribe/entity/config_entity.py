from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple


ALLOWED_EXTENSIONS: Tuple[str, ...] = ("wav", "m4a", "mp3")
EXECUTION_MODES: Tuple[str, ...] = ("auto", "docker", "native")

DEFAULT_AUDIO_FILTER = "highpass=f=80,lowpass=f=8000,afftdn=nf=-25,loudnorm=I=-16:LRA=11:TP=-2"
CLEAN_SUFFIX = "_clean.wav"


# =========================================================================
# Stage 01: Audio Cleaning (ffmpeg)
# =========================================================================
@dataclass(frozen=True)
class CleaningConfig:
    clean_dir: Path                      # <clean-dir>/<stem>_clean.wav
    audio_filter: str                    # ffmpeg -af chain
    sample_rate: int                     # 16000
    channels: int                        # 1
    codec: str                           # pcm_s16le

    # --- cache policy ---
    skip_existing: bool                  # skip when fingerprint matches
    force: bool                          # always re-run (overrides skip_existing)

    timeout_sec: Optional[float] = None
    ffmpeg_bin: str = "ffmpeg"


# =========================================================================
# Isolation boundary (docker run)
# =========================================================================
@dataclass(frozen=True)
class DockerConfig:
    image: str                           # "whisperx:torch241-cu121"
    cache_dir: Path                      # host dir mounted as /cache
    workdir: Path                        # host dir mounted as /work
    docker_bin: str = "docker"
    gpus: str = "all"


# =========================================================================
# Stage 02: Transcription (whisperx)
# =========================================================================
@dataclass(frozen=True)
class TranscriptionConfig:
    output_dir: Path
    mode: str                            # "native" | "docker" (resolved, never "auto")

    # --- whisperx params ---
    model: str                           # "large-v2"
    device: str                          # "cuda"
    compute_type: str                    # "float16"
    batch_size: int                      # 16
    diarize: bool

    # --- cache policy ---
    skip_existing: bool                  # skip when any recognized output exists
    use_fingerprint: bool                # also require matching <base>.meta
    output_extensions: Tuple[str, ...]   # ("json", "srt")

    credential_env: str = "HUGGINGFACE_TOKEN"
    timeout_sec: Optional[float] = None
    whisperx_bin: str = "whisperx"
    docker: Optional[DockerConfig] = None


# =========================================================================
# Whole run
# =========================================================================
@dataclass(frozen=True)
class RunConfig:
    run_id: str
    extension: str                       # one of ALLOWED_EXTENSIONS
    input_dir: Path

    cleaning: CleaningConfig
    transcription: TranscriptionConfig

    # --- concurrency ---
    clean_jobs: int                      # default: cpu count
    transcribe_jobs: int                 # default: 1
    gpu_slots: int                       # accelerator permits, default 1

    # --- reporting ---
    logs_root: Path
    artifacts_root: Path                 # <artifacts_root>/<run_id>/units.parquet
    write_report: bool = True
    show_progress: bool = True
    fail_on_unit_error: bool = False

    @property
    def mode(self) -> str:
        return self.transcription.mode

    @property
    def report_dir(self) -> Path:
        return self.artifacts_root / self.run_id
