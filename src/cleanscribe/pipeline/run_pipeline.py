"""
Clean + transcribe every <ext> file in a directory.

Usage:
  cleanscribe [docker|native] <wav|m4a|mp3> [options]

Examples:
  cleanscribe m4a -j 8 --skip-clean-existing --skip-transcribe-existing
  cleanscribe docker wav --force-clean
  cleanscribe native mp3 --no-diarize --skip-transcribe-existing

Environment:
  HUGGINGFACE_TOKEN   required when diarization is enabled (read from .env too)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cleanscribe.config.configuration import ConfigurationManager
from cleanscribe.entity.config_entity import ALLOWED_EXTENSIONS
from cleanscribe.exception.exception import CleanScribeError, format_traceback
from cleanscribe.logging.logger import get_logger, add_file_handler
from cleanscribe.pipeline.controller import PipelineController

logger = get_logger(__name__)

_MODES = ("docker", "native")

# argparse dest -> (config section, key)
_OVERRIDES: Dict[str, Tuple[str, str]] = {
    "input_dir": ("paths", "input_dir"),
    "clean_dir": ("paths", "clean_dir"),
    "output_dir": ("paths", "output_dir"),
    "logs_root": ("paths", "logs_root"),
    "artifacts_root": ("paths", "artifacts_root"),
    "audio_filter": ("cleaning", "audio_filter"),
    "clean_timeout": ("cleaning", "timeout_sec"),
    "model": ("transcription", "model"),
    "device": ("transcription", "device"),
    "compute_type": ("transcription", "compute_type"),
    "batch_size": ("transcription", "batch_size"),
    "diarize": ("transcription", "diarize"),
    "transcribe_timeout": ("transcription", "timeout_sec"),
    "docker_image": ("docker", "image"),
    "docker_cache": ("docker", "cache_dir"),
    "docker_workdir": ("docker", "workdir"),
    "skip_clean_existing": ("cache", "skip_clean_existing"),
    "force_clean": ("cache", "force_clean"),
    "skip_transcribe_existing": ("cache", "skip_transcribe_existing"),
    "transcribe_fingerprint": ("cache", "transcribe_fingerprint"),
    "jobs": ("concurrency", "clean_jobs"),
    "whisper_jobs": ("concurrency", "transcribe_jobs"),
    "gpu_slots": ("concurrency", "gpu_slots"),
    "fail_on_unit_error": ("run", "fail_on_unit_error"),
    "progress": ("run", "show_progress"),
    "report": ("run", "write_report"),
}


def positive_int(text: str) -> int:
    """argparse type: integer >= 1 (a bad value is a usage error, exit 2)."""
    try:
        n = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {text!r}")
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {n}")
    return n


def positive_float(text: str) -> float:
    try:
        x = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}")
    if x <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0, got {text}")
    return x


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="cleanscribe",
        description="ffmpeg-clean audio files, then transcribe them with whisperx (native or docker).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    ap.add_argument("target", nargs="+", metavar="[MODE] EXT",
                    help=f"optional mode ({'|'.join(_MODES)}, default auto) then extension ({'|'.join(ALLOWED_EXTENSIONS)})")
    ap.add_argument("--config", type=str, default="configs/config.yaml", help="YAML config (optional)")
    ap.add_argument("--run-id", type=str, default=None, help="Run id for logs/reports")

    g = ap.add_argument_group("paths")
    g.add_argument("--input-dir", type=str, default=None, help="Input directory (default: cwd)")
    g.add_argument("--clean-dir", type=str, default=None, help="Clean WAV output directory (default: ./clean)")
    g.add_argument("--output-dir", type=str, default=None, help="whisperx output directory (default: ./output)")
    g.add_argument("--logs-root", type=str, default=None)
    g.add_argument("--artifacts-root", type=str, default=None, help="Where run reports go")

    g = ap.add_argument_group("cleaning")
    g.add_argument("-j", "--jobs", type=positive_int, default=None, help="ffmpeg parallelism (default: nproc)")
    g.add_argument("--filter", dest="audio_filter", type=str, default=None, help="Override ffmpeg -af filter chain")
    g.add_argument("--clean-timeout", type=positive_float, default=None, help="Seconds before an ffmpeg run is killed")

    g = ap.add_argument_group("transcription")
    g.add_argument("--whisper-jobs", type=positive_int, default=None,
                   help="whisperx parallelism (default: 1; not recommended >1 on one GPU)")
    g.add_argument("--gpu-slots", type=positive_int, default=None, help="Max concurrent whisperx runs on the GPU (default: 1)")
    g.add_argument("--model", type=str, default=None, help="whisperx model (default: large-v2)")
    g.add_argument("--device", type=str, default=None, help="whisperx device (default: cuda)")
    g.add_argument("--compute-type", type=str, default=None, help="whisperx compute type (default: float16)")
    g.add_argument("--batch-size", type=positive_int, default=None, help="whisperx batch size (default: 16)")
    g.add_argument("--diarize", action=argparse.BooleanOptionalAction, default=None,
                   help="Speaker diarization (default: on)")
    g.add_argument("--transcribe-timeout", type=positive_float, default=None, help="Seconds before a whisperx run is killed")

    g = ap.add_argument_group("cache")
    g.add_argument("--skip-clean-existing", action=argparse.BooleanOptionalAction, default=None,
                   help="Skip ffmpeg when clean wav exists AND metadata matches (default: on)")
    g.add_argument("--force-clean", action="store_true", default=None,
                   help="Always re-run ffmpeg cleaning (overrides skip-clean-existing)")
    g.add_argument("--skip-transcribe-existing", action="store_true", default=None,
                   help="Skip whisperx when output JSON or SRT already exists")
    g.add_argument("--transcribe-fingerprint", action="store_true", default=None,
                   help="With --skip-transcribe-existing, also require matching model/diarization settings")

    g = ap.add_argument_group("docker (mode=docker)")
    g.add_argument("--docker-image", type=str, default=None, help="Docker image (default: whisperx:torch241-cu121)")
    g.add_argument("--docker-cache", type=str, default=None,
                   help="Host cache dir for HF/torch models (default: ~/.cache/whisperx-docker)")
    g.add_argument("--docker-workdir", type=str, default=None, help="Host dir mounted as /work (default: cwd)")

    g = ap.add_argument_group("run")
    g.add_argument("--fail-on-unit-error", action="store_true", default=None,
                   help="Exit 1 when any single file failed")
    g.add_argument("--no-progress", dest="progress", action="store_false", default=None)
    g.add_argument("--no-report", dest="report", action="store_false", default=None)
    return ap


def split_target(ap: argparse.ArgumentParser, target: List[str]) -> Tuple[Optional[str], str]:
    """['docker', 'm4a'] -> ('docker', 'm4a'); ['m4a'] -> (None, 'm4a')."""
    mode = None
    rest = list(target)
    if rest and rest[0].lower() in _MODES:
        mode = rest.pop(0).lower()
    if len(rest) != 1:
        ap.error("expected [MODE] EXT")
    ext = rest[0].lower().lstrip(".")
    if ext not in ALLOWED_EXTENSIONS:
        ap.error(f"unsupported extension: {rest[0]}")
    return mode, ext


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    for dest, (section, key) in _OVERRIDES.items():
        value = getattr(args, dest, None)
        if value is not None:
            out.setdefault(section, {})[key] = value
    return out


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    mode, ext = split_target(ap, args.target)

    try:
        cfg_mgr = ConfigurationManager(config_path=Path(args.config), overrides=overrides_from_args(args))
        run_cfg = cfg_mgr.get_run_config(extension=ext, run_id=args.run_id, mode=mode)
        add_file_handler(get_logger(), run_cfg.logs_root / run_cfg.run_id / "run_pipeline.log")
        logger.info(f"Pipeline started | run_id={run_cfg.run_id}")

        artifact = PipelineController(run_cfg).run()
    except CleanScribeError as e:
        logger.error(f"ERROR: {e}")
        return 1
    except Exception as e:
        logger.error(f"Pipeline failed: {e}")
        logger.error(format_traceback(e))
        return 1

    if artifact.fatal_reason:
        logger.error(f"Pipeline failed: {artifact.fatal_reason}")
    return artifact.exit_code


if __name__ == "__main__":
    sys.exit(main())
