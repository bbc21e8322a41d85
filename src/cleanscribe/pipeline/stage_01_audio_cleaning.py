"""
Stage 01: Audio Cleaning only

  python -m cleanscribe.pipeline.stage_01_audio_cleaning m4a --input-dir raw -j 8
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from cleanscribe.components.source_discovery import discover_sources
from cleanscribe.config.configuration import ConfigurationManager
from cleanscribe.entity.artifact_entity import FailureReason
from cleanscribe.entity.config_entity import ALLOWED_EXTENSIONS
from cleanscribe.exception.exception import CleanScribeError, format_traceback
from cleanscribe.logging.logger import get_logger, add_file_handler
from cleanscribe.pipeline.controller import PipelineController
from cleanscribe.pipeline.run_pipeline import positive_int
from cleanscribe.utils.io_utils import ensure_dir
from cleanscribe.utils.process_utils import missing_commands

logger = get_logger(__name__)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Stage 01: ffmpeg cleaning with fingerprint cache")
    ap.add_argument("ext", choices=ALLOWED_EXTENSIONS, type=str.lower)
    ap.add_argument("--config", type=str, default="configs/config.yaml")
    ap.add_argument("--input-dir", type=str, default=None)
    ap.add_argument("--clean-dir", type=str, default=None)
    ap.add_argument("-j", "--jobs", type=positive_int, default=None)
    ap.add_argument("--filter", dest="audio_filter", type=str, default=None)
    ap.add_argument("--force-clean", action="store_true", default=None)
    ap.add_argument("--run-id", type=str, default=None)
    args = ap.parse_args(argv)

    overrides = {
        "paths": {"input_dir": args.input_dir, "clean_dir": args.clean_dir},
        "cleaning": {"audio_filter": args.audio_filter},
        "cache": {"force_clean": args.force_clean},
        "concurrency": {"clean_jobs": args.jobs},
    }
    try:
        cfg = ConfigurationManager(config_path=Path(args.config), overrides=overrides)
        # Stage 1 never touches whisperx; pin the mode so no docker lookup happens.
        run_cfg = cfg.get_run_config(extension=args.ext, run_id=args.run_id, mode="native")
        add_file_handler(get_logger(), run_cfg.logs_root / run_cfg.run_id / "stage_01_audio_cleaning.log")

        if missing_commands([run_cfg.cleaning.ffmpeg_bin]):
            logger.error(f"ERROR: missing command: {run_cfg.cleaning.ffmpeg_bin}")
            return 1

        ensure_dir(run_cfg.cleaning.clean_dir)
        sources = discover_sources(run_cfg.input_dir, run_cfg.extension, clean_dir=run_cfg.cleaning.clean_dir)
        logger.info(f"Stage 01 | n={len(sources)} run_id={run_cfg.run_id}")
        report = PipelineController(run_cfg).clean_all(sources)
    except CleanScribeError as e:
        logger.error(f"ERROR: {e}")
        return 1
    except Exception as e:
        logger.error(f"Stage failed: {e}")
        logger.error(format_traceback(e))
        return 1

    print(f"Stage 01 done | {report.summary()}")
    return 1 if report.failures(FailureReason.TOOL_NOT_FOUND) else 0


if __name__ == "__main__":
    sys.exit(main())
