"""
Stage 02: Transcription only

Transcribes every *_clean.wav already in the clean dir.

  python -m cleanscribe.pipeline.stage_02_transcription --mode docker --skip-transcribe-existing
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from cleanscribe.components.source_discovery import discover_clean_artifacts
from cleanscribe.config.configuration import ConfigurationManager
from cleanscribe.exception.exception import CleanScribeError, format_traceback
from cleanscribe.logging.logger import get_logger, add_file_handler
from cleanscribe.pipeline.controller import PipelineController
from cleanscribe.pipeline.run_pipeline import positive_int

logger = get_logger(__name__)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Stage 02: whisperx over existing clean WAVs")
    ap.add_argument("--mode", choices=("auto", "docker", "native"), default=None)
    ap.add_argument("--config", type=str, default="configs/config.yaml")
    ap.add_argument("--clean-dir", type=str, default=None)
    ap.add_argument("--output-dir", type=str, default=None)
    ap.add_argument("--whisper-jobs", type=positive_int, default=None)
    ap.add_argument("--diarize", action=argparse.BooleanOptionalAction, default=None)
    ap.add_argument("--skip-transcribe-existing", action="store_true", default=None)
    ap.add_argument("--run-id", type=str, default=None)
    args = ap.parse_args(argv)

    overrides = {
        "paths": {"clean_dir": args.clean_dir, "output_dir": args.output_dir},
        "transcription": {"diarize": args.diarize},
        "cache": {"skip_transcribe_existing": args.skip_transcribe_existing},
        "concurrency": {"transcribe_jobs": args.whisper_jobs},
    }
    try:
        cfg = ConfigurationManager(config_path=Path(args.config), overrides=overrides)
        # extension is irrelevant here; stage 2 reads the clean dir
        run_cfg = cfg.get_run_config(extension="wav", run_id=args.run_id, mode=args.mode)
        add_file_handler(get_logger(), run_cfg.logs_root / run_cfg.run_id / "stage_02_transcription.log")

        controller = PipelineController(run_cfg)
        controller.check_environment(include_cleaning=False)
        clean_artifacts = discover_clean_artifacts(run_cfg.cleaning.clean_dir)
        if not clean_artifacts:
            logger.error(f"No cleaned wavs found in {run_cfg.cleaning.clean_dir}")
            return 1

        logger.info(f"Stage 02 | n={len(clean_artifacts)} mode={run_cfg.mode} run_id={run_cfg.run_id}")
        report = controller.transcribe_all(clean_artifacts)
    except CleanScribeError as e:
        logger.error(f"ERROR: {e}")
        return 1
    except Exception as e:
        logger.error(f"Stage failed: {e}")
        logger.error(format_traceback(e))
        return 1

    print(f"Stage 02 done | {report.summary()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
