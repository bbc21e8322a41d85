from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TypeVar

from tqdm.auto import tqdm

from cleanscribe.entity.artifact_entity import FailureReason, StageReport, UnitResult, UnitStatus
from cleanscribe.exception.exception import format_traceback
from cleanscribe.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _item_path(item) -> Path:
    return Path(getattr(item, "path", item))


class ParallelDispatcher:
    """
    Runs ``fn(item)`` for every item with at most ``max_workers`` in flight.

    Each call blocks on its own external process, so threads are enough to
    keep K ffmpeg/whisperx processes busy. max_workers == 1 is a plain loop
    in input order. A failing item never stops its siblings; results come
    back in input order whatever the completion order was.
    """

    def __init__(self, max_workers: int, stage: str, show_progress: bool = True):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = int(max_workers)
        self.stage = stage
        self.show_progress = show_progress

    def _safe_call(self, fn: Callable[[T], UnitResult], item: T) -> UnitResult:
        try:
            return fn(item)
        except Exception as e:
            logger.error(f"[{self.stage}] unexpected error for {_item_path(item)}: {e}")
            logger.error(format_traceback(e))
            return UnitResult(
                stage=self.stage,
                item=_item_path(item),
                status=UnitStatus.FAILED,
                reason=FailureReason.UNEXPECTED,
                detail=repr(e),
            )

    def run(self, items: Sequence[T], fn: Callable[[T], UnitResult]) -> StageReport:
        report = StageReport(stage=self.stage)
        if not items:
            return report

        results: List[Optional[UnitResult]] = [None] * len(items)
        with tqdm(total=len(items), desc=self.stage, unit="file", disable=not self.show_progress) as bar:
            if self.max_workers == 1:
                for idx, item in enumerate(items):
                    results[idx] = self._safe_call(fn, item)
                    bar.update(1)
            else:
                workers = min(self.max_workers, len(items))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.stage) as pool:
                    futures = {pool.submit(self._safe_call, fn, item): idx for idx, item in enumerate(items)}
                    for future in as_completed(futures):
                        results[futures[future]] = future.result()
                        bar.update(1)

        report.results = [r for r in results if r is not None]
        logger.info(f"[{self.stage}] done | {report.summary()}")
        return report
