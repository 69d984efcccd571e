"""Ordered execution of stages with reverse-order rollback on failure."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from .stage import Stage, stage_name

logger = logging.getLogger(__name__)


class TransactionCancelledError(Exception):
    """The transaction was cancelled before a stage could start."""
    pass


@dataclass(frozen=True)
class StageFailure:
    """A stage error recorded during a run."""
    stage: str
    phase: str
    error: BaseException


@dataclass
class TransactionResult:
    """Outcome of a transaction run."""
    success: bool
    error: Optional[BaseException] = None
    failed_stage: Optional[str] = None
    committed_stages: Tuple[Stage, ...] = ()
    failures: List[StageFailure] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def committed_stage_names(self) -> List[str]:
        return [stage_name(stage) for stage in self.committed_stages]


class Transaction:
    """
    Runs stages in order and unwinds on failure.

    On the first commit failure no further stage is committed; every stage
    that committed is rolled back exactly once, newest first; then every
    attempted stage (the committed ones plus the one that failed) is
    cleaned up. A stage skipped because of cancellation never entered
    commit and gets no cleanup. On success every stage is cleaned up once and nothing is
    rolled back. Cleanup and rollback errors are logged and recorded, never
    raised, so that each stage still gets its turn.

    A transaction object is meant for a single run.
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        """
        Args:
            cancel_event: When set, no further stage is started and the run
                unwinds as if the next stage had failed
        """
        self.cancel_event = cancel_event
        self._committed: List[Stage] = []
        self._failures: List[StageFailure] = []

    @property
    def committed_stages(self) -> Tuple[Stage, ...]:
        """Stages whose commit returned without error, in commit order."""
        return tuple(self._committed)

    def run(self, stages: Sequence[Stage], context: Any = None) -> TransactionResult:
        """
        Execute all stages.

        Args:
            stages: Stages in execution order
            context: Object passed to every stage call

        Returns:
            TransactionResult; `error` is the original commit error on failure
        """
        started_at = datetime.now()
        self._committed = []
        self._failures = []
        attempted: List[Stage] = []
        error: Optional[BaseException] = None
        failed_stage: Optional[str] = None

        for stage in stages:
            name = stage_name(stage)
            try:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    logger.info("TRN0011 Transaction has been cancelled")
                    raise TransactionCancelledError("Transaction cancelled")

                attempted.append(stage)
                logger.debug(f"TRN0000 Committing transaction stage {name}")
                stage.commit(context)
                self._committed.append(stage)
                logger.debug(f"TRN0001 Finished transaction stage {name}")
            except Exception as e:
                logger.error(f"TRN0002 Failed to complete transaction stage {name}: {e}")
                error = e
                failed_stage = name
                break

        if error is not None:
            logger.debug("TRN0009 Transaction failed. Rolling back ...")
            self._rollback(context)

        self._cleanup(attempted, context)

        return TransactionResult(
            success=error is None,
            error=error,
            failed_stage=failed_stage,
            committed_stages=self.committed_stages,
            failures=list(self._failures),
            started_at=started_at,
            finished_at=datetime.now(),
        )

    def _rollback(self, context: Any) -> None:
        for stage in reversed(self._committed):
            name = stage_name(stage)
            try:
                logger.info(f"TRN0006 Rolling back stage {name}")
                stage.rollback(context)
                logger.info(f"TRN0007 Successfully rolled back stage {name}")
            except Exception as e:
                logger.warning(f"TRN0008 Failed to roll back stage {name}: {e}")
                self._failures.append(StageFailure(name, 'rollback', e))

    def _cleanup(self, attempted: List[Stage], context: Any) -> None:
        for stage in reversed(attempted):
            name = stage_name(stage)
            try:
                logger.debug(f"TRN0003 Cleaning up stage {name}")
                stage.cleanup(context)
                logger.debug(f"TRN0004 Successfully cleaned up stage {name}")
            except Exception as e:
                logger.warning(f"TRN0005 Failed to clean up stage {name}: {e}")
                self._failures.append(StageFailure(name, 'cleanup', e))
