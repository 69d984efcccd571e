"""The unit of work run by a Transaction."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Stage(Protocol):
    """
    A single step of a transaction.

    Stages keep no run state of their own; everything a run needs lives in
    the context object handed to each call.

    commit:   do the work. Raise to fail the transaction.
    rollback: undo a successful commit. Only called when a later stage fails.
    cleanup:  release resources. Called for every attempted stage, including
              one whose commit failed part way, so it must be idempotent.
    """

    def commit(self, context: Any) -> None:
        ...

    def cleanup(self, context: Any) -> None:
        ...

    def rollback(self, context: Any) -> None:
        ...


def stage_name(stage: Any) -> str:
    """Name used for a stage in logs and results."""
    return getattr(stage, 'name', None) or type(stage).__name__
