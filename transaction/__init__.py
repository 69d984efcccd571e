"""Staged transaction engine."""

from .stage import Stage, stage_name
from .transaction import (
    StageFailure,
    Transaction,
    TransactionCancelledError,
    TransactionResult,
)

__all__ = [
    'Stage',
    'StageFailure',
    'Transaction',
    'TransactionCancelledError',
    'TransactionResult',
    'stage_name',
]
