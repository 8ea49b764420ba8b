"""
Transactional Correctness Validation via Differential Testing

Compares a concurrent (interleaved) execution of random transactions with a
serialized replay of the same transactions.

Based on:
- SQLancer project (github.com/sqlancer/sqlancer)

Key Components:
- TxOracleBase: statement-by-statement and final-state comparison
- TxSerializabilityOracle: interleaved test run vs. serialized oracle run
- ResultComparator: order-insensitive, NULL-safe row comparison
"""

from .base import (
    InconsistencyReason,
    Verdict,
    TxOracleBase,
)
from .transactional import TxSerializabilityOracle
from .result_comparator import ResultComparator, NULL_SENTINEL

__all__ = [
    'InconsistencyReason',
    'Verdict',
    'TxOracleBase',
    'TxSerializabilityOracle',
    'ResultComparator',
    'NULL_SENTINEL',
]
