"""
txoracle: Differential Testing of Transactional Semantics

Generates random multi-statement transactions, executes them interleaved
(test run) and serialized (oracle run) against PostgreSQL, and reports the
first divergence between the two traces.
"""

__version__ = "0.1.0"

from .config import OracleConfig
from .errors import ContractViolation, ExpectedErrors, GenerationAbandoned, SessionFault
from .generator import TransactionGenerator
from .runner import ExecutionRunner, ExecutionStrategy
from .state import GlobalState, Randomly, Schema
from .transaction import (
    StatementType,
    Transaction,
    TxStatement,
    TxStatementExecutionResult,
    TxTestExecutionResult,
)
from .validators import InconsistencyReason, TxSerializabilityOracle, Verdict


def evaluate(state: GlobalState) -> Verdict:
    """Run one generate/execute/compare cycle with the state's configuration."""
    return TxSerializabilityOracle(state.config).evaluate(state)


__all__ = [
    "OracleConfig",
    "ContractViolation",
    "ExpectedErrors",
    "GenerationAbandoned",
    "SessionFault",
    "TransactionGenerator",
    "ExecutionRunner",
    "ExecutionStrategy",
    "GlobalState",
    "Randomly",
    "Schema",
    "StatementType",
    "Transaction",
    "TxStatement",
    "TxStatementExecutionResult",
    "TxTestExecutionResult",
    "InconsistencyReason",
    "TxSerializabilityOracle",
    "Verdict",
    "evaluate",
    "__version__",
]
