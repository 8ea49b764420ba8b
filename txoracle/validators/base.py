"""
Base classes for transaction oracles.

A transaction oracle compares the trace of a test run (transactions executed
concurrently) with the trace of an oracle run (the same transactions under a
known-valid serialization) and returns a Verdict.

Divergence that concurrent execution legitimately produces is filtered out
before comparison:
- statements that blocked on a lock in the test run
- lock conflicts (deadlock, lock timeout, serialization failure) reported
  only by the test run
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from abc import ABC, abstractmethod
from enum import Enum

from ..errors import ContractViolation
from ..state import GlobalState
from ..transaction import TxStatement, TxStatementExecutionResult, TxTestExecutionResult
from .result_comparator import ResultComparator


class InconsistencyReason(Enum):
    """Why two execution traces are inconsistent"""
    REPORTING_ERROR_MISMATCH = "reporting error mismatch"
    ERROR_DETAIL_MISMATCH = "error detail mismatch"
    WARNING_MISMATCH = "warning mismatch"
    RESULT_SET_MISMATCH = "result-set mismatch"
    FINAL_STATE_MISMATCH = "final state mismatch"


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of comparing a test trace with an oracle trace.

    Attributes:
        consistent: Whether the traces are consistent
        reason: Inconsistency kind (None when consistent)
        detail: Human-readable description of the first divergence
        statement: Statement the divergence was found at, if any
        evidence: Both sides' payloads
    """
    consistent: bool
    reason: Optional[InconsistencyReason] = None
    detail: str = ""
    statement: Optional[TxStatement] = None
    evidence: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls) -> "Verdict":
        return cls(consistent=True)

    @classmethod
    def inconsistent(
        cls,
        reason: InconsistencyReason,
        detail: str,
        statement: Optional[TxStatement] = None,
        **evidence: Any,
    ) -> "Verdict":
        return cls(
            consistent=False,
            reason=reason,
            detail=detail,
            statement=statement,
            evidence=evidence,
        )

    def __str__(self) -> str:
        if self.consistent:
            return "Consistent"
        lines = [f"Error: Inconsistent ({self.reason.value})"]
        if self.statement is not None:
            lines.append(str(self.statement))
        if self.detail:
            lines.append(self.detail)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'consistent': self.consistent,
            'reason': self.reason.value if self.reason else None,
            'detail': self.detail,
            'statement': self.statement.to_dict() if self.statement else None,
            'evidence': self.evidence,
        }


class TxOracleBase(ABC):
    """
    Abstract base class for transaction oracles.

    Subclasses decide how transactions are generated and scheduled; the
    comparison of the resulting traces is shared here.

    Example:
        ```python
        oracle = TxSerializabilityOracle(config)
        verdict = oracle.evaluate(state)
        if not verdict.consistent:
            print(verdict)
        ```
    """

    def __init__(self, comparator: Optional[ResultComparator] = None):
        self.comparator = comparator or ResultComparator()

    @abstractmethod
    def evaluate(self, state: GlobalState) -> Verdict:
        """
        Run one generate/execute/compare cycle.

        Raises:
            GenerationAbandoned: If no transactions could be generated
            SessionFault: If the session layer failed during execution
        """
        pass

    def compare(
        self,
        test_result: TxTestExecutionResult,
        oracle_result: TxTestExecutionResult,
    ) -> Verdict:
        """Per-statement pass, then the whole-database pass."""
        return self.compare_all_results(test_result, oracle_result)

    def compare_all_results(
        self,
        test_result: TxTestExecutionResult,
        oracle_result: TxTestExecutionResult,
    ) -> Verdict:
        """
        Compare every test-side statement with its oracle-side counterpart.

        Returns the first inconsistency found, or the verdict of the
        whole-database pass when every statement agrees.

        Raises:
            ContractViolation: If a test-side statement has no oracle counterpart
        """
        for exec_result in test_result.statement_results:
            # Blocking is a timing artifact.
            if exec_result.blocked:
                continue

            oracle_stmt_result = oracle_result.result_for(exec_result.statement)
            if oracle_stmt_result is None:
                raise ContractViolation(
                    f"No oracle result for statement: {exec_result.statement}"
                )

            verdict = self._compare_statement(exec_result, oracle_stmt_result)
            if verdict is not None:
                return verdict

        return self.compare_final_db_state(test_result, oracle_result)

    def _compare_statement(
        self,
        exec_result: TxStatementExecutionResult,
        oracle_stmt_result: TxStatementExecutionResult,
    ) -> Optional[Verdict]:
        stmt = exec_result.statement

        if exec_result.report_error() != oracle_stmt_result.report_error():
            if exec_result.report_deadlock():
                return None
            return Verdict.inconsistent(
                InconsistencyReason.REPORTING_ERROR_MISMATCH,
                "Inconsistent reporting error",
                stmt,
                test_error=exec_result.error_info,
                oracle_error=oracle_stmt_result.error_info,
            )
        if exec_result.report_error() and exec_result.error_info != oracle_stmt_result.error_info:
            return Verdict.inconsistent(
                InconsistencyReason.ERROR_DETAIL_MISMATCH,
                "Inconsistent error info",
                stmt,
                test_error=exec_result.error_info,
                oracle_error=oracle_stmt_result.error_info,
            )

        if exec_result.warning_info != oracle_stmt_result.warning_info:
            return Verdict.inconsistent(
                InconsistencyReason.WARNING_MISMATCH,
                "Inconsistent reporting warning"
                if exec_result.report_warning() != oracle_stmt_result.report_warning()
                else "Inconsistent warning info",
                stmt,
                test_warning=exec_result.warning_info,
                oracle_warning=oracle_stmt_result.warning_info,
            )

        if stmt.type.returns_rows():
            difference = self.comparator.compare_query_result(exec_result.rows, oracle_stmt_result.rows)
            if difference:
                return Verdict.inconsistent(
                    InconsistencyReason.RESULT_SET_MISMATCH,
                    f"Inconsistent query result: {difference}",
                    stmt,
                    test_rows=exec_result.rows,
                    oracle_rows=oracle_stmt_result.rows,
                )
        return None

    def compare_final_db_state(
        self,
        test_result: TxTestExecutionResult,
        oracle_result: TxTestExecutionResult,
    ) -> Verdict:
        """Compare every table snapshot; a table missing on either side is a mismatch."""
        table_names = sorted(set(test_result.final_state) | set(oracle_result.final_state))
        for name in table_names:
            if name not in test_result.final_state or name not in oracle_result.final_state:
                return Verdict.inconsistent(
                    InconsistencyReason.FINAL_STATE_MISMATCH,
                    f"Inconsistent final database state: table {name} is missing on one side",
                    table=name,
                )
            exec_state = test_result.final_state[name]
            oracle_state = oracle_result.final_state[name]
            difference = self.comparator.compare_query_result(exec_state, oracle_state)
            if difference:
                only_test, only_oracle = self.comparator.find_mismatched_rows(
                    exec_state or [], oracle_state or []
                )
                return Verdict.inconsistent(
                    InconsistencyReason.FINAL_STATE_MISMATCH,
                    f"Inconsistent final database state of {name}: {difference}",
                    table=name,
                    only_in_test=only_test,
                    only_in_oracle=only_oracle,
                )
        return Verdict.ok()
