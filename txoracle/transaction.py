"""
Statement and Transaction Model

Records describing generated transactions and the traces produced when the
runner executes them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .error_classifier import is_lock_conflict
from .errors import ExpectedErrors


class StatementType(Enum):
    """Kinds of statements a transaction can contain."""

    BEGIN = "BEGIN"
    COMMIT = "COMMIT"
    ROLLBACK = "ROLLBACK"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SELECT = "SELECT"
    SELECT_FOR_UPDATE = "SELECT_FOR_UPDATE"

    def is_control(self) -> bool:
        return self in (StatementType.BEGIN, StatementType.COMMIT, StatementType.ROLLBACK)

    def is_terminal(self) -> bool:
        return self in (StatementType.COMMIT, StatementType.ROLLBACK)

    def returns_rows(self) -> bool:
        return self in (StatementType.SELECT, StatementType.SELECT_FOR_UPDATE)


DATA_STATEMENT_TYPES = (
    StatementType.INSERT,
    StatementType.SELECT,
    StatementType.SELECT_FOR_UPDATE,
    StatementType.DELETE,
    StatementType.UPDATE,
)


@dataclass(frozen=True)
class TxStatement:
    """
    One statement of a generated transaction.

    Attributes:
        tx_id: Id of the owning transaction
        index: Position inside the owning transaction
        type: Statement kind
        text: SQL text sent to the engine
        expected_errors: Error patterns that are benign for this statement
    """

    tx_id: int
    index: int
    type: StatementType
    text: str
    expected_errors: ExpectedErrors = field(default_factory=ExpectedErrors)

    def __str__(self) -> str:
        return f"Transaction: {self.tx_id}, Statement {self.index}: {self.text}; "

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "index": self.index,
            "type": self.type.value,
            "text": self.text,
            "expected_errors": list(self.expected_errors),
        }


class Transaction:
    """
    An ordered BEGIN ... COMMIT/ROLLBACK unit bound to one session.

    The session is borrowed: the transaction never opens it, and close()
    only exists so the caller can release it through the transaction.
    """

    def __init__(self, tx_id: int, session: Any, statements: List[TxStatement]):
        self._check_structure(statements)
        self.tx_id = tx_id
        self.session = session
        self._statements = tuple(statements)

    @staticmethod
    def _check_structure(statements: List[TxStatement]) -> None:
        if len(statements) < 2:
            raise ValueError("A transaction needs at least an opening and a closing statement")
        if statements[0].type is not StatementType.BEGIN:
            raise ValueError(f"First statement must be BEGIN, got {statements[0].type.value}")
        if not statements[-1].type.is_terminal():
            raise ValueError(f"Last statement must be COMMIT or ROLLBACK, got {statements[-1].type.value}")
        for stmt in statements[1:-1]:
            if stmt.type.is_control():
                raise ValueError(f"Interior statement must be a data statement, got {stmt.type.value}")

    @property
    def statements(self) -> tuple:
        return self._statements

    @property
    def data_statements(self) -> tuple:
        return self._statements[1:-1]

    def close(self) -> None:
        if self.session is not None:
            self.session.close()

    def __len__(self) -> int:
        return len(self._statements)

    def __iter__(self):
        return iter(self._statements)

    def __str__(self) -> str:
        return "\n".join(f"{stmt.text};" for stmt in self._statements)

    def __repr__(self) -> str:
        return f"Transaction(tx_id={self.tx_id}, statements={len(self._statements)})"


@dataclass(frozen=True)
class TxStatementExecutionResult:
    """
    Outcome of running one statement.

    Attributes:
        statement: The statement that was run
        blocked: Statement stalled on a lock, so its outcome depends on timing
        error_info: Engine error text, if the statement failed
        warning_info: Engine warning/notice text, if any
        rows: Result rows (SELECT kinds only)
        executed: False if the runner never sent the statement
    """

    statement: TxStatement
    blocked: bool = False
    error_info: Optional[str] = None
    warning_info: Optional[str] = None
    rows: Optional[List[Any]] = None
    executed: bool = True

    def report_error(self) -> bool:
        return self.error_info is not None

    def report_warning(self) -> bool:
        return self.warning_info is not None

    def report_deadlock(self) -> bool:
        return self.error_info is not None and is_lock_conflict(self.error_info)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement": self.statement.to_dict(),
            "blocked": self.blocked,
            "error_info": self.error_info,
            "warning_info": self.warning_info,
            "rows": [list(r) if isinstance(r, tuple) else r for r in self.rows]
            if self.rows is not None else None,
            "executed": self.executed,
        }


@dataclass
class TxTestExecutionResult:
    """
    Trace of one run (test or oracle) over a batch of transactions.

    Attributes:
        statement_results: Per-statement results, per-transaction order preserved
        final_state: Table name -> rows, snapshot after the whole batch
        completion_order: Transaction ids in the order they finished
        snapshot_order: Transaction ids in the order they sent their first
            data statement, which is when the engine takes the snapshot
        aborted_at: Transaction id -> index of the statement whose lock
            conflict made the engine abort it
    """

    statement_results: List[TxStatementExecutionResult] = field(default_factory=list)
    final_state: Dict[str, Optional[List[Any]]] = field(default_factory=dict)
    completion_order: List[int] = field(default_factory=list)
    snapshot_order: List[int] = field(default_factory=list)
    aborted_at: Dict[int, int] = field(default_factory=dict)

    def result_for(self, statement: TxStatement) -> Optional[TxStatementExecutionResult]:
        for result in self.statement_results:
            if result.statement == statement:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_results": [r.to_dict() for r in self.statement_results],
            "final_state": {
                name: [list(r) if isinstance(r, tuple) else r for r in rows] if rows is not None else None
                for name, rows in self.final_state.items()
            },
            "completion_order": list(self.completion_order),
            "snapshot_order": list(self.snapshot_order),
            "aborted_at": dict(self.aborted_at),
        }
