"""
Shared test fixtures for txoracle tests.

No live database is needed: sessions are scripted fakes and the global state
runs on a fake admin session.
"""

from typing import Callable, Dict, Optional, Union
from unittest.mock import Mock

import pytest

from txoracle.config import OracleConfig
from txoracle.errors import ExpectedErrors
from txoracle.session import StatementOutcome
from txoracle.state import Column, DataType, GlobalState, Randomly, Schema, Table
from txoracle.transaction import (
    StatementType,
    Transaction,
    TxStatement,
    TxStatementExecutionResult,
    TxTestExecutionResult,
)

DEADLOCK_ERROR = "ERROR:  deadlock detected\nDETAIL:  Process 4711 waits for ShareLock on transaction 812"

Scripted = Union[StatementOutcome, Callable[[], StatementOutcome]]


class FakeSession:
    """Session whose outcomes are scripted per SQL text."""

    def __init__(self, outcomes: Optional[Dict[str, Scripted]] = None, label: str = "fake"):
        self.outcomes = outcomes or {}
        self.label = label
        self.executed = []
        self.closed = False

    def execute(self, sql: str) -> StatementOutcome:
        self.executed.append(sql)
        scripted = self.outcomes.get(sql)
        if callable(scripted):
            return scripted()
        if scripted is not None:
            return scripted
        if sql.upper().startswith("SELECT"):
            return StatementOutcome(rows=[])
        return StatementOutcome()

    def rollback_quietly(self) -> None:
        self.executed.append("ROLLBACK")

    def close(self) -> None:
        self.closed = True


class SnapshotDatabase:
    """
    One-table engine with snapshot isolation: a transaction sees the rows
    committed before its first data statement plus its own inserts.
    """

    def __init__(self):
        self.committed = []

    def reset(self):
        self.committed = []

    def session(self, label="snapshot"):
        return SnapshotSession(self, label)


class SnapshotSession(FakeSession):
    def __init__(self, database: SnapshotDatabase, label: str):
        super().__init__(label=label)
        self.database = database
        self.snapshot = None
        self.pending = []

    def execute(self, sql: str) -> StatementOutcome:
        self.executed.append(sql)
        if sql.startswith("BEGIN"):
            self.snapshot, self.pending = None, []
            return StatementOutcome()
        if sql in ("COMMIT", "ROLLBACK"):
            if sql == "COMMIT":
                self.database.committed.extend(self.pending)
            self.snapshot, self.pending = None, []
            return StatementOutcome()
        if self.snapshot is None:
            self.snapshot = list(self.database.committed)
        if sql.startswith("INSERT"):
            self.pending.append((1,))
            return StatementOutcome()
        return StatementOutcome(rows=self.snapshot + self.pending)


def scripted_randomly(tx_ids):
    """Randomly stand-in whose from_list picks transactions in the given order."""
    script = list(tx_ids)

    def pick(items):
        tx_id = script.pop(0)
        return next(tx for tx in items if tx.tx_id == tx_id)

    randomly = Mock()
    randomly.from_list.side_effect = pick
    return randomly


def make_statement(tx_id, index, kind, text=None, errors=()):
    return TxStatement(tx_id, index, kind, text or kind.value, ExpectedErrors(errors))


def make_transaction(tx_id, *data, end=StatementType.COMMIT, session=None):
    """Build BEGIN; <data statements>; COMMIT/ROLLBACK from (kind, text) pairs."""
    statements = [make_statement(tx_id, 0, StatementType.BEGIN, "BEGIN")]
    for i, (kind, text) in enumerate(data, start=1):
        statements.append(make_statement(tx_id, i, kind, text, ("deadlock detected",)))
    statements.append(make_statement(tx_id, len(data) + 1, end, end.value))
    return Transaction(tx_id, session or FakeSession(label=f"tx-{tx_id}"), statements)


def make_trace(results, final_state=None):
    return TxTestExecutionResult(statement_results=list(results), final_state=final_state or {})


def ok(statement, rows=None, **kwargs):
    return TxStatementExecutionResult(statement, rows=rows, **kwargs)


@pytest.fixture
def config():
    return OracleConfig(seed=1234, block_timeout=0.05, statement_timeout=5.0)


@pytest.fixture
def schema():
    return Schema({
        "t0": Table("t0", (Column("c0", DataType.INT), Column("c1", DataType.TEXT))),
        "t1": Table("t1", (Column("c0", DataType.BOOLEAN), Column("c1", DataType.NUMERIC))),
    })


@pytest.fixture
def sessions():
    """Every FakeSession opened through the state fixture."""
    return []


@pytest.fixture
def state(config, schema, sessions):
    def connector(label):
        session = FakeSession(label=label)
        sessions.append(session)
        return session

    global_state = GlobalState(config, Randomly(config.seed), connector=connector)
    global_state.schema = schema
    return global_state


@pytest.fixture
def runner_state(config):
    """GlobalState stand-in for runner tests: no database reset or snapshot."""
    mock_state = Mock(spec=GlobalState)
    mock_state.config = config
    mock_state.randomly = Randomly(config.seed)
    mock_state.snapshot.return_value = {"t0": [(1,)]}
    return mock_state
