"""
Unit tests for the transaction comparison oracle.

Covers the per-statement rules (blocked, error, warning, result-set), the
final-state pass, and the end-to-end evaluate() cycle with mocked
collaborators.
"""

from unittest.mock import Mock, patch

import pytest

import txoracle

from txoracle.errors import ContractViolation, GenerationAbandoned
from txoracle.generator import TransactionGenerator
from txoracle.runner import ExecutionRunner, ExecutionStrategy
from txoracle.transaction import StatementType, TxStatementExecutionResult, TxTestExecutionResult
from txoracle.validators import InconsistencyReason, TxSerializabilityOracle, Verdict
from txoracle.validators.base import TxOracleBase

from conftest import (
    DEADLOCK_ERROR,
    SnapshotDatabase,
    make_statement,
    make_trace,
    make_transaction,
    ok,
    scripted_randomly,
)


class ComparingOracle(TxOracleBase):
    """Oracle with only the shared comparison logic."""

    def evaluate(self, state):
        raise NotImplementedError


@pytest.fixture
def oracle():
    return ComparingOracle()


@pytest.fixture
def select_stmt():
    return make_statement(1, 2, StatementType.SELECT, "SELECT * FROM t", ("deadlock detected",))


@pytest.fixture
def update_stmt():
    return make_statement(1, 1, StatementType.UPDATE, "UPDATE t SET c0 = 2", ("deadlock detected",))


class TestVerdict:
    """Test Verdict values"""

    def test_ok(self):
        verdict = Verdict.ok()
        assert verdict.consistent
        assert verdict.reason is None
        assert str(verdict) == "Consistent"

    def test_inconsistent_carries_evidence(self, select_stmt):
        verdict = Verdict.inconsistent(
            InconsistencyReason.RESULT_SET_MISMATCH, "rows differ", select_stmt, test_rows=[], oracle_rows=[(1,)]
        )
        assert not verdict.consistent
        assert verdict.evidence == {"test_rows": [], "oracle_rows": [(1,)]}
        assert "SELECT * FROM t" in str(verdict)
        assert verdict.to_dict()["reason"] == "result-set mismatch"


class TestPerStatementRules:
    """Test compare_all_results rules, in order"""

    def test_blocked_statement_is_skipped(self, oracle, select_stmt):
        test = make_trace([TxStatementExecutionResult(select_stmt, blocked=True, rows=[], error_info="boom")])
        reference = make_trace([ok(select_stmt, rows=[(1,)], warning_info="careful")])
        assert oracle.compare(test, reference).consistent

    def test_blocked_statement_needs_no_oracle_counterpart(self, oracle, select_stmt):
        test = make_trace([TxStatementExecutionResult(select_stmt, blocked=True)])
        assert oracle.compare(test, make_trace([])).consistent

    def test_test_side_deadlock_is_benign(self, oracle, update_stmt):
        test = make_trace([TxStatementExecutionResult(update_stmt, error_info=DEADLOCK_ERROR)])
        reference = make_trace([ok(update_stmt)])
        assert oracle.compare(test, reference).consistent

    def test_lock_timeout_is_benign(self, oracle, update_stmt):
        test = make_trace([
            TxStatementExecutionResult(update_stmt, error_info="canceling statement due to lock timeout")
        ])
        assert oracle.compare(test, make_trace([ok(update_stmt)])).consistent

    def test_oracle_side_deadlock_is_not_benign(self, oracle, update_stmt):
        test = make_trace([ok(update_stmt)])
        reference = make_trace([TxStatementExecutionResult(update_stmt, error_info=DEADLOCK_ERROR)])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.REPORTING_ERROR_MISMATCH

    def test_reporting_error_mismatch(self, oracle, update_stmt):
        error = "duplicate key value violates unique constraint \"t_pkey\""
        test = make_trace([TxStatementExecutionResult(update_stmt, error_info=error)])
        reference = make_trace([ok(update_stmt)])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.REPORTING_ERROR_MISMATCH
        assert verdict.statement == update_stmt
        assert verdict.evidence == {"test_error": error, "oracle_error": None}

    def test_error_detail_mismatch(self, oracle, update_stmt):
        test = make_trace([TxStatementExecutionResult(update_stmt, error_info="value out of range")])
        reference = make_trace([TxStatementExecutionResult(update_stmt, error_info="division by zero")])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.ERROR_DETAIL_MISMATCH

    def test_both_deadlock_with_different_text(self, oracle, update_stmt):
        """Both sides erroring is not the one-sided case: texts must match"""
        test = make_trace([TxStatementExecutionResult(update_stmt, error_info=DEADLOCK_ERROR)])
        reference = make_trace([TxStatementExecutionResult(update_stmt, error_info="deadlock detected")])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.ERROR_DETAIL_MISMATCH

    def test_same_error_is_consistent(self, oracle, update_stmt):
        error = "invalid input syntax for type integer: \"x\""
        test = make_trace([TxStatementExecutionResult(update_stmt, error_info=error)])
        reference = make_trace([TxStatementExecutionResult(update_stmt, error_info=error)])
        assert oracle.compare(test, reference).consistent

    def test_one_sided_warning(self, oracle, update_stmt):
        test = make_trace([ok(update_stmt, warning_info="WARNING:  there is no transaction in progress")])
        reference = make_trace([ok(update_stmt)])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.WARNING_MISMATCH
        assert verdict.detail == "Inconsistent reporting warning"

    def test_warning_text_mismatch(self, oracle, update_stmt):
        test = make_trace([ok(update_stmt, warning_info="a")])
        reference = make_trace([ok(update_stmt, warning_info="b")])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.WARNING_MISMATCH
        assert verdict.detail == "Inconsistent warning info"

    def test_error_rule_wins_over_warning_rule(self, oracle, update_stmt):
        test = make_trace([TxStatementExecutionResult(update_stmt, error_info="x", warning_info="a")])
        reference = make_trace([ok(update_stmt, warning_info="b")])
        assert oracle.compare(test, reference).reason is InconsistencyReason.REPORTING_ERROR_MISMATCH

    def test_result_set_mismatch(self, oracle, select_stmt):
        test = make_trace([ok(select_stmt, rows=[])])
        reference = make_trace([ok(select_stmt, rows=[(1,)])])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.RESULT_SET_MISMATCH
        assert verdict.statement == select_stmt
        assert "size of query results is different" in verdict.detail

    def test_select_for_update_rows_are_compared(self, oracle):
        stmt = make_statement(1, 1, StatementType.SELECT_FOR_UPDATE, "SELECT * FROM t FOR UPDATE")
        test = make_trace([ok(stmt, rows=[(1,)])])
        reference = make_trace([ok(stmt, rows=[(2,)])])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.RESULT_SET_MISMATCH
        assert "[(1), (2)]" in verdict.detail

    def test_rows_of_non_select_are_ignored(self, oracle, update_stmt):
        test = make_trace([ok(update_stmt, rows=[(1,)])])
        reference = make_trace([ok(update_stmt, rows=[(2,)])])
        assert oracle.compare(test, reference).consistent

    def test_row_order_is_ignored(self, oracle, select_stmt):
        test = make_trace([ok(select_stmt, rows=[(None,), (1,), (2,)])])
        reference = make_trace([ok(select_stmt, rows=[(2,), (None,), (1,)])])
        assert oracle.compare(test, reference).consistent

    def test_missing_oracle_counterpart_is_fatal(self, oracle, select_stmt, update_stmt):
        test = make_trace([ok(select_stmt, rows=[])])
        reference = make_trace([ok(update_stmt)])
        with pytest.raises(ContractViolation):
            oracle.compare(test, reference)

    def test_first_divergence_short_circuits(self, oracle, update_stmt, select_stmt):
        """S1 consistent, S2 diverges: verdict names S2 and skips the final-state pass"""
        test = make_trace(
            [ok(update_stmt), ok(select_stmt, rows=[])],
            final_state={"t": [(1,)]},
        )
        reference = make_trace(
            [ok(update_stmt), ok(select_stmt, rows=[(1,)])],
            final_state={"t": [(2,)]},
        )
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.RESULT_SET_MISMATCH
        assert verdict.statement == select_stmt

    def test_lookup_ignores_oracle_order(self, oracle, update_stmt, select_stmt):
        test = make_trace([ok(update_stmt), ok(select_stmt, rows=[(1,)])])
        reference = make_trace([ok(select_stmt, rows=[(1,)]), ok(update_stmt)])
        assert oracle.compare(test, reference).consistent


class TestFinalStateComparison:
    """Test compare_final_db_state"""

    def test_equal_states(self, oracle):
        test = make_trace([], final_state={"t0": [(1, 'a'), (2, None)], "t1": []})
        reference = make_trace([], final_state={"t1": [], "t0": [(2, None), (1, 'a')]})
        assert oracle.compare_final_db_state(test, reference).consistent

    def test_lost_update_is_detected(self, oracle):
        test = make_trace([], final_state={"t0": [(1,)]})
        reference = make_trace([], final_state={"t0": [(2,)]})
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.FINAL_STATE_MISMATCH
        assert verdict.evidence["table"] == "t0"
        assert verdict.evidence["only_in_test"] == ["(1)"]
        assert verdict.evidence["only_in_oracle"] == ["(2)"]

    def test_table_missing_on_oracle_side(self, oracle):
        test = make_trace([], final_state={"t0": []})
        verdict = oracle.compare_final_db_state(test, make_trace([], final_state={}))
        assert verdict.reason is InconsistencyReason.FINAL_STATE_MISMATCH
        assert "missing" in verdict.detail

    def test_table_missing_on_test_side(self, oracle):
        reference = make_trace([], final_state={"t0": []})
        verdict = oracle.compare_final_db_state(make_trace([], final_state={}), reference)
        assert verdict.reason is InconsistencyReason.FINAL_STATE_MISMATCH


class TestScenarios:
    """End-to-end comparison scenarios"""

    def _insert_select_transaction(self):
        return make_transaction(
            1,
            (StatementType.INSERT, "INSERT INTO t VALUES(1)"),
            (StatementType.SELECT, "SELECT * FROM t"),
        )

    def _trace(self, tx, select_rows, final_rows):
        begin, insert, select, commit = tx.statements
        return make_trace(
            [ok(begin), ok(insert), ok(select, rows=select_rows), ok(commit)],
            final_state={"t": final_rows},
        )

    def test_insert_then_select_is_consistent(self, oracle):
        tx = self._insert_select_transaction()
        test = self._trace(tx, [(1,)], [(1,)])
        reference = self._trace(tx, [(1,)], [(1,)])
        assert oracle.compare(test, reference).consistent

    def test_lost_insert_is_result_set_mismatch(self, oracle):
        tx = self._insert_select_transaction()
        test = self._trace(tx, [], [(1,)])
        reference = self._trace(tx, [(1,)], [(1,)])
        verdict = oracle.compare(test, reference)
        assert verdict.reason is InconsistencyReason.RESULT_SET_MISMATCH
        assert verdict.statement.text == "SELECT * FROM t"

    def test_two_concurrent_deadlocks_are_consistent(self, oracle):
        tx1 = make_transaction(1, (StatementType.UPDATE, "UPDATE t SET c0 = 1 WHERE c0 = 2"))
        tx2 = make_transaction(2, (StatementType.UPDATE, "UPDATE t SET c0 = 2 WHERE c0 = 1"))
        test_results, oracle_results = [], []
        for tx in (tx1, tx2):
            begin, update, commit = tx.statements
            test_results += [ok(begin), TxStatementExecutionResult(update, error_info=DEADLOCK_ERROR),
                             TxStatementExecutionResult(commit, blocked=True, executed=False)]
            oracle_results += [ok(begin), ok(update), ok(commit)]
        test = make_trace(test_results, final_state={"t": [(1,), (2,)]})
        reference = make_trace(oracle_results, final_state={"t": [(2,), (1,)]})
        assert oracle.compare(test, reference).consistent

    def test_trace_is_consistent_with_itself(self, oracle, update_stmt, select_stmt):
        trace = make_trace(
            [
                ok(update_stmt, warning_info="w"),
                ok(select_stmt, rows=[(None, 'x'), (3, 'y')]),
                TxStatementExecutionResult(make_statement(2, 1, StatementType.DELETE), error_info="boom"),
            ],
            final_state={"t": [(None, 'x'), (3, 'y')], "u": None},
        )
        copy = TxTestExecutionResult(list(trace.statement_results), dict(trace.final_state))
        assert oracle.compare(trace, copy).consistent


class TestTxSerializabilityOracle:
    """Test the evaluate() cycle with mocked collaborators"""

    def test_evaluate_runs_both_strategies_and_closes_sessions(self, config, state):
        tx1 = make_transaction(1, (StatementType.SELECT, "SELECT * FROM t0"))
        tx2 = make_transaction(2, (StatementType.DELETE, "DELETE FROM t0"))
        generator = Mock(spec=TransactionGenerator)
        generator.generate_transaction.side_effect = [tx1, tx2]

        test_result = make_trace(
            [ok(s, rows=[] if s.type.returns_rows() else None) for s in tx1.statements + tx2.statements],
            final_state={"t0": []},
        )
        runner = Mock(spec=ExecutionRunner)
        runner.run.side_effect = [test_result, test_result]

        oracle = TxSerializabilityOracle(config, generator=generator, runner=runner)
        verdict = oracle.evaluate(state)

        assert verdict.consistent
        assert oracle.last_transactions == [tx1, tx2]
        first, second = runner.run.call_args_list
        assert first.args == ([tx1, tx2], ExecutionStrategy.INTERLEAVED)
        assert second.args == ([tx1, tx2], ExecutionStrategy.SERIALIZED)
        assert second.kwargs == {"reference": test_result, "order": [tx1.tx_id, tx2.tx_id]}
        assert tx1.session.closed and tx2.session.closed

    def test_evaluate_reports_inconsistency(self, config, state):
        tx = make_transaction(1, (StatementType.SELECT, "SELECT * FROM t0"))
        begin, select, commit = tx.statements
        generator = Mock(spec=TransactionGenerator)
        generator.generate_transaction.return_value = tx
        runner = Mock(spec=ExecutionRunner)
        runner.run.side_effect = [
            make_trace([ok(begin), ok(select, rows=[]), ok(commit)]),
            make_trace([ok(begin), ok(select, rows=[(1,)]), ok(commit)]),
        ]

        oracle = TxSerializabilityOracle(config.with_overrides(tx_count=1), generator=generator, runner=runner)
        verdict = oracle.evaluate(state)

        assert verdict.reason is InconsistencyReason.RESULT_SET_MISMATCH

    def test_abandoned_generation_releases_earlier_sessions(self, config, state):
        tx1 = make_transaction(1)
        generator = Mock(spec=TransactionGenerator)
        generator.generate_transaction.side_effect = [tx1, GenerationAbandoned("no table")]
        runner = Mock(spec=ExecutionRunner)

        oracle = TxSerializabilityOracle(config, generator=generator, runner=runner)
        with pytest.raises(GenerationAbandoned):
            oracle.evaluate(state)

        assert tx1.session.closed
        runner.run.assert_not_called()

    def test_package_evaluate_uses_state_config(self, state):
        with patch.object(TxSerializabilityOracle, "evaluate", return_value=Verdict.ok()) as evaluate:
            assert txoracle.evaluate(state).consistent
        evaluate.assert_called_once_with(state)


class TestSerialOrderSearch:
    """Test that evaluate() accepts a batch if any tried serial order matches"""

    @staticmethod
    def reader_and_writer(session_for=None):
        session_for = session_for or (lambda label: None)
        reader = make_transaction(
            1, (StatementType.SELECT, "SELECT * FROM t0"), session=session_for("reader")
        )
        writer = make_transaction(
            2, (StatementType.INSERT, "INSERT INTO t0 VALUES (1)"), session=session_for("writer")
        )
        return reader, writer

    @staticmethod
    def traces(reader, writer, reader_rows):
        begin, select, commit = reader.statements
        return make_trace([ok(begin), ok(select, rows=reader_rows), ok(commit)] + [ok(s) for s in writer.statements])

    def test_read_before_concurrent_commit_is_consistent(self, config, runner_state):
        """Reader snapshots before the writer commits, but commits after it"""
        database = SnapshotDatabase()
        runner_state.reproduce_database.side_effect = database.reset
        runner_state.randomly = scripted_randomly([1, 1, 2, 2, 2, 1])
        reader, writer = self.reader_and_writer(database.session)
        generator = Mock(spec=TransactionGenerator)
        generator.generate_transaction.side_effect = [reader, writer]

        oracle = TxSerializabilityOracle(
            config.with_overrides(tx_count=2), generator=generator, runner=ExecutionRunner(runner_state)
        )
        verdict = oracle.evaluate(runner_state)

        assert verdict.consistent, str(verdict)

    def test_later_order_can_match(self, config, state):
        reader, writer = self.reader_and_writer()
        generator = Mock(spec=TransactionGenerator)
        generator.generate_transaction.side_effect = [reader, writer]
        runner = Mock(spec=ExecutionRunner)
        runner.run.side_effect = [
            self.traces(reader, writer, [(1,)]),
            self.traces(reader, writer, []),
            self.traces(reader, writer, [(1,)]),
        ]

        oracle = TxSerializabilityOracle(config.with_overrides(tx_count=2), generator=generator, runner=runner)
        verdict = oracle.evaluate(state)

        assert verdict.consistent
        assert runner.run.call_count == 3
        assert runner.run.call_args_list[2].kwargs["order"] == [2, 1]

    def test_first_divergence_is_reported_when_no_order_matches(self, config, state):
        reader, writer = self.reader_and_writer()
        generator = Mock(spec=TransactionGenerator)
        generator.generate_transaction.side_effect = [reader, writer]
        runner = Mock(spec=ExecutionRunner)
        runner.run.side_effect = [
            self.traces(reader, writer, [(1,)]),
            self.traces(reader, writer, []),
            self.traces(reader, writer, [(2,)]),
        ]

        oracle = TxSerializabilityOracle(config.with_overrides(tx_count=2), generator=generator, runner=runner)
        verdict = oracle.evaluate(state)

        assert verdict.reason is InconsistencyReason.RESULT_SET_MISMATCH
        assert verdict.evidence["oracle_rows"] == []

    def test_tried_orders_are_capped(self, config, state):
        reader, writer = self.reader_and_writer()
        generator = Mock(spec=TransactionGenerator)
        generator.generate_transaction.side_effect = [reader, writer]
        runner = Mock(spec=ExecutionRunner)
        runner.run.side_effect = [
            self.traces(reader, writer, [(1,)]),
            self.traces(reader, writer, []),
        ]

        oracle = TxSerializabilityOracle(
            config.with_overrides(tx_count=2, max_serial_orders=1), generator=generator, runner=runner
        )
        verdict = oracle.evaluate(state)

        assert not verdict.consistent
        assert runner.run.call_count == 2
