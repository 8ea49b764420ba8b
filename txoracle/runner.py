"""
Execution Runner

Executes a batch of generated transactions against the engine and records a
TxTestExecutionResult trace, under one of two strategies:

- INTERLEAVED (test run): bounded random interleaving. Each transaction has
  one worker thread bound to its session. At every step a random runnable
  transaction sends its next statement; a statement still running after
  block_timeout is marked blocked and its transaction is parked until the
  statement resolves.
- SERIALIZED (oracle run): one transaction after another. The default order
  is the order in which the reference run's transactions took their
  snapshots; the engine takes a snapshot when a transaction sends its first
  data statement, not at BEGIN, so that order rather than commit order is
  what a snapshot-isolated engine serializes by. A transaction the reference
  run saw aborted by a lock conflict is replayed up to that statement and
  rolled back.

Before each run the database is restored from the init log, and after it
every table is snapshot into the trace's final state.
"""

import itertools
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .config import OracleConfig
from .error_classifier import is_lock_conflict
from .errors import SessionFault
from .session import StatementOutcome
from .state import GlobalState
from .transaction import Transaction, TxStatement, TxStatementExecutionResult, TxTestExecutionResult

logger = logging.getLogger(__name__)


class ExecutionStrategy(Enum):
    """How the transactions of one batch are scheduled."""
    INTERLEAVED = "interleaved"
    SERIALIZED = "serialized"


class ExecutionRunner:
    """
    Runs transaction batches and produces execution traces.

    Example:
        runner = ExecutionRunner(state)
        test_result = runner.run(transactions, ExecutionStrategy.INTERLEAVED)
        oracle_result = runner.run(transactions, ExecutionStrategy.SERIALIZED, reference=test_result)
    """

    def __init__(self, state: GlobalState, config: Optional[OracleConfig] = None):
        self.state = state
        self.config = config or state.config

    def run(
        self,
        transactions: Sequence[Transaction],
        strategy: ExecutionStrategy,
        reference: Optional[TxTestExecutionResult] = None,
        order: Optional[Sequence[int]] = None,
    ) -> TxTestExecutionResult:
        """
        Execute the batch from the initial database state.

        Args:
            transactions: Transactions to run, each bound to its own session
            strategy: INTERLEAVED or SERIALIZED
            reference: For SERIALIZED, the run whose snapshot order and
                abort points are replayed (generation order if None)
            order: For SERIALIZED, transaction ids to replay in, overriding
                the order derived from the reference

        Raises:
            SessionFault: On connection loss or a statement that never completes
        """
        self.state.reproduce_database()
        logger.debug(f"Running {len(transactions)} transactions ({strategy.value})")

        if strategy is ExecutionStrategy.INTERLEAVED:
            result = self._run_interleaved(transactions)
        else:
            result = self._run_serialized(transactions, reference, order)

        result.final_state = self.state.snapshot()
        return result

    # Serialized

    def _run_serialized(
        self,
        transactions: Sequence[Transaction],
        reference: Optional[TxTestExecutionResult],
        order: Optional[Sequence[int]] = None,
    ) -> TxTestExecutionResult:
        by_id = {tx.tx_id: tx for tx in transactions}
        order = order or self.serial_order(transactions, reference)
        aborted_at = dict(reference.aborted_at) if reference else {}
        result = TxTestExecutionResult()

        for tx_id in order:
            tx = by_id[tx_id]
            cut = aborted_at.get(tx_id)
            for stmt in tx.statements:
                if cut is not None and stmt.index >= cut:
                    result.statement_results.append(TxStatementExecutionResult(stmt, executed=False))
                    continue
                if self._takes_snapshot(stmt):
                    result.snapshot_order.append(tx_id)
                outcome = tx.session.execute(stmt.text)
                result.statement_results.append(self._to_result(stmt, outcome))
            if cut is not None:
                tx.session.rollback_quietly()
                result.aborted_at[tx_id] = cut
            result.completion_order.append(tx_id)
        return result

    @staticmethod
    def serial_order(
        transactions: Sequence[Transaction],
        reference: Optional[TxTestExecutionResult],
    ) -> List[int]:
        """
        Reference snapshot order, then transactions that never took a
        snapshot in completion order, then the rest in generation order.
        """
        generated = [tx.tx_id for tx in transactions]
        if reference is None:
            return generated
        order: List[int] = []
        for tx_id in itertools.chain(reference.snapshot_order, reference.completion_order, generated):
            if tx_id in generated and tx_id not in order:
                order.append(tx_id)
        return order

    @staticmethod
    def serial_orders(
        transactions: Sequence[Transaction],
        reference: Optional[TxTestExecutionResult],
        limit: int,
    ) -> List[List[int]]:
        """
        Candidate serial orders, at most `limit` of them.

        The snapshot order comes first. Under SERIALIZABLE the engine may
        commit a schedule equivalent to another order (a transaction whose
        snapshot is older can still serialize after one it did not see), so
        the remaining permutations follow.
        """
        preferred = ExecutionRunner.serial_order(transactions, reference)
        orders = [preferred]
        for permutation in itertools.permutations(preferred):
            if len(orders) >= limit:
                break
            if list(permutation) != preferred:
                orders.append(list(permutation))
        return orders

    @staticmethod
    def _takes_snapshot(stmt: TxStatement) -> bool:
        return stmt.index == 1 and not stmt.type.is_terminal()

    # Interleaved

    def _run_interleaved(self, transactions: Sequence[Transaction]) -> TxTestExecutionResult:
        result = TxTestExecutionResult()
        executors = {
            tx.tx_id: ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tx-{tx.tx_id}")
            for tx in transactions
        }
        next_index: Dict[int, int] = {tx.tx_id: 0 for tx in transactions}
        parked: Dict[int, Tuple[TxStatement, Future]] = {}
        by_id = {tx.tx_id: tx for tx in transactions}
        clean_exit = False

        try:
            while True:
                for tx_id, (stmt, future) in list(parked.items()):
                    if future.done():
                        del parked[tx_id]
                        self._record(result, by_id[tx_id], stmt, future.result(), True, executors, next_index)

                runnable = [
                    tx for tx in transactions
                    if tx.tx_id not in parked and next_index[tx.tx_id] < len(tx)
                ]
                if runnable:
                    tx = self.state.randomly.from_list(runnable)
                    stmt = tx.statements[next_index[tx.tx_id]]
                    next_index[tx.tx_id] += 1
                    if self._takes_snapshot(stmt):
                        result.snapshot_order.append(tx.tx_id)
                    future = executors[tx.tx_id].submit(tx.session.execute, stmt.text)
                    try:
                        outcome = future.result(timeout=self.config.block_timeout)
                    except FuturesTimeout:
                        logger.debug(f"Blocked: {stmt}")
                        parked[tx.tx_id] = (stmt, future)
                        continue
                    self._record(result, tx, stmt, outcome, False, executors, next_index)
                elif parked:
                    done, _ = wait(
                        [future for _, future in parked.values()],
                        timeout=self.config.statement_timeout,
                        return_when=FIRST_COMPLETED,
                    )
                    if not done:
                        stuck = ", ".join(str(stmt) for stmt, _ in parked.values())
                        raise SessionFault(
                            f"Statements did not complete within {self.config.statement_timeout}s: {stuck}"
                        )
                else:
                    break
            clean_exit = True
        finally:
            for executor in executors.values():
                executor.shutdown(wait=clean_exit)

        return result

    def _record(
        self,
        result: TxTestExecutionResult,
        tx: Transaction,
        stmt: TxStatement,
        outcome: StatementOutcome,
        blocked: bool,
        executors: Dict[int, ThreadPoolExecutor],
        next_index: Dict[int, int],
    ) -> None:
        result.statement_results.append(self._to_result(stmt, outcome, blocked))

        if outcome.error is not None and is_lock_conflict(outcome.error):
            # The engine aborted the transaction: nothing after this statement runs.
            logger.debug(f"Transaction {tx.tx_id} aborted at statement {stmt.index}: {outcome.error}")
            executors[tx.tx_id].submit(tx.session.rollback_quietly).result(
                timeout=self.config.statement_timeout
            )
            for skipped in tx.statements[stmt.index + 1:]:
                result.statement_results.append(
                    TxStatementExecutionResult(skipped, blocked=True, executed=False)
                )
            result.aborted_at[tx.tx_id] = stmt.index
            next_index[tx.tx_id] = len(tx)

        if tx.tx_id in result.aborted_at or stmt.index == len(tx) - 1:
            result.completion_order.append(tx.tx_id)

    def _to_result(
        self,
        stmt: TxStatement,
        outcome: StatementOutcome,
        blocked: bool = False,
    ) -> TxStatementExecutionResult:
        if outcome.error is not None and not stmt.expected_errors.is_expected(outcome.error):
            logger.warning(f"Unexpected error: {stmt}{outcome.error}")

        rows = None
        if stmt.type.returns_rows() and outcome.error is None:
            rows = list(outcome.rows or [])

        return TxStatementExecutionResult(
            statement=stmt,
            blocked=blocked,
            error_info=outcome.error,
            warning_info=outcome.warning,
            rows=rows,
        )
