"""
Serializability oracle for transactional semantics.

Theory:
    Concurrently executed transactions must behave like some serial
    execution of the same transactions. The oracle runs a batch of random
    transactions interleaved (test run), replays them one at a time in the
    order the test run took its snapshots (oracle run), and compares both
    traces statement by statement and then table by table. The batch is
    inconsistent only if no candidate serial order reproduces the test run.

Example:
    Test run (interleaved):
        T1: BEGIN; INSERT INTO t0 VALUES (1); SELECT * FROM t0; COMMIT
        T2: BEGIN; DELETE FROM t0; COMMIT
    Oracle run: T1 then T2 if T1 sent its INSERT before T2 sent its DELETE,
    otherwise T2 then T1; the other order is tried if the first diverges

    If the test run's SELECT in T1 returns [] while the serial replay
    returns [(1,)], the insert was lost: result-set mismatch.
"""

import logging
from typing import List, Optional

from ..config import OracleConfig
from ..generator import TransactionGenerator
from ..runner import ExecutionRunner, ExecutionStrategy
from ..state import GlobalState
from ..transaction import Transaction
from .base import TxOracleBase, Verdict
from .result_comparator import ResultComparator

logger = logging.getLogger(__name__)


class TxSerializabilityOracle(TxOracleBase):
    """
    Interleaved-versus-serialized differential oracle.

    Limitations:
    - Only config.max_serial_orders orders are tried. For batches with more
      permutations than that, a valid order outside the tried ones shows up
      as a false positive.
    - Blocked statements are excluded from comparison, so anomalies visible
      only through them go unnoticed.
    """

    def __init__(
        self,
        config: OracleConfig,
        generator: Optional[TransactionGenerator] = None,
        runner: Optional[ExecutionRunner] = None,
        comparator: Optional[ResultComparator] = None,
    ):
        super().__init__(comparator)
        self.config = config
        self.generator = generator or TransactionGenerator(config)
        self.runner = runner
        self.last_transactions: List[Transaction] = []

    def evaluate(self, state: GlobalState) -> Verdict:
        """
        Generate config.tx_count transactions, run them interleaved, then
        replay candidate serial orders until one matches the test run.

        Sessions opened for the transactions are always closed before
        returning.

        Raises:
            GenerationAbandoned: If a transaction could not be generated
            SessionFault: If the session layer failed during execution
        """
        runner = self.runner or ExecutionRunner(state, self.config)
        transactions: List[Transaction] = []
        try:
            for _ in range(self.config.tx_count):
                transactions.append(self.generator.generate_transaction(state))
            self.last_transactions = transactions

            test_result = runner.run(transactions, ExecutionStrategy.INTERLEAVED)

            first_inconsistent = None
            for order in ExecutionRunner.serial_orders(
                transactions, test_result, self.config.max_serial_orders
            ):
                oracle_result = runner.run(
                    transactions, ExecutionStrategy.SERIALIZED, reference=test_result, order=order
                )
                verdict = self.compare(test_result, oracle_result)
                if verdict.consistent:
                    break
                logger.debug(f"Serial order {order} diverges: {verdict.reason.value}")
                first_inconsistent = first_inconsistent or verdict
            else:
                verdict = first_inconsistent
        finally:
            for tx in transactions:
                tx.close()

        if verdict.consistent:
            logger.debug(f"Consistent: {len(transactions)} transactions")
        else:
            logger.info(f"Inconsistent: {verdict.reason.value}")
        return verdict
