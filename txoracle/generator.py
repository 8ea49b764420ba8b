"""
Transaction Generator

Builds random transactions: one opening statement, a random number of data
statements drawn uniformly from the enabled actions, and one closing
COMMIT or ROLLBACK. Every statement carries the errors that are benign for it,
so the comparison oracle can tell known nondeterminism from engine bugs.
"""

import itertools
import logging
from typing import Callable, Dict, List, Optional, Protocol

from .config import OracleConfig
from .errors import GenerationAbandoned, SessionFault
from .state import GlobalState, Query
from .synthesizer import PostgresStatementSynthesizer
from .transaction import StatementType, Transaction, TxStatement

logger = logging.getLogger(__name__)

# Concurrent execution of independent transactions can always end in one of
# these; they are never a bug.
LOCK_CONFLICT_ERRORS = ("deadlock detected", "could not serialize access")


class StatementSynthesizer(Protocol):
    def synthesize(self, kind: StatementType, state: GlobalState) -> Query:
        ...


class TransactionGenerator:
    """
    Generates structurally valid random transactions.

    The action -> synthesizer table is resolved once here, so generation
    itself is plain dictionary lookups.

    Example:
        generator = TransactionGenerator(config)
        tx = generator.generate_transaction(state)
        print(tx)  # BEGIN ISOLATION LEVEL SERIALIZABLE; INSERT ...; COMMIT;
    """

    _tx_ids = itertools.count(1)

    def __init__(
        self,
        config: OracleConfig,
        synthesizer: Optional[StatementSynthesizer] = None,
    ):
        self.config = config.validate()
        synthesizer = synthesizer or PostgresStatementSynthesizer()
        self.actions: Dict[StatementType, Callable[[GlobalState], Query]] = {
            kind: self._bind(synthesizer, kind)
            for kind in (StatementType.BEGIN, StatementType.COMMIT, StatementType.ROLLBACK)
            + config.enabled_actions
        }
        self.data_actions = config.enabled_actions

    @staticmethod
    def _bind(synthesizer: StatementSynthesizer, kind: StatementType) -> Callable[[GlobalState], Query]:
        return lambda state: synthesizer.synthesize(kind, state)

    def generate_transaction(self, state: GlobalState) -> Transaction:
        """
        Build one transaction bound to a fresh session.

        Raises:
            GenerationAbandoned: If the session layer fails, or if the
                synthesizer keeps failing for too many consecutive attempts.
                The session is closed before raising.
        """
        randomly = state.randomly
        stmt_num = randomly.get_not_cached_integer(self.config.tx_size_min, self.config.tx_size_max + 1)
        tx_id = next(self._tx_ids)

        session = None
        try:
            session = state.open_session()
            statements = self._build_statements(state, tx_id, stmt_num)
        except SessionFault as e:
            self._close(session)
            raise GenerationAbandoned(f"Session fault while generating transaction {tx_id}: {e}") from e
        except GenerationAbandoned:
            self._close(session)
            raise

        logger.debug(f"Generated transaction {tx_id} with {stmt_num} data statements")
        return Transaction(tx_id, session, statements)

    def _build_statements(self, state: GlobalState, tx_id: int, stmt_num: int) -> List[TxStatement]:
        statements: List[TxStatement] = []

        begin = self.actions[StatementType.BEGIN](state)
        begin_errors = begin.expected_errors.with_errors(self.config.schema_changed_error)
        statements.append(TxStatement(tx_id, 0, StatementType.BEGIN, begin.text, begin_errors))

        for index in range(1, stmt_num + 1):
            kind, query = self._generate_data_statement(state)
            errors = query.expected_errors.with_errors(*LOCK_CONFLICT_ERRORS)
            statements.append(TxStatement(tx_id, index, kind, query.text, errors))

        end_kind = StatementType.COMMIT
        if state.randomly.get_probability(self.config.rollback_probability):
            end_kind = StatementType.ROLLBACK
        end = self.actions[end_kind](state)
        statements.append(TxStatement(tx_id, stmt_num + 1, end_kind, end.text, end.expected_errors))
        return statements

    def _generate_data_statement(self, state: GlobalState):
        """Retry until the synthesizer produces a statement, up to the attempt limit."""
        last_error: Optional[GenerationAbandoned] = None
        for _ in range(self.config.max_generation_attempts):
            kind = state.randomly.from_list(self.data_actions)
            try:
                return kind, self.actions[kind](state)
            except GenerationAbandoned as e:
                last_error = e
        raise GenerationAbandoned(
            f"Synthesizer abandoned {self.config.max_generation_attempts} consecutive statements: {last_error}"
        )

    @staticmethod
    def _close(session) -> None:
        if session is not None:
            session.close()
