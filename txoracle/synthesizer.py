"""
PostgreSQL Statement Synthesizer

Produces statement text for each statement kind, together with the errors
that are benign when that statement runs. The transaction generator only
sees the synthesize() entry point; everything else is grammar.
"""

from typing import Callable, Dict, List, Optional

from .errors import ExpectedErrors
from .state import Column, DataType, GlobalState, Query, Table
from .transaction import StatementType

# Errors any data statement may legitimately raise on random data.
DML_ERRORS = ExpectedErrors([
    "duplicate key value violates unique constraint",
    "violates not-null constraint",
    "violates check constraint",
    "out of range",
    "invalid input syntax",
    "numeric field overflow",
    "current transaction is aborted",
])

COMPARISON_OPERATORS = ("=", "<>", "<", "<=", ">", ">=")


class PostgresStatementSynthesizer:
    """
    Builds random statements over the tables of a GlobalState.

    Example:
        synthesizer = PostgresStatementSynthesizer()
        query = synthesizer.synthesize(StatementType.UPDATE, state)
        print(query.text)  # UPDATE t0 SET c1 = 42 WHERE (c0 > 3)
    """

    MAX_PREDICATE_DEPTH = 2

    def __init__(self):
        self._dispatch: Dict[StatementType, Callable[[GlobalState], Query]] = {
            StatementType.BEGIN: self.generate_begin,
            StatementType.COMMIT: self.generate_commit,
            StatementType.ROLLBACK: self.generate_rollback,
            StatementType.INSERT: self.generate_insert,
            StatementType.SELECT: self.generate_select,
            StatementType.SELECT_FOR_UPDATE: self.generate_select_for_update,
            StatementType.DELETE: self.generate_delete,
            StatementType.UPDATE: self.generate_update,
        }

    def synthesize(self, kind: StatementType, state: GlobalState) -> Query:
        """
        Build one statement of the given kind.

        Raises:
            GenerationAbandoned: If no valid statement can be built right now
        """
        return self._dispatch[kind](state)

    # Control statements

    def generate_begin(self, state: GlobalState) -> Query:
        keyword = state.randomly.from_options("BEGIN", "START TRANSACTION")
        level = state.config.isolation_level
        if level:
            return Query(f"{keyword} ISOLATION LEVEL {level.upper()}")
        return Query(keyword)

    def generate_commit(self, state: GlobalState) -> Query:
        return Query("COMMIT")

    def generate_rollback(self, state: GlobalState) -> Query:
        return Query("ROLLBACK")

    # Data statements

    def generate_insert(self, state: GlobalState, table: Optional[Table] = None) -> Query:
        table = table or state.schema.get_random_table(state.randomly)
        randomly = state.randomly
        columns = randomly.non_empty_subset(table.columns)
        nr_rows = randomly.from_options(1, 1, 2, 3)

        rows = []
        for _ in range(nr_rows):
            values = ", ".join(self.generate_constant(state, c.data_type) for c in columns)
            rows.append(f"({values})")

        column_list = ", ".join(c.name for c in columns)
        text = f"INSERT INTO {table.name}({column_list}) VALUES {', '.join(rows)}"
        return Query(text, DML_ERRORS)

    def generate_select(self, state: GlobalState) -> Query:
        return Query(self._select_text(state), DML_ERRORS)

    def generate_select_for_update(self, state: GlobalState) -> Query:
        text = self._select_text(state) + " FOR UPDATE"
        return Query(text, DML_ERRORS.with_errors("could not obtain lock"))

    def _select_text(self, state: GlobalState) -> str:
        table = state.schema.get_random_table(state.randomly)
        randomly = state.randomly
        if randomly.get_boolean():
            fetch = "*"
        else:
            fetch = ", ".join(c.name for c in randomly.non_empty_subset(table.columns))
        text = f"SELECT {fetch} FROM {table.name}"
        if randomly.get_boolean():
            text += f" WHERE {self.generate_predicate(state, table.columns)}"
        return text

    def generate_delete(self, state: GlobalState) -> Query:
        table = state.schema.get_random_table(state.randomly)
        text = f"DELETE FROM {table.name}"
        if state.randomly.get_boolean():
            text += f" WHERE {self.generate_predicate(state, table.columns)}"
        return Query(text, DML_ERRORS)

    def generate_update(self, state: GlobalState) -> Query:
        table = state.schema.get_random_table(state.randomly)
        randomly = state.randomly
        columns = randomly.non_empty_subset(table.columns)
        assignments = ", ".join(
            f"{c.name} = {self.generate_constant(state, c.data_type)}" for c in columns
        )
        text = f"UPDATE {table.name} SET {assignments}"
        if randomly.get_boolean():
            text += f" WHERE {self.generate_predicate(state, table.columns)}"
        return Query(text, DML_ERRORS)

    # Expressions

    def generate_constant(self, state: GlobalState, data_type: DataType) -> str:
        randomly = state.randomly
        if randomly.get_boolean_with_rather_low_probability():
            return "NULL"
        if data_type is DataType.INT:
            return str(randomly.get_integer())
        if data_type is DataType.BOOLEAN:
            return randomly.from_options("TRUE", "FALSE")
        if data_type is DataType.NUMERIC:
            return f"{randomly.get_integer()}.{randomly.get_not_cached_integer(0, 100)}"
        return "'" + randomly.get_string().replace("'", "''") + "'"

    def generate_predicate(self, state: GlobalState, columns: List[Column], depth: int = 0) -> str:
        randomly = state.randomly
        if depth < self.MAX_PREDICATE_DEPTH and randomly.get_boolean_with_rather_low_probability():
            left = self.generate_predicate(state, columns, depth + 1)
            right = self.generate_predicate(state, columns, depth + 1)
            return f"({left} {randomly.from_options('AND', 'OR')} {right})"

        column = randomly.from_list(columns)
        if randomly.get_boolean_with_rather_low_probability():
            return f"({column.name} IS {randomly.from_options('NULL', 'NOT NULL')})"
        operator = randomly.from_options(*COMPARISON_OPERATORS)
        constant = self.generate_constant(state, column.data_type)
        return f"({column.name} {operator} {constant})"
