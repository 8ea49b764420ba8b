"""
Random CREATE TABLE statements for building the initial database.
"""

from typing import List

from .errors import ExpectedErrors
from .state import Column, DataType, GlobalState, Query
from .synthesizer import PostgresStatementSynthesizer


class TableGenerator:
    """
    Builds one CREATE TABLE statement.

    Each call works on fresh local state, so a generator instance is meant to
    be used for a single statement.
    """

    def __init__(self):
        self.columns: List[Column] = []
        self.errors = ExpectedErrors(["cached plan must not change result type"])
        self.expressions = PostgresStatementSynthesizer()

    def get_query(self, state: GlobalState) -> Query:
        randomly = state.randomly
        table_name = state.schema.get_free_table_name()
        if state.schema.tables and randomly.get_boolean():
            return self._copy_table(state, table_name)

        nr_columns = randomly.from_options(1, 2, 3)
        allow_primary_key = randomly.get_boolean()
        primary_key_as_constraint = allow_primary_key and randomly.get_boolean()

        self.columns = [
            Column(f"c{i}", randomly.from_list(list(DataType))) for i in range(nr_columns)
        ]

        parts = []
        for column in self.columns:
            definition = f"{column.name} {column.data_type.value}"
            if randomly.get_boolean_with_rather_low_probability():
                definition += f" CHECK {self.expressions.generate_predicate(state, [column])}"
            if randomly.get_boolean_with_rather_low_probability():
                definition += " NOT NULL"
            if randomly.get_boolean():
                definition += f" DEFAULT {self.expressions.generate_constant(state, column.data_type)}"
                self.errors = self.errors.with_errors("invalid input syntax", "out of range")
            if randomly.get_boolean_with_rather_low_probability():
                definition += " UNIQUE"
            if (allow_primary_key and not primary_key_as_constraint
                    and randomly.get_boolean_with_rather_low_probability()):
                definition += " PRIMARY KEY"
                allow_primary_key = False
            parts.append(definition)

        if primary_key_as_constraint:
            key_columns = randomly.non_empty_subset(self.columns)
            parts.append(f"PRIMARY KEY({', '.join(c.name for c in key_columns)})")

        text = f"CREATE TABLE {table_name}({', '.join(parts)})"
        return Query(text, self.errors, could_affect_schema=True)

    def _copy_table(self, state: GlobalState, table_name: str) -> Query:
        """CREATE TABLE ... (LIKE ...) over an existing table, constraints and defaults included."""
        original = state.schema.get_random_table(state.randomly)
        self.columns = list(original.columns)
        text = f"CREATE TABLE {table_name}(LIKE {original.name} INCLUDING ALL)"
        return Query(text, self.errors, could_affect_schema=True)
