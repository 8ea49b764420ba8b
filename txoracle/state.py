"""
Global test state: random primitives, schema catalog, session factory and
the database init log.

The init log holds every setup statement that succeeded, in order. Replaying
it restores the database to the same starting point before the test run and
before the oracle run.
"""

import logging
import random
import string
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import sqlparse

from .config import OracleConfig
from .errors import ExpectedErrors, GenerationAbandoned, SessionFault
from .session import Session

logger = logging.getLogger(__name__)


class Randomly:
    """
    Random primitives for statement generation.

    get_integer() and get_string() reuse previously produced values now and
    then, so generated statements collide on the same keys often enough to
    provoke conflicts. The get_not_cached_* variants never reuse.
    """

    CACHE_PROBABILITY = 0.5
    CACHE_SIZE = 100

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed if seed is not None else random.randrange(2 ** 32)
        self._random = random.Random(self.seed)
        self._cached_integers: List[int] = []
        self._cached_strings: List[str] = []

    def get_not_cached_integer(self, lower: int, upper: int) -> int:
        """Uniform integer in [lower, upper)."""
        if upper <= lower:
            return lower
        return self._random.randrange(lower, upper)

    def get_integer(self, lower: int = -10, upper: int = 100) -> int:
        if self._cached_integers and self._random.random() < self.CACHE_PROBABILITY:
            return self._random.choice(self._cached_integers)
        value = self.get_not_cached_integer(lower, upper)
        self._remember(self._cached_integers, value)
        return value

    def get_string(self, max_length: int = 5) -> str:
        if self._cached_strings and self._random.random() < self.CACHE_PROBABILITY:
            return self._random.choice(self._cached_strings)
        length = self.get_not_cached_integer(0, max_length + 1)
        value = "".join(self._random.choice(string.ascii_lowercase) for _ in range(length))
        self._remember(self._cached_strings, value)
        return value

    def _remember(self, cache: list, value: Any) -> None:
        if len(cache) >= self.CACHE_SIZE:
            cache.pop(0)
        cache.append(value)

    def get_boolean(self) -> bool:
        return self._random.random() < 0.5

    def get_boolean_with_rather_low_probability(self) -> bool:
        return self._random.random() < 0.1

    def get_probability(self, probability: float) -> bool:
        return self._random.random() < probability

    def from_options(self, *options):
        return self._random.choice(options)

    def from_list(self, items: Sequence):
        if not items:
            raise GenerationAbandoned("Cannot choose from an empty list")
        return self._random.choice(list(items))

    def non_empty_subset(self, items: Sequence) -> list:
        items = list(items)
        if not items:
            raise GenerationAbandoned("Cannot choose a subset of an empty list")
        size = self.get_not_cached_integer(1, len(items) + 1)
        return self._random.sample(items, size)


class DataType(Enum):
    """Column types the generators know how to produce constants for."""
    INT = "INT"
    TEXT = "TEXT"
    BOOLEAN = "BOOLEAN"
    NUMERIC = "NUMERIC"

    @classmethod
    def from_postgres(cls, data_type: str) -> "DataType":
        data_type = data_type.lower()
        if data_type in ("integer", "bigint", "smallint", "int"):
            return cls.INT
        if data_type in ("boolean", "bool"):
            return cls.BOOLEAN
        if data_type in ("numeric", "decimal", "real", "double precision"):
            return cls.NUMERIC
        return cls.TEXT


@dataclass(frozen=True)
class Column:
    name: str
    data_type: DataType
    nullable: bool = True
    is_primary_key: bool = False


@dataclass(frozen=True)
class Table:
    name: str
    columns: tuple

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


@dataclass
class Schema:
    """Catalog of the tables currently in the database."""

    tables: Dict[str, Table] = field(default_factory=dict)

    @property
    def table_names(self) -> List[str]:
        return sorted(self.tables)

    def get_database_tables(self) -> List[Table]:
        return [self.tables[name] for name in self.table_names]

    def get_free_table_name(self) -> str:
        i = 0
        while f"t{i}" in self.tables:
            i += 1
        return f"t{i}"

    def get_random_table(self, randomly: Randomly) -> Table:
        """
        Raises:
            GenerationAbandoned: If no table exists yet
        """
        if not self.tables:
            raise GenerationAbandoned("No table exists yet")
        return randomly.from_list(self.get_database_tables())


@dataclass(frozen=True)
class Query:
    """SQL text plus the errors that are benign when executing it."""

    text: str
    expected_errors: ExpectedErrors = field(default_factory=ExpectedErrors)
    could_affect_schema: bool = False


class GlobalState:
    """
    Shared state of one oracle session: configuration, randomness, schema
    and connections.

    Args:
        config: Oracle configuration
        randomly: Random primitives (defaults to one seeded from config.seed)
        connector: Callable(label) -> Session used to open sessions
    """

    MAX_TABLE_ATTEMPTS = 10

    SCHEMA_QUERY = """
        SELECT c.table_name, c.column_name, c.data_type, c.is_nullable
        FROM information_schema.columns c
        JOIN information_schema.tables t
          ON t.table_schema = c.table_schema AND t.table_name = c.table_name
        WHERE c.table_schema = CURRENT_SCHEMA AND t.table_type = 'BASE TABLE'
        ORDER BY c.table_name, c.ordinal_position
    """

    def __init__(
        self,
        config: OracleConfig,
        randomly: Optional[Randomly] = None,
        connector: Optional[Callable[[str], Session]] = None,
    ):
        self.config = config
        self.randomly = randomly or Randomly(config.seed)
        self.schema = Schema()
        self.init_queries: List[Query] = []
        self._connector = connector or self._connect
        self._admin: Optional[Session] = None
        self._session_counter = 0

    def _connect(self, label: str) -> Session:
        return Session.connect(
            self.config.db_connection,
            label=label,
            lock_timeout_ms=self.config.lock_timeout_ms,
        )

    def open_session(self) -> Session:
        """Open a new session for one transaction. Raises SessionFault."""
        self._session_counter += 1
        return self._connector(f"session-{self._session_counter}")

    @property
    def admin(self) -> Session:
        if self._admin is None or self._admin.closed:
            self._admin = self._connector("admin")
        return self._admin

    def close(self) -> None:
        if self._admin is not None:
            self._admin.close()
            self._admin = None

    def update_schema(self) -> Schema:
        """Reload the table catalog from information_schema."""
        outcome = self.admin.execute(self.SCHEMA_QUERY)
        if not outcome.success:
            raise SessionFault(f"Could not read schema: {outcome.error}")

        columns: Dict[str, list] = {}
        for table_name, column_name, data_type, is_nullable in outcome.rows or []:
            columns.setdefault(table_name, []).append(
                Column(
                    name=column_name,
                    data_type=DataType.from_postgres(data_type),
                    nullable=is_nullable == "YES",
                )
            )
        self.schema = Schema({name: Table(name, tuple(cols)) for name, cols in columns.items()})
        logger.debug(f"Schema has {len(self.schema.tables)} tables: {self.schema.table_names}")
        return self.schema

    def execute_init_query(self, query: Query) -> bool:
        """
        Run a setup statement on the admin session.

        Successful statements join the init log. Errors matching the query's
        expected errors are tolerated.

        Returns:
            True if the statement succeeded

        Raises:
            SessionFault: On an unexpected error
        """
        outcome = self.admin.execute(query.text)
        if outcome.success:
            self.init_queries.append(query)
            if query.could_affect_schema:
                self.update_schema()
            return True
        if query.expected_errors.is_expected(outcome.error):
            logger.debug(f"Expected error during setup: {outcome.error}")
            return False
        raise SessionFault(f"Unexpected error during setup: {outcome.error}\n{query.text}")

    def drop_tables(self) -> None:
        self.update_schema()
        for name in self.schema.table_names:
            outcome = self.admin.execute(f"DROP TABLE IF EXISTS {name} CASCADE")
            if not outcome.success:
                raise SessionFault(f"Could not drop {name}: {outcome.error}")
        self.schema = Schema()

    def reproduce_database(self) -> None:
        """Drop every table and replay the init log."""
        self.drop_tables()
        for query in self.init_queries:
            outcome = self.admin.execute(query.text)
            if not outcome.success:
                raise SessionFault(f"Init query failed on replay: {outcome.error}\n{query.text}")
        self.update_schema()

    def generate_database(self) -> None:
        """Create config.num_tables random tables and fill them."""
        from .synthesizer import PostgresStatementSynthesizer
        from .table_generator import TableGenerator

        self.drop_tables()
        self.init_queries = []

        attempts = 0
        while len(self.schema.tables) < self.config.num_tables:
            attempts += 1
            if attempts > self.config.num_tables * self.MAX_TABLE_ATTEMPTS:
                raise SessionFault(f"Could not create {self.config.num_tables} tables")
            self.execute_init_query(TableGenerator().get_query(self))

        synthesizer = PostgresStatementSynthesizer()
        for table in self.schema.get_database_tables():
            for _ in range(self.config.rows_per_table):
                query = synthesizer.generate_insert(self, table)
                self.execute_init_query(query)
        logger.info(
            f"Generated database with {len(self.schema.tables)} tables "
            f"and {len(self.init_queries)} init queries"
        )

    def load_init_script(self, path: str) -> None:
        """Replace the database with the statements of a SQL file."""
        script = Path(path).read_text()
        self.drop_tables()
        self.init_queries = []
        for statement in sqlparse.split(script):
            statement = statement.strip().rstrip(";").strip()
            if statement:
                self.execute_init_query(Query(statement, could_affect_schema=True))
        self.update_schema()

    def snapshot(self) -> Dict[str, Optional[List[Any]]]:
        """Contents of every tracked table."""
        state = {}
        for name in self.schema.table_names:
            outcome = self.admin.execute(f"SELECT * FROM {name}")
            if not outcome.success:
                raise SessionFault(f"Could not snapshot {name}: {outcome.error}")
            state[name] = list(outcome.rows or [])
        return state
