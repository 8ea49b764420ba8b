"""
PostgreSQL session layer.

Wraps one psycopg2 connection in autocommit mode, so the BEGIN/COMMIT/ROLLBACK
statements of a generated transaction are what actually drive the engine's
transaction state. Statement errors are returned as data; only connection
level failures raise SessionFault.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import psycopg2

from .errors import SessionFault

logger = logging.getLogger(__name__)


@dataclass
class StatementOutcome:
    """Raw outcome of sending one statement."""

    rows: Optional[List[Tuple]] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    execution_time_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None


class Session:
    """
    One client session to the engine under test.

    Example:
        session = Session.connect("postgresql://localhost/txoracle")
        outcome = session.execute("SELECT * FROM t0")
        session.close()
    """

    def __init__(self, connection: Any, label: str = "session"):
        self._conn = connection
        self.label = label

    @classmethod
    def connect(cls, db_connection: str, label: str = "session", lock_timeout_ms: int = 0) -> "Session":
        """
        Open a new autocommit session.

        Raises:
            SessionFault: If the connection cannot be established
        """
        try:
            conn = psycopg2.connect(db_connection)
            conn.autocommit = True
            if lock_timeout_ms:
                with conn.cursor() as cur:
                    cur.execute(f"SET lock_timeout = {int(lock_timeout_ms)}")
        except psycopg2.Error as e:
            raise SessionFault(f"Could not open {label}: {str(e).strip()}") from e
        logger.debug(f"[{label}] Connected")
        return cls(conn, label)

    @property
    def closed(self) -> bool:
        return self._conn is None or bool(self._conn.closed)

    def execute(self, sql: str) -> StatementOutcome:
        """
        Execute a single statement and capture rows, error and warnings.

        Raises:
            SessionFault: On connection loss or interface errors
        """
        if self.closed:
            raise SessionFault(f"[{self.label}] Session is closed")

        notices_before = len(self._conn.notices)
        start_time = time.time()
        try:
            with self._conn.cursor() as cursor:
                cursor.execute(sql)
                rows = cursor.fetchall() if cursor.description else None
            outcome = StatementOutcome(rows=rows)
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            if self._conn.closed:
                raise SessionFault(f"[{self.label}] Connection lost: {str(e).strip()}") from e
            # Lock timeouts and serialization failures are OperationalErrors
            # on a live connection: report them like any statement error.
            outcome = StatementOutcome(error=str(e).strip())
        except psycopg2.Error as e:
            outcome = StatementOutcome(error=str(e).strip())

        outcome.execution_time_ms = (time.time() - start_time) * 1000
        outcome.warning = self._collect_notices(notices_before)

        if outcome.success:
            logger.debug(f"[{self.label}] Success - {sql[:100]}")
        else:
            logger.debug(f"[{self.label}] Failed - {sql[:100]}: {outcome.error}")
        return outcome

    def _collect_notices(self, start: int) -> Optional[str]:
        notices = self._conn.notices[start:]
        if not notices:
            return None
        del self._conn.notices[start:]
        return "".join(n.strip() + "\n" for n in notices).strip()

    def rollback_quietly(self) -> None:
        """Send ROLLBACK, ignoring statement errors (e.g. no transaction in progress)."""
        outcome = self.execute("ROLLBACK")
        if not outcome.success:
            logger.debug(f"[{self.label}] ROLLBACK failed: {outcome.error}")

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
            logger.debug(f"[{self.label}] Closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
