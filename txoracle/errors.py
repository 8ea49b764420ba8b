"""
Exception types raised by the transaction oracle.

Inconsistencies found by the oracle are not exceptions: they are returned
as Verdict values. The exceptions here describe conditions that stop a
test iteration before a verdict can be produced.
"""

from typing import Iterable, Tuple


class GenerationAbandoned(Exception):
    """
    Raised when a statement or transaction cannot be built right now.

    Recoverable: the generator retries the current statement slot, and the
    driving loop retries the whole iteration.
    """


class SessionFault(Exception):
    """
    Raised when the session layer fails (connection loss, driver error,
    statement that never completes).

    Propagated to the driving loop as an iteration failure and never
    compared.
    """


class ContractViolation(Exception):
    """
    Raised when execution traces break the runner contract, e.g. a test-side
    statement has no counterpart in the oracle trace.
    """


class ExpectedErrors:
    """
    Immutable set of error substrings that are benign for one statement.

    Matching is case-insensitive substring search, so a pattern such as
    "deadlock detected" matches the full PostgreSQL error report.
    """

    __slots__ = ("_patterns",)

    def __init__(self, patterns: Iterable[str] = ()):
        self._patterns: Tuple[str, ...] = tuple(sorted(set(patterns)))

    @property
    def patterns(self) -> Tuple[str, ...]:
        return self._patterns

    def with_errors(self, *patterns: str) -> "ExpectedErrors":
        """Return a new set containing these patterns as well."""
        return ExpectedErrors(self._patterns + patterns)

    def union(self, other: "ExpectedErrors") -> "ExpectedErrors":
        return ExpectedErrors(self._patterns + other.patterns)

    def is_expected(self, error: str) -> bool:
        if not error:
            return False
        error_lower = error.lower()
        return any(p.lower() in error_lower for p in self._patterns)

    def __contains__(self, pattern: str) -> bool:
        return pattern in self._patterns

    def __iter__(self):
        return iter(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ExpectedErrors):
            return NotImplemented
        return self._patterns == other._patterns

    def __hash__(self) -> int:
        return hash(self._patterns)

    def __repr__(self) -> str:
        return f"ExpectedErrors({list(self._patterns)!r})"
