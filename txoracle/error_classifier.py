"""
Error Classification System for PostgreSQL Errors

Categorizes engine error reports so the runner and the comparison oracle can
tell lock conflicts (benign under concurrent execution) apart from errors that
must match between the test run and the oracle run.
"""

from enum import Enum
from dataclasses import dataclass
import re


class ErrorCategory(Enum):
    """PostgreSQL error categories."""
    DEADLOCK = "DEADLOCK"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    SERIALIZATION_FAILURE = "SERIALIZATION_FAILURE"
    SCHEMA_CHANGED = "SCHEMA_CHANGED"
    TRANSACTION_ABORTED = "TRANSACTION_ABORTED"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    DATA_ERROR = "DATA_ERROR"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    UNKNOWN = "UNKNOWN"


LOCK_CONFLICT_CATEGORIES = frozenset({
    ErrorCategory.DEADLOCK,
    ErrorCategory.LOCK_TIMEOUT,
    ErrorCategory.SERIALIZATION_FAILURE,
})


@dataclass(frozen=True)
class ErrorClassification:
    """
    Result of classifying a PostgreSQL error.

    Attributes:
        category: The error category
        message: Human-readable explanation of the error
        benign: Whether concurrent execution can legitimately produce it
    """
    category: ErrorCategory
    message: str
    benign: bool


class ErrorClassifier:
    """
    Classifies PostgreSQL errors by pattern matching on the error report.
    """

    # Error pattern definitions with priorities (lower = higher priority)
    ERROR_PATTERNS = [
        # Priority 1: lock conflicts, always benign
        {
            "priority": 1,
            "patterns": [r"deadlock detected", r"deadlock found"],
            "category": ErrorCategory.DEADLOCK,
            "message": "Deadlock detected - the engine aborted one of the waiting transactions",
            "benign": True,
        },
        {
            "priority": 1,
            "patterns": [r"lock.*timeout", r"could not obtain lock"],
            "category": ErrorCategory.LOCK_TIMEOUT,
            "message": "Could not acquire lock before the lock timeout",
            "benign": True,
        },
        {
            "priority": 1,
            "patterns": [r"could not serialize access"],
            "category": ErrorCategory.SERIALIZATION_FAILURE,
            "message": "Serialization failure - concurrent transactions conflicted",
            "benign": True,
        },
        {
            "priority": 1,
            "patterns": [r"cached plan must not change result type", r"information schema is changed"],
            "category": ErrorCategory.SCHEMA_CHANGED,
            "message": "Schema changed concurrently with the statement",
            "benign": True,
        },

        # Priority 2: errors that are deterministic given the same state
        {
            "priority": 2,
            "patterns": [r"current transaction is aborted"],
            "category": ErrorCategory.TRANSACTION_ABORTED,
            "message": "Statement ignored because an earlier statement failed",
            "benign": False,
        },
        {
            "priority": 2,
            "patterns": [
                r"violates (unique|not-null|check|foreign key) constraint",
                r"duplicate key value",
            ],
            "category": ErrorCategory.CONSTRAINT_VIOLATION,
            "message": "Constraint violation",
            "benign": False,
        },
        {
            "priority": 2,
            "patterns": [
                r"invalid input syntax",
                r"out of range",
                r"division by zero",
                r"value too long",
                r"numeric field overflow",
            ],
            "category": ErrorCategory.DATA_ERROR,
            "message": "Invalid data for the target type",
            "benign": False,
        },
        {
            "priority": 2,
            "patterns": [r"syntax error", r"does not exist"],
            "category": ErrorCategory.SYNTAX_ERROR,
            "message": "Statement is not valid for the current schema",
            "benign": False,
        },

        # Priority 3: session layer
        {
            "priority": 3,
            "patterns": [
                r"connection.*refused",
                r"could not connect",
                r"server closed the connection",
                r"connection already closed",
            ],
            "category": ErrorCategory.CONNECTION_ERROR,
            "message": "Database connection error",
            "benign": False,
        },
    ]

    def __init__(self):
        """Initialize the error classifier."""
        # Sort patterns by priority
        self.patterns = sorted(
            self.ERROR_PATTERNS,
            key=lambda p: p["priority"]
        )

    def classify(self, error: str) -> ErrorClassification:
        """
        Classify a PostgreSQL error message.

        Args:
            error: Raw error message from PostgreSQL

        Returns:
            ErrorClassification with category, message and benign flag
        """
        error_lower = error.lower()

        for pattern_def in self.patterns:
            for pattern in pattern_def["patterns"]:
                if re.search(pattern, error_lower):
                    return ErrorClassification(
                        category=pattern_def["category"],
                        message=pattern_def["message"],
                        benign=pattern_def["benign"],
                    )

        return ErrorClassification(
            category=ErrorCategory.UNKNOWN,
            message="Unexpected database error",
            benign=False,
        )

    def is_lock_conflict(self, error: str) -> bool:
        """True for deadlock, lock timeout and serialization failure reports."""
        return self.classify(error).category in LOCK_CONFLICT_CATEGORIES


_default_classifier = ErrorClassifier()


def classify_error(error: str) -> ErrorClassification:
    return _default_classifier.classify(error)


def is_lock_conflict(error: str) -> bool:
    return _default_classifier.is_lock_conflict(error)
