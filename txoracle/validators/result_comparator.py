"""
Result set comparison for the transaction oracle.

Two row collections are equal when both are absent, or when both are present,
have the same size, and match element-wise after every value is mapped to a
canonical string and both sides are sorted. Sorting makes the comparison
insensitive to row order, which SQL does not guarantee without ORDER BY.
"""

from typing import Any, List, Optional, Sequence, Tuple

# PostgreSQL text values cannot contain NUL, so no real value maps to this.
NULL_SENTINEL = "\x00[NULL]"


class ResultComparator:
    """
    Compares query results and table snapshots.

    Example:
        ```python
        comparator = ResultComparator()
        assert comparator.compare_result_sets([None, 1, 2], [2, None, 1])
        assert not comparator.compare_result_sets([None], [])
        ```
    """

    def compare_query_result(
        self,
        rs1: Optional[Sequence[Any]],
        rs2: Optional[Sequence[Any]],
    ) -> str:
        """
        Compare two result sets.

        Returns:
            Empty string if equal, otherwise a description of the first difference
        """
        if rs1 is None and rs2 is None:
            return ""
        if rs1 is None or rs2 is None:
            return "One query result is NULL"
        if len(rs1) != len(rs2):
            return f"The size of query results is different ({len(rs1)} vs {len(rs2)})"

        normalized1 = self._normalize_result_set(rs1)
        normalized2 = self._normalize_result_set(rs2)
        for i, (r1, r2) in enumerate(zip(normalized1, normalized2)):
            if r1 != r2:
                return f"({i})th values is different [{_display(r1)}, {_display(r2)}]"
        return ""

    def compare_result_sets(
        self,
        rs1: Optional[Sequence[Any]],
        rs2: Optional[Sequence[Any]],
    ) -> bool:
        return self.compare_query_result(rs1, rs2) == ""

    def find_mismatched_rows(
        self,
        rs1: Sequence[Any],
        rs2: Sequence[Any],
        max_examples: int = 5,
    ) -> Tuple[List[str], List[str]]:
        """
        Find canonical rows that appear in one result set but not the other.

        Duplicates count: a row present twice on one side and once on the
        other is reported once.
        """
        remaining = list(self._normalize_result_set(rs2))
        only_in_1 = []
        for row in self._normalize_result_set(rs1):
            if row in remaining:
                remaining.remove(row)
            elif len(only_in_1) < max_examples:
                only_in_1.append(row)
        return [_display(r) for r in only_in_1], [_display(r) for r in remaining[:max_examples]]

    def _normalize_result_set(self, rows: Sequence[Any]) -> List[str]:
        return sorted(self.canonicalize(row) for row in rows)

    def canonicalize(self, value: Any) -> str:
        """
        Map a value to its canonical string form.

        NULL becomes NULL_SENTINEL, rows (tuples/lists) become a parenthesized
        list of canonical members, everything else its textual representation.
        Backslashes and commas inside a member are escaped, so two different
        rows never share a form.
        """
        if value is None:
            return NULL_SENTINEL
        if isinstance(value, (tuple, list)):
            return "(" + ", ".join(_escape(self.canonicalize(v)) for v in value) + ")"
        if isinstance(value, memoryview):
            return bytes(value).hex()
        if isinstance(value, bytes):
            return value.hex()
        return str(value)


def _escape(member: str) -> str:
    return member.replace("\\", "\\\\").replace(",", "\\,")


def _display(canonical: str) -> str:
    return canonical.replace(NULL_SENTINEL, "[NULL]")
