"""
Terminal output for the oracle driving loop: a spinner per iteration and
colored status lines for findings.
"""

from contextlib import contextmanager
from typing import Mapping

from yaspin import yaspin
from yaspin.spinners import Spinners

CYAN = '\033[96m'
GREEN = '\033[92m'
RED = '\033[91m'
BLUE = '\033[94m'
BOLD = '\033[1m'
DIM = '\033[2m'
RESET = '\033[0m'


class Display:
    """Status lines and report blocks printed by the CLI."""

    @contextmanager
    def spinner(self, status: str):
        """
        Animated spinner shown while one iteration runs.

        Usage:
            with display.spinner("Iteration 3/100"):
                verdict = oracle.evaluate(state)
        """
        sp = yaspin(Spinners.dots, text=status, color="cyan")
        sp.start()
        try:
            yield sp
        finally:
            sp.stop()

    def _line(self, style: str, text: str) -> None:
        print(f"{style}{text}{RESET}")

    def info(self, message: str):
        self._line(CYAN, f"ℹ {message}")

    def success(self, message: str):
        self._line(GREEN, f"✓ {message}")

    def error(self, message: str):
        self._line(RED, f"✗ {message}")

    def header(self, text: str):
        self._line(BOLD + BLUE, f"\n# {text}\n")

    def subheader(self, text: str):
        self._line(BOLD, f"\n## {text}\n")

    def metric(self, label: str, value: str):
        print(f"{DIM}{label}:{RESET} {value}")

    def transaction(self, tx_id: int, statements: str):
        """One transaction of a finding as a fenced SQL block."""
        self.metric("Transaction", str(tx_id))
        self._line(DIM, "```sql")
        for statement in statements.splitlines():
            self._line(CYAN, statement)
        self._line(DIM, "```\n")

    def evidence(self, evidence: Mapping[str, object]):
        """Test-run and oracle-run values attached to a verdict."""
        for key, value in evidence.items():
            self.metric(key, str(value))

    def newline(self):
        print()


display = Display()
