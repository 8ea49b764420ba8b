"""
Transaction Oracle CLI

Driving loop: prepares a random database, then repeats the
generate/execute/compare cycle until an inconsistency is found or the
iteration budget is spent.

Usage:
    # Set environment variables (recommended)
    export DB_CONNECTION='postgresql://localhost:5432/txoracle'

    # 100 iterations with default settings
    txoracle

    # Longer transactions, three at a time, reproducible
    txoracle --tx-size-max 8 --tx-count 3 --seed 42

    # Steer around a known engine defect
    txoracle --disable SELECT_FOR_UPDATE

    # Start from a fixed schema instead of generated tables
    txoracle --init-script schema.sql --output report.json

Exit status: 0 when every iteration was consistent, 1 when an inconsistency
was found, 2 on a session fault.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .config import OracleConfig, parse_actions
from .display import display
from .errors import GenerationAbandoned, SessionFault
from .state import GlobalState
from .transaction import Transaction
from .validators import TxSerializabilityOracle, Verdict

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Differential testing of transactional semantics: interleaved vs. serialized execution"
    )
    parser.add_argument(
        "--db-connection",
        help="PostgreSQL connection string (default: DB_CONNECTION env var)",
    )
    parser.add_argument("--iterations", type=int, help="Number of test iterations")
    parser.add_argument("--tx-count", type=int, help="Transactions executed together per iteration")
    parser.add_argument("--tx-size-min", type=int, help="Minimum data statements per transaction")
    parser.add_argument("--tx-size-max", type=int, help="Maximum data statements per transaction")
    parser.add_argument("--isolation-level", help="Isolation level requested by BEGIN")
    parser.add_argument(
        "--disable",
        help="Comma-separated statement kinds never generated (e.g. SELECT_FOR_UPDATE,DELETE)",
    )
    parser.add_argument("--num-tables", type=int, help="Tables in the generated database")
    parser.add_argument("--init-script", help="SQL file used instead of a generated database")
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--output", help="Write the inconsistency report to this JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def load_config(args: argparse.Namespace) -> OracleConfig:
    """Environment first, command line flags override."""
    config = OracleConfig.from_env().with_overrides(
        db_connection=args.db_connection,
        iterations=args.iterations,
        tx_count=args.tx_count,
        tx_size_min=args.tx_size_min,
        tx_size_max=args.tx_size_max,
        isolation_level=args.isolation_level,
        disabled_actions=parse_actions(args.disable) if args.disable else None,
        num_tables=args.num_tables,
        init_script=args.init_script,
        seed=args.seed,
    )
    return config.validate()


def prepare_database(state: GlobalState) -> None:
    if state.config.init_script:
        state.load_init_script(state.config.init_script)
    else:
        state.generate_database()


def print_verdict(verdict: Verdict, transactions: List[Transaction]) -> None:
    display.error(f"Inconsistency found: {verdict.reason.value}")
    display.newline()
    print(verdict)

    display.subheader("Transactions")
    for tx in transactions:
        display.transaction(tx.tx_id, str(tx))

    if verdict.evidence:
        display.subheader("Evidence")
        display.evidence(verdict.evidence)


def write_report(path: str, verdict: Verdict, transactions: List[Transaction], state: GlobalState) -> None:
    report = {
        "seed": state.randomly.seed,
        "init_queries": [q.text for q in state.init_queries],
        "transactions": [[s.to_dict() for s in tx.statements] for tx in transactions],
        "verdict": verdict.to_dict(),
    }
    with open(path, "w") as f:
        json.dump(report, f, indent=2, default=str)
    display.info(f"Report written to {path}")


def run_loop(oracle: TxSerializabilityOracle, state: GlobalState, output: Optional[str] = None) -> int:
    config = state.config
    abandoned = 0
    for iteration in range(1, config.iterations + 1):
        try:
            with display.spinner(f"Iteration {iteration}/{config.iterations}"):
                verdict = oracle.evaluate(state)
        except GenerationAbandoned as e:
            abandoned += 1
            logger.debug(f"Iteration {iteration} abandoned: {e}")
            continue

        if not verdict.consistent:
            print_verdict(verdict, oracle.last_transactions)
            if output:
                write_report(output, verdict, oracle.last_transactions, state)
            return 1

    display.success(
        f"{config.iterations} iterations consistent ({abandoned} abandoned, seed {state.randomly.seed})"
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = load_config(args)
    except ValueError as e:
        display.error(f"Invalid configuration: {e}")
        return 2

    state = GlobalState(config)
    display.header("Transaction Oracle")
    display.metric("Database", config.db_connection)
    display.metric("Seed", str(state.randomly.seed))

    try:
        prepare_database(state)
        display.info(f"Tables: {', '.join(state.schema.table_names)}")
        return run_loop(TxSerializabilityOracle(config), state, args.output)
    except SessionFault as e:
        logger.exception(f"Session fault: {e}")
        display.error(f"Session fault: {e}")
        return 2
    finally:
        state.close()


if __name__ == "__main__":
    sys.exit(main())
