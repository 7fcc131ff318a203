"""Command-line interface for credit-guard."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from . import risk
from .app import build_app, build_oracle
from .config import AppConfig, load_config
from .logging_setup import configure_logging
from .models import CollateralOffer, CreditScore, UnderwritingRequest
from .services.pricing import build_assets, fetch_prices


class FlagCreditScore:
    """Credit score supplied on the command line."""

    def __init__(self, score: int, grade: str) -> None:
        self._score = score
        self._grade = grade

    async def get_score(self, user_id: str) -> CreditScore:
        return CreditScore(
            user_id=user_id,
            score=self._score,
            grade=self._grade,
            updated_at=datetime.now(timezone.utc),
        )


def _collateral(value: str) -> CollateralOffer:
    """Parse ``SYMBOL:AMOUNT``."""
    symbol, sep, amount = value.partition(":")
    if not sep or not symbol:
        raise argparse.ArgumentTypeError(f"expected SYMBOL:AMOUNT, got '{value}'")
    try:
        return CollateralOffer(symbol.upper(), float(amount))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid amount in '{value}'") from None


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="credit-guard",
        description="Crypto-collateralized loan underwriting and risk tools",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: built-in defaults)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    assess = sub.add_parser("assess", help="Underwrite a loan request")
    assess.add_argument("--user", default="cli-user", help="User id")
    assess.add_argument("--amount", type=float, required=True, help="Requested amount")
    assess.add_argument("--asset", default="USDT", help="Borrowed asset (default: USDT)")
    assess.add_argument(
        "--collateral",
        type=_collateral,
        action="append",
        required=True,
        metavar="SYMBOL:AMOUNT",
        help="Offered collateral; repeat for several assets",
    )
    assess.add_argument("--credit-score", type=int, required=True, help="Credit score 0-1000")
    assess.add_argument("--grade", default="C", help="Credit grade (default: C)")

    stress = sub.add_parser("stress", help="Print the stress-test ladder")
    stress.add_argument("--loan", type=float, required=True, help="Loan value in USD")
    group = stress.add_mutually_exclusive_group(required=True)
    group.add_argument("--collateral-value", type=float, help="Collateral value in USD")
    group.add_argument(
        "--collateral",
        type=_collateral,
        action="append",
        metavar="SYMBOL:AMOUNT",
        help="Collateral to price; repeat for several assets",
    )

    return parser


def _to_jsonable(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, float) and (obj != obj or obj in (float("inf"), float("-inf"))):
        return str(obj)
    if isinstance(obj, dict):
        return {str(k): _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, frozenset, set)):
        return [_to_jsonable(v) for v in obj]
    return obj


def _dump(obj: Any) -> str:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        obj = dataclasses.asdict(obj)
    return json.dumps(_to_jsonable(obj), indent=2)


async def _assess(args: argparse.Namespace, config: AppConfig) -> None:
    app = build_app(config, FlagCreditScore(args.credit_score, args.grade))
    try:
        assessment = await app.underwriting.assess_loan_request(
            args.user,
            UnderwritingRequest(
                requested_amount=args.amount,
                requested_asset=args.asset.upper(),
                collateral=tuple(args.collateral),
            ),
        )
    finally:
        await app.aclose()
    print(
        _dump(
            {
                "assessment_id": assessment.id,
                "risk": {
                    "level": assessment.risk.overall_risk,
                    "score": assessment.risk.risk_score,
                    "implied_ltv": assessment.risk.implied_ltv,
                    "liquidation_probability": assessment.risk.liquidation_probability,
                    "expected_loss": assessment.risk.expected_loss,
                },
                "decision": dataclasses.asdict(assessment.decision),
            }
        )
    )


async def _stress(args: argparse.Namespace, config: AppConfig) -> None:
    collateral_value = args.collateral_value
    if collateral_value is None:
        offers = tuple(args.collateral)
        prices = await fetch_prices([o.asset for o in offers], build_oracle(config), config)
        collateral_value = sum(a.value_usd for a in build_assets(offers, prices, config))
    results = risk.run_stress_tests(
        collateral_value,
        args.loan,
        config.underwriting.stress_scenarios,
        config.lending.liquidation_threshold,
        config.underwriting.loss_given_default,
    )
    print(_dump([dataclasses.asdict(r) for r in results]))


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config) if args.config else AppConfig()

    if args.command == "assess":
        await _assess(args, config)
    elif args.command == "stress":
        await _stress(args, config)
    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    asyncio.run(_run(args))
