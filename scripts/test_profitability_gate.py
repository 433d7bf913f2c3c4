from __future__ import annotations

import unittest
from dataclasses import replace
from decimal import Decimal

from bridge_solver.engine import (
    AssetConfig,
    AssetPair,
    PriceSnapshot,
    ProfitabilityGate,
    RuntimeConfig,
    parse_price_table,
)
from bridge_solver.orders.types import Order

RUNTIME = RuntimeConfig(
    config_schema_version=1,
    min_profit=Decimal("0.01"),
    source_fee_estimate=Decimal("0"),
    destination_fee_estimate=Decimal("0"),
    trade_enabled=True,
    reevaluate_interval_seconds=5.0,
    expiry_grace_seconds=3600.0,
)


def _make_order(input_amount: int = 1_000_000) -> Order:
    return Order(
        order_id="0x" + "aa" * 32,
        depositor="0x" + "11" * 20,
        recipient="0x" + "22" * 32,
        input_amount=input_amount,
        start_price=900_000_000,
        floor_price=500_000_000,
        start_time=0,
        duration=600,
    )


def _snapshot(**prices: str) -> PriceSnapshot:
    return PriceSnapshot(
        prices={symbol: Decimal(value) for symbol, value in prices.items()},
        source="static",
        fetched_at=0.0,
    )


class ProfitabilityGateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.gate = ProfitabilityGate(
            assets=AssetPair(
                collateral=AssetConfig(symbol="USDC", decimals=6),
                payment=AssetConfig(symbol="SUI", decimals=9),
                quote_symbol="USDC",
            )
        )

    def test_profitable_order_executes(self) -> None:
        decision = self.gate.evaluate(
            order=_make_order(),
            required_amount=500_000_000,
            snapshot=_snapshot(USDC="1", SUI="1"),
            runtime_config=RUNTIME,
        )

        self.assertTrue(decision.profitable)
        self.assertTrue(decision.should_execute)
        self.assertEqual(decision.collateral_value, Decimal("1"))
        self.assertEqual(decision.payment_value, Decimal("0.5"))
        self.assertEqual(decision.profit, Decimal("0.5"))
        self.assertEqual(decision.reason, "profit meets minimum")

    def test_fees_reduce_profit(self) -> None:
        decision = self.gate.evaluate(
            order=_make_order(),
            required_amount=500_000_000,
            snapshot=_snapshot(USDC="1", SUI="1"),
            runtime_config=replace(
                RUNTIME,
                source_fee_estimate=Decimal("0.3"),
                destination_fee_estimate=Decimal("0.195"),
            ),
        )

        self.assertEqual(decision.fees, Decimal("0.495"))
        self.assertEqual(decision.profit, Decimal("0.005"))
        self.assertFalse(decision.profitable)
        self.assertEqual(decision.reason, "profit below minimum")

    def test_profit_equal_to_minimum_is_accepted(self) -> None:
        decision = self.gate.evaluate(
            order=_make_order(),
            required_amount=990_000_000,
            snapshot=_snapshot(USDC="1", SUI="1"),
            runtime_config=RUNTIME,
        )

        self.assertEqual(decision.profit, Decimal("0.01"))
        self.assertTrue(decision.should_execute)

    def test_trade_disabled_reports_but_does_not_execute(self) -> None:
        decision = self.gate.evaluate(
            order=_make_order(),
            required_amount=500_000_000,
            snapshot=_snapshot(USDC="1", SUI="1"),
            runtime_config=replace(RUNTIME, trade_enabled=False),
        )

        self.assertTrue(decision.profitable)
        self.assertFalse(decision.should_execute)
        self.assertEqual(decision.reason, "trade disabled")

    def test_missing_price_rejects(self) -> None:
        decision = self.gate.evaluate(
            order=_make_order(),
            required_amount=500_000_000,
            snapshot=_snapshot(USDC="1"),
            runtime_config=RUNTIME,
        )

        self.assertFalse(decision.should_execute)
        self.assertEqual(decision.reason, "no USDC price for SUI")

    def test_decision_serializes_decimals_as_strings(self) -> None:
        payload = self.gate.evaluate(
            order=_make_order(),
            required_amount=500_000_000,
            snapshot=_snapshot(USDC="1", SUI="1.5"),
            runtime_config=RUNTIME,
        ).to_dict()

        self.assertEqual(payload["payment_value"], "0.75")
        self.assertEqual(payload["required_amount"], "500000000")
        self.assertEqual(payload["price_source"], "static")


class PriceTableTests(unittest.TestCase):
    def test_parse_price_table(self) -> None:
        self.assertEqual(
            parse_price_table("sui=1.25, USDC=1,ETH=2000,bad,NEG=-1,NAN=abc"),
            {"SUI": Decimal("1.25"), "USDC": Decimal("1"), "ETH": Decimal("2000")},
        )

    def test_empty_table(self) -> None:
        self.assertEqual(parse_price_table(""), {})


if __name__ == "__main__":
    unittest.main()
