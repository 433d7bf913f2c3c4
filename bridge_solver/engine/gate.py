from __future__ import annotations

from decimal import Decimal

from bridge_solver.orders.types import Order

from .types import AssetPair, GateDecision, PriceSnapshot, RuntimeConfig


class ProfitabilityGate:
    """Synchronous profit check over a price snapshot.

    profit = value(collateral) - value(required payment) - source fee - destination fee,
    all in the quote currency.
    """

    def __init__(self, *, assets: AssetPair) -> None:
        self.assets = assets

    def evaluate(
        self,
        *,
        order: Order,
        required_amount: int,
        snapshot: PriceSnapshot,
        runtime_config: RuntimeConfig,
    ) -> GateDecision:
        collateral_price = snapshot.price_of(self.assets.collateral.symbol)
        payment_price = snapshot.price_of(self.assets.payment.symbol)
        fees = runtime_config.source_fee_estimate + runtime_config.destination_fee_estimate

        if collateral_price is None or payment_price is None:
            missing = self.assets.collateral.symbol if collateral_price is None else self.assets.payment.symbol
            return GateDecision(
                order_id=order.order_id,
                profitable=False,
                should_execute=False,
                required_amount=required_amount,
                collateral_value=Decimal(0),
                payment_value=Decimal(0),
                fees=fees,
                profit=Decimal(0),
                reason=f"no {self.assets.quote_symbol} price for {missing}",
                price_source=snapshot.source,
            )

        collateral_value = self.assets.collateral.to_units(order.input_amount) * collateral_price
        payment_value = self.assets.payment.to_units(required_amount) * payment_price
        profit = collateral_value - payment_value - fees

        profitable = profit >= runtime_config.min_profit
        should_execute = profitable and runtime_config.trade_enabled
        if should_execute:
            reason = "profit meets minimum"
        elif profitable:
            reason = "trade disabled"
        else:
            reason = "profit below minimum"

        return GateDecision(
            order_id=order.order_id,
            profitable=profitable,
            should_execute=should_execute,
            required_amount=required_amount,
            collateral_value=collateral_value,
            payment_value=payment_value,
            fees=fees,
            profit=profit,
            reason=reason,
            price_source=snapshot.source,
        )
