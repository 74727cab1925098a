"""Default profitability policy for the resolver."""

from decimal import Decimal

import structlog

from .models import Order, ProfitabilityVerdict

logger = structlog.get_logger()

# Fees above 0.1% of the filled amount make a swap not worth resolving
FEE_THRESHOLD = Decimal("0.001")
MIN_SPREAD = Decimal("0.0001")


class FeeThresholdPolicy:
    """
    Rejects fills whose combined chain fees eat too much of the amount.

    Deployments with real pricing plug in their own policy; the engine
    only reads the verdict.
    """

    def __init__(self, fee_threshold: Decimal = FEE_THRESHOLD):
        self.fee_threshold = fee_threshold

    async def evaluate(self, order: Order, fill_amount: int | None = None) -> ProfitabilityVerdict:
        amount = Decimal(fill_amount if fill_amount is not None else order.making_amount)
        total_fees = Decimal(order.src_fee + order.dst_fee)

        if total_fees > amount * self.fee_threshold:
            logger.info(
                "Order rejected by fee threshold",
                amount=int(amount),
                total_fees=int(total_fees),
            )
            return ProfitabilityVerdict(
                profitable=False,
                reason="fees too high relative to order amount",
                net_profit=int(amount * MIN_SPREAD - total_fees),
            )

        return ProfitabilityVerdict(
            profitable=True,
            reason="profitable_swap",
            net_profit=max(0, int(amount * MIN_SPREAD - total_fees)),
        )
