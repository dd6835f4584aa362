"""Billing: convert SDK-reported cost into user-facing charges.

Pricing model:
- BYOK: the user pays the model cost directly, we charge the markup only (platform fee)
- Managed: we pay the model cost, the user is charged cost * (1 + markup)

Credits: 1 credit = $0.001, always rounded up so tiny costs are never free.
"""

from __future__ import annotations

import math

from .models import BillingConfig, BillingContext, BillingMode, ChargeResult, CostSnapshot

CREDITS_PER_USD = 1000

MARKUP_RATES: dict[BillingMode, dict[BillingContext, float]] = {
    BillingMode.BYOK: {
        BillingContext.CLI: 0.15,
        BillingContext.CLOUD: 0.20,
    },
    BillingMode.MANAGED: {
        BillingContext.CLI: 1.00,
        BillingContext.CLOUD: 2.00,
    },
}


def markup_rate(billing: BillingConfig) -> float:
    return MARKUP_RATES[billing.mode][billing.context]


def calculate_charge(cost: CostSnapshot, billing: BillingConfig) -> ChargeResult:
    """Calculate the charge for one cost snapshot under a billing configuration."""
    rate = markup_rate(billing)
    actual_cost_usd = cost.total_cost_usd

    if billing.mode == BillingMode.BYOK:
        final_cost_usd = actual_cost_usd * rate
    else:
        final_cost_usd = actual_cost_usd * (1 + rate)

    # round() first so float noise (0.015000000000000001) doesn't add a credit
    charged_credits = (
        max(1, math.ceil(round(final_cost_usd * CREDITS_PER_USD, 6)))
        if final_cost_usd > 0
        else 0
    )

    return ChargeResult(
        charged_credits=charged_credits,
        markup_rate=rate,
        actual_cost_usd=actual_cost_usd,
        final_cost_usd=final_cost_usd,
    )


class BillingLedger:
    """Running totals of every charge made during a run."""

    def __init__(self, billing: BillingConfig):
        self.billing = billing
        self.charges: list[ChargeResult] = []

    def record(self, cost: CostSnapshot) -> ChargeResult:
        charge = calculate_charge(cost, self.billing)
        self.charges.append(charge)
        return charge

    @property
    def charged_credits(self) -> int:
        return sum(c.charged_credits for c in self.charges)

    @property
    def actual_cost_usd(self) -> float:
        return sum(c.actual_cost_usd for c in self.charges)

    @property
    def final_cost_usd(self) -> float:
        return sum(c.final_cost_usd for c in self.charges)
