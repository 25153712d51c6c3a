"""Provider cost and plan pricing tables.

All rates are Decimal. Money computed from these tables is rounded to
MONEY_PLACES decimal places with ROUND_HALF_UP before it is persisted.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, NamedTuple

MONEY_PLACES = 5
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)

MILLION = Decimal("1000000")
OPS_UNIT = MILLION


class PlanPricing(NamedTuple):
    """Default catalog entry used to seed plans."""

    name: str
    display_name: str
    price_monthly_usd: Decimal
    monthly_credits: int


class ModelPrice(NamedTuple):
    """Per-million-token prices for one AI model."""

    input_per_million: Decimal
    output_per_million: Decimal


INFRASTRUCTURE_COSTS: dict[str, dict[str, Decimal]] = {
    "sandbox": {
        "per_minute": Decimal("0.00168"),
    },
    "storage": {
        "per_gb_month": Decimal("0.015"),
        "per_million_ops": Decimal("0.36"),
    },
    "database": {
        "storage_per_gb_month": Decimal("0.125"),
        "compute_per_hour": Decimal("0.01344"),
        "file_storage_per_gb_month": Decimal("0.021"),
        "egress_per_gb": Decimal("0.09"),
    },
    "deployment": {
        "per_deploy": Decimal("0.01"),
    },
}

DEFAULT_PLANS: tuple[PlanPricing, ...] = (
    PlanPricing("HOBBY", "Hobby", Decimal("0.00"), 100),
    PlanPricing("STARTER", "Starter", Decimal("25.00"), 500),
    PlanPricing("PRO", "Pro", Decimal("100.00"), 3000),
    PlanPricing("TEAM", "Team", Decimal("300.00"), 10000),
)

# Prices per 1M tokens (input, output)
MODEL_PRICING: dict[str, ModelPrice] = {
    "anthropic/claude-sonnet-4.5": ModelPrice(Decimal("3"), Decimal("15")),
    "anthropic/claude-haiku-4.5": ModelPrice(Decimal("1"), Decimal("5")),
    "openai/gpt-5": ModelPrice(Decimal("1.25"), Decimal("10")),
    "openai/gpt-5-mini": ModelPrice(Decimal("0.25"), Decimal("2")),
    "openai/gpt-4-turbo": ModelPrice(Decimal("10"), Decimal("30")),
    "google/gemini-2.5-pro": ModelPrice(Decimal("1.25"), Decimal("10")),
    "google/gemini-2.5-flash": ModelPrice(Decimal("0.3"), Decimal("2.5")),
    "x-ai/grok-4-fast": ModelPrice(Decimal("0.05"), Decimal("0.15")),
    "x-ai/grok-2": ModelPrice(Decimal("2"), Decimal("6")),
}
DEFAULT_MODEL_PRICE = ModelPrice(Decimal("1"), Decimal("3"))

TOKENS_PER_CREDIT = 1000

PLATFORM_FEE_RATE = Decimal("0.10")
GST_RATE = Decimal("0.18")
GST_COUNTRIES = frozenset({"IN"})

GRACE_PERIOD_DAYS = 7
REMINDER_DAYS = (1, 3, 5, 7)


class CheckoutAmount(NamedTuple):
    """Breakdown of what a customer pays for a balance top-up."""

    requested_balance: Decimal
    platform_fee: Decimal
    tax: Decimal
    total: Decimal


def to_decimal(value: Any) -> Decimal:
    """
    Convert a money input to Decimal.

    Floats are rejected because their binary representation is already lossy.

    Raises:
        TypeError: If value is a float
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("money amounts must not be floats")
    return Decimal(str(value))


def quantize_money(value: Any) -> Decimal:
    """Round a money amount to MONEY_PLACES using ROUND_HALF_UP."""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_checkout_amount(requested_balance: Any, billing_country: str | None = None) -> CheckoutAmount:
    """
    Compute the charged total for a top-up.

    The platform fee is a percentage of the requested balance; GST applies to the
    fee only, and only for countries in GST_COUNTRIES.

    Args:
        requested_balance: Balance the customer wants credited
        billing_country: ISO country code of the billing address

    Returns:
        CheckoutAmount breakdown
    """
    requested = to_decimal(requested_balance)
    fee = quantize_money(requested * PLATFORM_FEE_RATE)
    tax = Decimal("0")
    if billing_country and billing_country.upper() in GST_COUNTRIES:
        tax = quantize_money(fee * GST_RATE)
    return CheckoutAmount(
        requested_balance=quantize_money(requested),
        platform_fee=fee,
        tax=quantize_money(tax),
        total=quantize_money(requested + fee + tax),
    )
