"""Fee plan evaluation: how much a single unit owes under a plan."""
from decimal import ROUND_HALF_UP, Decimal

from .exceptions import ConfigurationError
from .models import FeePlan

CENTS = Decimal("0.01")


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _require(value, message):
    if value is None:
        raise ConfigurationError(message)
    if value < 0:
        raise ConfigurationError(f"{message} (negative value {value})")
    return value


def evaluate_fee(plan: FeePlan, unit) -> Decimal:
    """
    Amount due for ``unit`` under ``plan``.

    Manual plans evaluate to zero; the generated placeholder charge is set
    later through a manager adjustment. Missing rate parameters raise
    ConfigurationError instead of defaulting.
    """
    method = plan.calculation_method

    if method == FeePlan.METHOD_BY_SQM:
        rate = _require(plan.rate_per_sqm, f"Fee plan '{plan.name}' has no rate per sqm.")
        size = _require(unit.size_sqm, f"Unit {unit.unit_number} has no floor size for per-sqm billing.")
        return _quantize(Decimal(size) * Decimal(rate))

    if method == FeePlan.METHOD_FIXED_PER_UNIT:
        amount = _require(plan.fixed_amount, f"Fee plan '{plan.name}' has no fixed amount.")
        return _quantize(Decimal(amount))

    if method == FeePlan.METHOD_MANUAL_PER_UNIT:
        return Decimal("0.00")

    raise ConfigurationError(f"Unknown calculation method '{method}'.")
