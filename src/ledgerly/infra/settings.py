"""Ledger settings.

Provides the balance policy and tolerances used by the ledger services.

Priority:
1. Per-hotel overrides (hotels.ledger_config JSONB, or the in-memory store's
   hotel config)
2. Environment variables
3. Defaults

Invalid values fall back to the next source instead of failing.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from ledgerly.domain.balance import BalancePolicy, MealPlanPolicy, VoidTaxPolicy
from ledgerly.domain.money import BALANCE_EPSILON, INCLUSIVE_MATCH_EPSILON, SPLIT_EPSILON

_ENV_KEYS = {
    "meal_plan_policy": "LEDGER_MEAL_PLAN_POLICY",
    "void_tax_policy": "LEDGER_VOID_TAX_POLICY",
    "balance_epsilon": "LEDGER_BALANCE_EPSILON",
    "split_epsilon": "LEDGER_SPLIT_EPSILON",
    "inclusive_match_epsilon": "LEDGER_INCLUSIVE_MATCH_EPSILON",
}


@dataclass(frozen=True)
class LedgerSettings:
    """Ledger configuration for one hotel.

    Attributes:
        meal_plan_policy: Whether meal-plan lines count towards the balance.
        void_tax_policy: Whether tax postings follow a voided charge.
        balance_epsilon: Tolerance for stored vs. recomputed balances.
        split_epsilon: Tolerance for net + tax vs. room final rate.
        inclusive_match_epsilon: Tolerance of the inclusive-tax heuristic.
    """

    meal_plan_policy: MealPlanPolicy = MealPlanPolicy.ROOM_INCLUSIVE
    void_tax_policy: VoidTaxPolicy = VoidTaxPolicy.KEEP_LINKED
    balance_epsilon: Decimal = BALANCE_EPSILON
    split_epsilon: Decimal = SPLIT_EPSILON
    inclusive_match_epsilon: Decimal = INCLUSIVE_MATCH_EPSILON

    @property
    def balance_policy(self) -> BalancePolicy:
        return BalancePolicy(
            meal_plan_policy=self.meal_plan_policy,
            void_tax_policy=self.void_tax_policy,
        )

    def merged(self, overrides: Mapping[str, Any] | None) -> LedgerSettings:
        """Return a copy with the valid entries of ``overrides`` applied."""
        if not overrides:
            return self
        changes: dict[str, Any] = {}
        for key in _ENV_KEYS:
            if key not in overrides or overrides[key] in (None, ""):
                continue
            parsed = _parse(key, overrides[key])
            if parsed is not None:
                changes[key] = parsed
        return replace(self, **changes) if changes else self


def _parse(key: str, raw: Any) -> Any:
    try:
        if key == "meal_plan_policy":
            return MealPlanPolicy(str(raw).strip().lower())
        if key == "void_tax_policy":
            return VoidTaxPolicy(str(raw).strip().lower())
        value = Decimal(str(raw).strip())
    except (ValueError, InvalidOperation):
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> LedgerSettings:
    """Build settings from environment variables over the defaults."""
    environ = os.environ if environ is None else environ
    from_env = {key: environ.get(env_key) for key, env_key in _ENV_KEYS.items()}
    return LedgerSettings().merged(from_env)


def settings_for_hotel(
    base: LedgerSettings,
    hotel_overrides: Mapping[str, Any] | None,
) -> LedgerSettings:
    """Apply a hotel's stored ledger_config on top of ``base``."""
    return base.merged(hotel_overrides)
