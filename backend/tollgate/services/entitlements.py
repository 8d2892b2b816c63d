"""
Entitlement resolver — decides whether an action is permitted and at what cost.

Tier terms are resolved ONCE, at the boundary, into a closed set of
entitlement kinds:

  • FeatureFlag       — boolean feature gate. Absent flag ⇒ Denied.
  • MeteredAllowance  — usage allowance with a per-unit overage rate.
                        Never denied: usage past the allowance is billed.

That split is the difference between a feature gate and a metering gate
and is preserved exactly: a metered metric can only ever produce Permit or
Overage.

Everything here is pure: no I/O, no session. The impact simulator reuses
overage_for() so previews and live evaluation price usage identically;
allowance_status() uses it too for the per-period usage report.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from tollgate.core.errors import MalformedTier

ZERO = Decimal("0")


# ── Entitlement kinds ───────────────────────────────────────
@dataclass(frozen=True, slots=True)
class FeatureFlag:
    name: str


@dataclass(frozen=True, slots=True)
class MeteredAllowance:
    metric: str
    included: Decimal
    overage_rate: Decimal


Entitlement = FeatureFlag | MeteredAllowance


# ── Decisions ───────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class Permit:
    """Allowed at no extra cost."""


@dataclass(frozen=True, slots=True)
class Overage:
    """Allowed; `quantity` units beyond the allowance are billed at `cost`."""

    quantity: Decimal
    cost: Decimal


@dataclass(frozen=True, slots=True)
class Denied:
    """The tier lacks the feature flag gating this action."""

    feature: str


Decision = Permit | Overage | Denied


# ── Terms ───────────────────────────────────────────────────
def parse_amount(value: Any, label: str) -> Decimal:
    """Parse a non-negative decimal, raising MalformedTier otherwise."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise MalformedTier(f"{label} must be a decimal number, got {value!r}.") from exc
    if not amount.is_finite() or amount < 0:
        raise MalformedTier(f"{label} must be a non-negative number, got {value!r}.")
    return amount


@dataclass(frozen=True)
class TierTerms:
    """A tier's price and entitlements, resolved into typed variants."""

    price: Decimal
    features: frozenset[str] = frozenset()
    allowances: Mapping[str, MeteredAllowance] = field(default_factory=dict)

    @classmethod
    def from_definition(
        cls,
        price: Any,
        included_usage: Mapping[str, Any],
        overage_rate: Mapping[str, Any],
        entitlements: Iterable[str] = (),
    ) -> TierTerms:
        """
        Validate raw tier fields and resolve them.

        Raises:
            MalformedTier: metric sets differ, a metric is also a feature
                flag, or any amount is negative / not a number.
        """
        included_metrics = set(included_usage)
        rated_metrics = set(overage_rate)
        if included_metrics != rated_metrics:
            missing_rate = sorted(included_metrics - rated_metrics)
            missing_allowance = sorted(rated_metrics - included_metrics)
            raise MalformedTier(
                "included_usage and overage_rate must cover the same metrics "
                f"(no overage rate: {missing_rate}, no allowance: {missing_allowance})."
            )

        features = frozenset(entitlements)
        both = sorted(features & included_metrics)
        if both:
            raise MalformedTier(f"Metrics cannot also be feature flags: {both}.")

        allowances = {
            metric: MeteredAllowance(
                metric=metric,
                included=parse_amount(included_usage[metric], f"included_usage[{metric}]"),
                overage_rate=parse_amount(overage_rate[metric], f"overage_rate[{metric}]"),
            )
            for metric in sorted(included_metrics)
        }
        return cls(
            price=parse_amount(price, "price"),
            features=features,
            allowances=allowances,
        )

    @classmethod
    def from_tier(cls, tier: Any) -> TierTerms:
        return cls.from_definition(
            tier.price, tier.included_usage, tier.overage_rate, tier.entitlements,
        )

    @property
    def entitlements(self) -> tuple[Entitlement, ...]:
        flags: tuple[Entitlement, ...] = tuple(
            FeatureFlag(name) for name in sorted(self.features)
        )
        return flags + tuple(self.allowances.values())


# ── Evaluation ──────────────────────────────────────────────
def overage_for(allowance: MeteredAllowance, used: Decimal) -> tuple[Decimal, Decimal]:
    """(units beyond the allowance, their cost) for a period total."""
    amount = max(ZERO, used - allowance.included)
    return amount, amount * allowance.overage_rate


def evaluate(
    terms: TierTerms,
    usage_snapshot: Mapping[str, Decimal],
    metric: str,
    requested_quantity: Decimal | int = 1,
) -> Decision:
    """
    Decide one action against a tier and the subscriber's period usage.

    Only the part of `requested_quantity` that newly crosses the allowance
    is billed; usage already past it before the request is not re-billed.
    """
    allowance = terms.allowances.get(metric)
    if allowance is None:
        if metric in terms.features:
            return Permit()
        return Denied(feature=metric)

    used = Decimal(usage_snapshot.get(metric, ZERO))
    requested = Decimal(requested_quantity)
    before, _ = overage_for(allowance, used)
    after, _ = overage_for(allowance, used + requested)

    extra = after - before
    if extra <= 0:
        return Permit()
    return Overage(quantity=extra, cost=extra * allowance.overage_rate)


# ── Allowance status ────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class AllowanceStatus:
    """Where a subscriber stands against one metered allowance this period."""

    metric: str
    used: Decimal
    included: Decimal
    remaining: Decimal
    usage_percentage: Decimal | None
    overage_quantity: Decimal
    overage_cost: Decimal
    should_warn: bool


def allowance_status(
    terms: TierTerms,
    usage_snapshot: Mapping[str, Decimal],
    soft_limit_threshold: Decimal,
) -> list[AllowanceStatus]:
    """
    Per-metric standing for every allowance on the tier.

    usage_percentage is None for a zero allowance. should_warn turns on once
    usage reaches `soft_limit_threshold` (a fraction, e.g. 0.8) of the
    allowance, and stays on through overage.
    """
    statuses: list[AllowanceStatus] = []
    for metric, allowance in terms.allowances.items():
        used = Decimal(usage_snapshot.get(metric, ZERO))
        overage, cost = overage_for(allowance, used)
        if allowance.included > 0:
            percentage: Decimal | None = used / allowance.included * 100
            warn = used >= allowance.included * soft_limit_threshold
        else:
            percentage = None
            warn = used > 0
        statuses.append(
            AllowanceStatus(
                metric=metric,
                used=used,
                included=allowance.included,
                remaining=max(ZERO, allowance.included - used),
                usage_percentage=percentage,
                overage_quantity=overage,
                overage_cost=cost,
                should_warn=warn,
            )
        )
    return statuses
