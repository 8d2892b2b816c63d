"""Unit tests for the entitlement resolver: pure, no database."""

from decimal import Decimal

import pytest

from tollgate.core.errors import MalformedTier
from tollgate.services.entitlements import (
    Denied,
    FeatureFlag,
    MeteredAllowance,
    Overage,
    Permit,
    TierTerms,
    allowance_status,
    evaluate,
    overage_for,
)


def _terms(**overrides):
    fields = {
        "price": "10",
        "included_usage": {"api_call": "1000"},
        "overage_rate": {"api_call": "0.01"},
        "entitlements": ["sso"],
    }
    fields.update(overrides)
    return TierTerms.from_definition(**fields)


# ---------------------------------------------------------------------------
# Terms
# ---------------------------------------------------------------------------


class TestTierTerms:
    def test_resolves_into_typed_variants(self):
        terms = _terms()

        assert terms.price == Decimal("10")
        assert terms.entitlements == (
            FeatureFlag("sso"),
            MeteredAllowance("api_call", Decimal("1000"), Decimal("0.01")),
        )

    def test_allowance_without_rate_is_malformed(self):
        with pytest.raises(MalformedTier):
            _terms(included_usage={"api_call": "1000", "storage": "5"})

    def test_rate_without_allowance_is_malformed(self):
        with pytest.raises(MalformedTier):
            _terms(overage_rate={"api_call": "0.01", "storage": "0.5"})

    def test_negative_amount_is_malformed(self):
        with pytest.raises(MalformedTier):
            _terms(overage_rate={"api_call": "-0.01"})

    def test_non_numeric_amount_is_malformed(self):
        with pytest.raises(MalformedTier):
            _terms(price="ten")

    def test_metric_cannot_also_be_a_flag(self):
        with pytest.raises(MalformedTier):
            _terms(entitlements=["api_call"])


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class TestEvaluate:
    def test_within_allowance_is_permitted(self):
        assert evaluate(_terms(), {"api_call": Decimal("10")}, "api_call") == Permit()

    def test_reaching_the_allowance_exactly_is_permitted(self):
        decision = evaluate(_terms(), {"api_call": Decimal("999")}, "api_call")
        assert decision == Permit()

    def test_crossing_the_allowance_bills_only_the_excess(self):
        decision = evaluate(_terms(), {"api_call": Decimal("995")}, "api_call", 10)

        assert decision == Overage(quantity=Decimal("5"), cost=Decimal("0.05"))

    def test_usage_already_over_is_billed_per_request(self):
        decision = evaluate(_terms(), {"api_call": Decimal("1200")}, "api_call")

        assert decision == Overage(quantity=Decimal("1"), cost=Decimal("0.01"))

    def test_metered_metric_is_never_denied(self):
        decision = evaluate(_terms(), {"api_call": Decimal("1000000")}, "api_call")
        assert not isinstance(decision, Denied)

    def test_flag_in_tier_is_permitted(self):
        assert evaluate(_terms(), {}, "sso") == Permit()

    def test_flag_missing_from_tier_is_denied(self):
        assert evaluate(_terms(), {}, "audit_log") == Denied(feature="audit_log")


def test_overage_for_period_total():
    allowance = MeteredAllowance("api_call", Decimal("1000"), Decimal("0.01"))

    assert overage_for(allowance, Decimal("1200")) == (Decimal("200"), Decimal("2.00"))
    assert overage_for(allowance, Decimal("800")) == (Decimal("0"), Decimal("0"))


# ---------------------------------------------------------------------------
# Allowance status
# ---------------------------------------------------------------------------


class TestAllowanceStatus:
    THRESHOLD = Decimal("0.8")

    def test_below_soft_limit(self):
        (standing,) = allowance_status(_terms(), {"api_call": Decimal("500")}, self.THRESHOLD)

        assert standing.metric == "api_call"
        assert standing.remaining == Decimal("500")
        assert standing.usage_percentage == Decimal("50")
        assert not standing.should_warn

    def test_warns_from_the_soft_limit(self):
        (standing,) = allowance_status(_terms(), {"api_call": Decimal("800")}, self.THRESHOLD)

        assert standing.usage_percentage == Decimal("80")
        assert standing.overage_quantity == 0
        assert standing.should_warn

    def test_overage_is_reported(self):
        (standing,) = allowance_status(_terms(), {"api_call": Decimal("1200")}, self.THRESHOLD)

        assert standing.remaining == 0
        assert (standing.overage_quantity, standing.overage_cost) == (Decimal("200"), Decimal("2.00"))
        assert standing.should_warn

    def test_zero_allowance_has_no_percentage(self):
        terms = _terms(included_usage={"api_call": "0"})

        (idle,) = allowance_status(terms, {}, self.THRESHOLD)
        (busy,) = allowance_status(terms, {"api_call": Decimal("3")}, self.THRESHOLD)

        assert idle.usage_percentage is None and not idle.should_warn
        assert busy.should_warn

    def test_feature_flags_are_not_listed(self):
        assert [s.metric for s in allowance_status(_terms(), {}, self.THRESHOLD)] == ["api_call"]
