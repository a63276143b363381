"""
Unit tests for the premium engine

Tests cover:
- Recalculation arithmetic, history and due-date rules
- Oracle fallback path
- Manual adjustment, discounts, billing-cycle changes
- Payments, retries and overdue sweeps
- Version conflicts
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from cci.premium import (
    adjust_premium,
    apply_discount,
    calculate_premium,
    change_billing_cycle,
    get_premium,
    mark_overdue,
    pay,
    recalculate,
    refresh_premium,
    retry_payment,
    search_premiums,
)
from cci.oracle import StubRiskOracle
from cci.payments import SimulatedPaymentGateway
from cci.models import (
    AttemptOutcome,
    BillingCycle,
    CalculationTrigger,
    Discount,
    ForbiddenError,
    InvalidStateError,
    PaymentFailedError,
    PaymentState,
    PersistenceError,
    PremiumNotFoundError,
    RiskTier,
    StateConflictError,
    ValidationError,
)
from cci.config import DEFAULT_RISK_EXPLANATION, FALLBACK_PREMIUM_AMOUNT
from conftest import NOW


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def priced(store, approved):
    """Approved policyholder with a premium calculated at NOW."""
    return refresh_premium(approved, oracle=StubRiskOracle(), now=NOW)


@pytest.fixture
def mobile_money():
    return {"type": "MobileMoney", "details": "+254700000000"}


# ============================================================================
# RECALCULATION TESTS
# ============================================================================

class TestRecalculate:

    def test_first_calculation(self, priced):
        assert priced.final_amount == 2270.0
        assert priced.currency == "KES"
        assert priced.adjustment_factors.earnings == 97000.0
        assert priced.adjustment_factors.audience_size == 50000
        assert priced.adjustment_factors.infraction_count == 1
        assert priced.adjustment_factors.platform_volatility == 10.0
        assert priced.adjustment_factors.content_risk == RiskTier.MEDIUM
        assert priced.payment_status.status == PaymentState.PENDING
        assert priced.payment_status.due_date == NOW + timedelta(days=30)

    def test_history_grows_by_one_and_keeps_old_entries(self, store, priced):
        first_entry = priced.calculation_history[0]

        again = recalculate(priced, oracle=StubRiskOracle(premium_text="Risk: Low\nWhy: clean\nFinal: $1500"))

        assert len(again.calculation_history) == 2
        assert again.calculation_history[0] == first_entry
        assert again.calculation_history[1].final_amount == 1500.0
        assert again.calculation_history[1].calculated_by == CalculationTrigger.AI

    def test_later_calculation_keeps_due_date(self, priced):
        later = NOW + timedelta(days=10)
        again = recalculate(priced, oracle=StubRiskOracle(), now=later)

        assert again.payment_status.due_date == priced.payment_status.due_date
        assert again.next_calculation_date == later + timedelta(days=30)

    def test_malformed_oracle_reply_uses_defaults(self, priced):
        again = recalculate(priced, oracle=StubRiskOracle(premium_text="Sorry, I can't price this."))

        assert again.final_amount == FALLBACK_PREMIUM_AMOUNT
        assert again.adjustment_factors.content_risk == RiskTier.LOW
        assert again.adjustment_factors.risk_explanation == DEFAULT_RISK_EXPLANATION

    def test_oracle_unavailable_never_raises(self, priced):
        again = recalculate(priced, oracle=StubRiskOracle(fail=True))
        assert again.final_amount == FALLBACK_PREMIUM_AMOUNT

    def test_discount_larger_than_suggestion_floors_at_zero(self, priced):
        discounted = priced.model_copy(update={"discount": Discount(amount=5000.0, reason="Promo")})
        again = recalculate(discounted, oracle=StubRiskOracle())
        assert again.final_amount == 0.0

    def test_volatility_capped(self, store, approved, youtube_platform):
        noisy = youtube_platform.model_copy(update={"risk_history": youtube_platform.risk_history * 12})
        policyholder = store.put(approved.model_copy(update={"platforms": [noisy]}))

        premium = refresh_premium(policyholder, oracle=StubRiskOracle())

        assert premium.adjustment_factors.infraction_count == 12
        assert premium.adjustment_factors.platform_volatility == 100.0
        assert premium.adjustment_factors.content_risk == RiskTier.HIGH

    def test_stale_premium_conflicts(self, priced):
        recalculate(priced, oracle=StubRiskOracle())
        with pytest.raises(StateConflictError):
            recalculate(priced, oracle=StubRiskOracle())

    def test_summary_mirrored_on_policyholder(self, store, priced):
        assert store.policyholders["creator-1"].premium_amount == 2270.0
        assert store.policyholders["creator-1"].premium_last_calculated == NOW


# ============================================================================
# CALCULATE / GET TESTS
# ============================================================================

class TestCalculatePremium:

    def test_creates_when_missing(self, store, outbox, creator, approved):
        premium = calculate_premium(creator, "creator-1", oracle=StubRiskOracle())
        assert store.premiums["creator-1"] == premium
        assert outbox.subjects == ["Your CCI Premium Calculated"]

    def test_admin_may_calculate(self, store, admin, priced):
        premium = calculate_premium(admin, "creator-1", oracle=StubRiskOracle())
        assert len(premium.calculation_history) == 2

    def test_other_creator_forbidden(self, store, other_creator, priced):
        with pytest.raises(ForbiddenError):
            calculate_premium(other_creator, "creator-1")

    def test_get_premium_not_found(self, store, creator, approved):
        with pytest.raises(PremiumNotFoundError):
            get_premium(creator, "creator-1")


# ============================================================================
# MANUAL ADJUSTMENT TESTS
# ============================================================================

class TestAdjustPremium:

    def test_manual_entry_bypasses_oracle(self, store, outbox, admin, priced, monkeypatch):
        oracle = MagicMock()
        monkeypatch.setattr("cci.oracle._default_oracle", oracle)

        result = adjust_premium(
            admin, "creator-1",
            final_amount=1800.0,
            adjustment_factors={"content_risk": "High"},
            discount={"amount": 100.0, "reason": "Loyalty"},
        )

        oracle.premium_assessment.assert_not_called()
        assert result.final_amount == 1800.0
        assert result.adjustment_factors.content_risk == RiskTier.HIGH
        assert result.adjustment_factors.audience_size == 50000
        entry = result.calculation_history[-1]
        assert entry.calculated_by == CalculationTrigger.MANUAL
        assert entry.actor_id == "admin-1"
        assert len(result.calculation_history) == 2
        assert store.policyholders["creator-1"].premium_amount == 1800.0
        assert "Premium Adjusted - CCI" in outbox.subjects

    def test_negative_final_amount(self, store, admin, priced):
        with pytest.raises(ValidationError):
            adjust_premium(admin, "creator-1", final_amount=-1)
        assert store.premiums["creator-1"] == priced

    def test_malformed_factor(self, store, admin, priced):
        with pytest.raises(ValidationError):
            adjust_premium(admin, "creator-1", adjustment_factors={"platform_volatility": 250})

    @pytest.mark.parametrize("amounts", [
        {"final_amount": float("nan")},
        {"final_amount": float("inf")},
        {"base_amount": float("nan")},
    ])
    def test_non_finite_amount(self, store, admin, priced, amounts):
        with pytest.raises(ValidationError):
            adjust_premium(admin, "creator-1", **amounts)
        assert store.premiums["creator-1"] == priced

    def test_non_finite_factor(self, store, admin, priced):
        with pytest.raises(ValidationError):
            adjust_premium(admin, "creator-1", adjustment_factors={"earnings": float("nan")})
        assert store.premiums["creator-1"] == priced

    def test_creator_cannot_adjust(self, store, creator, priced):
        with pytest.raises(ForbiddenError):
            adjust_premium(creator, "creator-1", final_amount=1)


# ============================================================================
# DISCOUNT TESTS
# ============================================================================

class TestApplyDiscount:

    def test_discount_then_recalculate(self, store, outbox, creator, priced):
        result = apply_discount(creator, "creator-1", 270.0, "Completed guideline training", oracle=StubRiskOracle())

        assert result.discount.amount == 270.0
        assert result.final_amount == 2000.0
        assert len(result.calculation_history) == 2
        assert store.policyholders["creator-1"].discount_applied is True
        assert "Premium Discount Applied - CCI" in outbox.subjects

    @pytest.mark.parametrize("amount,reason", [
        (0, "Training"), (-5, "Training"), (100, ""), (float("nan"), "Training"), (float("inf"), "Training"),
    ])
    def test_amount_and_reason_required(self, store, creator, priced, amount, reason):
        with pytest.raises(ValidationError):
            apply_discount(creator, "creator-1", amount, reason)


# ============================================================================
# BILLING CYCLE TESTS
# ============================================================================

class TestChangeBillingCycle:

    def test_moves_due_date(self, store, creator, priced, monkeypatch):
        later = NOW + timedelta(days=5)
        monkeypatch.setattr("cci.premium.utcnow", lambda: later)

        result = change_billing_cycle(creator, "creator-1", "Quarterly")

        assert result.billing_cycle == BillingCycle.QUARTERLY
        assert result.payment_status.due_date == later + timedelta(days=90)
        assert result.next_calculation_date == later + timedelta(days=90)

    def test_invalid_cycle(self, store, creator, priced):
        with pytest.raises(ValidationError) as exc_info:
            change_billing_cycle(creator, "creator-1", "Weekly")
        assert "Weekly" in str(exc_info.value)


# ============================================================================
# PAYMENT TESTS
# ============================================================================

class TestPay:

    def test_successful_payment(self, store, outbox, creator, priced, mobile_money):
        result = pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway())

        status = result.payment_status
        assert status.status == PaymentState.PAID
        assert status.payment_date is not None
        assert status.payment_method.type.value == "MobileMoney"
        assert len(status.attempts) == 1
        assert status.attempts[0].status == AttemptOutcome.SUCCESS
        assert status.attempts[0].idempotency_key == f"{priced.premium_id}-1"
        assert status.transaction_id == status.attempts[0].transaction_id
        assert "Premium Payment Successful - CCI" in outbox.subjects

    def test_failed_payment_recorded_then_raised(self, store, creator, priced, mobile_money):
        with pytest.raises(PaymentFailedError) as exc_info:
            pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway(fail=True, error_message="Declined"))

        assert "Declined" in str(exc_info.value)
        stored = store.premiums["creator-1"]
        assert stored.payment_status.status == PaymentState.FAILED
        assert stored.payment_status.attempts[0].status == AttemptOutcome.FAILED
        assert stored.payment_status.attempts[0].error_message == "Declined"

    def test_gateway_exception_recorded_as_failure(self, store, creator, priced, mobile_money):
        gateway = MagicMock()
        gateway.charge.side_effect = TimeoutError("gateway timed out")

        with pytest.raises(PaymentFailedError):
            pay(creator, "creator-1", mobile_money, gateway=gateway)

        assert store.premiums["creator-1"].payment_status.status == PaymentState.FAILED

    def test_already_paid(self, store, creator, priced, mobile_money):
        pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway())
        with pytest.raises(InvalidStateError):
            pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway())
        assert len(store.premiums["creator-1"].payment_status.attempts) == 1

    def test_invalid_method(self, store, creator, priced):
        with pytest.raises(ValidationError):
            pay(creator, "creator-1", {"type": "Cheque"})

    def test_admin_cannot_pay(self, store, admin, priced, mobile_money):
        with pytest.raises(ForbiddenError):
            pay(admin, "creator-1", mobile_money)

    def test_owner_lookup_failure_after_commit(self, store, outbox, creator, priced, mobile_money, monkeypatch):
        def lookup_down(user_id):
            raise PersistenceError("DynamoDB throttled")

        monkeypatch.setattr("cci.premium.fetch_policyholder", lookup_down)

        result = pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway())

        assert result.payment_status.status == PaymentState.PAID
        assert store.premiums["creator-1"].payment_status.status == PaymentState.PAID
        assert "Premium Payment Successful - CCI" not in outbox.subjects


class TestRetryPayment:

    def test_retry_after_failure(self, store, creator, priced, mobile_money):
        with pytest.raises(PaymentFailedError):
            pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway(fail=True))

        result = retry_payment(creator, "creator-1", gateway=SimulatedPaymentGateway())

        attempts = result.payment_status.attempts
        assert result.payment_status.status == PaymentState.PAID
        assert [a.status for a in attempts] == [AttemptOutcome.FAILED, AttemptOutcome.SUCCESS]
        assert attempts[1].idempotency_key == f"{priced.premium_id}-2"

    def test_uses_policyholder_method_when_none_stored(self, store, admin, priced):
        gateway = MagicMock()
        gateway.charge.return_value = SimulatedPaymentGateway().charge(1, "KES", None, "x")

        retry_payment(admin, "creator-1", gateway=gateway)

        method = gateway.charge.call_args[0][2]
        assert method.details == "+254700000000"

    def test_paid_premium_not_retried(self, store, creator, priced, mobile_money):
        pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway())
        with pytest.raises(InvalidStateError):
            retry_payment(creator, "creator-1", gateway=SimulatedPaymentGateway())


# ============================================================================
# OVERDUE TESTS
# ============================================================================

class TestMarkOverdue:

    def test_marks_unpaid_past_due(self, store, outbox, admin, priced):
        result = mark_overdue(admin, now=NOW + timedelta(days=31))

        assert [p.user_id for p in result] == ["creator-1"]
        assert store.premiums["creator-1"].payment_status.status == PaymentState.OVERDUE
        assert "Overdue Premium Payment - CCI" in outbox.subjects

    def test_not_yet_due(self, store, admin, priced):
        assert mark_overdue(admin, now=NOW + timedelta(days=29)) == []
        assert store.premiums["creator-1"].payment_status.status == PaymentState.PENDING

    def test_paid_premium_untouched(self, store, creator, admin, priced, mobile_money):
        pay(creator, "creator-1", mobile_money, gateway=SimulatedPaymentGateway())
        assert mark_overdue(admin, now=NOW + timedelta(days=31)) == []

    def test_overdue_premium_can_be_paid(self, store, creator, admin, priced):
        mark_overdue(admin, now=NOW + timedelta(days=31))
        result = retry_payment(creator, "creator-1", gateway=SimulatedPaymentGateway())
        assert result.payment_status.status == PaymentState.PAID

    def test_owner_lookup_failure_does_not_stop_sweep(self, store, outbox, admin, priced, monkeypatch):
        store.put(priced.model_copy(update={"user_id": "creator-2", "premium_id": "PRM-2"}))

        def lookup_down(user_id):
            raise PersistenceError("DynamoDB throttled")

        monkeypatch.setattr("cci.premium.fetch_policyholder", lookup_down)

        result = mark_overdue(admin, now=NOW + timedelta(days=31))

        assert sorted(p.user_id for p in result) == ["creator-1", "creator-2"]
        assert store.premiums["creator-1"].payment_status.status == PaymentState.OVERDUE
        assert store.premiums["creator-2"].payment_status.status == PaymentState.OVERDUE
        assert "Overdue Premium Payment - CCI" not in outbox.subjects


# ============================================================================
# LISTING TESTS
# ============================================================================

class TestSearchPremiums:

    def test_filter_by_status(self, store, admin, priced):
        assert len(search_premiums(admin, status="Pending")) == 1
        assert search_premiums(admin, status=PaymentState.PAID) == []

    def test_filter_by_created_range(self, store, admin, priced):
        assert search_premiums(admin, start=NOW + timedelta(days=1)) == []
        assert len(search_premiums(admin, end=NOW + timedelta(days=1))) == 1

    def test_creator_forbidden(self, store, creator, priced):
        with pytest.raises(ForbiddenError):
            search_premiums(creator)
