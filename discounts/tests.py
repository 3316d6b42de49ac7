from decimal import Decimal
from datetime import datetime, timezone as dt_timezone

from django.test import TestCase, override_settings

from .eligibility import evaluate
from .models import Customer, Discount, DiscountCustomerUsage, DiscountRedemption, FailureReason
from .pricing import compute_discount_amount
from .services import ValidationRequest, resolve_discount, validate

UTC = dt_timezone.utc
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def make_discount(**overrides) -> Discount:
    fields = dict(
        name="Hemat 10",
        code="HEMAT10",
        discount_type=Discount.DiscountType.PERCENTAGE,
        discount_value=Decimal("10"),
        min_purchase=Decimal("50000"),
        max_discount=Decimal("20000"),
        start_date=datetime(2025, 1, 1, tzinfo=UTC),
        end_date=datetime(2025, 1, 31, tzinfo=UTC),
    )
    fields.update(overrides)
    return Discount.objects.create(**fields)


class AmountCalculatorTest(TestCase):
    """Discount amount rules: caps, clamping and final-step rounding."""

    def test_percentage_capped_exactly_at_max(self):
        d = make_discount()
        self.assertEqual(compute_discount_amount(d, Decimal("200000")), Decimal("20000"))

    def test_percentage_below_cap(self):
        d = make_discount()
        self.assertEqual(compute_discount_amount(d, Decimal("150000")), Decimal("15000"))

    def test_percentage_cap_applies_above_boundary(self):
        d = make_discount()
        self.assertEqual(compute_discount_amount(d, Decimal("900000")), Decimal("20000"))

    def test_percentage_without_cap(self):
        d = make_discount(max_discount=Decimal("0"))
        self.assertEqual(compute_discount_amount(d, Decimal("900000")), Decimal("90000"))

    def test_fixed_clamped_to_cart_total(self):
        d = make_discount(discount_type=Discount.DiscountType.FIXED, discount_value=Decimal("15000"),
                          max_discount=Decimal("0"))
        self.assertEqual(compute_discount_amount(d, Decimal("10000")), Decimal("10000"))

    def test_max_discount_ignored_for_fixed(self):
        d = make_discount(discount_type=Discount.DiscountType.FIXED, discount_value=Decimal("30000"),
                          max_discount=Decimal("10000"))
        self.assertEqual(compute_discount_amount(d, Decimal("100000")), Decimal("30000"))

    def test_rounds_half_up_on_final_value(self):
        d = make_discount(discount_value=Decimal("12.5"), max_discount=Decimal("0"))
        # 12.5% of 1004 = 125.5
        self.assertEqual(compute_discount_amount(d, Decimal("1004")), Decimal("126"))
        # 12.5% of 1003 = 125.375
        self.assertEqual(compute_discount_amount(d, Decimal("1003")), Decimal("125"))

    @override_settings(DISCOUNTS={"AMOUNT_QUANTUM": "0.01"})
    def test_quantum_is_configurable(self):
        d = make_discount(discount_value=Decimal("12.5"), max_discount=Decimal("0"))
        self.assertEqual(compute_discount_amount(d, Decimal("1004")), Decimal("125.50"))

    def test_amount_never_exceeds_cap_or_cart(self):
        percent = make_discount(code="P", discount_value=Decimal("37"), max_discount=Decimal("5000"))
        fixed = make_discount(code="F", discount_type=Discount.DiscountType.FIXED,
                              discount_value=Decimal("7500"), max_discount=Decimal("0"))
        for cart in ("0", "1", "999", "13513", "13514", "7500", "7499", "1000000"):
            cart = Decimal(cart)
            p = compute_discount_amount(percent, cart)
            f = compute_discount_amount(fixed, cart)
            self.assertTrue(Decimal("0") <= p <= Decimal("5000"), (cart, p))
            self.assertTrue(p <= cart, (cart, p))
            self.assertTrue(Decimal("0") <= f <= cart, (cart, f))

    def test_fixed_on_fractional_cart_is_whole_units(self):
        d = make_discount(discount_type=Discount.DiscountType.FIXED, discount_value=Decimal("15000"),
                          max_discount=Decimal("0"))
        self.assertEqual(compute_discount_amount(d, Decimal("100.50")), Decimal("100"))
        self.assertEqual(compute_discount_amount(d, Decimal("100.49")), Decimal("100"))

    def test_full_percentage_on_fractional_cart_is_whole_units(self):
        d = make_discount(discount_value=Decimal("100"), min_purchase=Decimal("0"),
                          max_discount=Decimal("0"))
        self.assertEqual(compute_discount_amount(d, Decimal("100.50")), Decimal("100"))
        self.assertEqual(compute_discount_amount(d, Decimal("0.60")), Decimal("0"))

    def test_fractional_cap_rounds_down(self):
        d = make_discount(discount_value=Decimal("50"), min_purchase=Decimal("0"),
                          max_discount=Decimal("100.50"))
        self.assertEqual(compute_discount_amount(d, Decimal("1000")), Decimal("100"))

    def test_fractional_cart_below_fixed_value_rounds_half_up(self):
        d = make_discount(discount_type=Discount.DiscountType.FIXED, discount_value=Decimal("40.5"),
                          max_discount=Decimal("0"))
        self.assertEqual(compute_discount_amount(d, Decimal("100.25")), Decimal("41"))

    def test_results_are_whole_quanta_within_cart(self):
        fixed = make_discount(code="F", discount_type=Discount.DiscountType.FIXED,
                              discount_value=Decimal("15000"), max_discount=Decimal("0"))
        for cart in ("0.01", "0.5", "1.5", "99.99", "100.50", "12345.67"):
            cart = Decimal(cart)
            amount = compute_discount_amount(fixed, cart)
            self.assertLessEqual(amount, cart, cart)
            self.assertEqual(amount, amount.to_integral_value(), cart)


class EligibilityTest(TestCase):
    """Each rule, and which one wins when several fail."""

    def setUp(self):
        self.member = Customer.objects.create(name="Member", is_member=True)
        self.regular = Customer.objects.create(name="Regular", is_member=False)
        self.discount = make_discount()

    def request(self, **kw):
        kw.setdefault("cart_amount", Decimal("100000"))
        return ValidationRequest(code_or_id="HEMAT10", **kw)

    def test_eligible(self):
        self.assertIsNone(evaluate(self.discount, self.request(), NOW))

    def test_inactive_wins_over_everything(self):
        self.discount.is_active = False
        self.discount.store_id = 9
        late = datetime(2025, 3, 1, tzinfo=UTC)
        reason = evaluate(self.discount, self.request(cart_amount=Decimal("1")), late)
        self.assertEqual(reason, FailureReason.INACTIVE)

    def test_not_started(self):
        early = datetime(2024, 12, 31, 23, 59, 59, tzinfo=UTC)
        self.assertEqual(evaluate(self.discount, self.request(), early), FailureReason.NOT_STARTED)

    def test_end_date_inclusive_through_end_of_day(self):
        last_second = datetime(2025, 1, 31, 23, 59, 59, tzinfo=UTC)
        next_day = datetime(2025, 2, 1, 0, 0, 0, tzinfo=UTC)
        self.assertIsNone(evaluate(self.discount, self.request(), last_second))
        self.assertEqual(evaluate(self.discount, self.request(), next_day), FailureReason.EXPIRED)

    def test_open_window(self):
        self.discount.start_date = None
        self.discount.end_date = None
        far = datetime(2030, 6, 1, tzinfo=UTC)
        self.assertIsNone(evaluate(self.discount, self.request(), far))

    def test_expired_before_store_mismatch(self):
        self.discount.store_id = 1
        late = datetime(2025, 2, 2, tzinfo=UTC)
        self.assertEqual(evaluate(self.discount, self.request(store_id=2), late), FailureReason.EXPIRED)

    def test_store_scoped_discount(self):
        self.discount.store_id = 1
        self.assertIsNone(evaluate(self.discount, self.request(store_id=1), NOW))
        self.assertEqual(evaluate(self.discount, self.request(store_id=2), NOW), FailureReason.STORE_MISMATCH)
        self.assertEqual(evaluate(self.discount, self.request(), NOW), FailureReason.STORE_MISMATCH)

    def test_member_only(self):
        self.discount.applicable_to = Discount.ApplicableTo.MEMBER
        self.assertIsNone(evaluate(self.discount, self.request(customer_id=self.member.pk), NOW))
        self.assertEqual(evaluate(self.discount, self.request(), NOW), FailureReason.NOT_MEMBER)

    def test_non_member_fails_regardless_of_cart(self):
        self.discount.applicable_to = Discount.ApplicableTo.MEMBER
        for cart in ("0", "49999", "100000", "99999999"):
            req = self.request(customer_id=self.regular.pk, cart_amount=Decimal(cart))
            self.assertEqual(evaluate(self.discount, req, NOW), FailureReason.NOT_MEMBER)

    @override_settings(DISCOUNTS={"MEMBER_RESOLVER": "discounts.tests.everyone_is_member"})
    def test_member_resolver_is_pluggable(self):
        self.discount.applicable_to = Discount.ApplicableTo.MEMBER
        req = self.request(customer_id=self.regular.pk)
        self.assertIsNone(evaluate(self.discount, req, NOW))

    def test_specific_customer_mismatch(self):
        target = Customer.objects.create(pk=42, name="Target")
        d = make_discount(code="ONLY42", applicable_to=Discount.ApplicableTo.SPECIFIC_CUSTOMER,
                          customer=target)
        self.assertIsNone(evaluate(d, self.request(customer_id=42), NOW))
        for cart in ("1", "100000"):
            req = self.request(customer_id=7, cart_amount=Decimal(cart))
            self.assertEqual(evaluate(d, req, NOW), FailureReason.CUSTOMER_MISMATCH)
        self.assertEqual(evaluate(d, self.request(), NOW), FailureReason.CUSTOMER_MISMATCH)

    def test_below_minimum_purchase(self):
        req = self.request(cart_amount=Decimal("49999.99"))
        self.assertEqual(evaluate(self.discount, req, NOW), FailureReason.BELOW_MINIMUM_PURCHASE)
        self.assertIsNone(evaluate(self.discount, self.request(cart_amount=Decimal("50000")), NOW))

    def test_global_budget_precheck(self):
        d = make_discount(code="LIM", usage_limit=2, usage_count=2)
        self.assertEqual(evaluate(d, self.request(), NOW), FailureReason.GLOBALLY_EXHAUSTED)

    def test_minimum_purchase_before_budget(self):
        d = make_discount(code="LIM", usage_limit=2, usage_count=2)
        req = self.request(cart_amount=Decimal("10"))
        self.assertEqual(evaluate(d, req, NOW), FailureReason.BELOW_MINIMUM_PURCHASE)

    def test_per_customer_budget_precheck(self):
        d = make_discount(code="ONCE", usage_per_customer=1)
        DiscountCustomerUsage.objects.create(discount=d, customer_id=self.regular.pk, redemption_count=1)

        req = self.request(customer_id=self.regular.pk)
        self.assertEqual(evaluate(d, req, NOW), FailureReason.PER_CUSTOMER_EXHAUSTED)
        # other customers and guests are unaffected
        self.assertIsNone(evaluate(d, self.request(customer_id=self.member.pk), NOW))
        self.assertIsNone(evaluate(d, self.request(), NOW))

    def test_evaluate_does_not_write(self):
        d = make_discount(code="LIM", usage_limit=5, usage_per_customer=2)
        evaluate(d, self.request(customer_id=self.regular.pk), NOW)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 0)
        self.assertFalse(DiscountCustomerUsage.objects.exists())


def everyone_is_member(customer_id) -> bool:
    return True


class ValidationServiceTest(TestCase):
    """Orchestration: lookup, preview vs commit, result shape."""

    def setUp(self):
        self.customer = Customer.objects.create(name="Buyer")
        self.discount = make_discount(usage_limit=3)

    def test_not_found(self):
        r = validate(ValidationRequest("NOPE", Decimal("100000")), now=NOW)
        self.assertFalse(r.valid)
        self.assertEqual(r.error_code, FailureReason.NOT_FOUND)
        self.assertFalse(r.retryable)

    def test_code_match_is_case_insensitive(self):
        self.assertEqual(resolve_discount("hemat10"), self.discount)
        self.assertEqual(resolve_discount("  Hemat10 "), self.discount)

    def test_lookup_by_id(self):
        member_discount = make_discount(code=None, name="Auto member")
        self.assertEqual(resolve_discount(str(member_discount.pk)), member_discount)
        self.assertEqual(resolve_discount(member_discount.pk), member_discount)
        self.assertIsNone(resolve_discount(""))

    def test_empty_code_stored_as_null(self):
        a = make_discount(code="", name="A")
        b = make_discount(code="", name="B")
        self.assertIsNone(a.code)
        self.assertIsNone(b.code)

    def test_concrete_percentage_scenario(self):
        r = validate(ValidationRequest("HEMAT10", Decimal("200000")), now=NOW)
        self.assertTrue(r.valid)
        self.assertEqual(r.discount, self.discount)
        self.assertEqual(r.discount_amount, Decimal("20000"))

    def test_preview_does_not_consume_budget(self):
        for _ in range(5):
            r = validate(ValidationRequest("HEMAT10", Decimal("100000"), customer_id=self.customer.pk),
                         now=NOW)
            self.assertTrue(r.valid)
            self.assertIsNone(r.redemption)

        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 0)
        self.assertFalse(DiscountRedemption.objects.exists())

    def test_commit_reserves_one_use(self):
        r = validate(ValidationRequest("HEMAT10", Decimal("100000"), customer_id=self.customer.pk,
                                       preview=False, reference="S-0001"), now=NOW)
        self.assertTrue(r.valid)
        self.assertEqual(r.discount.usage_count, 1)
        self.assertEqual(r.redemption.amount, Decimal("10000"))
        self.assertEqual(r.redemption.reference, "S-0001")

        usage = DiscountCustomerUsage.objects.get(discount=self.discount, customer_id=self.customer.pk)
        self.assertEqual(usage.redemption_count, 1)

    def test_ineligible_commit_does_not_mutate(self):
        r = validate(ValidationRequest("HEMAT10", Decimal("10"), preview=False), now=NOW)
        self.assertEqual(r.error_code, FailureReason.BELOW_MINIMUM_PURCHASE)
        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 0)

    def test_commit_stops_at_limit(self):
        results = [
            validate(ValidationRequest("HEMAT10", Decimal("100000"), preview=False), now=NOW)
            for _ in range(5)
        ]
        self.assertEqual([r.valid for r in results], [True, True, True, False, False])
        self.assertEqual(results[-1].error_code, FailureReason.GLOBALLY_EXHAUSTED)
        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 3)
