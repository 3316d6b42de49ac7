import threading
import time
from decimal import Decimal
from unittest.mock import patch

from django.db import OperationalError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings

from .models import Customer, Discount, DiscountCustomerUsage, DiscountRedemption, FailureReason
from .services import ValidationRequest, validate
from .usage import release, reserve


def make_discount(**overrides) -> Discount:
    fields = dict(
        name="Limited",
        code="LIMITED",
        discount_type=Discount.DiscountType.FIXED,
        discount_value=Decimal("5000"),
    )
    fields.update(overrides)
    return Discount.objects.create(**fields)


class ReserveReleaseTest(TestCase):
    """Atomic reserve/release against the discount row and the usage record."""

    def setUp(self):
        self.customer = Customer.objects.create(name="Buyer")
        self.other = Customer.objects.create(name="Other")

    def test_reserve_increments_both_counters(self):
        d = make_discount(usage_limit=2, usage_per_customer=2)
        outcome = reserve(d.pk, self.customer.pk, amount=Decimal("5000"), store_id=3)

        self.assertTrue(outcome.reserved)
        self.assertIsNone(outcome.reason)
        self.assertEqual(outcome.redemption.store_id, 3)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)
        usage = DiscountCustomerUsage.objects.get(discount=d, customer_id=self.customer.pk)
        self.assertEqual(usage.redemption_count, 1)

    def test_usage_record_kept_even_without_cap(self):
        d = make_discount()
        reserve(d.pk, self.customer.pk)
        reserve(d.pk, self.customer.pk)
        usage = DiscountCustomerUsage.objects.get(discount=d, customer_id=self.customer.pk)
        self.assertEqual(usage.redemption_count, 2)

    def test_guest_reservation_has_no_usage_record(self):
        d = make_discount(usage_per_customer=1)
        self.assertTrue(reserve(d.pk).reserved)
        self.assertTrue(reserve(d.pk).reserved)
        self.assertFalse(DiscountCustomerUsage.objects.exists())

    def test_reserve_rejects_exhausted_budget(self):
        d = make_discount(usage_limit=1, usage_count=1)
        outcome = reserve(d.pk, self.customer.pk)
        self.assertFalse(outcome.reserved)
        self.assertEqual(outcome.reason, FailureReason.GLOBALLY_EXHAUSTED)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)

    def test_unlimited_budget(self):
        d = make_discount(usage_limit=0)
        for _ in range(10):
            self.assertTrue(reserve(d.pk).reserved)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 10)

    def test_reserve_unknown_discount(self):
        outcome = reserve(987654)
        self.assertEqual(outcome.reason, FailureReason.NOT_FOUND)

    def test_per_customer_rejection_rolls_back_global_increment(self):
        d = make_discount(usage_limit=5, usage_per_customer=1)
        DiscountCustomerUsage.objects.create(discount=d, customer_id=self.customer.pk, redemption_count=1)

        outcome = reserve(d.pk, self.customer.pk)

        self.assertFalse(outcome.reserved)
        self.assertEqual(outcome.reason, FailureReason.PER_CUSTOMER_EXHAUSTED)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 0)
        self.assertFalse(DiscountRedemption.objects.exists())
        # another customer still gets through
        self.assertTrue(reserve(d.pk, self.other.pk).reserved)

    def test_release_twice_is_idempotent(self):
        d = make_discount(usage_limit=3, usage_count=1, usage_per_customer=5)
        reserve(d.pk, self.customer.pk)

        first = release(d.pk, self.customer.pk)
        second = release(d.pk, self.customer.pk)

        self.assertTrue(first.released)
        self.assertEqual(first.redemption.status, DiscountRedemption.Status.RELEASED)
        self.assertIsNotNone(first.redemption.released_at)
        self.assertFalse(second.released)
        self.assertIsNone(second.reason)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)
        usage = DiscountCustomerUsage.objects.get(discount=d, customer_id=self.customer.pk)
        self.assertEqual(usage.redemption_count, 0)

    def test_release_without_reservation_changes_nothing(self):
        d = make_discount(usage_limit=3, usage_count=2)
        outcome = release(d.pk, self.customer.pk)
        self.assertFalse(outcome.released)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 2)

    def test_release_by_reservation_id(self):
        d = make_discount(usage_limit=5)
        mine = reserve(d.pk, self.customer.pk).redemption
        theirs = reserve(d.pk, self.other.pk).redemption

        self.assertTrue(release(d.pk, redemption_id=theirs.pk).released)
        self.assertFalse(release(d.pk, redemption_id=theirs.pk).released)

        mine.refresh_from_db()
        theirs.refresh_from_db()
        self.assertEqual(mine.status, DiscountRedemption.Status.RESERVED)
        self.assertEqual(theirs.status, DiscountRedemption.Status.RELEASED)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)

    def test_release_frees_budget_for_next_sale(self):
        d = make_discount(usage_limit=1)
        reserve(d.pk, self.customer.pk)
        self.assertEqual(reserve(d.pk, self.other.pk).reason, FailureReason.GLOBALLY_EXHAUSTED)

        release(d.pk, self.customer.pk)
        self.assertTrue(reserve(d.pk, self.other.pk).reserved)

    def test_lock_timeout_is_temporarily_unavailable(self):
        d = make_discount(usage_limit=1)
        with patch("discounts.usage._take_global_unit", side_effect=OperationalError("database is locked")):
            outcome = reserve(d.pk, self.customer.pk)

        self.assertFalse(outcome.reserved)
        self.assertEqual(outcome.reason, FailureReason.TEMPORARILY_UNAVAILABLE)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 0)

    def test_timeout_after_global_increment_rolls_back(self):
        d = make_discount(usage_limit=1, usage_per_customer=1)
        with patch("discounts.usage._take_customer_unit", side_effect=OperationalError("lock timeout")):
            outcome = reserve(d.pk, self.customer.pk)

        self.assertEqual(outcome.reason, FailureReason.TEMPORARILY_UNAVAILABLE)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 0)
        self.assertFalse(DiscountRedemption.objects.exists())

    def test_validate_surfaces_timeout_as_retryable(self):
        make_discount(usage_limit=1)
        with patch("discounts.usage._take_global_unit", side_effect=OperationalError("database is locked")):
            result = validate(ValidationRequest("LIMITED", Decimal("10000"), preview=False))

        self.assertFalse(result.valid)
        self.assertEqual(result.error_code, FailureReason.TEMPORARILY_UNAVAILABLE)
        self.assertTrue(result.retryable)

    def test_release_timeout(self):
        d = make_discount()
        reserve(d.pk, self.customer.pk)
        with patch("discounts.usage._claim_redemption", side_effect=OperationalError("database is locked")):
            outcome = release(d.pk, self.customer.pk)

        self.assertFalse(outcome.released)
        self.assertEqual(outcome.reason, FailureReason.TEMPORARILY_UNAVAILABLE)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)


class ConcurrentCheckoutTest(TransactionTestCase):
    """Simultaneous committing validations racing for the same budget."""

    def commit_concurrently(self, attempts, customer_ids=None):
        barrier = threading.Barrier(attempts)
        results, errors = [], []
        lock = threading.Lock()

        def checkout(customer_id):
            try:
                barrier.wait()
                result = validate(ValidationRequest("LIMITED", Decimal("10000"),
                                                    customer_id=customer_id, preview=False))
                with lock:
                    results.append(result)
            except Exception as exc:  # surfaced through the assertion below
                with lock:
                    errors.append(exc)
            finally:
                connection.close()

        customer_ids = customer_ids or [None] * attempts
        threads = [threading.Thread(target=checkout, args=(cid,)) for cid in customer_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(results), attempts)
        return results

    def test_last_unit_goes_to_exactly_one_checkout(self):
        d = make_discount(usage_limit=1, usage_count=0)

        results = self.commit_concurrently(2)

        self.assertEqual(sum(r.valid for r in results), 1)
        loser = next(r for r in results if not r.valid)
        self.assertEqual(loser.error_code, FailureReason.GLOBALLY_EXHAUSTED)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)

    def test_many_checkouts_never_exceed_limit(self):
        d = make_discount(usage_limit=3)

        results = self.commit_concurrently(8)

        self.assertEqual(sum(r.valid for r in results), 3)
        self.assertTrue(all(
            r.error_code == FailureReason.GLOBALLY_EXHAUSTED for r in results if not r.valid
        ))
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 3)
        self.assertEqual(DiscountRedemption.objects.filter(discount=d).count(), 3)

    def test_same_customer_racing_per_customer_cap(self):
        customer = Customer.objects.create(name="Racer")
        d = make_discount(usage_limit=0, usage_per_customer=1)

        results = self.commit_concurrently(4, customer_ids=[customer.pk] * 4)

        self.assertEqual(sum(r.valid for r in results), 1)
        self.assertTrue(all(
            r.error_code == FailureReason.PER_CUSTOMER_EXHAUSTED for r in results if not r.valid
        ))
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)
        usage = DiscountCustomerUsage.objects.get(discount=d, customer_id=customer.pk)
        self.assertEqual(usage.redemption_count, 1)


class LockDeadlineTest(TransactionTestCase):
    """Reserve/release give up within RESERVE_LOCK_TIMEOUT_MS while another writer holds the lock."""

    def hold_write_lock(self, discount):
        held, done = threading.Event(), threading.Event()

        def writer():
            try:
                with transaction.atomic():
                    Discount.objects.filter(pk=discount.pk).update(description="held")
                    held.set()
                    done.wait(10)
            finally:
                connection.close()

        thread = threading.Thread(target=writer)
        thread.start()
        self.assertTrue(held.wait(5))
        return thread, done

    def busy_timeout(self):
        with connection.cursor() as cursor:
            cursor.execute("PRAGMA busy_timeout")
            return int(cursor.fetchone()[0])

    @override_settings(DISCOUNTS={"RESERVE_LOCK_TIMEOUT_MS": 300})
    def test_reserve_gives_up_within_deadline(self):
        d = make_discount(usage_limit=5)
        before = self.busy_timeout()
        thread, done = self.hold_write_lock(d)
        try:
            started = time.monotonic()
            outcome = reserve(d.pk)
            elapsed = time.monotonic() - started
        finally:
            done.set()
            thread.join()

        self.assertFalse(outcome.reserved)
        self.assertEqual(outcome.reason, FailureReason.TEMPORARILY_UNAVAILABLE)
        self.assertLess(elapsed, 3.0)
        self.assertEqual(self.busy_timeout(), before)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 0)
        self.assertFalse(DiscountRedemption.objects.filter(discount=d).exists())

    @override_settings(DISCOUNTS={"RESERVE_LOCK_TIMEOUT_MS": 300})
    def test_release_gives_up_within_deadline(self):
        d = make_discount(usage_limit=5)
        reservation = reserve(d.pk)
        self.assertTrue(reservation.reserved)

        thread, done = self.hold_write_lock(d)
        try:
            started = time.monotonic()
            outcome = release(d.pk, redemption_id=reservation.redemption.pk)
            elapsed = time.monotonic() - started
        finally:
            done.set()
            thread.join()

        self.assertFalse(outcome.released)
        self.assertEqual(outcome.reason, FailureReason.TEMPORARILY_UNAVAILABLE)
        self.assertLess(elapsed, 3.0)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)

    @override_settings(DISCOUNTS={"RESERVE_LOCK_TIMEOUT_MS": 300})
    def test_reserve_succeeds_once_lock_is_free(self):
        d = make_discount(usage_limit=5)
        thread, done = self.hold_write_lock(d)
        done.set()
        thread.join()

        outcome = reserve(d.pk)

        self.assertTrue(outcome.reserved)
        d.refresh_from_db()
        self.assertEqual(d.usage_count, 1)
