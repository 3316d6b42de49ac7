from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth.models import User
from django.db import OperationalError
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APITestCase, APIClient

from .models import Customer, Discount, DiscountRedemption


class DiscountAPITests(APITestCase):
    """
    End-to-end test of:
    - /api/discounts/validate/ (preview + commit)
    - /api/discounts/release/
    - /api/discounts/active/
    """

    def setUp(self):
        self.cashier = User.objects.create_user(username="cashier", password="x")
        self.client_pos = APIClient()
        self.client_pos.force_authenticate(self.cashier)

        self.member = Customer.objects.create(name="Member", is_member=True)
        self.regular = Customer.objects.create(name="Regular")

        self.validate_url = reverse("discount-validate")
        self.release_url = reverse("discount-release")
        self.active_url = reverse("discount-active")

        now = timezone.now()
        self.discount = Discount.objects.create(
            name="Hemat 10",
            code="HEMAT10",
            discount_type=Discount.DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            min_purchase=Decimal("50000"),
            max_discount=Decimal("20000"),
            usage_limit=1,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=10),
        )

    def test_requires_authentication(self):
        res = APIClient().post(self.validate_url, {"code_or_id": "HEMAT10", "cart_amount": "1"}, format="json")
        self.assertIn(res.status_code, (401, 403))

    def test_preview_commit_release_flow(self):
        body = {"code_or_id": "hemat10", "customer_id": self.regular.pk, "cart_amount": "200000.00"}

        preview = self.client_pos.post(self.validate_url, body, format="json")
        self.assertEqual(preview.status_code, 200, preview.data)
        self.assertTrue(preview.data["valid"])
        self.assertEqual(Decimal(preview.data["discount_amount"]), Decimal("20000"))
        self.assertEqual(preview.data["discount"]["code"], "HEMAT10")
        self.assertNotIn("reservation_id", preview.data)

        commit = self.client_pos.post(
            self.validate_url, {**body, "preview": False, "reference": "S-1"}, format="json"
        )
        self.assertEqual(commit.status_code, 200, commit.data)
        self.assertEqual(commit.data["discount"]["usage_count"], 1)
        self.assertEqual(commit.data["discount"]["remaining_uses"], 0)
        reservation_id = commit.data["reservation_id"]
        self.assertEqual(DiscountRedemption.objects.get(pk=reservation_id).reference, "S-1")

        exhausted = self.client_pos.post(self.validate_url, {**body, "preview": False}, format="json")
        self.assertEqual(exhausted.status_code, 400, exhausted.data)
        self.assertFalse(exhausted.data["valid"])
        self.assertEqual(exhausted.data["error_code"], "GLOBALLY_EXHAUSTED")
        self.assertFalse(exhausted.data["retryable"])

        released = self.client_pos.post(
            self.release_url,
            {"discount_id": self.discount.pk, "reservation_id": reservation_id},
            format="json",
        )
        self.assertEqual(released.status_code, 200)
        self.assertTrue(released.data["released"])

        again = self.client_pos.post(
            self.release_url,
            {"discount_id": self.discount.pk, "reservation_id": reservation_id},
            format="json",
        )
        self.assertEqual(again.status_code, 200)
        self.assertFalse(again.data["released"])

        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 0)

    def test_unknown_code_is_404(self):
        res = self.client_pos.post(self.validate_url, {"code_or_id": "NOPE", "cart_amount": "1000"}, format="json")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.data["error_code"], "NOT_FOUND")

    def test_fixed_discount_clamped_to_cart(self):
        Discount.objects.create(
            name="Potong 15rb", code="POTONG15",
            discount_type=Discount.DiscountType.FIXED, discount_value=Decimal("15000"),
        )
        res = self.client_pos.post(self.validate_url, {"code_or_id": "POTONG15", "cart_amount": "10000"},
                                   format="json")
        self.assertEqual(res.status_code, 200, res.data)
        self.assertEqual(Decimal(res.data["discount_amount"]), Decimal("10000"))

    def test_member_discount_by_id(self):
        d = Discount.objects.create(
            name="Members 5%", discount_type=Discount.DiscountType.PERCENTAGE,
            discount_value=Decimal("5"), applicable_to=Discount.ApplicableTo.MEMBER,
        )
        ok = self.client_pos.post(
            self.validate_url, {"code_or_id": str(d.pk), "customer_id": self.member.pk, "cart_amount": "30000"},
            format="json",
        )
        self.assertEqual(ok.status_code, 200, ok.data)
        self.assertEqual(Decimal(ok.data["discount_amount"]), Decimal("1500"))

        denied = self.client_pos.post(
            self.validate_url, {"code_or_id": str(d.pk), "customer_id": self.regular.pk, "cart_amount": "30000"},
            format="json",
        )
        self.assertEqual(denied.status_code, 400)
        self.assertEqual(denied.data["error_code"], "NOT_MEMBER")

    def test_negative_cart_rejected(self):
        res = self.client_pos.post(self.validate_url, {"code_or_id": "HEMAT10", "cart_amount": "-5"}, format="json")
        self.assertEqual(res.status_code, 400)
        self.assertIn("cart_amount", res.data)

    def test_storage_timeout_is_503(self):
        with patch("discounts.usage._take_global_unit", side_effect=OperationalError("database is locked")):
            res = self.client_pos.post(
                self.validate_url,
                {"code_or_id": "HEMAT10", "cart_amount": "100000", "preview": False},
                format="json",
            )
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.data["error_code"], "TEMPORARILY_UNAVAILABLE")
        self.assertTrue(res.data["retryable"])

    def test_release_unknown_discount_is_404(self):
        res = self.client_pos.post(self.release_url, {"discount_id": 999999, "reservation_id": 1}, format="json")
        self.assertEqual(res.status_code, 404)

    def test_release_requires_reservation_or_customer(self):
        commit = self.client_pos.post(
            self.validate_url,
            {"code_or_id": "HEMAT10", "cart_amount": "200000", "preview": False},
            format="json",
        )
        self.assertEqual(commit.status_code, 200, commit.data)
        reservation_id = commit.data["reservation_id"]

        res = self.client_pos.post(self.release_url, {"discount_id": self.discount.pk}, format="json")
        self.assertEqual(res.status_code, 400)
        self.assertIn("reservation_id", res.data)

        redemption = DiscountRedemption.objects.get(pk=reservation_id)
        self.assertEqual(redemption.status, DiscountRedemption.Status.RESERVED)
        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 1)

    def test_release_by_customer_without_reservation_id(self):
        body = {"code_or_id": "HEMAT10", "customer_id": self.regular.pk, "cart_amount": "200000", "preview": False}
        commit = self.client_pos.post(self.validate_url, body, format="json")
        self.assertEqual(commit.status_code, 200, commit.data)

        res = self.client_pos.post(
            self.release_url, {"discount_id": self.discount.pk, "customer_id": self.regular.pk}, format="json"
        )
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.data["released"])
        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 0)

    def test_active_listing(self):
        now = timezone.now()
        Discount.objects.create(name="Off", code="OFF", discount_type="fixed",
                                discount_value=Decimal("1"), is_active=False)
        Discount.objects.create(name="Gone", code="GONE", discount_type="fixed",
                                discount_value=Decimal("1"), usage_limit=2, usage_count=2)
        Discount.objects.create(name="Old", code="OLD", discount_type="fixed",
                                discount_value=Decimal("1"), end_date=now - timedelta(days=2))
        Discount.objects.create(name="Store 2", code="S2", discount_type="fixed",
                                discount_value=Decimal("1"), store_id=2)
        Discount.objects.create(name="Members", code="MEM", discount_type="fixed",
                                discount_value=Decimal("1"), applicable_to="member")
        Discount.objects.create(name="Just regular", code="REG", discount_type="fixed",
                                discount_value=Decimal("1"), applicable_to="specific_customer",
                                customer=self.regular)

        guest = self.client_pos.get(self.active_url)
        self.assertEqual(guest.status_code, 200)
        self.assertEqual({d["code"] for d in guest.data["data"]}, {"HEMAT10"})

        member = self.client_pos.get(self.active_url, {"store_id": 2, "customer_id": self.member.pk})
        self.assertEqual({d["code"] for d in member.data["data"]}, {"HEMAT10", "S2", "MEM"})

        regular = self.client_pos.get(self.active_url, {"customer_id": self.regular.pk})
        self.assertEqual({d["code"] for d in regular.data["data"]}, {"HEMAT10", "REG"})
