from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from django.utils import timezone
from django.utils.module_loading import import_string

from .conf import discount_setting
from .models import Customer, Discount, DiscountCustomerUsage, FailureReason


def customer_is_member(customer_id) -> bool:
    """Default member resolver: reads Customer.is_member."""
    return Customer.objects.filter(pk=customer_id, is_member=True).exists()


def resolve_member(customer_id) -> bool:
    if customer_id is None:
        return False
    resolver = import_string(discount_setting("MEMBER_RESOLVER"))
    return bool(resolver(customer_id))


def _local(value: datetime) -> datetime:
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return timezone.localtime(value)


def _customer_redemptions(discount: Discount, customer_id) -> int:
    count = (
        DiscountCustomerUsage.objects.filter(discount_id=discount.pk, customer_id=customer_id)
        .values_list("redemption_count", flat=True)
        .first()
    )
    return count or 0


def evaluate(discount: Discount, request, now: Optional[datetime] = None) -> Optional[FailureReason]:
    """
    Check whether `discount` may be used for `request` at `now`.

    Returns None when eligible, otherwise the first failing FailureReason.
    Checks run in a fixed order so the reported reason is deterministic:
    status, start, end (inclusive through the end of that day), store,
    member, specific customer, minimum purchase, global budget, per-customer
    budget. Nothing is written; the budget checks here are only a pre-check,
    reservation is what actually decides.
    """
    now = _local(now or timezone.now())

    if not discount.is_active:
        return FailureReason.INACTIVE

    if discount.start_date and now < discount.start_date:
        return FailureReason.NOT_STARTED

    if discount.end_date and now.date() > _local(discount.end_date).date():
        return FailureReason.EXPIRED

    if discount.store_id is not None and discount.store_id != request.store_id:
        return FailureReason.STORE_MISMATCH

    if discount.applicable_to == Discount.ApplicableTo.MEMBER:
        if not resolve_member(request.customer_id):
            return FailureReason.NOT_MEMBER

    if discount.applicable_to == Discount.ApplicableTo.SPECIFIC_CUSTOMER:
        if request.customer_id is None or request.customer_id != discount.customer_id:
            return FailureReason.CUSTOMER_MISMATCH

    if Decimal(request.cart_amount) < Decimal(discount.min_purchase):
        return FailureReason.BELOW_MINIMUM_PURCHASE

    if discount.usage_limit and discount.usage_count >= discount.usage_limit:
        return FailureReason.GLOBALLY_EXHAUSTED

    # guests are not tracked per customer
    if discount.usage_per_customer and request.customer_id is not None:
        if _customer_redemptions(discount, request.customer_id) >= discount.usage_per_customer:
            return FailureReason.PER_CUSTOMER_EXHAUSTED

    return None
