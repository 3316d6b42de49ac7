from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.db import OperationalError, connection, transaction
from django.db.models import F, Q
from django.utils import timezone

from .conf import discount_setting
from .models import Discount, DiscountCustomerUsage, DiscountRedemption, FailureReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    reserved: bool
    reason: Optional[FailureReason] = None
    redemption: Optional[DiscountRedemption] = None


@dataclass(frozen=True)
class Release:
    released: bool
    reason: Optional[FailureReason] = None
    redemption: Optional[DiscountRedemption] = None


class _Rejected(Exception):
    """Aborts the reservation transaction so every increment rolls back."""

    def __init__(self, reason: FailureReason):
        super().__init__(reason)
        self.reason = reason


def _deadline_ms() -> int:
    return int(discount_setting("RESERVE_LOCK_TIMEOUT_MS"))


@contextmanager
def _sqlite_busy_timeout():
    """Shorten SQLite's busy wait to the reserve deadline, restoring it afterwards."""
    if connection.vendor != "sqlite":
        yield
        return
    with connection.cursor() as cursor:
        cursor.execute("PRAGMA busy_timeout")
        previous = int(cursor.fetchone()[0])
        cursor.execute(f"PRAGMA busy_timeout = {_deadline_ms()}")
    try:
        yield
    finally:
        with connection.cursor() as cursor:
            cursor.execute(f"PRAGMA busy_timeout = {previous}")


@contextmanager
def _locked_transaction():
    """
    transaction.atomic() bounded by RESERVE_LOCK_TIMEOUT_MS.

    SQLite takes its write lock at BEGIN IMMEDIATE, so the busy timeout is
    set before the transaction opens; PostgreSQL gets a transaction-local
    lock_timeout.
    """
    with _sqlite_busy_timeout():
        with transaction.atomic():
            if connection.vendor == "postgresql":
                with connection.cursor() as cursor:
                    cursor.execute("SELECT set_config('lock_timeout', %s, true)", [f"{_deadline_ms()}ms"])
            yield


def _take_global_unit(discount_id) -> int:
    """Conditionally bump usage_count; returns the discount's per-customer cap."""
    updated = (
        Discount.objects.filter(pk=discount_id)
        .filter(Q(usage_limit=0) | Q(usage_count__lt=F("usage_limit")))
        .update(usage_count=F("usage_count") + 1)
    )
    per_customer = (
        Discount.objects.filter(pk=discount_id).values_list("usage_per_customer", flat=True).first()
    )
    if per_customer is None:
        raise _Rejected(FailureReason.NOT_FOUND)
    if not updated:
        raise _Rejected(FailureReason.GLOBALLY_EXHAUSTED)
    return per_customer


def _take_customer_unit(discount_id, customer_id, limit: int) -> None:
    usage, _ = DiscountCustomerUsage.objects.get_or_create(
        discount_id=discount_id, customer_id=customer_id
    )
    qs = DiscountCustomerUsage.objects.filter(pk=usage.pk)
    if limit:
        qs = qs.filter(redemption_count__lt=limit)
    if not qs.update(redemption_count=F("redemption_count") + 1):
        raise _Rejected(FailureReason.PER_CUSTOMER_EXHAUSTED)


def reserve(
    discount_id,
    customer_id=None,
    *,
    amount=Decimal("0"),
    store_id=None,
    reference: str = "",
) -> Reservation:
    """
    Consume one unit of usage budget for `discount_id`.

    The global counter and the customer's usage record are incremented with
    conditional UPDATEs in one transaction: either both move or neither does.
    A rejection here is authoritative, whatever eligibility said earlier.
    Storage contention or lock timeouts give TEMPORARILY_UNAVAILABLE.
    """
    try:
        with _locked_transaction():
            per_customer = _take_global_unit(discount_id)
            if customer_id is not None:
                _take_customer_unit(discount_id, customer_id, per_customer)
            redemption = DiscountRedemption.objects.create(
                discount_id=discount_id,
                customer_id=customer_id,
                store_id=store_id,
                amount=amount,
                reference=reference or "",
            )
    except _Rejected as exc:
        logger.info("Reservation rejected: discount=%s customer=%s reason=%s",
                    discount_id, customer_id, exc.reason)
        return Reservation(reserved=False, reason=exc.reason)
    except OperationalError:
        logger.warning("Reservation timed out: discount=%s customer=%s",
                       discount_id, customer_id, exc_info=True)
        return Reservation(reserved=False, reason=FailureReason.TEMPORARILY_UNAVAILABLE)

    logger.info("Reserved discount=%s customer=%s redemption=%s amount=%s",
                discount_id, customer_id, redemption.pk, amount)
    return Reservation(reserved=True, redemption=redemption)


def _claim_redemption(discount_id, customer_id, redemption_id) -> Optional[DiscountRedemption]:
    """Flip one reserved redemption to released; None if nothing is left to release."""
    pending = DiscountRedemption.objects.filter(
        discount_id=discount_id, status=DiscountRedemption.Status.RESERVED
    )
    if redemption_id is not None:
        pending = pending.filter(pk=redemption_id)
    else:
        pending = pending.filter(customer_id=customer_id)

    for redemption in pending.order_by("-created_at", "-pk"):
        released_at = timezone.now()
        flipped = DiscountRedemption.objects.filter(
            pk=redemption.pk, status=DiscountRedemption.Status.RESERVED
        ).update(status=DiscountRedemption.Status.RELEASED, released_at=released_at)
        if flipped:
            redemption.status = DiscountRedemption.Status.RELEASED
            redemption.released_at = released_at
            return redemption
    return None


def release(discount_id, customer_id=None, redemption_id=None) -> Release:
    """
    Give back a unit taken by `reserve`, e.g. when payment fails.

    With `redemption_id` that exact reservation is released, otherwise the
    latest outstanding one for (discount, customer). Releasing again is a
    no-op: only the call that flips the redemption decrements the counters,
    and they never go below zero.
    """
    try:
        with _locked_transaction():
            redemption = _claim_redemption(discount_id, customer_id, redemption_id)
            if redemption is None:
                return Release(released=False)
            Discount.objects.filter(pk=discount_id, usage_count__gt=0).update(
                usage_count=F("usage_count") - 1
            )
            if redemption.customer_id is not None:
                DiscountCustomerUsage.objects.filter(
                    discount_id=discount_id,
                    customer_id=redemption.customer_id,
                    redemption_count__gt=0,
                ).update(redemption_count=F("redemption_count") - 1)
    except OperationalError:
        logger.warning("Release timed out: discount=%s customer=%s",
                       discount_id, customer_id, exc_info=True)
        return Release(released=False, reason=FailureReason.TEMPORARILY_UNAVAILABLE)

    logger.info("Released discount=%s customer=%s redemption=%s",
                discount_id, redemption.customer_id, redemption.pk)
    return Release(released=True, redemption=redemption)
