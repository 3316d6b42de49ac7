from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from django.db.models import F, Q, QuerySet
from django.utils import timezone

from .eligibility import resolve_member, evaluate
from .models import Discount, DiscountRedemption, FailureReason, is_retryable
from .pricing import compute_discount_amount
from .usage import reserve

logger = logging.getLogger(__name__)


class ValidationRequest:
    """Lightweight request DTO used by preview/commit validation."""
    def __init__(self, code_or_id, cart_amount, customer_id=None, store_id=None,
                 preview: bool = True, reference: str = ""):
        self.code_or_id = code_or_id
        self.cart_amount = Decimal(cart_amount)
        self.customer_id = customer_id
        self.store_id = store_id
        self.preview = preview
        self.reference = reference or ""


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    discount: Optional[Discount] = None
    discount_amount: Optional[Decimal] = None
    error_code: Optional[FailureReason] = None
    redemption: Optional[DiscountRedemption] = None

    @property
    def retryable(self) -> bool:
        return is_retryable(self.error_code)

    @classmethod
    def failure(cls, reason: FailureReason) -> "ValidationResult":
        return cls(valid=False, error_code=reason)


def resolve_discount(code_or_id) -> Optional[Discount]:
    """Find a discount by code (case-insensitive), falling back to its id."""
    key = str(code_or_id if code_or_id is not None else "").strip()
    if not key:
        return None
    found = Discount.objects.filter(code__iexact=key).first()
    if found is None and key.isdigit():
        found = Discount.objects.filter(pk=int(key)).first()
    return found


def validate(request: ValidationRequest, now: Optional[datetime] = None) -> ValidationResult:
    """
    Decide whether a discount applies to a sale and what it saves.

    Preview requests never touch usage budget. Committing requests reserve
    one unit after eligibility and pricing pass; if the reservation is
    rejected that rejection is returned instead of success.
    """
    discount = resolve_discount(request.code_or_id)
    if discount is None:
        return ValidationResult.failure(FailureReason.NOT_FOUND)

    reason = evaluate(discount, request, now)
    if reason is not None:
        logger.debug("Discount %s ineligible: %s", discount.pk, reason)
        return ValidationResult.failure(reason)

    amount = compute_discount_amount(discount, request.cart_amount)

    if request.preview:
        logger.debug("Preview discount=%s amount=%s", discount.pk, amount)
        return ValidationResult(valid=True, discount=discount, discount_amount=amount)

    outcome = reserve(
        discount.pk,
        request.customer_id,
        amount=amount,
        store_id=request.store_id,
        reference=request.reference,
    )
    if not outcome.reserved:
        return ValidationResult.failure(outcome.reason)

    discount.refresh_from_db(fields=["usage_count"])
    return ValidationResult(
        valid=True,
        discount=discount,
        discount_amount=amount,
        redemption=outcome.redemption,
    )


def active_discounts(store_id=None, customer_id=None, now: Optional[datetime] = None) -> QuerySet:
    """Discounts usable right now at `store_id` by `customer_id` (None = guest)."""
    now = timezone.localtime(now or timezone.now())
    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    qs = (
        Discount.objects.filter(is_active=True)
        .filter(Q(start_date__isnull=True) | Q(start_date__lte=now))
        .filter(Q(end_date__isnull=True) | Q(end_date__gte=start_of_today))
        .filter(Q(usage_limit=0) | Q(usage_count__lt=F("usage_limit")))
    )

    if store_id is None:
        qs = qs.filter(store_id__isnull=True)
    else:
        qs = qs.filter(Q(store_id__isnull=True) | Q(store_id=store_id))

    audience = Q(applicable_to=Discount.ApplicableTo.ALL)
    if customer_id is not None:
        audience |= Q(applicable_to=Discount.ApplicableTo.SPECIFIC_CUSTOMER, customer_id=customer_id)
        if resolve_member(customer_id):
            audience |= Q(applicable_to=Discount.ApplicableTo.MEMBER)

    return qs.filter(audience).order_by("name", "pk")
