from django.db import models
from django.db.models.functions import Lower
from decimal import Decimal


class TimeStamped(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class FailureReason(models.TextChoices):
    NOT_FOUND = "NOT_FOUND", "Discount not found"
    INACTIVE = "INACTIVE", "Discount is inactive"
    NOT_STARTED = "NOT_STARTED", "Discount not yet active"
    EXPIRED = "EXPIRED", "Discount has expired"
    STORE_MISMATCH = "STORE_MISMATCH", "Discount not valid for this store"
    NOT_MEMBER = "NOT_MEMBER", "Discount only for members"
    CUSTOMER_MISMATCH = "CUSTOMER_MISMATCH", "Discount not valid for this customer"
    BELOW_MINIMUM_PURCHASE = "BELOW_MINIMUM_PURCHASE", "Minimum purchase amount not met"
    GLOBALLY_EXHAUSTED = "GLOBALLY_EXHAUSTED", "Discount usage limit reached"
    PER_CUSTOMER_EXHAUSTED = "PER_CUSTOMER_EXHAUSTED", "Customer usage limit reached"
    TEMPORARILY_UNAVAILABLE = "TEMPORARILY_UNAVAILABLE", "Temporarily unavailable, retry"


def is_retryable(reason) -> bool:
    return reason == FailureReason.TEMPORARILY_UNAVAILABLE


class Customer(TimeStamped):
    """Read model of the customer directory; only membership matters here."""
    name = models.CharField(max_length=120)
    email = models.EmailField(blank=True)
    is_member = models.BooleanField(default=False)

    def __str__(self) -> str:
        return f"{self.name} · {'member' if self.is_member else 'regular'}"


class Discount(TimeStamped):
    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage", "Percentage"
        FIXED = "fixed", "Fixed Amount"

    class ApplicableTo(models.TextChoices):
        ALL = "all", "All Customers"
        MEMBER = "member", "Members Only"
        SPECIFIC_CUSTOMER = "specific_customer", "Specific Customer"

    name = models.CharField(max_length=120)
    # match key, compared case-insensitively; member discounts may have none
    code = models.CharField(max_length=64, null=True, blank=True)
    description = models.TextField(blank=True)

    discount_type = models.CharField(
        max_length=16, choices=DiscountType.choices, default=DiscountType.PERCENTAGE
    )
    # percent value for percentage type | absolute for fixed type
    discount_value = models.DecimalField(max_digits=14, decimal_places=2)

    min_purchase = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    # 0 = uncapped, only enforced for percentage type
    max_discount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))

    # targeting
    applicable_to = models.CharField(
        max_length=24, choices=ApplicableTo.choices, default=ApplicableTo.ALL
    )
    customer = models.ForeignKey(
        Customer, null=True, blank=True, on_delete=models.PROTECT, related_name="targeted_discounts"
    )
    # null = every store
    store_id = models.PositiveIntegerField(null=True, blank=True, db_index=True)

    # usage budget, 0 = unlimited
    usage_limit = models.PositiveIntegerField(default=0)
    usage_count = models.PositiveIntegerField(default=0)
    usage_per_customer = models.PositiveIntegerField(default=0)

    # schedule, either end may be open
    start_date = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)

    is_active = models.BooleanField(default=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(Lower("code"), name="discount_code_ci_unique"),
            # percentage must be 0..100, fixed must be >=0
            models.CheckConstraint(
                name="discount_value_valid",
                condition=(
                    models.Q(
                        discount_type="percentage",
                        discount_value__gte=Decimal("0"),
                        discount_value__lte=Decimal("100"),
                    )
                    | models.Q(discount_type="fixed", discount_value__gte=Decimal("0"))
                ),
            ),
            models.CheckConstraint(
                name="discount_money_non_negative",
                condition=models.Q(min_purchase__gte=Decimal("0"), max_discount__gte=Decimal("0")),
            ),
            # customer set iff specific_customer
            models.CheckConstraint(
                name="discount_customer_matches_target",
                condition=(
                    models.Q(applicable_to="specific_customer", customer__isnull=False)
                    | (~models.Q(applicable_to="specific_customer") & models.Q(customer__isnull=True))
                ),
            ),
            models.CheckConstraint(
                name="discount_usage_within_limit",
                condition=models.Q(usage_limit=0) | models.Q(usage_count__lte=models.F("usage_limit")),
            ),
        ]
        indexes = [
            models.Index(fields=["is_active"]),
            models.Index(fields=["start_date", "end_date"]),
        ]

    def __str__(self) -> str:
        return f"{self.name} · {self.code or '#%s' % self.pk} · {self.discount_type}"

    def save(self, *args, **kwargs):
        if not self.code:
            self.code = None
        super().save(*args, **kwargs)

    @property
    def remaining_uses(self) -> int | None:
        """None if unlimited."""
        if not self.usage_limit:
            return None
        return max(0, self.usage_limit - self.usage_count)


class DiscountCustomerUsage(TimeStamped):
    """How many times one customer has redeemed one discount."""
    discount = models.ForeignKey(
        Discount, on_delete=models.CASCADE, related_name="customer_usages"
    )
    customer_id = models.PositiveIntegerField()
    redemption_count = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["discount", "customer_id"], name="usage_discount_customer_unique"),
        ]
        verbose_name_plural = "Discount customer usage"

    def __str__(self) -> str:
        return f"{self.customer_id} • {self.discount.name} • {self.redemption_count} used"


class DiscountRedemption(TimeStamped):
    """One reserved unit of usage budget, tied to the sale that consumed it."""

    class Status(models.TextChoices):
        RESERVED = "reserved", "Reserved"
        RELEASED = "released", "Released"

    discount = models.ForeignKey(
        Discount, on_delete=models.CASCADE, related_name="redemptions"
    )
    customer_id = models.PositiveIntegerField(null=True, blank=True)
    store_id = models.PositiveIntegerField(null=True, blank=True)
    amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    # sale number or other caller-side reference
    reference = models.CharField(max_length=64, blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.RESERVED)
    released_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [models.Index(fields=["discount", "customer_id", "status"])]

    def __str__(self) -> str:
        return f"{self.discount.name} • {self.customer_id or 'guest'} • {self.amount} • {self.status}"
