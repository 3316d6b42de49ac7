from django.core.management.base import BaseCommand
from django.utils import timezone
from datetime import timedelta
from decimal import Decimal
from random import randint, choice

from discounts.models import Customer, Discount, DiscountCustomerUsage, DiscountRedemption


class Command(BaseCommand):
    help = "Seed sample customers and ~20 discounts for development/testing."

    def add_arguments(self, parser):
        parser.add_argument(
            "--fresh",
            action="store_true",
            help="Delete existing discounts/usages/redemptions before seeding",
        )
        parser.add_argument(
            "--count",
            type=int,
            default=16,
            help="How many random discounts to add on top of the fixed ones",
        )

    def handle(self, *args, **opts):
        fresh: bool = opts["fresh"]
        count: int = opts["count"]

        # ---------------- CLEAN OLD DATA ----------------
        if fresh:
            self.stdout.write(self.style.WARNING("Cleaning old discount data…"))
            DiscountRedemption.objects.all().delete()
            DiscountCustomerUsage.objects.all().delete()
            Discount.objects.all().delete()

        # ---------------- CUSTOMERS ----------------
        member, _ = Customer.objects.get_or_create(
            email="member@example.com", defaults={"name": "Member Customer", "is_member": True}
        )
        regular, _ = Customer.objects.get_or_create(
            email="regular@example.com", defaults={"name": "Regular Customer", "is_member": False}
        )
        self.stdout.write(self.style.SUCCESS(f"Ensured customers #{member.pk} (member), #{regular.pk}"))

        now = timezone.now()

        # ---------------- FIXED DISCOUNTS ----------------
        fixed = [
            dict(
                name="Cart 10% OFF",
                code="HEMAT10",
                discount_type=Discount.DiscountType.PERCENTAGE,
                discount_value=Decimal("10"),
                min_purchase=Decimal("50000"),
                max_discount=Decimal("20000"),
            ),
            dict(
                name="Flat 15000",
                code="POTONG15",
                discount_type=Discount.DiscountType.FIXED,
                discount_value=Decimal("15000"),
            ),
            dict(
                name="Members 5%",
                code=None,
                discount_type=Discount.DiscountType.PERCENTAGE,
                discount_value=Decimal("5"),
                applicable_to=Discount.ApplicableTo.MEMBER,
            ),
            dict(
                name="Birthday Voucher",
                code="HBD-REGULAR",
                discount_type=Discount.DiscountType.FIXED,
                discount_value=Decimal("25000"),
                applicable_to=Discount.ApplicableTo.SPECIFIC_CUSTOMER,
                customer=regular,
                usage_per_customer=1,
            ),
            dict(
                name="First 100 buyers",
                code="FIRST100",
                discount_type=Discount.DiscountType.PERCENTAGE,
                discount_value=Decimal("20"),
                max_discount=Decimal("50000"),
                usage_limit=100,
                usage_per_customer=1,
                end_date=now + timedelta(days=7),
            ),
        ]
        created = 0
        for fields in fixed:
            if Discount.objects.filter(name=fields["name"]).exists():
                continue
            Discount.objects.create(start_date=now - timedelta(days=1), **fields)
            created += 1

        # ---------------- RANDOM DISCOUNTS ----------------
        name_chunks = ["Mega", "Super", "Hemat", "Fest", "Saver", "Prime", "Ultra", "Smart"]
        for i in range(count):
            discount_type = choice([Discount.DiscountType.PERCENTAGE, Discount.DiscountType.FIXED])
            if discount_type == Discount.DiscountType.PERCENTAGE:
                discount_value = Decimal(randint(5, 40))  # 5%–40%
            else:
                discount_value = Decimal(randint(1, 20) * 1000)

            Discount.objects.create(
                name=f"{choice(name_chunks)} Deal {i + 1}",
                code=f"SAMPLE{now:%y%m%d}{i + 1:03d}-{randint(100, 999)}",
                discount_type=discount_type,
                discount_value=discount_value,
                min_purchase=Decimal(choice([0, 25000, 50000, 100000])),
                max_discount=Decimal(choice([0, 10000, 25000])),
                store_id=choice([None, None, 1, 2]),
                usage_limit=choice([0, 10, 50, 100]),
                usage_per_customer=choice([0, 1, 3]),
                start_date=now - timedelta(days=randint(0, 3)),
                end_date=now + timedelta(days=randint(10, 40)),
                is_active=True,
            )
            created += 1

        # ---------------- OUTPUT ----------------
        self.stdout.write(self.style.SUCCESS(f"Total seeded discounts: {created}"))
        self.stdout.write(self.style.SUCCESS("Open /api/docs to try /api/discounts/validate/ now."))
