from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from .models import Discount, FailureReason


class DiscountSnapshotSerializer(serializers.ModelSerializer):
    remaining_uses = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = Discount
        fields = (
            "id",
            "name",
            "code",
            "description",
            "discount_type",
            "discount_value",
            "min_purchase",
            "max_discount",
            "applicable_to",
            "customer",
            "store_id",
            "usage_limit",
            "usage_count",
            "usage_per_customer",
            "remaining_uses",
            "start_date",
            "end_date",
            "is_active",
        )
        read_only_fields = fields


class ValidateSerializer(serializers.Serializer):
    code_or_id = serializers.CharField(max_length=64)
    customer_id = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    store_id = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    cart_amount = serializers.DecimalField(max_digits=14, decimal_places=2, min_value=Decimal("0"))
    preview = serializers.BooleanField(default=True)
    # sale number the reservation is recorded against
    reference = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")


class ValidationResultSerializer(serializers.Serializer):
    valid = serializers.BooleanField()
    discount = DiscountSnapshotSerializer(required=False)
    discount_amount = serializers.DecimalField(max_digits=14, decimal_places=2, required=False)
    error_code = serializers.ChoiceField(choices=FailureReason.choices, required=False)
    retryable = serializers.BooleanField(required=False)
    reservation_id = serializers.IntegerField(required=False)

    def to_representation(self, result):
        if not result.valid:
            return {
                "valid": False,
                "error_code": str(result.error_code),
                "retryable": result.retryable,
            }
        data = {
            "valid": True,
            "discount": DiscountSnapshotSerializer(result.discount).data,
            "discount_amount": str(result.discount_amount),
        }
        if result.redemption is not None:
            data["reservation_id"] = result.redemption.pk
        return data


class ReleaseSerializer(serializers.Serializer):
    discount_id = serializers.IntegerField()
    customer_id = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    reservation_id = serializers.IntegerField(required=False, allow_null=True)

    def validate(self, attrs):
        # guest sales can only be released by their reservation id
        if attrs.get("customer_id") is None and attrs.get("reservation_id") is None:
            raise serializers.ValidationError(
                {"reservation_id": "Required when customer_id is not given."}
            )
        return attrs


class ActiveQuerySerializer(serializers.Serializer):
    store_id = serializers.IntegerField(required=False, min_value=1)
    customer_id = serializers.IntegerField(required=False, min_value=1)
