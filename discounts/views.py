from __future__ import annotations

from rest_framework import viewsets, permissions, status
from rest_framework.decorators import action
from rest_framework.response import Response
from django.shortcuts import get_object_or_404
from drf_spectacular.utils import extend_schema, OpenApiParameter, OpenApiTypes

from .models import Discount, FailureReason, is_retryable
from .serializers import (
    ActiveQuerySerializer,
    DiscountSnapshotSerializer,
    ReleaseSerializer,
    ValidateSerializer,
    ValidationResultSerializer,
)
from .services import ValidationRequest, active_discounts, validate as validate_discount
from .usage import release as release_reservation


def _status_for(reason) -> int:
    if reason == FailureReason.NOT_FOUND:
        return status.HTTP_404_NOT_FOUND
    if reason == FailureReason.TEMPORARILY_UNAVAILABLE:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


@extend_schema(tags=["Discounts"])
class DiscountViewSet(viewsets.GenericViewSet):
    """
    Discount endpoints used by the point of sale:
    - /discounts/validate/ → preview or commit a discount for a cart
    - /discounts/release/ → give back a committed reservation
    - /discounts/active/ → discounts usable right now
    """
    queryset = Discount.objects.all()
    serializer_class = DiscountSnapshotSerializer
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(
        request=ValidateSerializer,
        responses={200: ValidationResultSerializer, 400: ValidationResultSerializer,
                   404: ValidationResultSerializer, 503: ValidationResultSerializer},
        description="Validate a discount code or id for a cart. preview=false reserves one use atomically.",
    )
    @action(detail=False, methods=["post"], url_path="validate")
    def validate(self, request):
        payload = ValidateSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        d = payload.validated_data

        result = validate_discount(ValidationRequest(
            code_or_id=d["code_or_id"],
            cart_amount=d["cart_amount"],
            customer_id=d.get("customer_id"),
            store_id=d.get("store_id"),
            preview=d["preview"],
            reference=d["reference"],
        ))

        code = status.HTTP_200_OK if result.valid else _status_for(result.error_code)
        return Response(ValidationResultSerializer(result).data, status=code)

    @extend_schema(
        request=ReleaseSerializer,
        responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT, 503: OpenApiTypes.OBJECT},
        description=(
            "Release a reservation made by a committing validation (idempotent). "
            "Pass reservation_id, or customer_id to release that customer's latest reservation."
        ),
    )
    @action(detail=False, methods=["post"], url_path="release")
    def release(self, request):
        payload = ReleaseSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        d = payload.validated_data

        discount = get_object_or_404(Discount, pk=d["discount_id"])
        outcome = release_reservation(discount.pk, d.get("customer_id"), d.get("reservation_id"))

        if outcome.reason is not None:
            return Response(
                {"released": False, "error_code": str(outcome.reason), "retryable": is_retryable(outcome.reason)},
                status=_status_for(outcome.reason),
            )
        return Response({"released": outcome.released}, status=status.HTTP_200_OK)

    @extend_schema(
        parameters=[
            OpenApiParameter("store_id", OpenApiTypes.INT, OpenApiParameter.QUERY, required=False),
            OpenApiParameter("customer_id", OpenApiTypes.INT, OpenApiParameter.QUERY, required=False),
        ],
        responses={200: DiscountSnapshotSerializer(many=True)},
        description="List discounts currently usable at a store by a customer (guest when omitted).",
    )
    @action(detail=False, methods=["get"], url_path="active")
    def active(self, request):
        params = ActiveQuerySerializer(data=request.query_params)
        params.is_valid(raise_exception=True)
        d = params.validated_data

        qs = active_discounts(store_id=d.get("store_id"), customer_id=d.get("customer_id"))
        return Response({"data": DiscountSnapshotSerializer(qs, many=True).data}, status=status.HTTP_200_OK)
