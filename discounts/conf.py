from __future__ import annotations

from typing import Any

from django.conf import settings

DEFAULTS = {
    "RESERVE_LOCK_TIMEOUT_MS": 2000,
    "AMOUNT_QUANTUM": "1",
    "MEMBER_RESOLVER": "discounts.eligibility.customer_is_member",
}


def discount_setting(name: str) -> Any:
    """Read one engine setting from settings.DISCOUNTS, falling back to DEFAULTS."""
    overrides = getattr(settings, "DISCOUNTS", None) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
