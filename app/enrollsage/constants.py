"""
Central constants for the EnrollSage application.
"""
from __future__ import annotations

from decimal import Decimal

# Platform-level user roles
USER_ROLES = ("customer", "admin", "superadmin")

# Per-school staff roles
MEMBER_ROLES = ("owner", "admin", "admissions", "business_office", "readonly")
MEMBER_ROLE_LABELS = {
    "owner": "Owner",
    "admin": "Administrator",
    "admissions": "Admissions",
    "business_office": "Business Office",
    "readonly": "Read Only",
}
MEMBER_STATUSES = ("pending", "active", "deactivated")

ALL_PERMISSIONS = (
    "dashboard.view",
    "leads.view",
    "leads.edit",
    "applications.view",
    "applications.decide",
    "families.view",
    "families.edit",
    "billing.view",
    "billing.edit",
    "team.view",
    "team.manage",
    "settings.edit",
    "shop.manage",
)

_VIEW_PERMISSIONS = frozenset(p for p in ALL_PERMISSIONS if p.endswith(".view"))

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "owner": frozenset(ALL_PERMISSIONS),
    "admin": frozenset(ALL_PERMISSIONS),
    "admissions": frozenset(
        {
            "dashboard.view",
            "leads.view",
            "leads.edit",
            "applications.view",
            "applications.decide",
            "families.view",
            "families.edit",
            "team.view",
        }
    ),
    "business_office": frozenset(
        {
            "dashboard.view",
            "families.view",
            "billing.view",
            "billing.edit",
            "team.view",
        }
    ),
    "readonly": _VIEW_PERMISSIONS - {"billing.view"},
}

GRADE_LEVELS = ("PK", "K", "1", "2", "3", "4", "5", "6", "7", "8", "9", "10", "11", "12")
DEFAULT_SCHOOL_YEAR = "2025-2026"

# Storefront
FREE_SHIPPING_THRESHOLD = Decimal("60.00")
FLAT_SHIPPING_RATE = Decimal("7.00")
CENTS = Decimal("0.01")

GIFT_CARD_PREFIX = "SOAP"
GIFT_CARD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

# Default application fee (cents)
APPLICATION_FEE_CENTS = 5000

SESSION_LIFETIME_DAYS = 30
