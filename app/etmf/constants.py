"""
Central constants for the eTMF application.
"""
from __future__ import annotations

# Permission flags carried by every Role, per resource type.
PERMISSION_FLAGS: dict[str, tuple[str, ...]] = {
    "documents": ("create", "read", "update", "delete", "approve", "sign"),
    "trials": ("create", "read", "update", "delete", "manage"),
    "sites": ("create", "read", "update", "delete", "manage"),
    "users": ("create", "read", "update", "delete", "manage"),
    "roles": ("create", "read", "update", "delete", "manage"),
    "audit": ("read", "export"),
    "settings": ("read", "update"),
}

ROLE_LEVELS = ("ENTERPRISE", "TRIAL", "SITE", "DOCUMENT")
ROLE_STATUSES = ("ACTIVE", "INACTIVE", "DEPRECATED")

# DIA TMF Reference Model zones, seeded by scripts/init_db.py.
TMF_REFERENCE_ZONES: tuple[tuple[int, str], ...] = (
    (1, "Trial Management"),
    (2, "Central Trial Documents"),
    (3, "Regulatory"),
    (4, "IRB or IEC and other Approvals"),
    (5, "Site Management"),
    (6, "IP and Trial Supplies"),
    (7, "Safety Reporting"),
    (8, "Central and Local Testing"),
    (9, "Third parties"),
    (10, "Data Management"),
    (11, "Statistics"),
)

ACCESS_LEVELS = ("PUBLIC", "RESTRICTED", "CONFIDENTIAL")
REGULATORY_AUTHORITIES = ("FDA", "EMA", "OTHER")
NOTIFICATION_CHANNELS = ("EMAIL", "IN_APP", "SMS")


def empty_permissions() -> dict[str, dict[str, bool]]:
    return {resource: {action: False for action in actions} for resource, actions in PERMISSION_FLAGS.items()}


def full_permissions() -> dict[str, dict[str, bool]]:
    return {resource: {action: True for action in actions} for resource, actions in PERMISSION_FLAGS.items()}
