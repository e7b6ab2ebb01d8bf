"""CRUD 操作模块"""
from .audit import list_recent as list_recent_audit
from .audit import write as write_audit
from .entitlement import (
    PaymentRefs,
    count_active_for_user,
    find_active,
    find_expired_before,
    find_expiring_between,
    latest_expiry,
    list_active_for_user,
    list_active_matching,
    list_unclaimed_by_email,
    payment_already_recorded,
    upsert_active,
)
from .entitlement import expire as expire_entitlement
from .override import create as create_override
from .override import get_active as get_active_override
from .pending import create as create_pending
from .pending import delete as delete_pending
from .pending import list_by_email as list_pending_by_email
from .profile import ensure as ensure_profile
from .profile import get_by_email as get_profile_by_email
from .profile import get_by_id as get_profile
from .profile import list_on_tiers as list_profiles_on_tiers
from .profile import set_tier as set_profile_tier
from .webhook_event import record as record_webhook_event

__all__ = [
    "PaymentRefs",
    "count_active_for_user",
    "create_override",
    "create_pending",
    "delete_pending",
    "ensure_profile",
    "expire_entitlement",
    "find_active",
    "find_expired_before",
    "find_expiring_between",
    "get_active_override",
    "get_profile",
    "get_profile_by_email",
    "latest_expiry",
    "list_active_for_user",
    "list_active_matching",
    "list_pending_by_email",
    "list_profiles_on_tiers",
    "list_recent_audit",
    "list_unclaimed_by_email",
    "payment_already_recorded",
    "record_webhook_event",
    "set_profile_tier",
    "upsert_active",
    "write_audit",
]
