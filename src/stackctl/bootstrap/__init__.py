"""Helper utilities used when provisioning or removing the host account."""
from __future__ import annotations

from .service_accounts import (
    ServiceAccountAction,
    ServiceAccountPlan,
    ServiceAccountSpec,
    ServiceAccountStatus,
    apply_service_account_plan,
    inspect_service_account,
    plan_service_account,
    plan_service_account_removal,
)

__all__ = [
    "ServiceAccountAction",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "inspect_service_account",
    "plan_service_account",
    "plan_service_account_removal",
]
