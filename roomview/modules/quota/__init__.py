"""
Quota Module - per-tenant daily usage accounting.
"""

from roomview.modules.quota.models import QuotaCounter, QuotaCategory
from roomview.modules.quota.ledger import (
    QuotaLedger,
    QuotaDecision,
    PlanLimitResolver,
    seconds_until_utc_midnight,
    utc_today,
)

__all__ = [
    "QuotaCounter",
    "QuotaCategory",
    "QuotaLedger",
    "QuotaDecision",
    "PlanLimitResolver",
    "seconds_until_utc_midnight",
    "utc_today",
]
