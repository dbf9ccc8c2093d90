"""Generation entitlement: active subscription or 24-hour trial."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from pixelstream.core.timezone import utcnow
from pixelstream.repositories.user_account import UserAccountRepository

TRIAL_DURATION = timedelta(hours=24)

TRIAL_EXPIRED_REASON = (
    "Your 24-hour trial has expired. "
    "Upgrade to Pro for $5/month to continue generating images."
)


@dataclass(frozen=True)
class EntitlementResult:
    allowed: bool
    reason: Optional[str] = None


async def can_user_generate(
    accounts: UserAccountRepository, owner_id: str, now: datetime | None = None
) -> EntitlementResult:
    """Check whether the owner may start generation work.

    Owners without an account record are treated as having no trial left.
    """
    account = await accounts.get_by_owner(owner_id)
    if account is not None:
        if account.has_active_subscription:
            return EntitlementResult(allowed=True)
        if (now or utcnow()) < account.created_at + TRIAL_DURATION:
            return EntitlementResult(allowed=True)

    return EntitlementResult(allowed=False, reason=TRIAL_EXPIRED_REASON)
