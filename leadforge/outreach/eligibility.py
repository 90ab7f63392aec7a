"""
Contact eligibility rules.

Checks (in order):
- Lead status is not DO_NOT_CONTACT / BOUNCED / REPLIED
- Cooldown since the last contact has elapsed
- Lead has an address for the campaign channel
- No address or email domain is on the suppression list
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from leadforge.db import find_suppressed, has_send_in
from leadforge.dedup import normalize_phone
from leadforge.models import BLOCKED_LEAD_STATUSES, DELIVERED_SEND_STATUSES, Channel, Lead

logger = logging.getLogger(__name__)

MIN_CHAT_DIGITS = 8


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def usable_address(lead: Lead, channel: Channel) -> Optional[str]:
    """The one address a send to this lead would use on this channel."""
    if channel == Channel.WHATSAPP:
        digits = normalize_phone(lead.phone)
        if digits and len(digits) >= MIN_CHAT_DIGITS:
            return digits
        return None
    return lead.best_email


def _suppression_keys(lead: Lead) -> list[str]:
    keys = []
    for e in lead.emails:
        email = e.email.strip().lower()
        keys.append(email)
        if '@' in email:
            keys.append(email.split('@', 1)[1])
    return keys


def can_contact(
    lead: Lead,
    cooldown_days: int,
    channel: Channel = Channel.EMAIL,
    now: Optional[datetime] = None,
) -> tuple[bool, str]:
    """
    Check whether a lead may be contacted.

    Returns:
        (can_contact, reason)
    """
    if lead.status in BLOCKED_LEAD_STATUSES:
        return False, f"Lead status is {lead.status.value}"

    if lead.last_contacted_at:
        now = now or datetime.now(timezone.utc)
        elapsed = now - parse_timestamp(lead.last_contacted_at)
        if elapsed < timedelta(days=cooldown_days):
            return False, f"Contacted {elapsed.days} days ago (cooldown {cooldown_days} days)"

    if not usable_address(lead, channel):
        return False, f"No usable {channel.value} address"

    hit = find_suppressed(_suppression_keys(lead))
    if hit:
        return False, f"Suppressed ({hit})"

    return True, "Eligible"


def has_received_campaign(lead_id: int, campaign_id: int) -> bool:
    """True if this lead already has a delivered or engaged send for the campaign."""
    return has_send_in(campaign_id, lead_id, DELIVERED_SEND_STATUSES)
