"""
Campaign statistics.

Sent and failed counts always come from our own send rows: the provider
never sees failures that didn't leave the system. Opens and bounces are
refreshed from the provider's per-tag statistics when available.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import requests

from leadforge import config
from leadforge.db import count_sends_by_status, get_campaign, set_campaign_engagement
from leadforge.errors import ConfigurationError, ValidationError
from leadforge.models import Campaign, SendStatus
from leadforge.outreach.eligibility import parse_timestamp

logger = logging.getLogger(__name__)


def fetch_brevo_engagement(tag: str, start_date: str, end_date: str) -> dict:
    """
    Sum Brevo's transactional reports for one tag over a date range.

    Returns:
        {'opened', 'clicked', 'bounced'}
    """
    if not config.BREVO_API_KEY:
        raise ConfigurationError("BREVO_API_KEY is not configured")

    resp = requests.get(
        config.BREVO_STATS_URL,
        params={'tag': tag, 'startDate': start_date, 'endDate': end_date},
        headers={'api-key': config.BREVO_API_KEY, 'Accept': 'application/json'},
        timeout=config.REQUEST_TIMEOUT,
    )
    resp.raise_for_status()

    opened = clicked = bounced = 0
    for report in resp.json().get('reports', []):
        opened += report.get('uniqueOpens', 0) or 0
        clicked += report.get('uniqueClicks', 0) or 0
        bounced += (report.get('hardBounces', 0) or 0)
        bounced += (report.get('softBounces', 0) or 0) + (report.get('blocked', 0) or 0)
    return {'opened': opened, 'clicked': clicked, 'bounced': bounced}


def local_counts(campaign_id: int) -> dict:
    by_status = count_sends_by_status(campaign_id)
    return {
        'queued': by_status.get(SendStatus.QUEUED.value, 0) + by_status.get(SendStatus.SENDING.value, 0),
        'sent': sum(by_status.get(s, 0) for s in (
            SendStatus.SENT.value, SendStatus.OPENED.value,
            SendStatus.CLICKED.value, SendStatus.REPLIED.value,
        )),
        'failed': by_status.get(SendStatus.FAILED.value, 0),
        'bounced': by_status.get(SendStatus.BOUNCED.value, 0),
        'replied': by_status.get(SendStatus.REPLIED.value, 0),
    }


def _date_range(campaign: Campaign) -> tuple[str, str]:
    today = datetime.now(timezone.utc).date()
    start = parse_timestamp(campaign.created_at).date() if campaign.created_at else today
    return start.isoformat(), today.isoformat()


def get_stats(
    campaign_id: int,
    fetch_engagement: Optional[Callable[[str, str, str], dict]] = None,
) -> dict:
    """
    Local send counts plus provider engagement for a campaign.

    A failed provider fetch is logged and the local figures are returned.
    """
    campaign = get_campaign(campaign_id)
    if campaign is None:
        raise ValidationError(f"Campaign {campaign_id} not found")

    counts = local_counts(campaign_id)
    fetch = fetch_engagement or fetch_brevo_engagement
    start, end = _date_range(campaign)

    engagement = None
    try:
        engagement = fetch(str(campaign_id), start, end)
    except Exception as e:
        logger.warning("Engagement stats unavailable for campaign %d: %s", campaign_id, e)

    if engagement is not None:
        set_campaign_engagement(campaign_id, engagement.get('opened', 0), engagement.get('bounced', 0))
        campaign = get_campaign(campaign_id)
        logger.info("Campaign %d engagement: %d opened, %d bounced",
                    campaign_id, campaign.total_opened, campaign.total_bounced)

    return {
        'campaign_id': campaign_id,
        'job_status': campaign.job_status.value,
        'counts': counts,
        'totals': {
            'sent': campaign.total_sent,
            'failed': campaign.total_failed,
            'bounced': campaign.total_bounced,
            'opened': campaign.total_opened,
            'replied': campaign.total_replied,
        },
        'engagement': engagement,
    }
