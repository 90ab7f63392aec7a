"""
Campaign send queue.

Admits leads into a campaign's FIFO queue under the campaign's daily
limit. Hand-picked leads skip the eligibility gate but never receive the
same campaign twice.
"""

import logging

from leadforge.db import (
    count_processed_sends_today,
    create_send,
    get_campaign,
    get_leads,
    has_send_in,
    query_leads,
    transition_job_status,
)
from leadforge.errors import ValidationError
from leadforge.models import Campaign, JobStatus, Lead, SendStatus
from leadforge.outreach.eligibility import can_contact, has_received_campaign, usable_address

logger = logging.getLogger(__name__)

PENDING_SEND_STATUSES = {SendStatus.QUEUED, SendStatus.SENDING}


def remaining_today(campaign: Campaign) -> int:
    """Daily limit minus sends created today that have already left the queue."""
    return max(0, campaign.daily_limit - count_processed_sends_today(campaign.id))


def candidate_leads(campaign: Campaign) -> list[Lead]:
    if campaign.is_explicit:
        return get_leads(campaign.lead_ids)
    return query_leads(
        channel=campaign.channel,
        group_id=campaign.group_id,
        niche=campaign.niche,
        no_website_only=campaign.no_website_only,
        safe_send_mode=campaign.safe_send_mode,
    )


def admit_lead(campaign: Campaign, lead: Lead) -> tuple[bool, str]:
    """
    Decide whether one lead joins the queue.

    Returns:
        (admit, reason)
    """
    if has_send_in(campaign.id, lead.id, PENDING_SEND_STATUSES):
        return False, "Already queued"

    if has_received_campaign(lead.id, campaign.id):
        return False, "Already received this campaign"

    if not campaign.is_explicit:
        ok, reason = can_contact(lead, campaign.cooldown_days, campaign.channel)
        if not ok:
            return False, reason

    if not usable_address(lead, campaign.channel):
        return False, f"No usable {campaign.channel.value} address"

    return True, "Admitted"


def enqueue_campaign(campaign_id: int) -> dict:
    """
    Queue sends for a campaign's audience.

    Returns:
        Summary dict with queued_count, skipped_count, remaining_today, job_status
    """
    campaign = get_campaign(campaign_id)
    if campaign is None:
        raise ValidationError(f"Campaign {campaign_id} not found")

    remaining = remaining_today(campaign)
    if remaining == 0:
        logger.info("Campaign %d: daily limit of %d already reached", campaign_id, campaign.daily_limit)
        return {
            'queued_count': 0,
            'skipped_count': 0,
            'skipped': [],
            'remaining_today': 0,
            'job_status': campaign.job_status.value,
        }

    queued = 0
    skipped = []
    for lead in candidate_leads(campaign):
        if queued >= remaining:
            break

        admit, reason = admit_lead(campaign, lead)
        if not admit:
            skipped.append({'lead_id': lead.id, 'reason': reason})
            logger.debug("Campaign %d: skipped lead %d (%s)", campaign_id, lead.id, reason)
            continue

        create_send(campaign_id, lead.id, campaign.channel, usable_address(lead, campaign.channel))
        queued += 1

    job_status = campaign.job_status
    if queued and transition_job_status(campaign_id, JobStatus.RUNNING):
        job_status = JobStatus.RUNNING

    logger.info("Campaign %d: queued %d, skipped %d (%d left today)",
                campaign_id, queued, len(skipped), remaining - queued)

    return {
        'queued_count': queued,
        'skipped_count': len(skipped),
        'skipped': skipped,
        'remaining_today': remaining - queued,
        'job_status': job_status.value,
    }
