"""
Campaign worker.

poll_worker() processes exactly one queued send per call and persists
everything before returning, so polling can stop and resume at any point.
Pacing lives outside: run_campaign() calls it at random intervals between
the campaign's min and max delay using the `schedule` library.
"""

import logging
import random
import time
from typing import Callable, Optional

import schedule
from jinja2 import TemplateError

from leadforge.db import (
    add_suppression,
    claim_next_send,
    complete_send,
    get_campaign,
    get_lead,
    increment_campaign_counter,
    transition_job_status,
    update_lead_status,
    utc_now,
)
from leadforge.errors import ValidationError
from leadforge.models import Campaign, CampaignSend, Channel, JobStatus, LeadStatus, SendStatus
from leadforge.outreach.sender import SendResult, build_chat_link, send_email
from leadforge.outreach.templates import pick_sender_name, render_message, select_template

logger = logging.getLogger(__name__)

Mailer = Callable[..., SendResult]


def _fail(campaign: Campaign, send: CampaignSend, error: str, template_id: Optional[int] = None) -> dict:
    complete_send(send.id, SendStatus.FAILED, template_id=template_id, error=error)
    increment_campaign_counter(campaign.id, 'total_failed')
    logger.warning("Campaign %d: send %d failed: %s", campaign.id, send.id, error)
    return {'status': SendStatus.FAILED.value, 'address': send.address, 'error': error}


def _process_send(campaign: Campaign, send: CampaignSend, mailer: Mailer) -> dict:
    lead = get_lead(send.lead_id)
    if lead is None:
        return _fail(campaign, send, f"Lead {send.lead_id} not found")

    choice = select_template(campaign, lead)
    if choice.template is None:
        return _fail(campaign, send, "No template available")
    template = choice.template

    try:
        message = render_message(template, lead, send.channel, send.address)
    except TemplateError as e:
        return _fail(campaign, send, f"Template {template.id} failed to render: {e}", template.id)

    result = {
        'address': send.address,
        'template_id': template.id,
        'segment': choice.segment,
        'fell_back': choice.fell_back,
    }

    if send.channel == Channel.WHATSAPP:
        link = build_chat_link(send.address, message.body)
        complete_send(send.id, SendStatus.SENT, template_id=template.id)
        update_lead_status(lead.id, LeadStatus.SENT, contacted_at=utc_now())
        increment_campaign_counter(campaign.id, 'total_sent')
        logger.info("Campaign %d: chat link ready for lead %d", campaign.id, lead.id)
        return {**result, 'status': SendStatus.SENT.value, 'chat_link': link}

    sender_name = pick_sender_name(campaign)
    try:
        outcome = mailer(send.address, message.subject, message.body, sender_name, [str(campaign.id)])
    except Exception as e:
        logger.error("Mailer raised for send %d: %s", send.id, e)
        outcome = SendResult(success=False, error=str(e))

    if outcome.success:
        complete_send(send.id, SendStatus.SENT, template_id=template.id, delivery_id=outcome.delivery_id)
        update_lead_status(lead.id, LeadStatus.SENT, contacted_at=utc_now())
        increment_campaign_counter(campaign.id, 'total_sent')
        logger.info("Campaign %d: sent to %s as %s", campaign.id, send.address, sender_name)
        return {**result, 'status': SendStatus.SENT.value, 'delivery_id': outcome.delivery_id}

    failed = _fail(campaign, send, outcome.error or "Unknown send error", template.id)
    if outcome.bounced:
        update_lead_status(lead.id, LeadStatus.BOUNCED)
        add_suppression(send.address, reason="bounced")
        logger.warning("Campaign %d: %s refused, suppressed", campaign.id, send.address)
    return {**result, **failed, 'bounced': outcome.bounced}


def poll_worker(campaign_id: int, mailer: Optional[Mailer] = None) -> dict:
    """
    Process one queued send for a campaign.

    Returns:
        {'job_status', 'processed', 'result'} (plus 'send_id' when work was done)
    """
    campaign = get_campaign(campaign_id)
    if campaign is None:
        raise ValidationError(f"Campaign {campaign_id} not found")

    if campaign.job_status != JobStatus.RUNNING:
        return {'job_status': campaign.job_status.value, 'processed': 0, 'result': None}

    send = claim_next_send(campaign_id)
    if send is None:
        transition_job_status(campaign_id, JobStatus.DONE)
        logger.info("Campaign %d: queue empty, done", campaign_id)
        return {'job_status': JobStatus.DONE.value, 'processed': 0, 'result': None}

    result = _process_send(campaign, send, mailer or send_email)
    return {
        'job_status': JobStatus.RUNNING.value,
        'processed': 1,
        'send_id': send.id,
        'result': result,
    }


def next_delay(campaign: Campaign) -> float:
    """Seconds to wait before the next poll, uniform between the campaign bounds."""
    low, high = sorted((campaign.min_delay, campaign.max_delay))
    return random.uniform(low, high)


def run_campaign(
    campaign_id: int,
    mailer: Optional[Mailer] = None,
    max_sends: Optional[int] = None,
) -> dict:
    """
    Poll the worker until the campaign's queue is empty.

    The first send goes out immediately; later ones are spaced by a random
    delay between the campaign's min and max seconds.
    """
    campaign = get_campaign(campaign_id)
    if campaign is None:
        raise ValidationError(f"Campaign {campaign_id} not found")

    totals = {'processed': 0, 'sent': 0, 'failed': 0, 'bounced': 0, 'chat_links': []}
    scheduler = schedule.Scheduler()

    def tick():
        outcome = poll_worker(campaign_id, mailer)
        if not outcome['processed']:
            return schedule.CancelJob

        totals['processed'] += 1
        status = outcome['result']['status']
        if status == SendStatus.SENT.value:
            totals['sent'] += 1
        else:
            totals['failed'] += 1
            if outcome['result'].get('bounced'):
                totals['bounced'] += 1
        if outcome['result'].get('chat_link'):
            totals['chat_links'].append(outcome['result']['chat_link'])

        if max_sends and totals['processed'] >= max_sends:
            return schedule.CancelJob
        return None

    if tick() is schedule.CancelJob:
        return totals

    low = max(1, int(min(campaign.min_delay, campaign.max_delay)))
    high = max(low, int(max(campaign.min_delay, campaign.max_delay)))
    scheduler.every(low).to(high).seconds.do(tick)
    logger.info("Campaign %d: pacing sends every %d-%d seconds", campaign_id, low, high)

    while scheduler.jobs:
        scheduler.run_pending()
        time.sleep(1)

    return totals
