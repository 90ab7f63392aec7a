"""
Outreach manager - campaign setup and the operation surface.

Coordinates:
- Creating campaigns and templates
- Enqueueing audiences
- Polling / running the worker
- Suppression, unsubscribes and replies
- Stats
- Test sends to your own address
"""

import logging
from functools import partial
from typing import Optional

from jinja2 import TemplateError

from leadforge import config
from leadforge.db import (
    add_suppression,
    create_campaign as db_create_campaign,
    create_template as db_create_template,
    get_campaign,
    get_lead,
    get_send,
    get_template,
    group_exists,
    increment_campaign_counter,
    init_db,
    remove_suppression,
    set_send_status,
    set_status_for_email,
    update_lead_status,
)
from leadforge.errors import ValidationError
from leadforge.models import (
    DELIVERED_SEND_STATUSES,
    Campaign,
    Channel,
    FixedStrategy,
    Lead,
    LeadStatus,
    RotationStrategy,
    SendStatus,
    SmartStrategy,
    Template,
)
from leadforge.outreach.queue import enqueue_campaign
from leadforge.outreach.sender import SendResult, build_chat_link, send_email
from leadforge.outreach.stats import get_stats
from leadforge.outreach.templates import pick_sender_name, render_message, select_template
from leadforge.outreach.worker import poll_worker, run_campaign

logger = logging.getLogger(__name__)


def create_template(
    name: str,
    body: str,
    subject: str = "",
    channel: Channel = Channel.EMAIL,
    language: Optional[str] = None,
    tags: Optional[list[str]] = None,
) -> int:
    """Store an outreach template. Returns the template ID."""
    if not name or not body:
        raise ValidationError("Template name and body are required")
    if channel == Channel.EMAIL and not subject:
        raise ValidationError("Email templates need a subject")
    return db_create_template(Template(
        name=name,
        channel=channel,
        language=language or config.DEFAULT_LANGUAGE,
        subject=subject,
        body=body,
        tags=tags or [],
    ))


def create_campaign(
    name: str,
    channel: Channel = Channel.EMAIL,
    language: Optional[str] = None,
    lead_ids: Optional[list[int]] = None,
    group_id: Optional[int] = None,
    niche: Optional[str] = None,
    no_website_only: bool = False,
    safe_send_mode: bool = True,
    daily_limit: Optional[int] = None,
    min_delay: Optional[int] = None,
    max_delay: Optional[int] = None,
    cooldown_days: Optional[int] = None,
    smart_sending: bool = False,
    template_ids: Optional[list[int]] = None,
    sender_names: Optional[list[str]] = None,
) -> int:
    """
    Create a campaign. Unset pacing and limits take the configured defaults.

    Template strategy: smart_sending picks by lead segment; otherwise one
    template id is fixed and several ids rotate.
    """
    if not name:
        raise ValidationError("Campaign name is required")

    template_ids = list(template_ids or [])
    if smart_sending:
        strategy = SmartStrategy()
    elif len(template_ids) == 1:
        strategy = FixedStrategy(template_id=template_ids[0])
    elif template_ids:
        strategy = RotationStrategy(template_ids=tuple(template_ids))
    else:
        raise ValidationError("Pick at least one template or enable smart sending")

    for tid in template_ids:
        template = get_template(tid)
        if template is None:
            raise ValidationError(f"Template {tid} does not exist")
        if template.channel != channel:
            raise ValidationError(f"Template {tid} is a {template.channel.value} template, not {channel.value}")

    if group_id is not None and not group_exists(group_id):
        raise ValidationError(f"Group {group_id} does not exist")

    campaign = Campaign(
        name=name,
        channel=channel,
        language=language or config.DEFAULT_LANGUAGE,
        lead_ids=list(lead_ids or []),
        group_id=group_id,
        niche=niche,
        no_website_only=no_website_only,
        safe_send_mode=safe_send_mode,
        daily_limit=daily_limit if daily_limit is not None else config.DEFAULT_DAILY_LIMIT,
        min_delay=min_delay if min_delay is not None else config.DEFAULT_MIN_DELAY,
        max_delay=max_delay if max_delay is not None else config.DEFAULT_MAX_DELAY,
        cooldown_days=cooldown_days if cooldown_days is not None else config.DEFAULT_COOLDOWN_DAYS,
        strategy=strategy,
        sender_names=list(sender_names or []),
    )

    if campaign.daily_limit < 1:
        raise ValidationError("daily_limit must be at least 1")
    if campaign.min_delay < 0 or campaign.max_delay < campaign.min_delay:
        raise ValidationError("Delays must satisfy 0 <= min_delay <= max_delay")

    campaign_id = db_create_campaign(campaign)
    logger.info("Created campaign %d '%s' (%s, %s)", campaign_id, name, channel.value, strategy.kind)
    return campaign_id


def suppress(value: str, reason: str = "manual") -> bool:
    added = add_suppression(value, reason)
    if added:
        logger.info("Suppressed %s (%s)", value, reason)
    return added


def unsuppress(value: str) -> bool:
    removed = remove_suppression(value)
    if removed:
        logger.info("Removed %s from suppression", value)
    return removed


def unsubscribe(email: str) -> int:
    """Opt-out link handler: suppress the address and stop its leads. Returns leads updated."""
    suppress(email, reason="unsubscribed")
    return set_status_for_email(email, LeadStatus.DO_NOT_CONTACT)


def mark_replied(send_id: int) -> bool:
    """Record a reply against a delivered send."""
    send = get_send(send_id)
    if send is None:
        raise ValidationError(f"Send {send_id} not found")
    if send.status == SendStatus.REPLIED:
        return False
    if send.status not in DELIVERED_SEND_STATUSES:
        raise ValidationError(f"Send {send_id} was never delivered (status {send.status.value})")

    if not set_send_status(send_id, SendStatus.REPLIED, expected=send.status):
        return False
    update_lead_status(send.lead_id, LeadStatus.REPLIED)
    increment_campaign_counter(send.campaign_id, 'total_replied')
    logger.info("Send %d marked as replied", send_id)
    return True


def send_test(campaign_id: int, to: str, lead_id: Optional[int] = None, mailer=None) -> SendResult:
    """
    Render the campaign's next message and send it to `to` instead of a lead.

    Uses `lead_id` for the template variables when given, else a sample
    business. Nothing is queued and no counter or lead status changes.
    For chat campaigns `to` is a phone number and the result message
    holds the click-to-chat link.
    """
    campaign = get_campaign(campaign_id)
    if campaign is None:
        raise ValidationError(f"Campaign {campaign_id} not found")
    if not to or not to.strip():
        raise ValidationError("Test recipient is required")
    to = to.strip()
    if campaign.channel == Channel.EMAIL and '@' not in to:
        raise ValidationError(f"Invalid email address: {to}")

    if lead_id is not None:
        lead = get_lead(lead_id)
        if lead is None:
            raise ValidationError(f"Lead {lead_id} not found")
    else:
        lead = Lead(name="Test Company", address="1 rue de la Paix, 75002 Paris", niche=campaign.niche or "")

    choice = select_template(campaign, lead)
    if choice.template is None:
        raise ValidationError(f"Campaign {campaign_id} has no usable template")
    try:
        message = render_message(choice.template, lead, campaign.channel, to)
    except TemplateError as e:
        raise ValidationError(f"Template {choice.template.id} failed to render: {e}")

    if campaign.channel == Channel.WHATSAPP:
        link = build_chat_link(to, message.body)
        return SendResult(success=True, message=link)

    mailer = mailer or send_email
    result = mailer(to, f"[TEST] {message.subject}", message.body, pick_sender_name(campaign), ["test"])
    logger.info("Test send for campaign %d to %s: %s", campaign_id, to, "ok" if result.success else result.error)
    return result


class OutreachManager:
    """
    Main entry point for campaign operations.

    Usage:
        manager = OutreachManager()

        manager.enqueue(campaign_id)     # admit today's audience
        manager.poll(campaign_id)        # send one message
        manager.run(campaign_id)         # paced sending until the queue is empty
        manager.stats(campaign_id)
        manager.test_send(campaign_id, "me@example.org")  # preview to yourself
    """

    def __init__(self, dry_run: bool = False, mailer=None):
        """
        Initialize the outreach manager.

        Args:
            dry_run: If True, don't actually send emails
            mailer: Optional replacement for the SMTP sender
        """
        self.dry_run = dry_run or config.DRY_RUN
        self.mailer = mailer
        if self.mailer is None and self.dry_run:
            self.mailer = partial(send_email, dry_run=True)

        init_db()

        for error in config.validate_config():
            logger.warning("Config issue: %s", error)

    def enqueue(self, campaign_id: int) -> dict:
        return enqueue_campaign(campaign_id)

    def poll(self, campaign_id: int) -> dict:
        return poll_worker(campaign_id, mailer=self.mailer)

    def run(self, campaign_id: int, max_sends: Optional[int] = None) -> dict:
        return run_campaign(campaign_id, mailer=self.mailer, max_sends=max_sends)

    def stats(self, campaign_id: int) -> dict:
        return get_stats(campaign_id)

    def test_send(self, campaign_id: int, to: str, lead_id: Optional[int] = None) -> SendResult:
        return send_test(campaign_id, to, lead_id=lead_id, mailer=self.mailer)

    def status(self, campaign_id: int) -> dict:
        campaign = get_campaign(campaign_id)
        if campaign is None:
            raise ValidationError(f"Campaign {campaign_id} not found")
        return {
            'campaign_id': campaign.id,
            'name': campaign.name,
            'channel': campaign.channel.value,
            'strategy': campaign.strategy.kind,
            'job_status': campaign.job_status.value,
            'daily_limit': campaign.daily_limit,
            'total_sent': campaign.total_sent,
            'total_failed': campaign.total_failed,
            'total_bounced': campaign.total_bounced,
            'total_replied': campaign.total_replied,
        }
