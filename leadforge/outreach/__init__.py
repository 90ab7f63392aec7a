"""
Paced outreach campaigns over the lead store.

This module handles:
- Contact eligibility (cooldowns, suppression, blocked statuses)
- Admitting leads into per-campaign FIFO queues under a daily limit
- Template selection (smart segments, rotation, fixed) and rendering
- One-send-per-poll worker and schedule-paced runner
- Local + provider engagement stats
"""

from leadforge.outreach.eligibility import can_contact, has_received_campaign
from leadforge.outreach.queue import enqueue_campaign
from leadforge.outreach.templates import select_template, render_message, pick_sender_name
from leadforge.outreach.sender import send_email, build_chat_link, SendResult
from leadforge.outreach.worker import poll_worker, run_campaign
from leadforge.outreach.stats import get_stats
from leadforge.outreach.manager import (
    OutreachManager,
    create_campaign,
    create_template,
    mark_replied,
    send_test,
    suppress,
    unsubscribe,
    unsuppress,
)

__all__ = [
    'can_contact',
    'has_received_campaign',
    'enqueue_campaign',
    'select_template',
    'render_message',
    'pick_sender_name',
    'send_email',
    'build_chat_link',
    'SendResult',
    'poll_worker',
    'run_campaign',
    'get_stats',
    'OutreachManager',
    'create_campaign',
    'create_template',
    'mark_replied',
    'send_test',
    'suppress',
    'unsubscribe',
    'unsuppress',
]
