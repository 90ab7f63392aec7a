"""
Template selection and rendering for outreach.

Strategies:
- Smart: classify the lead into one segment and pick a template tagged for it
- Rotation: pick at random among a fixed set of template ids
- Fixed: always the same template

Templates are stored as text and rendered with Jinja2. Older templates
written with single-brace placeholders ({company_name}) are accepted too.
"""

import logging
import random
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from jinja2 import ChainableUndefined, Environment

from leadforge import config
from leadforge.db import get_template, list_templates
from leadforge.models import (
    Campaign,
    Channel,
    FixedStrategy,
    Lead,
    RotationStrategy,
    Template,
)

logger = logging.getLogger(__name__)

SEGMENT_INACCESSIBLE = "inaccessible"
SEGMENT_NO_WEBSITE = "no-website"
SEGMENT_REPUTATION = "reputation"
SEGMENT_OUTDATED = "outdated-website"
SEGMENT_GENERAL = "general"

_LEGACY_PLACEHOLDER = re.compile(r'(?<!\{)\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}(?!\})')

FOOTERS = {
    Channel.EMAIL: {
        'fr': "Pour ne plus recevoir nos messages : {link}",
        'en': "To stop receiving these emails: {link}",
    },
    Channel.WHATSAPP: {
        'fr': "Répondez STOP pour ne plus être contacté.",
        'en': "Reply STOP to opt out.",
    },
}

# Initialize Jinja2 environment
_env = None


def _get_env() -> Environment:
    """Get or create Jinja2 environment."""
    global _env
    if _env is None:
        _env = Environment(autoescape=False, keep_trailing_newline=True, undefined=ChainableUndefined)
    return _env


@dataclass
class TemplateChoice:
    template: Optional[Template]
    segment: Optional[str] = None
    fell_back: bool = False


@dataclass
class RenderedMessage:
    subject: str
    body: str


def classify_lead(lead: Lead) -> str:
    """Resolve the single smart-sending segment for a lead. First match wins."""
    website = (lead.website or "").strip()
    signals = lead.signals

    if website and signals.is_accessible is False:
        return SEGMENT_INACCESSIBLE

    if not website or len(website) < config.SMART_MIN_WEBSITE_LENGTH:
        return SEGMENT_NO_WEBSITE

    if ((lead.rating or 0) > config.SMART_RATING_THRESHOLD
            and (lead.review_count or 0) > config.SMART_REVIEW_THRESHOLD):
        return SEGMENT_REPUTATION

    design_low = signals.design_score is not None and signals.design_score < config.SMART_DESIGN_THRESHOLD
    perf_low = (signals.performance_score is not None
                and signals.performance_score < config.SMART_PERFORMANCE_THRESHOLD)
    if design_low or perf_low:
        return SEGMENT_OUTDATED

    return SEGMENT_GENERAL


def _tagged(templates: list[Template], tag: str) -> list[Template]:
    return [t for t in templates if tag in t.tags]


def _select_smart(lead: Lead, templates: list[Template]) -> TemplateChoice:
    segment = classify_lead(lead)

    matches = _tagged(templates, segment)
    if matches:
        return TemplateChoice(random.choice(matches), segment)

    general = _tagged(templates, SEGMENT_GENERAL)
    if general:
        logger.info("No '%s' template, using a general one", segment)
        return TemplateChoice(random.choice(general), segment, fell_back=True)

    if config.SMART_FALLBACK == "random" and templates:
        logger.warning(
            "No '%s' or general template for lead %s, picking at random from %d",
            segment, lead.id, len(templates),
        )
        return TemplateChoice(random.choice(templates), segment, fell_back=True)

    logger.warning("No template available for segment '%s'", segment)
    return TemplateChoice(None, segment, fell_back=True)


def _usable(template: Optional[Template], campaign: Campaign) -> bool:
    return template is not None and template.is_active and template.channel == campaign.channel


def select_template(
    campaign: Campaign,
    lead: Lead,
    templates: Optional[list[Template]] = None,
) -> TemplateChoice:
    """Choose the template for one send according to the campaign strategy."""
    strategy = campaign.strategy

    if isinstance(strategy, FixedStrategy):
        template = get_template(strategy.template_id)
        if not _usable(template, campaign):
            logger.warning("Fixed template %d missing, inactive or not a %s template",
                           strategy.template_id, campaign.channel.value)
            return TemplateChoice(None)
        return TemplateChoice(template)

    if isinstance(strategy, RotationStrategy):
        pool = [get_template(tid) for tid in strategy.template_ids]
        pool = [t for t in pool if _usable(t, campaign)]
        if not pool:
            logger.warning("No active %s template in rotation %s",
                           campaign.channel.value, list(strategy.template_ids))
            return TemplateChoice(None)
        return TemplateChoice(random.choice(pool))

    if templates is None:
        templates = list_templates(channel=campaign.channel, language=campaign.language)
    return _select_smart(lead, templates)


def pick_sender_name(campaign: Campaign) -> str:
    """Uniform pick from the campaign's sender names, independent of the template."""
    names = [n for n in campaign.sender_names if n and n.strip()]
    if not names:
        return config.DEFAULT_SENDER_NAME
    return random.choice(names)


def lead_context(lead: Lead) -> dict:
    """Template variables for a lead. Missing values render as ''."""
    values = {
        'company_name': lead.name,
        'city': lead.city,
        'website': lead.website,
        'niche': lead.niche,
        'phone': lead.phone,
        'rating': lead.rating,
        'review_count': lead.review_count,
    }
    return {k: ("" if v is None else v) for k, v in values.items()}


def _to_jinja(text: str) -> str:
    return _LEGACY_PLACEHOLDER.sub(r'{{ \1 }}', text or "")


def build_footer(channel: Channel, language: str, address: str) -> str:
    footers = FOOTERS[channel]
    text = footers.get(language, footers['en'])
    if channel == Channel.EMAIL:
        link = f"{config.APP_URL.rstrip('/')}/unsubscribe?email={quote(address)}"
        return text.format(link=link)
    return text


def render_message(
    template: Template,
    lead: Lead,
    channel: Channel,
    address: str,
) -> RenderedMessage:
    """Render subject and body for one lead and append the opt-out footer."""
    env = _get_env()
    context = lead_context(lead)

    subject = env.from_string(_to_jinja(template.subject)).render(**context).strip()
    body = env.from_string(_to_jinja(template.body)).render(**context).rstrip()
    footer = build_footer(channel, template.language, address)

    return RenderedMessage(subject=subject, body=f"{body}\n\n{footer}")
