"""
Domain records shared by the search and outreach halves of the pipeline.

Statuses are string enums so they round-trip through SQLite unchanged.
Template strategies and channels are explicit types rather than loose
strings; rows are validated when they are loaded.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from leadforge import config
from leadforge.errors import ValidationError


class LeadStatus(str, Enum):
    NEW = "NEW"
    READY = "READY"
    QUEUED = "QUEUED"
    SENT = "SENT"
    BOUNCED = "BOUNCED"
    REPLIED = "REPLIED"
    FOLLOW_UP = "FOLLOW_UP"
    NOT_INTERESTED = "NOT_INTERESTED"
    DO_NOT_CONTACT = "DO_NOT_CONTACT"


# Statuses that need a manual override before any further outreach
BLOCKED_LEAD_STATUSES = {
    LeadStatus.DO_NOT_CONTACT,
    LeadStatus.BOUNCED,
    LeadStatus.REPLIED,
}


class SendStatus(str, Enum):
    QUEUED = "QUEUED"
    SENDING = "SENDING"  # claimed by a worker, not yet finalized
    SENT = "SENT"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    REPLIED = "REPLIED"


DELIVERED_SEND_STATUSES = {
    SendStatus.SENT,
    SendStatus.OPENED,
    SendStatus.CLICKED,
    SendStatus.REPLIED,
}


class Channel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"

    def can_transition(self, target: "JobStatus") -> bool:
        return target in JOB_TRANSITIONS[self]


JOB_TRANSITIONS = {
    JobStatus.IDLE: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.DONE},
    # Enqueueing new leads into a finished campaign restarts it
    JobStatus.DONE: {JobStatus.RUNNING},
}


def is_generic_email(email: str, prefixes: Optional[list[str]] = None) -> bool:
    """True for role mailboxes such as info@ or contact@."""
    prefixes = prefixes if prefixes is not None else config.GENERIC_EMAIL_PREFIXES
    local = email.split('@', 1)[0].lower().strip()
    return any(local == p or local.startswith(p + '.') for p in prefixes)


@dataclass
class LeadEmail:
    email: str
    confidence: float = 0.0
    is_generic: bool = False


@dataclass
class AuditSignals:
    """Website audit output. Produced by an external auditor, consumed as-is."""
    is_accessible: Optional[bool] = None
    design_score: Optional[int] = None
    seo_score: Optional[int] = None
    performance_score: Optional[int] = None
    tech_score: Optional[int] = None


@dataclass
class Lead:
    id: Optional[int] = None
    place_id: Optional[str] = None
    name: str = ""
    address: str = ""
    phone: Optional[str] = None
    phone_digits: Optional[str] = None
    website: Optional[str] = None
    website_domain: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    business_status: Optional[str] = None
    niche: str = ""
    status: LeadStatus = LeadStatus.NEW
    score: int = 0
    last_contacted_at: Optional[str] = None
    created_at: Optional[str] = None
    emails: list[LeadEmail] = field(default_factory=list)
    signals: AuditSignals = field(default_factory=AuditSignals)

    @property
    def has_website(self) -> bool:
        return bool(self.website and self.website.strip())

    @property
    def city(self) -> str:
        """Last comma-separated part of the address, postcode stripped."""
        if not self.address:
            return ""
        last = self.address.split(',')[-1].strip()
        parts = [p for p in last.split() if not any(ch.isdigit() for ch in p)]
        return ' '.join(parts) if parts else last

    @property
    def best_email(self) -> Optional[str]:
        """Highest-confidence non-generic email, else the best generic one."""
        if not self.emails:
            return None
        ranked = sorted(
            self.emails,
            key=lambda e: (e.is_generic, -(e.confidence or 0.0)),
        )
        return ranked[0].email


@dataclass
class Place:
    """A business as returned by the places provider."""
    id: str
    display_name: str = ""
    formatted_address: str = ""
    phone: Optional[str] = None
    website_uri: Optional[str] = None
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    business_status: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    types: list[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """Search results that already carry phone and website need no detail call."""
        return bool(self.phone) and bool(self.website_uri)

    @classmethod
    def from_api(cls, data: dict) -> "Place":
        if not data.get('id'):
            raise ValidationError("Place payload has no id")
        location = data.get('location') or {}
        return cls(
            id=data['id'],
            display_name=(data.get('displayName') or {}).get('text', ''),
            formatted_address=data.get('formattedAddress', ''),
            phone=data.get('internationalPhoneNumber') or data.get('nationalPhoneNumber'),
            website_uri=data.get('websiteUri'),
            rating=data.get('rating'),
            user_rating_count=data.get('userRatingCount'),
            business_status=data.get('businessStatus'),
            lat=location.get('latitude'),
            lng=location.get('longitude'),
            types=list(data.get('types') or []),
        )

    def merge(self, other: "Place") -> "Place":
        """Fill gaps in this place from a fuller copy of the same place."""
        for name in ('display_name', 'formatted_address', 'phone', 'website_uri',
                     'rating', 'user_rating_count', 'business_status', 'lat', 'lng'):
            if not getattr(self, name) and getattr(other, name):
                setattr(self, name, getattr(other, name))
        if not self.types and other.types:
            self.types = list(other.types)
        return self


@dataclass(frozen=True)
class GridCell:
    lat: float
    lng: float
    radius_km: float


@dataclass
class SearchRun:
    id: Optional[int] = None
    query: str = ""
    lat: float = 0.0
    lng: float = 0.0
    radius_km: float = 0.0
    max_results: int = 0
    caps_json: str = "{}"
    places_found: int = 0
    new_leads: int = 0
    duplicates: int = 0
    search_calls: int = 0
    detail_calls: int = 0
    cost: float = 0.0
    errors_json: str = "[]"
    status: str = "running"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def caps(self) -> dict:
        return json.loads(self.caps_json) if self.caps_json else {}

    @property
    def errors(self) -> list[str]:
        return json.loads(self.errors_json) if self.errors_json else []


@dataclass
class Template:
    id: Optional[int] = None
    name: str = ""
    channel: Channel = Channel.EMAIL
    language: str = "fr"
    subject: str = ""
    body: str = ""
    tags: list[str] = field(default_factory=list)
    is_active: bool = True


# ---------------------------------------------------------------------------
# Template strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SmartStrategy:
    kind: str = "smart"


@dataclass(frozen=True)
class RotationStrategy:
    template_ids: tuple[int, ...]
    kind: str = "rotation"


@dataclass(frozen=True)
class FixedStrategy:
    template_id: int
    kind: str = "fixed"


TemplateStrategy = Union[SmartStrategy, RotationStrategy, FixedStrategy]


def strategy_from_storage(kind: str, ids: list[int]) -> TemplateStrategy:
    """Rebuild a strategy from its stored kind and template ids."""
    if kind == "smart":
        return SmartStrategy()
    if kind == "rotation":
        if not ids:
            raise ValidationError("Rotation strategy needs at least one template id")
        return RotationStrategy(template_ids=tuple(int(i) for i in ids))
    if kind == "fixed":
        if len(ids) != 1:
            raise ValidationError("Fixed strategy needs exactly one template id")
        return FixedStrategy(template_id=int(ids[0]))
    raise ValidationError(f"Unknown template strategy '{kind}'")


def strategy_to_storage(strategy: TemplateStrategy) -> tuple[str, list[int]]:
    if isinstance(strategy, RotationStrategy):
        return strategy.kind, list(strategy.template_ids)
    if isinstance(strategy, FixedStrategy):
        return strategy.kind, [strategy.template_id]
    return strategy.kind, []


@dataclass
class Campaign:
    id: Optional[int] = None
    name: str = ""
    channel: Channel = Channel.EMAIL
    language: str = "fr"
    lead_ids: list[int] = field(default_factory=list)
    group_id: Optional[int] = None
    niche: Optional[str] = None
    no_website_only: bool = False
    safe_send_mode: bool = True
    min_delay: int = 5
    max_delay: int = 45
    daily_limit: int = 50
    cooldown_days: int = 30
    strategy: TemplateStrategy = field(default_factory=SmartStrategy)
    sender_names: list[str] = field(default_factory=list)
    job_status: JobStatus = JobStatus.IDLE
    total_sent: int = 0
    total_failed: int = 0
    total_bounced: int = 0
    total_opened: int = 0
    total_replied: int = 0
    created_at: Optional[str] = None

    @property
    def is_explicit(self) -> bool:
        """Hand-picked audiences bypass the eligibility gate."""
        return bool(self.lead_ids)


@dataclass
class CampaignSend:
    id: Optional[int] = None
    campaign_id: int = 0
    lead_id: int = 0
    channel: Channel = Channel.EMAIL
    address: str = ""
    status: SendStatus = SendStatus.QUEUED
    template_id: Optional[int] = None
    delivery_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    sent_at: Optional[str] = None
