"""
Resolve a candidate business to an existing lead.

Keys are tried most-authoritative first: provider place id, normalized
website domain, then the trailing digits of the phone number. The phone
match is a substring test on stored digits, so numbers written with or
without a country prefix still collide. It can also collide across
regions that share local numbering, which is why the tail length is
configurable.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from leadforge import config
from leadforge.db import find_lead_by_phone_tail, get_lead_by_domain, get_lead_by_place_id
from leadforge.models import Lead

logger = logging.getLogger(__name__)

MATCH_PLACE_ID = "place_id"
MATCH_DOMAIN = "domain"
MATCH_PHONE = "phone"


@dataclass
class DedupResult:
    is_duplicate: bool
    lead: Optional[Lead] = None
    matched_by: Optional[str] = None


def normalize_domain(url: Optional[str]) -> Optional[str]:
    """'https://www.Example.com/contact' -> 'example.com'."""
    if not url or not url.strip():
        return None
    url = url.strip()
    if "://" not in url:
        url = f"http://{url}"
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    host = re.sub(r'^www\.', '', host)
    return host or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only."""
    if not phone:
        return None
    digits = re.sub(r'\D', '', phone)
    return digits or None


def phone_tail(phone: Optional[str], digits: Optional[int] = None) -> Optional[str]:
    """Trailing digits used for matching, or None if the number is too short."""
    digits = digits if digits is not None else config.PHONE_MATCH_DIGITS
    normalized = normalize_phone(phone)
    if not normalized or len(normalized) < digits:
        return None
    return normalized[-digits:]


def find_duplicate(
    place_id: Optional[str],
    website: Optional[str] = None,
    phone: Optional[str] = None,
) -> DedupResult:
    if place_id:
        lead = get_lead_by_place_id(place_id)
        if lead:
            return DedupResult(True, lead, MATCH_PLACE_ID)

    domain = normalize_domain(website)
    if domain:
        lead = get_lead_by_domain(domain)
        if lead:
            return DedupResult(True, lead, MATCH_DOMAIN)

    tail = phone_tail(phone)
    if tail:
        lead = find_lead_by_phone_tail(tail)
        if lead:
            logger.debug("Phone tail %s matched lead %d", tail, lead.id)
            return DedupResult(True, lead, MATCH_PHONE)

    return DedupResult(False)
