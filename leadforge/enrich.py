"""
Email discovery on lead websites.

For each lead with a website, fetch the home page and the usual contact
and legal-notice pages, collect addresses from mailto: links and the page
text, and attach them to the lead. Role mailboxes (info@, contact@...)
are flagged generic so campaigns prefer a named person when one exists.

A page that fails to load is skipped; one lead failing never stops a batch.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import requests
from bs4 import BeautifulSoup

from leadforge import config
from leadforge.db import add_lead_email, get_leads, get_leads_without_emails, update_lead_status
from leadforge.dedup import normalize_domain
from leadforge.errors import ValidationError
from leadforge.models import Lead, LeadStatus, is_generic_email

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}')

# Things that look like addresses but are asset names or tracker ids
_IGNORED_SUFFIXES = ('.png', '.jpg', '.jpeg', '.gif', '.svg', '.webp')
_IGNORED_DOMAINS = ('example.com', 'sentry.io', 'wixpress.com', 'domain.com')

MAILTO_CONFIDENCE = 0.9
TEXT_CONFIDENCE = 0.7
OFF_SITE_CONFIDENCE = 0.4


@dataclass
class FoundEmail:
    email: str
    source: str
    confidence: float
    is_generic: bool


def _site_root(website: str) -> Optional[str]:
    url = website.strip()
    if not url:
        return None
    if not url.startswith(('http://', 'https://')):
        url = f"https://{url}"
    parsed = urlparse(url)
    if not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def _keep(email: str) -> bool:
    if email.endswith(_IGNORED_SUFFIXES):
        return False
    domain = email.split('@', 1)[1]
    return not any(domain == d or domain.endswith('.' + d) for d in _IGNORED_DOMAINS)


def _confidence(email: str, base: float, site_domain: Optional[str]) -> float:
    """Addresses on another domain (web agency, registrar) are weaker."""
    domain = email.split('@', 1)[1]
    if site_domain and domain != site_domain and not domain.endswith('.' + site_domain):
        return min(base, OFF_SITE_CONFIDENCE)
    return base


def extract_emails(html: str, page_url: str, site_domain: Optional[str] = None) -> list[FoundEmail]:
    """Addresses on one page, mailto: links first."""
    found: dict[str, FoundEmail] = {}
    soup = BeautifulSoup(html, "html.parser")

    def add(raw: str, base: float) -> None:
        email = raw.strip().strip('.').lower()
        if '@' not in email or email in found or not EMAIL_RE.fullmatch(email) or not _keep(email):
            return
        found[email] = FoundEmail(
            email=email,
            source=page_url,
            confidence=_confidence(email, base, site_domain),
            is_generic=is_generic_email(email),
        )

    for link in soup.select('a[href^="mailto:"]'):
        add(unquote(link.get('href', '')[len('mailto:'):].split('?')[0]), MAILTO_CONFIDENCE)

    for match in EMAIL_RE.findall(soup.get_text(" ")):
        add(match, TEXT_CONFIDENCE)

    return list(found.values())


def fetch_page(url: str) -> Optional[str]:
    """GET one page. Returns None on any HTTP or network failure."""
    try:
        resp = requests.get(
            url,
            timeout=config.ENRICH_TIMEOUT,
            allow_redirects=True,
            headers={"User-Agent": config.ENRICH_USER_AGENT},
        )
    except requests.RequestException as exc:
        logger.debug("Could not fetch %s: %s", url, exc)
        return None
    if resp.status_code != 200:
        logger.debug("Skipping %s (HTTP %d)", url, resp.status_code)
        return None
    return resp.text


def find_emails(website: str) -> list[FoundEmail]:
    """Scan the configured contact paths of a site, first sighting of each address wins."""
    root = _site_root(website)
    if root is None:
        return []
    site_domain = normalize_domain(website)

    found: dict[str, FoundEmail] = {}
    for path in config.ENRICH_PATHS:
        url = f"{root}{path}"
        html = fetch_page(url)
        if html is None:
            continue
        for email in extract_emails(html, url, site_domain):
            found.setdefault(email.email, email)

    logger.debug("%s: %d address(es) on %d page(s) scanned", root, len(found), len(config.ENRICH_PATHS))
    return list(found.values())


def enrich_lead(lead: Lead) -> dict:
    """
    Find and store emails for one lead.

    A NEW lead that gains an address becomes READY. Other statuses are
    left alone so an opted-out lead stays opted out.
    """
    result = {'lead_id': lead.id, 'found': 0, 'added': 0}
    if not lead.website:
        return result

    emails = find_emails(lead.website)
    result['found'] = len(emails)
    for email in emails:
        if add_lead_email(lead.id, email.email, email.confidence):
            result['added'] += 1

    if emails and lead.status == LeadStatus.NEW:
        update_lead_status(lead.id, LeadStatus.READY)

    logger.info("Lead %d (%s): %d email(s) found, %d new", lead.id, lead.name, len(emails), result['added'])
    return result


def enrich_leads(lead_ids: Optional[list[int]] = None, limit: Optional[int] = None) -> dict:
    """
    Enrich the given leads, or the next batch of leads with a website
    and no email.

    Returns:
        {'processed', 'emails_added', 'leads': [per-lead results], 'errors'}
    """
    if lead_ids:
        leads = get_leads(lead_ids)
        missing = set(lead_ids) - {lead.id for lead in leads}
        if missing:
            raise ValidationError(f"Unknown lead id(s): {sorted(missing)}")
    else:
        leads = get_leads_without_emails(limit or config.ENRICH_BATCH_LIMIT)

    summary = {'processed': 0, 'emails_added': 0, 'leads': [], 'errors': []}
    for lead in leads:
        try:
            result = enrich_lead(lead)
        except (requests.RequestException, ValidationError) as e:
            summary['errors'].append(f"Lead {lead.id}: {e}")
            logger.warning("Enrichment failed for lead %d: %s", lead.id, e)
            continue
        summary['processed'] += 1
        summary['emails_added'] += result['added']
        summary['leads'].append(result)

    return summary
