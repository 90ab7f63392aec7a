"""
Capped grid search.

A run walks the grid one cell at a time, reserving cap room before every paid
call, merges candidates across overlapping cells by place id, then
enriches and persists each unique candidate through the deduplicator.

Failures are isolated per cell and per place: they are appended to the
run's error list and the loop moves on. Cap exhaustion stops only the
resource that ran out; results already collected are still persisted.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

from leadforge import config, places
from leadforge.db import (
    add_lead_email,
    add_lead_to_group,
    create_lead,
    create_search_run,
    finalize_search_run,
    group_exists,
    link_lead_to_run,
)
from leadforge.dedup import find_duplicate, normalize_domain, normalize_phone
from leadforge.errors import CapExceededError, LeadforgeError, PersistencePartialFailure, ValidationError
from leadforge.grid import estimate_cells, generate_grid
from leadforge.models import GridCell, Lead, Place
from leadforge.usage import DETAIL, SEARCH, estimate_cost, release_request, reserve_request

logger = logging.getLogger(__name__)


@dataclass
class CellSearchResult:
    candidates: dict[str, Place] = field(default_factory=dict)
    search_calls: int = 0
    errors: list[str] = field(default_factory=list)


def validate_search_params(
    query: str,
    lat: float,
    lng: float,
    radius_km: float,
    max_results: int,
) -> None:
    if not query or not query.strip():
        raise ValidationError("query is required")
    if lat is None or not -90 <= lat <= 90:
        raise ValidationError("lat must be between -90 and 90")
    if lng is None or not -180 <= lng <= 180:
        raise ValidationError("lng must be between -180 and 180")
    if radius_km is None or radius_km <= 0:
        raise ValidationError("radius_km must be positive")
    if max_results is None or max_results < 1:
        raise ValidationError("max_results must be at least 1")


def search_cells(
    query: str,
    cells: list[GridCell],
    provider,
    max_places: int,
) -> CellSearchResult:
    """Search cells in order, merging candidates by place id."""
    result = CellSearchResult()

    for index, cell in enumerate(cells, start=1):
        if result.search_calls >= config.PER_RUN_SEARCH_LIMIT:
            logger.info("Per-run search budget (%d) used, stopping at cell %d/%d",
                        config.PER_RUN_SEARCH_LIMIT, index, len(cells))
            break
        if len(result.candidates) >= max_places:
            logger.info("Collected %d places, stopping at cell %d/%d",
                        len(result.candidates), index, len(cells))
            break

        try:
            reserve_request(SEARCH)
        except CapExceededError as e:
            result.errors.append(f"Search halted at cell {index}: {e}")
            logger.warning("Search halted at cell %d: %s", index, e)
            break

        try:
            found = provider.text_search(
                query, cell.lat, cell.lng, cell.radius_km, config.MAX_RESULTS_PER_PAGE
            )
        except (LeadforgeError, requests.RequestException) as e:
            release_request(SEARCH)
            result.errors.append(f"Cell {index} ({cell.lat:.4f}, {cell.lng:.4f}): {e}")
            logger.warning("Cell %d failed: %s", index, e)
            continue

        result.search_calls += 1

        new_in_cell = 0
        for place in found:
            existing = result.candidates.get(place.id)
            if existing:
                existing.merge(place)
            else:
                result.candidates[place.id] = place
                new_in_cell += 1

        logger.info("Cell %d/%d: %d results, %d new (total %d)",
                    index, len(cells), len(found), new_in_cell, len(result.candidates))

    return result


def _lead_from_place(place: Place, niche: str) -> Lead:
    return Lead(
        place_id=place.id,
        name=place.display_name,
        address=place.formatted_address,
        phone=place.phone,
        phone_digits=normalize_phone(place.phone),
        website=place.website_uri,
        website_domain=normalize_domain(place.website_uri),
        rating=place.rating,
        review_count=place.user_rating_count,
        business_status=place.business_status,
        niche=niche,
    )


def _link_existing(run_id: int, lead_id: int, group_id: Optional[int]) -> None:
    link_lead_to_run(run_id, lead_id)
    if group_id is not None:
        add_lead_to_group(group_id, lead_id)


def persist_place(run_id: int, place: Place, niche: str, group_id: Optional[int] = None) -> bool:
    """
    Dedup and store one place. Returns True if a new lead was created.

    A unique-key race on insert means another writer created the lead
    first; dedup runs again and the winner is linked instead.
    """
    match = find_duplicate(place.id, place.website_uri, place.phone)
    if match.is_duplicate:
        logger.debug("Place %s is lead %d (matched by %s)", place.id, match.lead.id, match.matched_by)
        _link_existing(run_id, match.lead.id, group_id)
        return False

    try:
        lead_id = create_lead(_lead_from_place(place, niche))
    except PersistencePartialFailure:
        match = find_duplicate(place.id, place.website_uri, place.phone)
        if not match.is_duplicate:
            raise
        logger.debug("Place %s inserted concurrently as lead %d", place.id, match.lead.id)
        _link_existing(run_id, match.lead.id, group_id)
        return False

    link_lead_to_run(run_id, lead_id, is_new=True)
    if group_id is not None:
        add_lead_to_group(group_id, lead_id)
    return True


def add_manual_lead(
    name: str,
    website: Optional[str] = None,
    phone: Optional[str] = None,
    address: str = "",
    niche: str = "",
    email: Optional[str] = None,
    group_id: Optional[int] = None,
) -> tuple[int, bool, Optional[str]]:
    """
    Store a lead entered by hand, deduplicated by website domain and phone
    like search results are.

    Returns (lead_id, created, matched_by). An email is attached to
    whichever lead wins, new or existing.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Lead name must not be empty")
    if email and "@" not in email:
        raise ValidationError(f"Invalid email address: {email}")
    if group_id is not None and not group_exists(group_id):
        raise ValidationError(f"Lead group {group_id} does not exist")

    match = find_duplicate(None, website, phone)
    if not match.is_duplicate:
        lead = Lead(
            name=name,
            address=address,
            phone=phone,
            phone_digits=normalize_phone(phone),
            website=website,
            website_domain=normalize_domain(website),
            niche=niche,
        )
        try:
            lead_id = create_lead(lead)
        except PersistencePartialFailure:
            match = find_duplicate(None, website, phone)
            if not match.is_duplicate:
                raise

    if match.is_duplicate:
        lead_id = match.lead.id
        logger.info("'%s' is already lead %d (matched by %s)", name, lead_id, match.matched_by)
    else:
        logger.info("Created lead %d for '%s'", lead_id, name)

    if email:
        add_lead_email(lead_id, email, config.MANUAL_EMAIL_CONFIDENCE)
    if group_id is not None:
        add_lead_to_group(group_id, lead_id)
    return lead_id, not match.is_duplicate, match.matched_by


def _dry_run_estimate(cell_count: int, max_places: int) -> dict:
    search_calls = min(cell_count, config.PER_RUN_SEARCH_LIMIT)
    detail_calls = min(max_places, config.PER_RUN_DETAIL_LIMIT)
    return {
        'dry_run': True,
        'cells': cell_count,
        'projected_search_calls': search_calls,
        'projected_detail_calls': detail_calls,
        'max_places': max_places,
        **estimate_cost(search_calls, detail_calls),
    }


def run_search(
    query: str,
    lat: float,
    lng: float,
    radius_km: float,
    max_results: int,
    dry_run: bool = False,
    group_id: Optional[int] = None,
    provider=None,
) -> dict:
    """
    Run (or, with dry_run, cost out) a capped grid search.

    `provider` must offer text_search() and place_details() like the
    leadforge.places module, which is the default.

    Returns a run summary dict, or a cost estimate dict for dry runs.
    """
    validate_search_params(query, lat, lng, radius_km, max_results)
    query = query.strip()
    max_places = min(max_results, config.PER_RUN_MAX_PLACES)

    if dry_run:
        return _dry_run_estimate(estimate_cells(lat, lng, radius_km), max_places)

    cells = generate_grid(lat, lng, radius_km)

    if provider is None:
        places.ensure_configured()
        provider = places

    if group_id is not None and not group_exists(group_id):
        raise ValidationError(f"Group {group_id} does not exist")

    run_id = create_search_run(query, lat, lng, radius_km, max_results, config.get_caps())
    logger.info("Search run %d: '%s' at (%.4f, %.4f) r=%.1fkm over %d cells",
                run_id, query, lat, lng, radius_km, len(cells))

    found = search_cells(query, cells, provider, max_places)
    errors = list(found.errors)

    detail_calls = 0
    details_blocked = False
    new_leads = 0
    duplicates = 0
    processed = 0

    for place in found.candidates.values():
        if processed >= max_places:
            break

        if not place.is_complete and not details_blocked:
            if detail_calls >= config.PER_RUN_DETAIL_LIMIT:
                logger.info("Per-run detail budget (%d) used", config.PER_RUN_DETAIL_LIMIT)
                details_blocked = True
            else:
                try:
                    reserve_request(DETAIL)
                except CapExceededError as e:
                    errors.append(f"Details halted: {e}")
                    logger.warning("Details halted: %s", e)
                    details_blocked = True

            if not details_blocked:
                try:
                    details = provider.place_details(place.id)
                except (LeadforgeError, requests.RequestException) as e:
                    release_request(DETAIL)
                    errors.append(f"Place {place.id}: {e}")
                    logger.warning("Details for %s failed: %s", place.id, e)
                    continue
                detail_calls += 1
                place = details.merge(place)

        try:
            if persist_place(run_id, place, query, group_id):
                new_leads += 1
            else:
                duplicates += 1
            processed += 1
        except LeadforgeError as e:
            errors.append(f"Place {place.id}: {e}")
            logger.warning("Could not store %s: %s", place.id, e)

    cost = estimate_cost(found.search_calls, detail_calls)['total_cost']
    finalize_search_run(
        run_id,
        places_found=len(found.candidates),
        new_leads=new_leads,
        duplicates=duplicates,
        search_calls=found.search_calls,
        detail_calls=detail_calls,
        cost=cost,
        errors=errors,
    )
    logger.info("Search run %d completed: %d places, %d new, %d duplicates, %d errors, $%.2f",
                run_id, len(found.candidates), new_leads, duplicates, len(errors), cost)

    return {
        'run_id': run_id,
        'status': 'completed',
        'cells': len(cells),
        'places_found': len(found.candidates),
        'new_leads': new_leads,
        'duplicates': duplicates,
        'search_calls': found.search_calls,
        'detail_calls': detail_calls,
        'cost': cost,
        'errors': errors,
    }
