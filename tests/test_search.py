import pytest

from leadforge import config, search
from leadforge import db
from leadforge.db import (
    create_group,
    create_search_run,
    get_group_lead_ids,
    get_run_lead_ids,
    get_search_run,
)
from leadforge.errors import ConfigurationError, PersistencePartialFailure, TransientProviderError, ValidationError
from leadforge.models import GridCell, Place
from leadforge.search import add_manual_lead, persist_place, run_search, search_cells

CELLS = [GridCell(48.85, 2.35, 5), GridCell(48.85, 2.42, 5), GridCell(48.90, 2.35, 5)]


def _place(pid, phone="+33 1 00 00 00 01", website=None):
    return Place(
        id=pid,
        display_name=f"Biz {pid}",
        formatted_address="1 rue de Paris, 75001 Paris",
        phone=phone,
        website_uri=website if website is not None else f"https://{pid.lower()}.fr",
    )


class FakeProvider:
    def __init__(self, pages, details=None, fail_calls=()):
        self.pages = list(pages)
        self.details = details or {}
        self.fail_calls = set(fail_calls)
        self.search_calls = 0
        self.detail_calls = []

    def text_search(self, query, lat, lng, radius_km, max_results=20):
        self.search_calls += 1
        if self.search_calls in self.fail_calls:
            raise TransientProviderError("HTTP 503")
        return [Place(**vars(p)) for p in self.pages[self.search_calls - 1]]

    def place_details(self, place_id):
        self.detail_calls.append(place_id)
        detail = self.details[place_id]
        if isinstance(detail, Exception):
            raise detail
        return detail


@pytest.fixture
def three_cells(monkeypatch):
    monkeypatch.setattr(search, "generate_grid", lambda lat, lng, radius_km: list(CELLS))


def test_cross_cell_candidates_merged_by_place_id(tmp_db):
    provider = FakeProvider([[_place("P1")], [_place("P1")], [_place("P2")]])
    found = search_cells("plombier", CELLS, provider, max_places=100)
    assert list(found.candidates) == ["P1", "P2"]
    assert found.search_calls == 3
    assert found.errors == []


def test_run_persists_new_leads(tmp_db, three_cells):
    provider = FakeProvider([[_place("P1")], [_place("P1")], [_place("P2", phone="+33 1 00 00 00 02")]])
    summary = run_search("plombier", 48.85, 2.35, 12, 50, provider=provider)

    assert summary['places_found'] == 2
    assert summary['new_leads'] == 2
    assert summary['duplicates'] == 0
    assert summary['search_calls'] == 3
    assert summary['detail_calls'] == 0
    assert provider.detail_calls == []

    run = get_search_run(summary['run_id'])
    assert run.status == "completed"
    assert run.new_leads == 2
    assert run.caps['per_run_search'] == config.PER_RUN_SEARCH_LIMIT
    assert len(get_run_lead_ids(summary['run_id'])) == 2


def test_incomplete_places_get_details(tmp_db, three_cells):
    partial = _place("P2", phone=None, website="")
    full = _place("P2", phone="+33 1 00 00 00 02")
    provider = FakeProvider([[_place("P1")], [partial], []], details={"P2": full})

    summary = run_search("plombier", 48.85, 2.35, 12, 50, provider=provider)

    assert provider.detail_calls == ["P2"]
    assert summary['detail_calls'] == 1
    lead = db.get_lead_by_place_id("P2")
    assert lead.phone_digits == "33100000002"
    assert lead.website_domain == "p2.fr"


def test_failed_cell_is_recorded_and_run_continues(tmp_db, three_cells):
    provider = FakeProvider([[_place("P1")], [_place("PX")], [_place("P2", phone="+33 1 00 00 00 02")]],
                            fail_calls={2})
    summary = run_search("plombier", 48.85, 2.35, 12, 50, provider=provider)

    assert summary['search_calls'] == 2
    assert summary['new_leads'] == 2
    assert len(summary['errors']) == 1
    assert "Cell 2" in summary['errors'][0]
    assert get_search_run(summary['run_id']).errors == summary['errors']
    assert db.get_usage("search", db.utc_today())[0] == 2


def test_failed_detail_skips_only_that_place(tmp_db, three_cells):
    provider = FakeProvider(
        [[_place("P1", website="")], [_place("P2", phone="+33 1 00 00 00 02")], []],
        details={"P1": TransientProviderError("timeout")},
    )
    summary = run_search("plombier", 48.85, 2.35, 12, 50, provider=provider)

    assert summary['new_leads'] == 1
    assert any("P1" in e for e in summary['errors'])
    assert db.get_lead_by_place_id("P1") is None
    assert db.get_lead_by_place_id("P2") is not None


def test_daily_cap_stops_remaining_cells(tmp_db, three_cells, monkeypatch):
    monkeypatch.setattr(config, "DAILY_SEARCH_LIMIT", 1)
    provider = FakeProvider([[_place("P1")], [_place("P2")], [_place("P3")]])

    summary = run_search("plombier", 48.85, 2.35, 12, 50, provider=provider)

    assert provider.search_calls == 1
    assert summary['search_calls'] == 1
    assert summary['new_leads'] == 1
    assert any("daily search cap" in e for e in summary['errors'])
    assert get_search_run(summary['run_id']).status == "completed"


def test_overlapping_runs_cannot_pass_daily_cap(tmp_db, three_cells, monkeypatch):
    monkeypatch.setattr(config, "DAILY_SEARCH_LIMIT", 1)
    inner = {}

    class OverlappingProvider(FakeProvider):
        def text_search(self, *args, **kwargs):
            if not inner:
                inner["summary"] = run_search("plombier", 48.85, 2.35, 12, 50,
                                              provider=FakeProvider([[_place("Q1")]] * 3))
            return super().text_search(*args, **kwargs)

    outer = run_search("plombier", 48.85, 2.35, 12, 50,
                       provider=OverlappingProvider([[_place("P1")]] * 3))

    assert db.get_usage("search", db.utc_today())[0] == 1
    assert outer["search_calls"] == 1
    assert inner["summary"]["search_calls"] == 0
    assert any("daily search cap" in e for e in inner["summary"]["errors"])


def test_per_run_search_budget(tmp_db, three_cells, monkeypatch):
    monkeypatch.setattr(config, "PER_RUN_SEARCH_LIMIT", 2)
    provider = FakeProvider([[_place("P1")], [_place("P2")], [_place("P3")]])
    summary = run_search("plombier", 48.85, 2.35, 12, 50, provider=provider)
    assert provider.search_calls == 2
    assert summary['errors'] == []


def test_max_places_budget_stops_search_and_storage(tmp_db, three_cells):
    provider = FakeProvider([
        [_place("P1"), _place("P2", phone="+33 1 00 00 00 02")],
        [_place("P3", phone="+33 1 00 00 00 03")],
        [],
    ])
    summary = run_search("plombier", 48.85, 2.35, 12, 1, provider=provider)
    assert provider.search_calls == 1
    assert summary['new_leads'] == 1


def test_second_run_links_existing_leads(tmp_db, three_cells):
    pages = [[_place("P1")], [], [_place("P2", phone="+33 1 00 00 00 02")]]
    first = run_search("plombier", 48.85, 2.35, 12, 50, provider=FakeProvider(pages))
    second = run_search("plombier", 48.85, 2.35, 12, 50, provider=FakeProvider(pages))

    assert first['new_leads'] == 2
    assert second['new_leads'] == 0
    assert second['duplicates'] == 2
    assert get_run_lead_ids(second['run_id']) == get_run_lead_ids(first['run_id'])


def test_results_attached_to_group(tmp_db, three_cells):
    group_id = create_group("paris")
    provider = FakeProvider([[_place("P1")], [_place("P2", phone="+33 1 00 00 00 02")], []])
    run_search("plombier", 48.85, 2.35, 12, 50, group_id=group_id, provider=provider)
    assert len(get_group_lead_ids(group_id)) == 2


def test_insert_race_links_existing_lead(tmp_db, monkeypatch):
    run_id = create_search_run("plombier", 48.85, 2.35, 5, 10, {})

    def racing_create(lead):
        db.create_lead(lead)
        raise PersistencePartialFailure("UNIQUE constraint failed: leads.place_id")

    monkeypatch.setattr(search, "create_lead", racing_create)

    assert persist_place(run_id, _place("P1"), "plombier") is False
    assert persist_place(run_id, _place("P1"), "plombier") is False
    assert len(get_run_lead_ids(run_id)) == 1


def test_manual_lead_created_with_email_and_group(tmp_db):
    group_id = create_group("salons")

    lead_id, created, matched_by = add_manual_lead(
        "Salon Marie", website="https://salon-marie.fr", phone="04 78 00 00 00",
        niche="coiffeur", email="Marie@Salon-Marie.fr", group_id=group_id,
    )

    assert created is True
    assert matched_by is None
    lead = db.get_lead(lead_id)
    assert lead.place_id is None
    assert lead.website_domain == "salon-marie.fr"
    assert [e.email for e in lead.emails] == ["marie@salon-marie.fr"]
    assert lead.emails[0].confidence == config.MANUAL_EMAIL_CONFIDENCE
    assert get_group_lead_ids(group_id) == [lead_id]


def test_manual_lead_matches_existing_by_domain_then_phone(tmp_db, make_lead):
    existing = make_lead(website="https://garage-dupont.fr", phone="+33 1 42 00 00 00")

    lead_id, created, matched_by = add_manual_lead(
        "Garage Dupont", website="www.garage-dupont.fr/contact", email="jean@garage-dupont.fr"
    )
    assert (lead_id, created, matched_by) == (existing.id, False, "domain")
    assert db.get_lead(existing.id).best_email == "jean@garage-dupont.fr"

    assert add_manual_lead("Dupont Autos", phone="01 42 00 00 00") == (existing.id, False, "phone")
    assert len(db.get_leads([existing.id, existing.id + 1])) == 1


def test_manual_lead_insert_race_returns_winner(tmp_db, monkeypatch):
    def racing_create(lead):
        db.create_lead(lead)
        raise PersistencePartialFailure("UNIQUE constraint failed: leads.website_domain")

    monkeypatch.setattr(search, "create_lead", racing_create)

    lead_id, created, matched_by = add_manual_lead("Salon Marie", website="https://salon-marie.fr")
    assert created is False
    assert matched_by == "domain"
    assert db.get_lead(lead_id).name == "Salon Marie"


@pytest.mark.parametrize("kwargs", [
    dict(name="  "),
    dict(name="Salon Marie", email="marie.salon-marie.fr"),
    dict(name="Salon Marie", group_id=99),
])
def test_manual_lead_rejects_bad_input(tmp_db, kwargs):
    with pytest.raises(ValidationError):
        add_manual_lead(**kwargs)
    assert db.get_lead(1) is None


def test_dry_run_has_no_side_effects(tmp_db):
    class Exploding:
        def text_search(self, *args, **kwargs):
            raise AssertionError("network call in dry run")

        def place_details(self, *args, **kwargs):
            raise AssertionError("network call in dry run")

    estimate = run_search("plombier", 48.85, 2.35, 20, 100, dry_run=True, provider=Exploding())

    assert estimate['dry_run'] is True
    assert estimate['cells'] > 1
    assert estimate['projected_search_calls'] == min(estimate['cells'], config.PER_RUN_SEARCH_LIMIT)
    assert estimate['total_cost'] == round(estimate['search_cost'] + estimate['detail_cost'], 2)
    assert get_search_run(1) is None


def test_dry_run_needs_no_credentials(tmp_db, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_MAPS_API_KEY", "")
    assert run_search("plombier", 48.85, 2.35, 3, 10, dry_run=True)['cells'] == 1


@pytest.mark.parametrize("kwargs", [
    dict(query="", lat=48.85, lng=2.35, radius_km=5, max_results=10),
    dict(query="plombier", lat=95, lng=2.35, radius_km=5, max_results=10),
    dict(query="plombier", lat=48.85, lng=2.35, radius_km=0, max_results=10),
    dict(query="plombier", lat=48.85, lng=2.35, radius_km=5, max_results=0),
])
def test_invalid_parameters_rejected_before_side_effects(tmp_db, kwargs):
    with pytest.raises(ValidationError):
        run_search(**kwargs, provider=FakeProvider([]))
    assert get_search_run(1) is None


def test_missing_credentials(tmp_db, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_MAPS_API_KEY", "")
    with pytest.raises(ConfigurationError):
        run_search("plombier", 48.85, 2.35, 5, 10)
    assert get_search_run(1) is None
