from leadforge import config
from leadforge.dedup import find_duplicate, normalize_domain, normalize_phone, phone_tail


def test_normalize_domain():
    assert normalize_domain("https://www.Example.com/contact") == "example.com"
    assert normalize_domain("example.com") == "example.com"
    assert normalize_domain("http://shop.example.com:8080/x") == "shop.example.com"
    assert normalize_domain("www.garage-dupont.fr") == "garage-dupont.fr"
    assert normalize_domain("") is None
    assert normalize_domain(None) is None


def test_normalize_phone():
    assert normalize_phone("+33 1 23 45 67 89") == "33123456789"
    assert normalize_phone("(01) 23-45-67-89") == "0123456789"
    assert normalize_phone("n/a") is None


def test_phone_tail_too_short():
    assert phone_tail("12 34 56") is None
    assert phone_tail("01 23 45 67 89") == "23456789"


def test_match_by_place_id(make_lead):
    lead = make_lead(place_id="ChIJ-abc")
    result = find_duplicate("ChIJ-abc", None, None)
    assert result.is_duplicate
    assert result.lead.id == lead.id
    assert result.matched_by == "place_id"


def test_match_by_domain_ignores_scheme_and_www(make_lead):
    lead = make_lead(website="https://www.garage-dupont.fr/")
    result = find_duplicate("other-id", "http://garage-dupont.fr/contact", None)
    assert result.is_duplicate
    assert result.lead.id == lead.id
    assert result.matched_by == "domain"


def test_match_by_phone_tail_across_formats(make_lead):
    lead = make_lead(phone="+33 1 23 45 67 89")
    result = find_duplicate("other-id", None, "01 23 45 67 89")
    assert result.is_duplicate
    assert result.lead.id == lead.id
    assert result.matched_by == "phone"


def test_place_id_wins_over_domain(make_lead):
    by_id = make_lead(place_id="P1")
    make_lead(website="https://example.com")
    result = find_duplicate("P1", "https://example.com", None)
    assert result.lead.id == by_id.id
    assert result.matched_by == "place_id"


def test_no_match(make_lead):
    make_lead(website="https://example.com", phone="+33 1 23 45 67 89")
    result = find_duplicate("new-id", "https://another.fr", "+33 4 99 88 77 66")
    assert not result.is_duplicate
    assert result.lead is None
    assert result.matched_by is None


def test_phone_tolerance_is_configurable(make_lead, monkeypatch):
    make_lead(phone="+33 1 23 45 67 89")
    monkeypatch.setattr(config, "PHONE_MATCH_DIGITS", 10)
    assert not find_duplicate("x", None, "01 23 45 67 89").is_duplicate


def test_same_candidate_resolves_to_same_lead(make_lead):
    lead = make_lead(place_id="P9", website="https://a.fr", phone="0102030405")
    keys = [("P9", None, None), (None, "a.fr", None), (None, None, "+33 1 02 03 04 05")]
    assert {find_duplicate(*k).lead.id for k in keys} == {lead.id}
