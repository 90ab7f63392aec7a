import itertools

import pytest

from leadforge import config
from leadforge import db
from leadforge.dedup import normalize_domain, normalize_phone
from leadforge.models import Lead, SendStatus


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "leadforge-test.db"))
    db.init_db()
    return config.DB_PATH


@pytest.fixture
def make_lead(tmp_db):
    counter = itertools.count(1)

    def _make(emails=(), website=None, phone=None, place_id=None, signals=None, **fields):
        n = next(counter)
        lead = Lead(
            place_id=place_id or f"place-{n}",
            name=fields.pop("name", f"Business {n}"),
            website=website,
            website_domain=normalize_domain(website),
            phone=phone,
            phone_digits=normalize_phone(phone),
            **fields,
        )
        lead_id = db.create_lead(lead)
        for entry in emails:
            email, confidence = entry if isinstance(entry, tuple) else (entry, 0.8)
            db.add_lead_email(lead_id, email, confidence)
        if signals is not None:
            db.set_lead_signals(lead_id, signals)
        return db.get_lead(lead_id)

    return _make


@pytest.fixture
def force_status(tmp_db):
    """Put a send row straight into a status, bypassing the worker."""

    def _force(send_id: int, status: SendStatus) -> None:
        conn = db._connect()
        try:
            conn.execute("UPDATE campaign_sends SET status = ? WHERE id = ?", (status.value, send_id))
            conn.commit()
        finally:
            conn.close()

    return _force
