"""
SQLite store for leads, search runs, usage counters and campaigns.

Tables:
- leads / lead_emails / lead_signals: deduplicated businesses
- lead_groups / group_members: named lead lists
- search_runs / search_run_leads: grid search executions and their results
- api_usage: per-day request counters (atomic reservations and upserts)
- campaigns / campaign_sends / templates: outreach state
- suppression: emails and domains never to be contacted

Every function opens its own connection and closes it before returning,
so no connection is ever held across a network call.
"""

import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from leadforge import config
from leadforge.errors import PersistencePartialFailure, ValidationError
from leadforge.models import (
    AuditSignals,
    Campaign,
    CampaignSend,
    Channel,
    JobStatus,
    Lead,
    LeadEmail,
    LeadStatus,
    SearchRun,
    SendStatus,
    Template,
    is_generic_email,
    strategy_from_storage,
    strategy_to_storage,
)

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _connect() -> sqlite3.Connection:
    """Connect to the database at config.DB_PATH."""
    directory = os.path.dirname(config.DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(config.DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create all tables if they don't exist."""
    conn = _connect()
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS leads (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                place_id TEXT UNIQUE,
                name TEXT NOT NULL DEFAULT '',
                address TEXT DEFAULT '',
                phone TEXT,
                phone_digits TEXT,
                website TEXT,
                website_domain TEXT UNIQUE,
                rating REAL,
                review_count INTEGER,
                business_status TEXT,
                niche TEXT DEFAULT '',
                status TEXT NOT NULL DEFAULT 'NEW',
                score INTEGER DEFAULT 0,
                last_contacted_at TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_leads_phone ON leads(phone_digits);

            CREATE TABLE IF NOT EXISTS lead_emails (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                lead_id INTEGER NOT NULL REFERENCES leads(id),
                email TEXT NOT NULL,
                confidence REAL DEFAULT 0,
                is_generic INTEGER DEFAULT 0,
                UNIQUE(lead_id, email)
            );

            CREATE TABLE IF NOT EXISTS lead_signals (
                lead_id INTEGER PRIMARY KEY REFERENCES leads(id),
                is_accessible INTEGER,
                design_score INTEGER,
                seo_score INTEGER,
                performance_score INTEGER,
                tech_score INTEGER
            );

            CREATE TABLE IF NOT EXISTS lead_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_members (
                group_id INTEGER NOT NULL REFERENCES lead_groups(id),
                lead_id INTEGER NOT NULL REFERENCES leads(id),
                UNIQUE(group_id, lead_id)
            );

            CREATE TABLE IF NOT EXISTS search_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                query TEXT NOT NULL,
                lat REAL,
                lng REAL,
                radius_km REAL,
                max_results INTEGER,
                caps_json TEXT DEFAULT '{}',
                places_found INTEGER DEFAULT 0,
                new_leads INTEGER DEFAULT 0,
                duplicates INTEGER DEFAULT 0,
                search_calls INTEGER DEFAULT 0,
                detail_calls INTEGER DEFAULT 0,
                cost REAL DEFAULT 0,
                errors_json TEXT DEFAULT '[]',
                status TEXT DEFAULT 'running',
                started_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS search_run_leads (
                run_id INTEGER NOT NULL REFERENCES search_runs(id),
                lead_id INTEGER NOT NULL REFERENCES leads(id),
                is_new INTEGER DEFAULT 0,
                UNIQUE(run_id, lead_id)
            );

            CREATE TABLE IF NOT EXISTS api_usage (
                date TEXT NOT NULL,
                resource TEXT NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 0,
                estimated_cost REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (date, resource)
            );

            CREATE TABLE IF NOT EXISTS templates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                channel TEXT NOT NULL DEFAULT 'email',
                language TEXT NOT NULL DEFAULT 'fr',
                subject TEXT DEFAULT '',
                body TEXT NOT NULL,
                tags_json TEXT DEFAULT '[]',
                is_active INTEGER DEFAULT 1,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS campaigns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                channel TEXT NOT NULL DEFAULT 'email',
                language TEXT NOT NULL DEFAULT 'fr',
                lead_ids_json TEXT DEFAULT '[]',
                group_id INTEGER REFERENCES lead_groups(id),
                niche TEXT,
                no_website_only INTEGER DEFAULT 0,
                safe_send_mode INTEGER DEFAULT 1,
                min_delay INTEGER DEFAULT 5,
                max_delay INTEGER DEFAULT 45,
                daily_limit INTEGER DEFAULT 50,
                cooldown_days INTEGER DEFAULT 30,
                strategy_kind TEXT NOT NULL DEFAULT 'smart',
                template_ids_json TEXT DEFAULT '[]',
                sender_names_json TEXT DEFAULT '[]',
                job_status TEXT NOT NULL DEFAULT 'idle',
                total_sent INTEGER DEFAULT 0,
                total_failed INTEGER DEFAULT 0,
                total_bounced INTEGER DEFAULT 0,
                total_opened INTEGER DEFAULT 0,
                total_replied INTEGER DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS campaign_sends (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                campaign_id INTEGER NOT NULL REFERENCES campaigns(id),
                lead_id INTEGER NOT NULL REFERENCES leads(id),
                channel TEXT NOT NULL,
                address TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'QUEUED',
                template_id INTEGER REFERENCES templates(id),
                delivery_id TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                sent_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_sends_queue
                ON campaign_sends(campaign_id, status, created_at);

            CREATE TABLE IF NOT EXISTS suppression (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                value TEXT UNIQUE NOT NULL,
                kind TEXT NOT NULL,
                reason TEXT,
                added_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------

def _load_lead(conn: sqlite3.Connection, row: sqlite3.Row) -> Lead:
    emails = [
        LeadEmail(email=r['email'], confidence=r['confidence'] or 0.0, is_generic=bool(r['is_generic']))
        for r in conn.execute(
            "SELECT email, confidence, is_generic FROM lead_emails WHERE lead_id = ? ORDER BY id",
            (row['id'],),
        )
    ]
    sig = conn.execute("SELECT * FROM lead_signals WHERE lead_id = ?", (row['id'],)).fetchone()
    signals = AuditSignals()
    if sig:
        signals = AuditSignals(
            is_accessible=None if sig['is_accessible'] is None else bool(sig['is_accessible']),
            design_score=sig['design_score'],
            seo_score=sig['seo_score'],
            performance_score=sig['performance_score'],
            tech_score=sig['tech_score'],
        )
    data = dict(row)
    data['status'] = LeadStatus(data['status'])
    return Lead(**data, emails=emails, signals=signals)


def get_lead(lead_id: int) -> Optional[Lead]:
    conn = _connect()
    try:
        row = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,)).fetchone()
        return _load_lead(conn, row) if row else None
    finally:
        conn.close()


def get_leads(lead_ids: list[int]) -> list[Lead]:
    """Load leads by id, highest score first."""
    if not lead_ids:
        return []
    conn = _connect()
    try:
        placeholders = ",".join("?" for _ in lead_ids)
        rows = conn.execute(
            f"SELECT * FROM leads WHERE id IN ({placeholders}) ORDER BY score DESC, id",
            list(lead_ids),
        ).fetchall()
        return [_load_lead(conn, r) for r in rows]
    finally:
        conn.close()


def get_leads_without_emails(limit: int) -> list[Lead]:
    """Leads that have a website but no known email yet."""
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT * FROM leads
            WHERE website IS NOT NULL AND website != ''
              AND id NOT IN (SELECT lead_id FROM lead_emails)
            ORDER BY score DESC, id
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [_load_lead(conn, r) for r in rows]
    finally:
        conn.close()


def get_lead_by_place_id(place_id: str) -> Optional[Lead]:
    conn = _connect()
    try:
        row = conn.execute("SELECT * FROM leads WHERE place_id = ?", (place_id,)).fetchone()
        return _load_lead(conn, row) if row else None
    finally:
        conn.close()


def get_lead_by_domain(domain: str) -> Optional[Lead]:
    conn = _connect()
    try:
        row = conn.execute("SELECT * FROM leads WHERE website_domain = ?", (domain,)).fetchone()
        return _load_lead(conn, row) if row else None
    finally:
        conn.close()


def find_lead_by_phone_tail(tail: str) -> Optional[Lead]:
    """Oldest lead whose stored digits contain the given tail."""
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT * FROM leads WHERE phone_digits LIKE ? ORDER BY id LIMIT 1",
            (f"%{tail}%",),
        ).fetchone()
        return _load_lead(conn, row) if row else None
    finally:
        conn.close()


def create_lead(lead: Lead) -> int:
    """
    Insert a lead with its emails and signals. Returns the lead ID.

    Raises PersistencePartialFailure when a unique identity key was
    claimed by another writer since the caller's dedup check.
    """
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            INSERT INTO leads
            (place_id, name, address, phone, phone_digits, website, website_domain,
             rating, review_count, business_status, niche, status, score,
             last_contacted_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                lead.place_id or None,
                lead.name,
                lead.address,
                lead.phone,
                lead.phone_digits or None,
                lead.website,
                lead.website_domain or None,
                lead.rating,
                lead.review_count,
                lead.business_status,
                lead.niche,
                lead.status.value,
                lead.score,
                lead.last_contacted_at,
                utc_now(),
            ),
        )
        lead_id = cursor.lastrowid
        for e in lead.emails:
            conn.execute(
                "INSERT OR IGNORE INTO lead_emails (lead_id, email, confidence, is_generic) VALUES (?, ?, ?, ?)",
                (lead_id, e.email.lower(), e.confidence, int(e.is_generic)),
            )
        conn.commit()
        return lead_id
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise PersistencePartialFailure(f"Lead already exists: {e}", key=lead.place_id) from e
    finally:
        conn.close()


def add_lead_email(lead_id: int, email: str, confidence: float = 0.5) -> bool:
    """Attach an email to a lead. Returns False if it was already known."""
    email = email.strip().lower()
    if '@' not in email:
        raise ValidationError(f"Not an email address: {email}")
    conn = _connect()
    try:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO lead_emails (lead_id, email, confidence, is_generic) VALUES (?, ?, ?, ?)",
            (lead_id, email, confidence, int(is_generic_email(email))),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def set_lead_signals(lead_id: int, signals: AuditSignals) -> None:
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO lead_signals
            (lead_id, is_accessible, design_score, seo_score, performance_score, tech_score)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(lead_id) DO UPDATE SET
                is_accessible = excluded.is_accessible,
                design_score = excluded.design_score,
                seo_score = excluded.seo_score,
                performance_score = excluded.performance_score,
                tech_score = excluded.tech_score
            """,
            (
                lead_id,
                None if signals.is_accessible is None else int(signals.is_accessible),
                signals.design_score,
                signals.seo_score,
                signals.performance_score,
                signals.tech_score,
            ),
        )
        conn.commit()
    finally:
        conn.close()


def update_lead_status(
    lead_id: int,
    status: LeadStatus,
    contacted_at: Optional[str] = None,
) -> None:
    """Set a lead's status, stamping last_contacted_at when given."""
    conn = _connect()
    try:
        if contacted_at:
            conn.execute(
                "UPDATE leads SET status = ?, last_contacted_at = ? WHERE id = ?",
                (status.value, contacted_at, lead_id),
            )
        else:
            conn.execute("UPDATE leads SET status = ? WHERE id = ?", (status.value, lead_id))
        conn.commit()
    finally:
        conn.close()


def set_status_for_email(email: str, status: LeadStatus) -> int:
    """Set the status of every lead owning this email. Returns rows changed."""
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            UPDATE leads SET status = ?
            WHERE id IN (SELECT lead_id FROM lead_emails WHERE email = ?)
            """,
            (status.value, email.strip().lower()),
        )
        conn.commit()
        return cursor.rowcount
    finally:
        conn.close()


def query_leads(
    channel: Channel = Channel.EMAIL,
    group_id: Optional[int] = None,
    niche: Optional[str] = None,
    no_website_only: bool = False,
    safe_send_mode: bool = False,
) -> list[Lead]:
    """
    Candidate leads for a filtered campaign audience, highest score first.

    Only NEW and READY leads with an address for the channel are returned.
    """
    clauses = ["l.status IN (?, ?)"]
    params: list = [LeadStatus.NEW.value, LeadStatus.READY.value]

    if channel == Channel.EMAIL:
        clauses.append("EXISTS (SELECT 1 FROM lead_emails e WHERE e.lead_id = l.id)")
    else:
        clauses.append("l.phone_digits IS NOT NULL AND l.phone_digits != ''")

    if group_id is not None:
        clauses.append("l.id IN (SELECT lead_id FROM group_members WHERE group_id = ?)")
        params.append(group_id)

    if niche:
        clauses.append("LOWER(l.niche) LIKE ?")
        params.append(f"%{niche.lower()}%")

    if no_website_only:
        clauses.append("(l.website IS NULL OR l.website = '')")

    if safe_send_mode:
        clauses.append("l.last_contacted_at IS NULL")

    conn = _connect()
    try:
        rows = conn.execute(
            f"SELECT l.* FROM leads l WHERE {' AND '.join(clauses)} ORDER BY l.score DESC, l.id",
            params,
        ).fetchall()
        return [_load_lead(conn, r) for r in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

def create_group(name: str) -> int:
    """Create a lead group (or return the existing one with that name)."""
    conn = _connect()
    try:
        conn.execute(
            "INSERT OR IGNORE INTO lead_groups (name, created_at) VALUES (?, ?)",
            (name, utc_now()),
        )
        conn.commit()
        row = conn.execute("SELECT id FROM lead_groups WHERE name = ?", (name,)).fetchone()
        return row['id']
    finally:
        conn.close()


def group_exists(group_id: int) -> bool:
    conn = _connect()
    try:
        return conn.execute("SELECT 1 FROM lead_groups WHERE id = ?", (group_id,)).fetchone() is not None
    finally:
        conn.close()


def add_lead_to_group(group_id: int, lead_id: int) -> bool:
    """Idempotent membership insert. Returns True if newly added."""
    conn = _connect()
    try:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO group_members (group_id, lead_id) VALUES (?, ?)",
            (group_id, lead_id),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def get_group_lead_ids(group_id: int) -> list[int]:
    conn = _connect()
    try:
        rows = conn.execute(
            "SELECT lead_id FROM group_members WHERE group_id = ? ORDER BY lead_id",
            (group_id,),
        ).fetchall()
        return [r['lead_id'] for r in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Search runs
# ---------------------------------------------------------------------------

def create_search_run(
    query: str,
    lat: float,
    lng: float,
    radius_km: float,
    max_results: int,
    caps: dict,
) -> int:
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            INSERT INTO search_runs
            (query, lat, lng, radius_km, max_results, caps_json, status, started_at)
            VALUES (?, ?, ?, ?, ?, ?, 'running', ?)
            """,
            (query, lat, lng, radius_km, max_results, json.dumps(caps), utc_now()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def link_lead_to_run(run_id: int, lead_id: int, is_new: bool = False) -> bool:
    """Upsert a (run, lead) link. Returns False if the link already existed."""
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            INSERT INTO search_run_leads (run_id, lead_id, is_new) VALUES (?, ?, ?)
            ON CONFLICT(run_id, lead_id) DO NOTHING
            """,
            (run_id, lead_id, int(is_new)),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def get_run_lead_ids(run_id: int) -> list[int]:
    conn = _connect()
    try:
        rows = conn.execute(
            "SELECT lead_id FROM search_run_leads WHERE run_id = ? ORDER BY lead_id",
            (run_id,),
        ).fetchall()
        return [r['lead_id'] for r in rows]
    finally:
        conn.close()


def finalize_search_run(
    run_id: int,
    places_found: int,
    new_leads: int,
    duplicates: int,
    search_calls: int,
    detail_calls: int,
    cost: float,
    errors: list[str],
) -> bool:
    """Persist run totals and mark it completed. Only the first call wins."""
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            UPDATE search_runs SET
                places_found = ?, new_leads = ?, duplicates = ?,
                search_calls = ?, detail_calls = ?, cost = ?,
                errors_json = ?, status = 'completed', completed_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (
                places_found, new_leads, duplicates, search_calls, detail_calls,
                cost, json.dumps(errors), utc_now(), run_id,
            ),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def get_search_run(run_id: int) -> Optional[SearchRun]:
    conn = _connect()
    try:
        row = conn.execute("SELECT * FROM search_runs WHERE id = ?", (run_id,)).fetchone()
        return SearchRun(**dict(row)) if row else None
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# API usage counters
# ---------------------------------------------------------------------------

def increment_usage(resource: str, count: int, cost: float, day: Optional[str] = None) -> None:
    """Atomically add to a (day, resource) counter in a single statement."""
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO api_usage (date, resource, request_count, estimated_cost)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(date, resource) DO UPDATE SET
                request_count = request_count + excluded.request_count,
                estimated_cost = estimated_cost + excluded.estimated_cost
            """,
            (day or utc_today(), resource, count, cost),
        )
        conn.commit()
    finally:
        conn.close()


def reserve_usage(
    resource: str,
    cost: float,
    daily_limit: int,
    monthly_limit: int,
    count: int = 1,
    day: Optional[str] = None,
) -> tuple[Optional[str], int]:
    """
    Take `count` requests from today's counter if both caps allow it.

    Check and increment run under one write lock (BEGIN IMMEDIATE), so two
    processes at limit-1 cannot both get through.

    Returns:
        (None, used_after) when reserved, or (blocking_scope, used) when
        the 'daily' or 'monthly' cap is already reached.
    """
    day = day or utc_today()
    conn = _connect()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        usage_sql = "SELECT COALESCE(SUM(request_count), 0) AS n FROM api_usage WHERE resource = ? AND date LIKE ?"
        daily_used = conn.execute(usage_sql, (resource, day)).fetchone()['n']
        monthly_used = conn.execute(usage_sql, (resource, f"{day[:7]}%")).fetchone()['n']

        if daily_used + count > daily_limit:
            conn.execute("ROLLBACK")
            return 'daily', daily_used
        if monthly_used + count > monthly_limit:
            conn.execute("ROLLBACK")
            return 'monthly', monthly_used

        conn.execute(
            """
            INSERT INTO api_usage (date, resource, request_count, estimated_cost)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(date, resource) DO UPDATE SET
                request_count = request_count + excluded.request_count,
                estimated_cost = estimated_cost + excluded.estimated_cost
            """,
            (day, resource, count, cost),
        )
        conn.execute("COMMIT")
        return None, daily_used + count
    except sqlite3.Error:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def get_usage(resource: str, period_prefix: str) -> tuple[int, float]:
    """
    Sum request count and cost for a resource over a period.

    period_prefix is a full date ("2024-05-03") or a month ("2024-05").
    """
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(request_count), 0) AS n, COALESCE(SUM(estimated_cost), 0) AS c
            FROM api_usage WHERE resource = ? AND date LIKE ?
            """,
            (resource, f"{period_prefix}%"),
        ).fetchone()
        return row['n'], row['c']
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def _row_to_template(row: sqlite3.Row) -> Template:
    return Template(
        id=row['id'],
        name=row['name'],
        channel=Channel(row['channel']),
        language=row['language'],
        subject=row['subject'] or "",
        body=row['body'],
        tags=json.loads(row['tags_json'] or "[]"),
        is_active=bool(row['is_active']),
    )


def create_template(template: Template) -> int:
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            INSERT INTO templates (name, channel, language, subject, body, tags_json, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                template.name,
                template.channel.value,
                template.language,
                template.subject,
                template.body,
                json.dumps([t.lower() for t in template.tags]),
                int(template.is_active),
                utc_now(),
            ),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_template(template_id: int) -> Optional[Template]:
    conn = _connect()
    try:
        row = conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
        return _row_to_template(row) if row else None
    finally:
        conn.close()


def list_templates(
    channel: Optional[Channel] = None,
    language: Optional[str] = None,
    active_only: bool = True,
) -> list[Template]:
    clauses = []
    params: list = []
    if channel is not None:
        clauses.append("channel = ?")
        params.append(channel.value)
    if language:
        clauses.append("language = ?")
        params.append(language)
    if active_only:
        clauses.append("is_active = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    conn = _connect()
    try:
        rows = conn.execute(f"SELECT * FROM templates {where} ORDER BY id", params).fetchall()
        return [_row_to_template(r) for r in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------

CAMPAIGN_COUNTERS = ('total_sent', 'total_failed', 'total_bounced', 'total_opened', 'total_replied')


def _row_to_campaign(row: sqlite3.Row) -> Campaign:
    return Campaign(
        id=row['id'],
        name=row['name'],
        channel=Channel(row['channel']),
        language=row['language'],
        lead_ids=json.loads(row['lead_ids_json'] or "[]"),
        group_id=row['group_id'],
        niche=row['niche'],
        no_website_only=bool(row['no_website_only']),
        safe_send_mode=bool(row['safe_send_mode']),
        min_delay=row['min_delay'],
        max_delay=row['max_delay'],
        daily_limit=row['daily_limit'],
        cooldown_days=row['cooldown_days'],
        strategy=strategy_from_storage(row['strategy_kind'], json.loads(row['template_ids_json'] or "[]")),
        sender_names=json.loads(row['sender_names_json'] or "[]"),
        job_status=JobStatus(row['job_status']),
        total_sent=row['total_sent'],
        total_failed=row['total_failed'],
        total_bounced=row['total_bounced'],
        total_opened=row['total_opened'],
        total_replied=row['total_replied'],
        created_at=row['created_at'],
    )


def create_campaign(campaign: Campaign) -> int:
    kind, template_ids = strategy_to_storage(campaign.strategy)
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            INSERT INTO campaigns
            (name, channel, language, lead_ids_json, group_id, niche, no_website_only,
             safe_send_mode, min_delay, max_delay, daily_limit, cooldown_days,
             strategy_kind, template_ids_json, sender_names_json, job_status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                campaign.name,
                campaign.channel.value,
                campaign.language,
                json.dumps(list(campaign.lead_ids)),
                campaign.group_id,
                campaign.niche,
                int(campaign.no_website_only),
                int(campaign.safe_send_mode),
                campaign.min_delay,
                campaign.max_delay,
                campaign.daily_limit,
                campaign.cooldown_days,
                kind,
                json.dumps(template_ids),
                json.dumps(list(campaign.sender_names)),
                campaign.job_status.value,
                utc_now(),
            ),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_campaign(campaign_id: int) -> Optional[Campaign]:
    conn = _connect()
    try:
        row = conn.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        return _row_to_campaign(row) if row else None
    finally:
        conn.close()


def transition_job_status(campaign_id: int, target: JobStatus) -> bool:
    """
    Move a campaign to `target` if the transition table allows it from
    the current state. Returns False if nothing changed.
    """
    sources = [s.value for s in JobStatus if s.can_transition(target)]
    placeholders = ",".join("?" for _ in sources)
    conn = _connect()
    try:
        cursor = conn.execute(
            f"UPDATE campaigns SET job_status = ? WHERE id = ? AND job_status IN ({placeholders})",
            [target.value, campaign_id, *sources],
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def increment_campaign_counter(campaign_id: int, counter: str, amount: int = 1) -> None:
    if counter not in CAMPAIGN_COUNTERS:
        raise ValueError(f"Unknown campaign counter: {counter}")
    conn = _connect()
    try:
        conn.execute(
            f"UPDATE campaigns SET {counter} = {counter} + ? WHERE id = ?",
            (amount, campaign_id),
        )
        conn.commit()
    finally:
        conn.close()


def set_campaign_engagement(campaign_id: int, opened: int, bounced: int) -> None:
    """Overwrite provider-reported engagement totals."""
    conn = _connect()
    try:
        conn.execute(
            "UPDATE campaigns SET total_opened = ?, total_bounced = ? WHERE id = ?",
            (opened, bounced, campaign_id),
        )
        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Campaign sends
# ---------------------------------------------------------------------------

def _row_to_send(row: sqlite3.Row) -> CampaignSend:
    data = dict(row)
    data['channel'] = Channel(data['channel'])
    data['status'] = SendStatus(data['status'])
    return CampaignSend(**data)


def create_send(
    campaign_id: int,
    lead_id: int,
    channel: Channel,
    address: str,
    created_at: Optional[str] = None,
) -> int:
    """Create a QUEUED send. Returns the send ID."""
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            INSERT INTO campaign_sends (campaign_id, lead_id, channel, address, status, created_at)
            VALUES (?, ?, ?, ?, 'QUEUED', ?)
            """,
            (campaign_id, lead_id, channel.value, address, created_at or utc_now()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_send(send_id: int) -> Optional[CampaignSend]:
    conn = _connect()
    try:
        row = conn.execute("SELECT * FROM campaign_sends WHERE id = ?", (send_id,)).fetchone()
        return _row_to_send(row) if row else None
    finally:
        conn.close()


def has_send_in(campaign_id: int, lead_id: int, statuses: set) -> bool:
    placeholders = ",".join("?" for _ in statuses)
    conn = _connect()
    try:
        row = conn.execute(
            f"""
            SELECT 1 FROM campaign_sends
            WHERE campaign_id = ? AND lead_id = ? AND status IN ({placeholders})
            LIMIT 1
            """,
            [campaign_id, lead_id, *[s.value for s in statuses]],
        ).fetchone()
        return row is not None
    finally:
        conn.close()


def count_processed_sends_today(campaign_id: int) -> int:
    """Sends created today for this campaign that have left QUEUED."""
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT COUNT(*) AS n FROM campaign_sends
            WHERE campaign_id = ? AND status != 'QUEUED' AND substr(created_at, 1, 10) = ?
            """,
            (campaign_id, utc_today()),
        ).fetchone()
        return row['n']
    finally:
        conn.close()


def claim_next_send(campaign_id: int) -> Optional[CampaignSend]:
    """
    Claim the oldest QUEUED send for a campaign by flipping it to SENDING.

    The conditional UPDATE is the claim: if another worker flipped the same
    row first, rowcount is 0 and we move on to the next oldest row.
    """
    conn = _connect()
    try:
        while True:
            row = conn.execute(
                """
                SELECT id FROM campaign_sends
                WHERE campaign_id = ? AND status = 'QUEUED'
                ORDER BY created_at, id LIMIT 1
                """,
                (campaign_id,),
            ).fetchone()
            if row is None:
                return None

            cursor = conn.execute(
                "UPDATE campaign_sends SET status = 'SENDING' WHERE id = ? AND status = 'QUEUED'",
                (row['id'],),
            )
            conn.commit()
            if cursor.rowcount == 1:
                claimed = conn.execute(
                    "SELECT * FROM campaign_sends WHERE id = ?", (row['id'],)
                ).fetchone()
                return _row_to_send(claimed)
            logger.debug("Send %d claimed by another worker, retrying", row['id'])
    finally:
        conn.close()


def complete_send(
    send_id: int,
    status: SendStatus,
    template_id: Optional[int] = None,
    delivery_id: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    """Finalize a claimed send. Returns False if it was not in SENDING."""
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            UPDATE campaign_sends
            SET status = ?, template_id = ?, delivery_id = ?, error = ?, sent_at = ?
            WHERE id = ? AND status = 'SENDING'
            """,
            (
                status.value,
                template_id,
                delivery_id,
                error,
                utc_now() if status in (SendStatus.SENT, SendStatus.BOUNCED) else None,
                send_id,
            ),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def set_send_status(send_id: int, status: SendStatus, expected: SendStatus) -> bool:
    """Move a send between delivered/engaged states, e.g. SENT to REPLIED."""
    conn = _connect()
    try:
        cursor = conn.execute(
            "UPDATE campaign_sends SET status = ? WHERE id = ? AND status = ?",
            (status.value, send_id, expected.value),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def count_sends_by_status(campaign_id: int) -> dict:
    conn = _connect()
    try:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM campaign_sends WHERE campaign_id = ? GROUP BY status",
            (campaign_id,),
        ).fetchall()
        return {r['status']: r['n'] for r in rows}
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Suppression
# ---------------------------------------------------------------------------

def add_suppression(value: str, reason: str = "") -> bool:
    """Suppress an email (contains '@') or a whole domain."""
    value = value.strip().lower()
    if not value:
        raise ValidationError("Suppression value is empty")
    kind = 'email' if '@' in value else 'domain'
    conn = _connect()
    try:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO suppression (value, kind, reason, added_at) VALUES (?, ?, ?, ?)",
            (value, kind, reason, utc_now()),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def remove_suppression(value: str) -> bool:
    conn = _connect()
    try:
        cursor = conn.execute("DELETE FROM suppression WHERE value = ?", (value.strip().lower(),))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def find_suppressed(values: list[str]) -> Optional[str]:
    """Return the first of the given emails/domains that is suppressed."""
    values = [v.strip().lower() for v in values if v and v.strip()]
    if not values:
        return None
    placeholders = ",".join("?" for _ in values)
    conn = _connect()
    try:
        row = conn.execute(
            f"SELECT value FROM suppression WHERE value IN ({placeholders}) ORDER BY id LIMIT 1",
            values,
        ).fetchone()
        return row['value'] if row else None
    finally:
        conn.close()


def list_suppression() -> list[dict]:
    conn = _connect()
    try:
        rows = conn.execute("SELECT * FROM suppression ORDER BY added_at DESC").fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()
