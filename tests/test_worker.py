import smtplib

import pytest

from leadforge import config, db
from leadforge.db import (
    create_send,
    find_suppressed,
    get_campaign,
    get_lead,
    get_send,
    transition_job_status,
)
from leadforge.models import Channel, JobStatus, LeadStatus, SendStatus
from leadforge.outreach.manager import create_campaign, create_template
from leadforge.outreach.queue import enqueue_campaign
from leadforge.outreach.sender import SendResult
from leadforge.outreach.worker import next_delay, poll_worker, run_campaign


class FakeMailer:
    def __init__(self, results=None):
        self.calls = []
        self.results = list(results or [])

    def __call__(self, to, subject, text, sender_name, tags):
        self.calls.append({'to': to, 'subject': subject, 'text': text, 'sender': sender_name, 'tags': tags})
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SendResult(success=True, delivery_id=f"<msg-{len(self.calls)}@test>")


@pytest.fixture
def campaign_id(tmp_db):
    template_id = create_template("Intro", "Bonjour {company_name}", subject="Pour {company_name}")
    return create_campaign("Worker", template_ids=[template_id], sender_names=["Julie"])


def test_sends_are_processed_oldest_first(make_lead, campaign_id):
    leads = [make_lead(emails=[f"owner{i}@biz{i}.fr"]) for i in range(3)]
    # inserted newest first so ids run opposite to creation time
    create_send(campaign_id, leads[2].id, Channel.EMAIL, "owner2@biz2.fr", created_at="2024-06-01T10:00:03+00:00")
    create_send(campaign_id, leads[1].id, Channel.EMAIL, "owner1@biz1.fr", created_at="2024-06-01T10:00:02+00:00")
    create_send(campaign_id, leads[0].id, Channel.EMAIL, "owner0@biz0.fr", created_at="2024-06-01T10:00:01+00:00")
    transition_job_status(campaign_id, JobStatus.RUNNING)

    mailer = FakeMailer()
    for _ in range(3):
        assert poll_worker(campaign_id, mailer)['processed'] == 1

    assert [c['to'] for c in mailer.calls] == ["owner0@biz0.fr", "owner1@biz1.fr", "owner2@biz2.fr"]


def test_empty_queue_finishes_without_changing_counters(campaign_id):
    transition_job_status(campaign_id, JobStatus.RUNNING)
    before = get_campaign(campaign_id)

    outcome = poll_worker(campaign_id, FakeMailer())

    after = get_campaign(campaign_id)
    assert outcome == {'job_status': 'done', 'processed': 0, 'result': None}
    assert after.job_status == JobStatus.DONE
    assert (after.total_sent, after.total_failed, after.total_bounced) == \
        (before.total_sent, before.total_failed, before.total_bounced)


def test_idle_campaign_is_a_no_op(make_lead, campaign_id):
    lead = make_lead(emails=["jean@a.fr"])
    send_id = create_send(campaign_id, lead.id, Channel.EMAIL, "jean@a.fr")
    mailer = FakeMailer()

    outcome = poll_worker(campaign_id, mailer)

    assert outcome['processed'] == 0
    assert outcome['job_status'] == "idle"
    assert mailer.calls == []
    assert get_send(send_id).status == SendStatus.QUEUED


def test_successful_send(make_lead, campaign_id):
    lead = make_lead(name="Garage Dupont", emails=["jean@garage-dupont.fr"])
    enqueue_campaign(campaign_id)
    mailer = FakeMailer()

    outcome = poll_worker(campaign_id, mailer)

    assert outcome['processed'] == 1
    assert outcome['result']['status'] == "SENT"
    call = mailer.calls[0]
    assert call['subject'] == "Pour Garage Dupont"
    assert call['text'].startswith("Bonjour Garage Dupont")
    assert "unsubscribe?email=jean%40garage-dupont.fr" in call['text']
    assert call['sender'] == "Julie"
    assert call['tags'] == [str(campaign_id)]

    send = get_send(outcome['send_id'])
    assert send.status == SendStatus.SENT
    assert send.delivery_id == "<msg-1@test>"
    assert send.template_id is not None

    updated = get_lead(lead.id)
    assert updated.status == LeadStatus.SENT
    assert updated.last_contacted_at is not None
    assert get_campaign(campaign_id).total_sent == 1


def test_failed_send(make_lead, campaign_id):
    make_lead(emails=["jean@a.fr"])
    enqueue_campaign(campaign_id)

    outcome = poll_worker(campaign_id, FakeMailer([SendResult(success=False, error="451 try later")]))

    assert outcome['result']['status'] == "FAILED"
    send = get_send(outcome['send_id'])
    assert send.status == SendStatus.FAILED
    assert send.error == "451 try later"
    campaign = get_campaign(campaign_id)
    assert campaign.total_failed == 1
    assert campaign.total_sent == 0


def test_mailer_exception_marks_send_failed(make_lead, campaign_id):
    make_lead(emails=["jean@a.fr"])
    enqueue_campaign(campaign_id)

    outcome = poll_worker(campaign_id, FakeMailer([smtplib.SMTPServerDisconnected("gone")]))

    assert get_send(outcome['send_id']).status == SendStatus.FAILED
    assert get_campaign(campaign_id).total_failed == 1


def test_refused_recipient_fails_send_and_suppresses_address(make_lead, campaign_id):
    lead = make_lead(emails=["ghost@a.fr"])
    enqueue_campaign(campaign_id)

    outcome = poll_worker(campaign_id, FakeMailer([SendResult(success=False, error="550", bounced=True)]))

    assert outcome['result']['status'] == "FAILED"
    assert outcome['result']['bounced'] is True
    send = get_send(outcome['send_id'])
    assert send.status == SendStatus.FAILED
    assert send.error == "550"
    assert get_lead(lead.id).status == LeadStatus.BOUNCED
    assert find_suppressed(["ghost@a.fr"]) == "ghost@a.fr"
    campaign = get_campaign(campaign_id)
    assert campaign.total_failed == 1
    assert campaign.total_bounced == 0


def test_missing_template_fails_send(make_lead, tmp_db):
    template_id = create_template("Gone", "x", subject="y")
    campaign_id = create_campaign("No template", template_ids=[template_id])
    make_lead(emails=["jean@a.fr"])
    enqueue_campaign(campaign_id)

    conn = db._connect()
    try:
        conn.execute("UPDATE templates SET is_active = 0")
        conn.commit()
    finally:
        conn.close()

    outcome = poll_worker(campaign_id, FakeMailer())

    assert outcome['result']['status'] == "FAILED"
    assert outcome['result']['error'] == "No template available"


def test_whatsapp_produces_chat_link(make_lead, tmp_db):
    template_id = create_template("Chat", "Bonjour {company_name}", channel=Channel.WHATSAPP)
    campaign_id = create_campaign("Chat", channel=Channel.WHATSAPP, template_ids=[template_id])
    lead = make_lead(name="Salon Marie", phone="+33 6 12 34 56 78")
    enqueue_campaign(campaign_id)
    mailer = FakeMailer()

    outcome = poll_worker(campaign_id, mailer)

    assert mailer.calls == []
    assert outcome['result']['chat_link'].startswith("https://wa.me/33612345678?text=Bonjour%20Salon%20Marie")
    send = get_send(outcome['send_id'])
    assert send.status == SendStatus.SENT
    assert send.delivery_id is None
    assert get_lead(lead.id).status == LeadStatus.SENT


def test_claimed_send_is_never_reprocessed(make_lead, campaign_id):
    make_lead(emails=["a@a.fr"])
    make_lead(emails=["b@b.fr"])
    enqueue_campaign(campaign_id)
    mailer = FakeMailer()

    first = poll_worker(campaign_id, mailer)
    second = poll_worker(campaign_id, mailer)
    third = poll_worker(campaign_id, mailer)

    assert first['send_id'] != second['send_id']
    assert third['processed'] == 0
    assert len(mailer.calls) == 2


def test_next_delay_within_bounds(campaign_id):
    campaign = get_campaign(campaign_id)
    delays = [next_delay(campaign) for _ in range(100)]
    assert all(config.DEFAULT_MIN_DELAY <= d <= config.DEFAULT_MAX_DELAY for d in delays)


def test_run_campaign_stops_after_max_sends(make_lead, campaign_id):
    for i in range(3):
        make_lead(emails=[f"o{i}@b{i}.fr"])
    enqueue_campaign(campaign_id)

    totals = run_campaign(campaign_id, mailer=FakeMailer(), max_sends=1)

    assert totals['processed'] == 1
    assert totals['sent'] == 1
    assert get_campaign(campaign_id).job_status == JobStatus.RUNNING


def test_run_campaign_drains_queue(make_lead, tmp_db):
    template_id = create_template("Intro", "Bonjour", subject="s")
    campaign_id = create_campaign("Run", template_ids=[template_id], min_delay=1, max_delay=1)
    for i in range(2):
        make_lead(emails=[f"o{i}@b{i}.fr"])
    enqueue_campaign(campaign_id)

    totals = run_campaign(campaign_id, mailer=FakeMailer([
        SendResult(success=True, delivery_id="<a@test>"),
        SendResult(success=False, error="550", bounced=True),
    ]))

    assert totals['processed'] == 2
    assert totals['sent'] == 1
    assert totals['failed'] == 1
    assert totals['bounced'] == 1
    assert get_campaign(campaign_id).job_status == JobStatus.DONE


def test_job_status_follows_transition_table(campaign_id):
    assert transition_job_status(campaign_id, JobStatus.DONE) is False
    assert get_campaign(campaign_id).job_status == JobStatus.IDLE

    assert transition_job_status(campaign_id, JobStatus.RUNNING) is True
    assert transition_job_status(campaign_id, JobStatus.RUNNING) is False
    assert transition_job_status(campaign_id, JobStatus.DONE) is True
    assert transition_job_status(campaign_id, JobStatus.IDLE) is False
    assert transition_job_status(campaign_id, JobStatus.RUNNING) is True
