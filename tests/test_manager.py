import pytest

from leadforge import config
from leadforge.db import count_sends_by_status, create_group, create_send, get_campaign, get_lead, get_send
from leadforge.errors import ValidationError
from leadforge.models import Channel, FixedStrategy, LeadStatus, RotationStrategy, SendStatus, SmartStrategy
from leadforge.outreach.eligibility import can_contact
from leadforge.outreach.manager import (
    OutreachManager,
    create_campaign,
    create_template,
    mark_replied,
    send_test,
    suppress,
    unsubscribe,
    unsuppress,
)
from leadforge.outreach.sender import SendResult


@pytest.fixture
def template_id(tmp_db):
    return create_template("Intro", "Bonjour {company_name}", subject="Salut")


def test_campaign_defaults(template_id):
    campaign = get_campaign(create_campaign("Defaults", template_ids=[template_id]))

    assert campaign.daily_limit == config.DEFAULT_DAILY_LIMIT
    assert campaign.min_delay == config.DEFAULT_MIN_DELAY
    assert campaign.max_delay == config.DEFAULT_MAX_DELAY
    assert campaign.cooldown_days == config.DEFAULT_COOLDOWN_DAYS
    assert campaign.language == config.DEFAULT_LANGUAGE
    assert campaign.safe_send_mode is True
    assert campaign.job_status.value == "idle"


def test_strategy_follows_template_choice(template_id):
    second = create_template("Relance", "Re-bonjour", subject="Re")

    fixed = get_campaign(create_campaign("Fixed", template_ids=[template_id]))
    rotation = get_campaign(create_campaign("Rotate", template_ids=[template_id, second]))
    smart = get_campaign(create_campaign("Smart", smart_sending=True))

    assert fixed.strategy == FixedStrategy(template_id=template_id)
    assert isinstance(rotation.strategy, RotationStrategy)
    assert rotation.strategy.template_ids == (template_id, second)
    assert isinstance(smart.strategy, SmartStrategy)


@pytest.mark.parametrize("kwargs", [
    {'name': ""},
    {'name': "No template"},
    {'name': "Unknown template", 'template_ids': [999]},
    {'name': "Unknown group", 'smart_sending': True, 'group_id': 42},
    {'name': "Zero limit", 'smart_sending': True, 'daily_limit': 0},
    {'name': "Bad delays", 'smart_sending': True, 'min_delay': 60, 'max_delay': 10},
])
def test_invalid_campaigns_rejected(tmp_db, kwargs):
    with pytest.raises(ValidationError):
        create_campaign(**kwargs)


def test_campaign_rejects_template_of_other_channel(template_id):
    with pytest.raises(ValidationError):
        create_campaign("Chat", channel=Channel.WHATSAPP, template_ids=[template_id])


def test_group_campaign_accepted(tmp_db):
    group_id = create_group("lyon")
    campaign = get_campaign(create_campaign("Group", smart_sending=True, group_id=group_id))
    assert campaign.group_id == group_id


def test_email_template_needs_subject(tmp_db):
    with pytest.raises(ValidationError):
        create_template("No subject", "Bonjour")
    assert create_template("Chat", "Bonjour", channel=Channel.WHATSAPP) > 0


def test_suppress_and_unsuppress(make_lead):
    lead = make_lead(emails=["jean@garage.fr"])

    assert suppress("Garage.fr") is True
    assert suppress("garage.fr") is False
    assert can_contact(lead, cooldown_days=30)[0] is False

    assert unsuppress("garage.fr") is True
    assert unsuppress("garage.fr") is False
    assert can_contact(lead, cooldown_days=30) == (True, "Eligible")


def test_unsubscribe_stops_lead(make_lead):
    lead = make_lead(emails=["Jean@Garage.fr"])
    other = make_lead(emails=["marie@salon.fr"])

    assert unsubscribe("jean@garage.fr") == 1

    assert get_lead(lead.id).status == LeadStatus.DO_NOT_CONTACT
    assert get_lead(other.id).status == LeadStatus.NEW
    assert can_contact(get_lead(lead.id), cooldown_days=30) == (False, "Lead status is DO_NOT_CONTACT")


def test_mark_replied(make_lead, template_id, force_status):
    campaign_id = create_campaign("Replies", template_ids=[template_id])
    lead = make_lead(emails=["jean@a.fr"])
    send_id = create_send(campaign_id, lead.id, Channel.EMAIL, "jean@a.fr")
    force_status(send_id, SendStatus.SENT)

    assert mark_replied(send_id) is True
    assert mark_replied(send_id) is False

    assert get_send(send_id).status == SendStatus.REPLIED
    assert get_lead(lead.id).status == LeadStatus.REPLIED
    assert get_campaign(campaign_id).total_replied == 1


def test_mark_replied_requires_delivery(make_lead, template_id):
    campaign_id = create_campaign("Replies", template_ids=[template_id])
    lead = make_lead(emails=["jean@a.fr"])
    send_id = create_send(campaign_id, lead.id, Channel.EMAIL, "jean@a.fr")

    with pytest.raises(ValidationError):
        mark_replied(send_id)
    with pytest.raises(ValidationError):
        mark_replied(9999)


def test_manager_end_to_end(make_lead, template_id):
    sent = []

    def mailer(to, subject, text, sender_name, tags):
        sent.append(to)
        return SendResult(success=True, delivery_id="<x@test>")

    manager = OutreachManager(mailer=mailer)
    campaign_id = create_campaign("E2E", template_ids=[template_id])
    make_lead(emails=["jean@a.fr"])

    assert manager.enqueue(campaign_id)['queued_count'] == 1
    assert manager.status(campaign_id)['job_status'] == "running"
    assert manager.poll(campaign_id)['processed'] == 1
    assert manager.poll(campaign_id)['job_status'] == "done"

    status = manager.status(campaign_id)
    assert status['total_sent'] == 1
    assert status['strategy'] == "fixed"
    assert sent == ["jean@a.fr"]


def test_status_unknown_campaign(tmp_db):
    with pytest.raises(ValidationError):
        OutreachManager(mailer=lambda *a: None).status(404)


def test_send_test_leaves_campaign_untouched(make_lead, template_id):
    calls = []

    def mailer(to, subject, text, sender_name, tags):
        calls.append({'to': to, 'subject': subject, 'text': text, 'tags': tags})
        return SendResult(success=True, delivery_id="<t@test>", message=f"Sent to {to}")

    lead = make_lead(emails=["jean@garage-dupont.fr"], name="Garage Dupont")
    campaign_id = create_campaign("Test", template_ids=[template_id], sender_names=["Julie"])

    result = OutreachManager(mailer=mailer).test_send(campaign_id, "me@agence.fr", lead_id=lead.id)

    assert result.success is True
    assert result.message == "Sent to me@agence.fr"
    assert calls[0]['to'] == "me@agence.fr"
    assert calls[0]['subject'] == "[TEST] Salut"
    assert calls[0]['text'].startswith("Bonjour Garage Dupont")
    assert "unsubscribe?email=me%40agence.fr" in calls[0]['text']
    assert calls[0]['tags'] == ["test"]

    assert count_sends_by_status(campaign_id) == {}
    assert get_campaign(campaign_id).total_sent == 0
    assert get_lead(lead.id).status == LeadStatus.NEW


def test_send_test_uses_sample_business_without_lead(template_id):
    sent = []
    campaign_id = create_campaign("Sample", template_ids=[template_id])

    def mailer(to, subject, text, sender_name, tags):
        sent.append(text)
        return SendResult(success=False, error="550 mailbox unavailable", bounced=True, message="Recipient refused")

    result = send_test(campaign_id, "me@agence.fr", mailer=mailer)

    assert result.success is False
    assert result.message == "Recipient refused"
    assert sent[0].startswith("Bonjour Test Company")
    assert get_campaign(campaign_id).total_failed == 0


def test_send_test_chat_campaign_returns_link(tmp_db):
    template_id = create_template("Chat", "Bonjour {company_name}", channel=Channel.WHATSAPP)
    campaign_id = create_campaign("Chat", channel=Channel.WHATSAPP, template_ids=[template_id])

    def mailer(*args):
        raise AssertionError("chat campaigns never email")

    result = send_test(campaign_id, "+33 6 12 34 56 78", mailer=mailer)

    assert result.success is True
    assert result.message.startswith("https://wa.me/33612345678?text=Bonjour%20Test%20Company")


@pytest.mark.parametrize("to, lead_id", [
    ("", None),
    ("not-an-address", None),
    ("me@agence.fr", 404),
])
def test_send_test_rejects_bad_input(template_id, to, lead_id):
    campaign_id = create_campaign("Bad", template_ids=[template_id])
    with pytest.raises(ValidationError):
        send_test(campaign_id, to, lead_id=lead_id, mailer=lambda *a: None)


def test_send_test_unknown_campaign(tmp_db):
    with pytest.raises(ValidationError):
        send_test(404, "me@agence.fr", mailer=lambda *a: None)
