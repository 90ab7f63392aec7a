#!/usr/bin/env python3
"""
Outreach CLI - Command-line interface for LeadForge campaigns.

Usage:
    python outreach.py template "Intro" --subject "Bonjour {company_name}" --body-file intro.txt --tag general
    python outreach.py campaign "Plombiers Paris" --template 1 --template 2 --niche plombier
    python outreach.py campaign "Smart" --smart --group 3 --sender "Julie" --sender "Marc"
    python outreach.py status <id>      Show campaign status
    python outreach.py enqueue <id>     Admit today's audience into the queue
    python outreach.py preview <id> <lead_id>   Render the message a lead would get
    python outreach.py test <id> <to> [--lead N]  Send the message to yourself
    python outreach.py poll <id>        Process one queued send
    python outreach.py run <id>         Send with random pacing until the queue is empty
    python outreach.py stats <id>       Local counts + provider engagement
    python outreach.py block <value>    Suppress an email or domain
    python outreach.py blocklist        Show suppression list
    python outreach.py unsubscribe <email>
    python outreach.py reply <send_id>  Mark a send as replied
"""

import argparse
import logging
import sys

from leadforge.db import get_campaign, get_lead, list_suppression
from leadforge.errors import LeadforgeError
from leadforge.models import Channel
from leadforge.outreach.eligibility import usable_address
from leadforge.outreach.manager import (
    OutreachManager,
    create_campaign,
    create_template,
    mark_replied,
    suppress,
    unsubscribe,
    unsuppress,
)
from leadforge.outreach.templates import pick_sender_name, render_message, select_template

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("schedule").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def cmd_template(args, manager):
    """Create a template."""
    body = args.body
    if args.body_file:
        with open(args.body_file, encoding='utf-8') as f:
            body = f.read()

    template_id = create_template(
        name=args.name,
        body=body or "",
        subject=args.subject or "",
        channel=Channel(args.channel),
        language=args.language,
        tags=args.tag,
    )
    print(f"\n✓ Template #{template_id} created\n")


def cmd_campaign(args, manager):
    """Create a campaign."""
    campaign_id = create_campaign(
        name=args.name,
        channel=Channel(args.channel),
        language=args.language,
        lead_ids=args.lead,
        group_id=args.group,
        niche=args.niche,
        no_website_only=args.no_website,
        safe_send_mode=not args.unsafe,
        daily_limit=args.daily_limit,
        min_delay=args.min_delay,
        max_delay=args.max_delay,
        cooldown_days=args.cooldown,
        smart_sending=args.smart,
        template_ids=args.template,
        sender_names=args.sender,
    )
    print(f"\n✓ Campaign #{campaign_id} created\n")


def cmd_status(args, manager):
    """Show campaign status."""
    status = manager.status(args.campaign_id)

    print()
    print("╔" + "═" * 58 + "╗")
    print(f"║{'CAMPAIGN #' + str(status['campaign_id']) + ' - ' + status['name'][:36]:^58}║")
    print("╠" + "═" * 58 + "╣")
    print(f"║  Channel:  {status['channel']:<12} Strategy: {status['strategy']:<21} ║")
    print(f"║  Job:      {status['job_status']:<12} Daily limit: {status['daily_limit']:<18} ║")
    print(f"║  Sent: {status['total_sent']:<6} Failed: {status['total_failed']:<6} "
          f"Bounced: {status['total_bounced']:<6} Replied: {status['total_replied']:<5}║")
    print("╚" + "═" * 58 + "╝")
    print()


def cmd_enqueue(args, manager):
    """Admit leads into the queue."""
    result = manager.enqueue(args.campaign_id)
    print(f"\n📋 Queued {result['queued_count']} send(s), skipped {result['skipped_count']}")
    print(f"   {result['remaining_today']} admissions left today, job is {result['job_status']}\n")


def cmd_preview(args, manager):
    """Render the message a lead would receive."""
    campaign = get_campaign(args.campaign_id)
    lead = get_lead(args.lead_id)
    if not campaign or not lead:
        print("\n✗ Campaign or lead not found\n")
        return

    choice = select_template(campaign, lead)
    if not choice.template:
        print("\n✗ No template available for this lead\n")
        return

    address = usable_address(lead, campaign.channel) or ""
    message = render_message(choice.template, lead, campaign.channel, address)

    print()
    print(f"Template: #{choice.template.id} {choice.template.name}"
          f"{' [' + choice.segment + ']' if choice.segment else ''}"
          f"{' (fallback)' if choice.fell_back else ''}")
    print(f"From:     {pick_sender_name(campaign)}")
    print(f"To:       {address or '(no address)'}")
    print(f"Subject:  {message.subject}")
    print("─" * 60)
    print(message.body)
    print("─" * 60)
    print()


def cmd_test(args, manager):
    """Send the campaign's message to yourself."""
    result = manager.test_send(args.campaign_id, args.to, lead_id=args.lead)
    if result.success:
        print(f"\n📤 {result.message or 'Test sent'}")
        if result.delivery_id:
            print(f"   Message-ID {result.delivery_id}")
    else:
        print(f"\n✗ {result.message or 'Test failed'}: {result.error}")
    print()


def _print_poll(outcome: dict) -> None:
    result = outcome.get('result')
    if not outcome['processed']:
        print(f"  Nothing to send (job {outcome['job_status']})")
        return
    icon = {'SENT': '📤', 'FAILED': '✗'}.get(result['status'], '❓')
    if result.get('bounced'):
        icon = '↩️ '
    line = f"  {icon} send #{outcome['send_id']} → {result['address']} [{result['status']}]"
    if result.get('error'):
        line += f" {result['error']}"
    print(line)
    if result.get('chat_link'):
        print(f"     {result['chat_link']}")


def cmd_poll(args, manager):
    """Process one queued send."""
    print()
    _print_poll(manager.poll(args.campaign_id))
    print()


def cmd_run(args, manager):
    """Paced sending until the queue is empty."""
    totals = manager.run(args.campaign_id, max_sends=args.max)
    print(f"\n✓ Processed {totals['processed']}: {totals['sent']} sent, "
          f"{totals['failed']} failed ({totals['bounced']} refused)")
    for link in totals['chat_links']:
        print(f"  {link}")
    print()


def cmd_stats(args, manager):
    """Show campaign statistics."""
    stats = manager.stats(args.campaign_id)
    counts = stats['counts']
    totals = stats['totals']

    print(f"\n📊 Campaign #{stats['campaign_id']} ({stats['job_status']})")
    print("-" * 50)
    print(f"  Queued:   {counts['queued']}")
    print(f"  Sent:     {counts['sent']}")
    print(f"  Failed:   {counts['failed']}")
    print(f"  Bounced:  {totals['bounced']}")
    print(f"  Opened:   {totals['opened']}")
    print(f"  Replied:  {totals['replied']}")
    if stats['engagement'] is None:
        print("  (provider engagement unavailable, showing local figures)")
    print()


def cmd_block(args, manager):
    """Add or remove a suppression entry."""
    if args.remove:
        if unsuppress(args.value):
            print(f"\n✓ Removed {args.value} from suppression list\n")
        else:
            print(f"\n✗ {args.value} was not suppressed\n")
        return

    if suppress(args.value, args.reason or "manual"):
        print(f"\n✓ Suppressed {args.value}\n")
    else:
        print(f"\n✓ {args.value} already suppressed\n")


def cmd_blocklist(args, manager):
    """Show suppression list."""
    entries = list_suppression()
    if not entries:
        print("\n✓ Suppression list is empty\n")
        return

    print(f"\n🚫 SUPPRESSION LIST ({len(entries)} entries)")
    print("-" * 70)
    for entry in entries:
        print(f"  {entry['kind']:<6} {entry['value']:<40} {entry['reason'] or '':<12} {entry['added_at'][:10]}")
    print()


def cmd_unsubscribe(args, manager):
    updated = unsubscribe(args.email)
    print(f"\n✓ {args.email} unsubscribed ({updated} lead(s) set to DO_NOT_CONTACT)\n")


def cmd_reply(args, manager):
    """Mark a send as replied."""
    if mark_replied(args.send_id):
        print(f"\n💬 Send #{args.send_id} marked as replied\n")
    else:
        print(f"\n✓ Send #{args.send_id} was already marked as replied\n")


def main():
    parser = argparse.ArgumentParser(
        description="Outreach CLI - paced LeadForge campaigns",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--dry-run', action='store_true', help='Never actually send email')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # template
    t_parser = subparsers.add_parser('template', help='Create a template')
    t_parser.add_argument('name')
    t_parser.add_argument('--subject')
    t_parser.add_argument('--body')
    t_parser.add_argument('--body-file')
    t_parser.add_argument('--channel', choices=[c.value for c in Channel], default='email')
    t_parser.add_argument('--language')
    t_parser.add_argument('--tag', action='append', default=[],
                          help='Smart segment tag (inaccessible, no-website, reputation, outdated-website, general)')

    # campaign
    c_parser = subparsers.add_parser('campaign', help='Create a campaign')
    c_parser.add_argument('name')
    c_parser.add_argument('--channel', choices=[c.value for c in Channel], default='email')
    c_parser.add_argument('--language')
    c_parser.add_argument('--lead', type=int, action='append', help='Hand-picked lead id (repeatable)')
    c_parser.add_argument('--group', type=int, help='Target a lead group')
    c_parser.add_argument('--niche')
    c_parser.add_argument('--no-website', action='store_true', help='Only leads without a website')
    c_parser.add_argument('--unsafe', action='store_true', help='Include previously contacted leads')
    c_parser.add_argument('--daily-limit', type=int)
    c_parser.add_argument('--min-delay', type=int)
    c_parser.add_argument('--max-delay', type=int)
    c_parser.add_argument('--cooldown', type=int, help='Days before a lead may be recontacted')
    c_parser.add_argument('--smart', action='store_true', help='Pick templates by lead segment')
    c_parser.add_argument('--template', type=int, action='append', help='Template id (repeat to rotate)')
    c_parser.add_argument('--sender', action='append', help='Sender display name (repeatable)')

    for name, help_text in (
        ('status', 'Show campaign status'),
        ('enqueue', 'Admit leads into the queue'),
        ('poll', 'Process one queued send'),
        ('stats', 'Show campaign statistics'),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('campaign_id', type=int)

    preview_parser = subparsers.add_parser('preview', help='Preview the message for a lead')
    preview_parser.add_argument('campaign_id', type=int)
    preview_parser.add_argument('lead_id', type=int)

    test_parser = subparsers.add_parser('test', help='Send a test message to yourself')
    test_parser.add_argument('campaign_id', type=int)
    test_parser.add_argument('to', help='Your email (or phone for whatsapp campaigns)')
    test_parser.add_argument('--lead', type=int, help='Fill the template from this lead')

    run_parser = subparsers.add_parser('run', help='Send with pacing until the queue is empty')
    run_parser.add_argument('campaign_id', type=int)
    run_parser.add_argument('--max', type=int, help='Stop after this many sends')

    block_parser = subparsers.add_parser('block', help='Suppress an email or domain')
    block_parser.add_argument('value', help='Email or domain')
    block_parser.add_argument('--reason', '-r', help='Reason for blocking')
    block_parser.add_argument('--remove', action='store_true', help='Remove from suppression list')

    subparsers.add_parser('blocklist', help='Show suppression list')

    unsub_parser = subparsers.add_parser('unsubscribe', help='Opt an email out')
    unsub_parser.add_argument('email')

    reply_parser = subparsers.add_parser('reply', help='Mark a send as replied')
    reply_parser.add_argument('send_id', type=int)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    # Command dispatch
    commands = {
        'template': cmd_template,
        'campaign': cmd_campaign,
        'status': cmd_status,
        'enqueue': cmd_enqueue,
        'preview': cmd_preview,
        'test': cmd_test,
        'poll': cmd_poll,
        'run': cmd_run,
        'stats': cmd_stats,
        'block': cmd_block,
        'blocklist': cmd_blocklist,
        'unsubscribe': cmd_unsubscribe,
        'reply': cmd_reply,
    }

    manager = OutreachManager(dry_run=args.dry_run)
    try:
        commands[args.command](args, manager)
    except LeadforgeError as e:
        print(f"\n✗ {e}\n")
        sys.exit(1)


if __name__ == '__main__':
    main()
