#!/usr/bin/env python3
"""
LeadForge Search
================

Grid-based business search against the places provider, under hard
per-run / daily / monthly request caps. Results are deduplicated into
the lead store.

Usage:
    python main.py search "plombier" --lat 48.85 --lng 2.35 --radius 15
    python main.py search "plombier" --lat 48.85 --lng 2.35 --radius 15 --dry-run
    python main.py search "coiffeur" --lat 45.76 --lng 4.83 --radius 8 --group lyon
    python main.py usage               # Today's and this month's API usage
    python main.py run 12              # Show a past search run
    python main.py add-email 42 jean@garage-dupont.fr
    python main.py add-lead "Garage Dupont" --website garage-dupont.fr --phone "01 42 00 00 00"
    python main.py enrich              # Look for emails on lead websites
    python main.py enrich 42 43
"""

import argparse
import logging
import sys
import os

# Ensure project root is on the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from leadforge import config
from leadforge.db import init_db, create_group, add_lead_email, get_lead, get_search_run
from leadforge.errors import ConfigurationError, ValidationError
from leadforge.enrich import enrich_leads
from leadforge.search import add_manual_lead, run_search
from leadforge.usage import get_usage_summary


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Quieten noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def cmd_search(args) -> int:
    group_id = create_group(args.group) if args.group and not args.dry_run else None

    try:
        summary = run_search(
            query=args.query,
            lat=args.lat,
            lng=args.lng,
            radius_km=args.radius,
            max_results=args.max_results,
            dry_run=args.dry_run,
            group_id=group_id,
        )
    except (ConfigurationError, ValidationError) as e:
        print(f"❌ {e}")
        return 1

    print(f"\n{'=' * 60}")
    if summary.get('dry_run'):
        print(f"  Dry run: '{args.query}' within {args.radius} km")
        print(f"{'=' * 60}")
        print(f"  Grid cells:         {summary['cells']}")
        print(f"  Search calls (max): {summary['projected_search_calls']}")
        print(f"  Detail calls (max): {summary['projected_detail_calls']}")
        print(f"  Places (max):       {summary['max_places']}")
        print(f"  Estimated cost:     ${summary['total_cost']:.2f} "
              f"(search ${summary['search_cost']:.2f} + details ${summary['detail_cost']:.2f})")
    else:
        print(f"  Search run #{summary['run_id']}: '{args.query}'")
        print(f"{'=' * 60}")
        print(f"  Cells searched:  {summary['search_calls']}/{summary['cells']}")
        print(f"  Places found:    {summary['places_found']}")
        print(f"  New leads:       {summary['new_leads']}")
        print(f"  Duplicates:      {summary['duplicates']}")
        print(f"  Detail calls:    {summary['detail_calls']}")
        print(f"  Cost:            ${summary['cost']:.2f}")
        if summary['errors']:
            print(f"\n  ⚠️  {len(summary['errors'])} error(s):")
            for error in summary['errors'][:10]:
                print(f"     - {error}")
    print(f"{'=' * 60}\n")
    return 0


def cmd_usage(args) -> int:
    summary = get_usage_summary()

    print(f"\n📊 API usage ({summary['date']})")
    print("-" * 60)
    for resource, checks in summary['resources'].items():
        for scope in ('daily', 'monthly'):
            check = checks[scope]
            icon = "🛑" if not check.allowed else ("⚠️ " if check.warning else "✅")
            print(f"{icon} {resource:<7} {scope:<8} {check.used:>7}/{check.limit:<7} "
                  f"({check.percent_used:5.1f}%)  {check.remaining} left")
    print("-" * 60)
    print(f"Cost today: ${summary['cost_today']:.2f}   This month: ${summary['cost_month']:.2f}\n")
    return 0


def cmd_run(args) -> int:
    run = get_search_run(args.run_id)
    if not run:
        print(f"❌ Search run {args.run_id} not found")
        return 1

    print(f"\nSearch run #{run.id} [{run.status}] '{run.query}' ({run.lat}, {run.lng}) r={run.radius_km}km")
    print(f"  Started {run.started_at}, completed {run.completed_at or '-'}")
    print(f"  {run.places_found} places, {run.new_leads} new, {run.duplicates} duplicates")
    print(f"  {run.search_calls} search + {run.detail_calls} detail calls, ${run.cost:.2f}")
    for error in run.errors:
        print(f"  - {error}")
    print()
    return 0


def cmd_add_email(args) -> int:
    if not get_lead(args.lead_id):
        print(f"❌ Lead {args.lead_id} not found")
        return 1
    try:
        added = add_lead_email(args.lead_id, args.email, args.confidence)
    except ValidationError as e:
        print(f"❌ {e}")
        return 1
    print(f"✅ Added {args.email} to lead {args.lead_id}" if added else f"ℹ️  {args.email} already known")
    return 0


def cmd_add_lead(args) -> int:
    group_id = create_group(args.group) if args.group else None
    try:
        lead_id, created, matched_by = add_manual_lead(
            name=args.name,
            website=args.website,
            phone=args.phone,
            address=args.address,
            niche=args.niche,
            email=args.email,
            group_id=group_id,
        )
    except ValidationError as e:
        print(f"❌ {e}")
        return 1
    if created:
        print(f"✅ Created lead {lead_id}: {args.name}")
    else:
        print(f"ℹ️  Already known as lead {lead_id} (matched by {matched_by})")
    return 0


def cmd_enrich(args) -> int:
    try:
        summary = enrich_leads(args.lead_ids or None, limit=args.limit)
    except ValidationError as e:
        print(f"❌ {e}")
        return 1

    for result in summary['leads']:
        icon = "📧" if result['found'] else "·"
        print(f"  {icon} lead {result['lead_id']}: {result['found']} found, {result['added']} new")
    print(f"\n✅ {summary['processed']} lead(s) scanned, {summary['emails_added']} email(s) added")
    for error in summary['errors']:
        print(f"  ⚠️  {error}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="LeadForge - capped grid search for business leads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    search_parser = subparsers.add_parser('search', help='Run a grid search')
    search_parser.add_argument('query', help='Text query, e.g. "plombier"')
    search_parser.add_argument('--lat', type=float, required=True)
    search_parser.add_argument('--lng', type=float, required=True)
    search_parser.add_argument('--radius', type=float, required=True, help='Radius in km')
    search_parser.add_argument('--max-results', type=int, default=config.PER_RUN_MAX_PLACES,
                               help='Max places to store')
    search_parser.add_argument('--group', help='Attach results to this lead group')
    search_parser.add_argument('--dry-run', action='store_true', help='Estimate cells and cost only')

    subparsers.add_parser('usage', help='Show API usage against caps')

    run_parser = subparsers.add_parser('run', help='Show a search run')
    run_parser.add_argument('run_id', type=int)

    email_parser = subparsers.add_parser('add-email', help='Attach an email to a lead')
    email_parser.add_argument('lead_id', type=int)
    email_parser.add_argument('email')
    email_parser.add_argument('--confidence', type=float, default=0.5)

    lead_parser = subparsers.add_parser('add-lead', help='Add a lead by hand (deduplicated)')
    lead_parser.add_argument('name')
    lead_parser.add_argument('--website')
    lead_parser.add_argument('--phone')
    lead_parser.add_argument('--address', default='')
    lead_parser.add_argument('--niche', default='')
    lead_parser.add_argument('--email')
    lead_parser.add_argument('--group', help='Add the lead to this group')

    enrich_parser = subparsers.add_parser('enrich', help='Find emails on lead websites')
    enrich_parser.add_argument('lead_ids', type=int, nargs='*', help='Leads to scan (default: leads without email)')
    enrich_parser.add_argument('--limit', type=int, default=config.ENRICH_BATCH_LIMIT)

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    init_db()

    commands = {
        'search': cmd_search,
        'usage': cmd_usage,
        'run': cmd_run,
        'add-email': cmd_add_email,
        'add-lead': cmd_add_lead,
        'enrich': cmd_enrich,
    }
    return commands[args.command](args)


if __name__ == '__main__':
    sys.exit(main())
