#!/usr/bin/env python3
"""
Submit a skip-trace run from a CSV file.

CSV columns: subject_id, address, city, state, zip, first_name, last_name
(subject_id may be blank; a subject is then found or created from the address + owner).

Usage:
    python scripts/submit_run.py --csv leads.csv --label "county list 2026-10"            # enqueue on RQ
    python scripts/submit_run.py --csv leads.csv --label smoke --execute --concurrency 2  # run inline
    python scripts/submit_run.py --report <run_id>

Requires: DATABASE_URL set (or defaults to sqlite:///local.db); Redis for --enqueue mode.
"""
import argparse
import csv
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from skiptrace.logging_config import configure_logging
from skiptrace.pipeline import coordinator
from skiptrace.pipeline.manager import launch_run, execute_run
from skiptrace.services.provider import active_provider_name


def read_items(path):
    items = []
    with open(path, newline='') as f:
        for row in csv.DictReader(f):
            items.append({
                'subject_id': (row.get('subject_id') or '').strip() or None,
                'address': {
                    'street': row.get('address', ''),
                    'city': row.get('city', ''),
                    'state': row.get('state', ''),
                    'zip': row.get('zip', ''),
                },
                'person': {
                    'first': row.get('first_name', ''),
                    'last': row.get('last_name', ''),
                },
            })
    return items


def main(argv=None):
    parser = argparse.ArgumentParser(description='Submit or inspect a skip-trace run')
    parser.add_argument('--csv', help='CSV file of subjects to trace')
    parser.add_argument('--label', default='', help='Human description of the batch')
    parser.add_argument('--execute', action='store_true', help='Run inline instead of enqueueing on RQ')
    parser.add_argument('--concurrency', type=int, default=None)
    parser.add_argument('--report', metavar='RUN_ID', help='Print the report for an existing run')
    args = parser.parse_args(argv)

    configure_logging()

    if args.report:
        report = coordinator.run_report(args.report)
        if report is None:
            print(f'Run {args.report} not found', file=sys.stderr)
            return 1
        print(json.dumps(report, indent=2))
        return 0

    if not args.csv:
        parser.error('--csv is required unless --report is given')

    items = read_items(args.csv)
    if args.execute:
        status = coordinator.create_run(args.label, items, active_provider_name())
        status = execute_run(status['run_id'], concurrency=args.concurrency)
    else:
        status = launch_run(args.label, items)
    print(json.dumps(status, indent=2))
    return 0


if __name__ == '__main__':
    sys.exit(main())
