#!/usr/bin/env python3
"""
Command line entry point

    dbmirror setup    -c mirroring_config.json [--force] [--use-last-backup] [--dry-run]
    dbmirror validate -c mirroring_config.json
    dbmirror plan     -c mirroring_config.json
    dbmirror status   -c mirroring_config.json
    dbmirror remove   -c mirroring_config.json [--recover-mirrors]
"""

import argparse
import json
import sys
import threading

import pandas as pd

from .config import load_config, run_options, setup_logging
from .errors import ValidationError
from .models import Status
from .node import build_topologies
from .orchestrator import MirroringOrchestrator
from .reporter import results_frame


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Set up SQL Server database mirroring from a JSON configuration")
    parser.add_argument('command', choices=['setup', 'validate', 'plan', 'status', 'remove'])
    parser.add_argument('-c', '--config', default='mirroring_config.json', help="configuration file")
    parser.add_argument('--force', action='store_true', default=None,
                        help="replace databases that already exist on a mirror")
    parser.add_argument('--use-last-backup', action='store_true', default=None,
                        help="seed from the primary's most recent backup chain")
    parser.add_argument('--dry-run', action='store_true', default=None, help="plan only, write nothing")
    parser.add_argument('--recover-mirrors', action='store_true',
                        help="remove: bring former mirrors online WITH RECOVERY")
    parser.add_argument('--report-csv', help="write the per-step results to this CSV file")
    return parser.parse_args(argv)


def _run_cancellable(target):
    """Run target(cancel_event) in a worker thread; Ctrl+C stops steps that have not started"""
    cancel_event = threading.Event()
    outcome = {}

    def work():
        try:
            outcome['results'] = target(cancel_event)
        except Exception as e:
            outcome['error'] = e

    worker = threading.Thread(target=work, daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.5)
    except KeyboardInterrupt:
        print("\n🛑 Cancellation requested, waiting for in-flight statements to finish...")
        cancel_event.set()
        worker.join()

    if 'error' in outcome:
        raise outcome['error']
    return outcome.get('results', [])


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"❌ Error: {args.config} not found.")
        return 1
    except (json.JSONDecodeError, ValueError) as e:
        print(f"❌ Error: invalid configuration: {e}")
        return 1

    logger = setup_logging(config)
    options = run_options(config, force=args.force, use_last_backup=args.use_last_backup, dry_run=args.dry_run)
    orchestrator = MirroringOrchestrator.from_config(config)
    topologies = build_topologies(config)
    exit_code = 0

    try:
        if args.command == 'validate':
            for topology in topologies:
                result = orchestrator.validate_only(topology, options)
                icon = "✅" if result.ok else "❌"
                print(f"{icon} [{topology.database}] {result.reason or 'valid'}")
                for warning in result.warnings:
                    print(f"   ⚠️  {warning}")
                if not result.ok:
                    exit_code = 1

        elif args.command == 'plan':
            for topology in topologies:
                try:
                    plan = orchestrator.plan(topology, options)
                except ValidationError as e:
                    print(f"❌ [{topology.database}] {e}")
                    exit_code = 1
                    continue
                print("\n".join(plan.describe()))

        elif args.command == 'status':
            frame = pd.concat([orchestrator.status(t) for t in topologies], ignore_index=True)
            print(frame.to_string(index=False))

        else:
            if args.command == 'remove':
                results = []
                for topology in topologies:
                    results.extend(orchestrator.remove(topology, recover_mirrors=args.recover_mirrors))
            else:
                results = _run_cancellable(lambda event: orchestrator.setup_many(topologies, options, event))

            frame = results_frame(results)
            print(frame[['node', 'database', 'step', 'status', 'notes']].to_string(index=False))
            if args.report_csv:
                frame.to_csv(args.report_csv, index=False)
                print(f"📋 Results written to {args.report_csv}")
            if any(r.status == Status.FAILED for r in results):
                exit_code = 1

    except Exception as exc:
        print(f"❌ Error during {args.command}: {exc}")
        logger.exception(f"{args.command} failed")
        exit_code = 1
    finally:
        closed = set()
        for topology in topologies:
            for node in topology.nodes():
                if id(node) not in closed:
                    closed.add(id(node))
                    node.close()

    return exit_code


if __name__ == '__main__':
    sys.exit(main())
