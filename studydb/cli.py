"""
Command-line interface for StudyDB.

Commands:
    studydb-init            # Create the server database
    studydb-status          # Show database stats
    studydb-serve           # Run the sync/API server
    studydb-survival        # Print Kaplan-Meier curves
    studydb-sync            # Replay this device's offline queue
"""

import argparse
import asyncio
import json
import logging
import sys


def cmd_status(args):
    """Show database status and statistics."""
    from .database import init_database

    db = init_database()
    stats = db.get_stats()

    print("\n=== StudyDB Database Status ===")
    print(f"Database: {stats['db_path']}")
    print(f"Size: {stats['db_size_mb']:.2f} MB")
    print()
    print("Record counts:")
    print(f"  Experiments:        {stats['experiments']}")
    print(f"  Treatment groups:   {stats['treatment_groups']}")
    print(f"  Subjects:           {stats['subjects']} ({stats['alive_subjects']} alive)")
    print(f"  Observations:       {stats['observations']}")
    print(f"  Samples:            {stats['samples']}")


def cmd_init(args):
    """Initialize the database."""
    from .database import init_database

    init_database()
    print("Database initialized successfully.")
    cmd_status(args)


def cmd_serve(args):
    """Run the API server."""
    import uvicorn
    from .web import config

    uvicorn.run(
        "studydb.web.main:app",
        host=args.host or config.HOST,
        port=args.port or config.PORT,
        reload=args.reload,
    )


def cmd_set_baseline(args):
    """Move an experiment's baseline day and recalculate its observations."""
    from .cascade import update_experiment
    from .database import init_database
    from .payloads import ExperimentUpdate
    from .validators import NotFoundError

    db = init_database()
    if args.user:
        db.set_user(args.user)
    try:
        with db.writer() as session:
            experiment, summary = update_experiment(
                session, args.experiment_id,
                ExperimentUpdate(baseline_day_offset=args.day), db=db,
            )
            name = experiment.name
    except NotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if summary is None:
        print(f"Experiment '{name}' already uses baseline day {args.day}; nothing to do.")
        return
    print(f"Experiment '{name}': baseline day set to {args.day}")
    print(f"  Recalculated {summary['observations']} observations for {summary['subjects']} subjects")


def cmd_survival(args):
    """Print Kaplan-Meier survival curves per treatment group."""
    from .database import init_database
    from .survival import survival_by_group

    try:
        experiment_ids = [int(x) for x in args.experiments.split(',') if x.strip()]
    except ValueError:
        print(f"Error: expected comma-separated experiment ids, got '{args.experiments}'")
        sys.exit(1)

    db = init_database()
    with db.session() as session:
        curves = survival_by_group(session, experiment_ids)

    if args.json:
        print(json.dumps([c.to_dict() for c in curves], indent=2))
        return

    if not curves:
        print("No subjects found.")
        return

    for curve in curves:
        print(f"\n=== {curve.treatment_group_name} "
              f"(n={curve.total_subjects}, deaths={curve.total_events}) ===")
        print(f"  {'Day':>5} {'Survival %':>11} {'At risk':>8} {'Deaths':>7}")
        for point in curve.data:
            print(f"  {point.day:>5} {point.survival_pct:>11.1f} {point.at_risk:>8} {point.events:>7}")


def _client_parts(args):
    from .client import LocalCache, ManualConnectivity, MutationQueue, StudyDBClient, SyncCoordinator
    from .client import config as client_config

    cache = LocalCache(args.cache)
    queue = MutationQueue(cache)
    api = StudyDBClient(args.server or client_config.SERVER_URL)
    coordinator = SyncCoordinator(cache, queue, api, ManualConnectivity(online=True))
    return cache, queue, api, coordinator


def cmd_download(args):
    """Download an experiment snapshot into this device's offline cache."""
    import httpx

    async def run():
        cache, queue, api, coordinator = _client_parts(args)
        try:
            return await coordinator.download_for_offline(args.experiment_id)
        finally:
            await api.aclose()
            cache.close()

    try:
        meta = asyncio.run(run())
    except httpx.HTTPError as e:
        print(f"Error: could not reach server: {e}")
        sys.exit(1)
    print(f"Experiment {meta['experiment_id']} cached for offline use "
          f"({meta['subject_count']} subjects, synced {meta['last_synced_at']})")


def cmd_sync(args):
    """Replay this device's queued offline writes."""
    async def run():
        cache, queue, api, coordinator = _client_parts(args)
        try:
            return await coordinator.sync_now()
        finally:
            await api.aclose()
            cache.close()

    report = asyncio.run(run())
    if report.total == 0:
        print("Nothing to sync.")
        return
    print(f"Synced {report.total} queued writes: {report.succeeded} succeeded, "
          f"{report.failed} failed, {report.conflicts} conflicts")
    for error in report.errors:
        print(f"  - {error}")


def cmd_queue(args):
    """List writes waiting to be synced."""
    from .client import LocalCache, MutationQueue

    async def run():
        cache = LocalCache(args.cache)
        try:
            return await MutationQueue(cache).drain()
        finally:
            cache.close()

    pending = asyncio.run(run())
    if not pending:
        print("Queue is empty.")
        return
    print(f"\n=== {len(pending)} pending writes ===\n")
    for item in pending:
        print(f"  {item.id}  {item.kind:<24} experiment={item.experiment_id}  ts={item.timestamp}")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description='StudyDB - Animal study records with offline sync',
        prog='studydb'
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Log progress to stderr')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # studydb-init
    init_parser = subparsers.add_parser('init', help='Initialize database')
    init_parser.set_defaults(func=cmd_init)

    # studydb-status
    status_parser = subparsers.add_parser('status', help='Show database status')
    status_parser.set_defaults(func=cmd_status)

    # studydb-serve
    serve_parser = subparsers.add_parser('serve', help='Run the API server')
    serve_parser.add_argument('--host', help='Bind host')
    serve_parser.add_argument('--port', type=int, help='Bind port')
    serve_parser.add_argument('--reload', action='store_true', help='Auto-reload on changes')
    serve_parser.set_defaults(func=cmd_serve)

    # studydb set-baseline
    baseline_parser = subparsers.add_parser('set-baseline',
        help="Change an experiment's baseline day and recalculate")
    baseline_parser.add_argument('experiment_id', type=int, help='Experiment id')
    baseline_parser.add_argument('day', type=int, help='New baseline day of study')
    baseline_parser.add_argument('--user', help='Name recorded in the audit log (default: login name)')
    baseline_parser.set_defaults(func=cmd_set_baseline)

    # studydb-survival
    survival_parser = subparsers.add_parser('survival', help='Kaplan-Meier curves by treatment group')
    survival_parser.add_argument('experiments', help='Comma-separated experiment ids (e.g. 1,3)')
    survival_parser.add_argument('--json', '-j', action='store_true', help='Output as JSON')
    survival_parser.set_defaults(func=cmd_survival)

    # Field client commands
    for name, func, help_text in (
        ('download', cmd_download, 'Cache an experiment for offline use'),
        ('sync', cmd_sync, 'Replay queued offline writes'),
        ('queue', cmd_queue, 'List queued offline writes'),
    ):
        client_parser = subparsers.add_parser(name, help=help_text)
        if name == 'download':
            client_parser.add_argument('experiment_id', type=int, help='Experiment id')
        client_parser.add_argument('--server', help='Server URL (default: $STUDYDB_SERVER_URL)')
        client_parser.add_argument('--cache', help='Offline cache file (default: $STUDYDB_CACHE_PATH)')
        client_parser.set_defaults(func=func)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s %(message)s')

    args.func(args)


# Entry points for pyproject.toml
def studydb_status():
    sys.argv = ['studydb', 'status'] + sys.argv[1:]
    main()

def studydb_init():
    sys.argv = ['studydb', 'init'] + sys.argv[1:]
    main()

def studydb_serve():
    sys.argv = ['studydb', 'serve'] + sys.argv[1:]
    main()

def studydb_survival():
    sys.argv = ['studydb', 'survival'] + sys.argv[1:]
    main()

def studydb_sync():
    sys.argv = ['studydb', 'sync'] + sys.argv[1:]
    main()


if __name__ == '__main__':
    main()
