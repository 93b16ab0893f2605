"""
Maintenance CLI for legacy document migrations.

    python migrate.py report all
    python migrate.py run bookings --batch-size 50 --cooldown 2
"""

import argparse
import json
import sys

import config
from clock import SystemClock
from document_store import DocumentStore
from extensions import build_engine, build_session_factory, init_db
from migration import MigrationEngine, STRATEGIES

# Order matters: bookings read quote requests and invoices read bookings
MIGRATION_ORDER = ("quoteRequests", "offers", "bookings", "invoices")


def build_parser():
    parser = argparse.ArgumentParser(description="Report on or run legacy document migrations.")
    parser.add_argument("action", choices=("report", "run"))
    parser.add_argument("kind", choices=sorted(STRATEGIES) + ["all"])
    parser.add_argument("--batch-size", type=int, default=None, help="documents per committed batch")
    parser.add_argument("--cooldown", type=float, default=None, help="seconds to wait between batches")
    parser.add_argument("--workers", type=int, default=None, help="threads used to plan a batch")
    parser.add_argument("--database-url", default=None)
    return parser


def run(argv=None, engine=None, clock=None):
    args = build_parser().parse_args(argv)

    if engine is None:
        engine = build_engine(args.database_url)
        init_db(engine)
    store = DocumentStore(build_session_factory(engine))
    migrations = MigrationEngine(store, clock or SystemClock(), batch_size=args.batch_size,
                                 cooldown_seconds=args.cooldown, workers=args.workers)

    kinds = MIGRATION_ORDER if args.kind == "all" else (args.kind,)
    results = []
    for kind in kinds:
        if args.action == "report":
            results.append(migrations.report(kind))
        else:
            results.append(migrations.migrate_all(kind).to_dict())
    return results


def main(argv=None):
    config.configure_logging()
    results = run(argv)
    print(json.dumps(results, indent=2))
    failed = sum(r.get("failed", 0) for r in results)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
