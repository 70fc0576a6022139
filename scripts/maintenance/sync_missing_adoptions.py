#!/usr/bin/env python3
"""Reconcile successful payments that never produced an adoption.

Runs the same sweep as ``POST /admin/adoptions/sync-missing`` directly against
the database, for cron jobs and recovery after a callback outage.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

from adoptbamboo.adoption_service.app.main import DEFAULT_DATABASE_URL
from adoptbamboo.adoption_service.app.reconciliation import ReconciliationService
from adoptbamboo.adoption_service.app.repository import AdoptionRepository
from adoptbamboo.common import (
    ServiceSettings,
    configure_logging,
    dispose_engines,
    get_session_factory,
    lifespan_session,
    resolve_database_url,
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create adoptions for successful payments that are missing one")
    parser.add_argument(
        "--database-url",
        default=os.getenv("SERVICE_DATABASE_URL"),
        help="SQLAlchemy async URL (default: SERVICE_DATABASE_URL or the service default)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the missing references without creating anything",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("SERVICE_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: %(default)s or SERVICE_LOG_LEVEL)",
    )
    return parser.parse_args()


async def _sweep(database_url: str, *, dry_run: bool, default_species: str) -> dict[str, object]:
    session_factory = get_session_factory(database_url)
    async with lifespan_session(session_factory) as session:
        reconciler = ReconciliationService(AdoptionRepository(session), default_species=default_species)
        summary = await reconciler.count_missing()
        report: dict[str, object] = {
            "dry_run": dry_run,
            "success_payments": summary.success_payments,
            "adoptions_with_payment": summary.adoptions_with_payment,
            "missing": summary.missing,
            "references": summary.missing_references,
        }
        if dry_run or not summary.missing:
            return report

        result = await reconciler.sync_missing()
        report.update({"processed": result.processed, "created": result.created, "errors": result.errors})
        return report


async def main_async() -> int:
    args = parse_args()
    settings = ServiceSettings(log_level=args.log_level, enable_metrics=False)
    configure_logging(settings)
    database_url = args.database_url or resolve_database_url(settings, DEFAULT_DATABASE_URL)
    logging.getLogger(__name__).info("Sweeping missing adoptions (dry_run=%s)", args.dry_run)

    try:
        report = await _sweep(database_url, dry_run=args.dry_run, default_species=settings.default_plant_species)
    finally:
        await dispose_engines()

    print(json.dumps(report, indent=2, sort_keys=True))
    return 1 if report.get("errors") else 0


def main() -> None:
    try:
        exit_code = asyncio.run(main_async())
    except Exception as exc:
        print(json.dumps({"error": str(exc)}))
        exit_code = 1
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
