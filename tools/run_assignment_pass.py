"""Run the queue assignment pass once from the command line.

Useful from cron or when the in-process scheduler is disabled. Without
``--tenant-id`` every tenant with waiting sessions is processed.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import uuid

from dotenv import load_dotenv

from agent_inbox.models.session import get_sessionmaker, session_scope
from agent_inbox.routing.repository import SqlAlchemyInboxRepository
from agent_inbox.routing.scheduler import QueueAssignmentScheduler
from agent_inbox.routing.service import InboxService

logger = logging.getLogger("tools.run_assignment_pass")


def _parse_uuid(parser: argparse.ArgumentParser, value: str | None, flag: str) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        parser.error(f"{flag} requires a valid UUID")
    return None  # pragma: no cover - parser.error exits


def main(argv: list[str] | None = None) -> dict[str, int]:
    """Parse CLI arguments, run one pass and print assigned counts as JSON."""

    load_dotenv()
    parser = argparse.ArgumentParser(description="Assign queued inbox sessions to agents")
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="SQLAlchemy database URL (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--tenant-id",
        default=os.getenv("TENANT_ID"),
        help="Only process this tenant (UUID)",
    )
    parser.add_argument(
        "--team-id",
        help="Only process this team; requires --tenant-id",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    if not args.database_url:
        parser.error("--database-url is required (or set DATABASE_URL)")
    tenant_id = _parse_uuid(parser, args.tenant_id, "--tenant-id")
    team_id = _parse_uuid(parser, args.team_id, "--team-id")
    if team_id is not None and tenant_id is None:
        parser.error("--team-id requires --tenant-id")

    factory = get_sessionmaker(database_url=args.database_url)
    if tenant_id is None:
        results = {
            str(key): value for key, value in QueueAssignmentScheduler(factory).run_once().items()
        }
    else:
        with session_scope(factory) as session:
            service = InboxService(SqlAlchemyInboxRepository(session, tenant_id=tenant_id))
            results = {str(tenant_id): service.assign_queue(team_id)["assigned"]}

    logger.info("Assigned %d session(s)", sum(results.values()))
    sys.stdout.write(json.dumps(results, indent=2) + "\n")
    return results


if __name__ == "__main__":  # pragma: no cover - CLI execution
    main()
