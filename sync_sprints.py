#!/usr/bin/env python3
"""
Sprint Sync CLI
===============

Runs a Jira sprint sync for one stored user and prints the result as JSON.

Example Usage:
    # Active + recently closed sprints
    python sync_sprints.py --user-id 1

    # Historical backfill of closed sprints for one board
    python sync_sprints.py --user-id 1 --type closed_all --board-ids 12

    # Board taken from a pasted board URL
    python sync_sprints.py --user-id 1 --type active \\
        --board-url "https://jira.example.com/secure/RapidBoard.jspa?rapidView=42"
"""

import argparse
import json
import logging
import sys

from dotenv import load_dotenv

# Load environment variables from .env file (if it exists)
# IMPORTANT: Must be called BEFORE reading settings from the environment
load_dotenv()

from api.database import create_database
from jira_sync.client import ExternalServiceError
from jira_sync.credentials import ConfigurationError
from jira_sync.models import SyncRequest
from jira_sync.settings import SyncSettings
from jira_sync.sync_service import SyncOrchestrator, UserNotFoundError


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Sync Jira sprints into the local store")
    parser.add_argument("--user-id", type=int, required=True, help="User whose Jira settings to use")
    parser.add_argument(
        "--type",
        choices=["active", "closed", "closed_all", "all"],
        default="all",
        help="Which sprints to sync (default: all = active + recently closed)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Run even if the last successful sync is still fresh",
    )
    parser.add_argument("--board-ids", default=None, help="Comma-separated board ids for this run")
    parser.add_argument("--board-url", default=None, help="Board URL; overrides --board-ids")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = SyncSettings.from_env()
    _, SessionLocal = create_database(settings.db_path)
    orchestrator = SyncOrchestrator(SessionLocal, settings)

    request = SyncRequest(
        type=args.type,
        force=args.force,
        board_ids=args.board_ids,
        board_url=args.board_url,
    )
    try:
        result = orchestrator.run(args.user_id, request)
    except (ConfigurationError, UserNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except ExternalServiceError as e:
        print(json.dumps({"success": False, "error": e.message, "kind": e.kind}, indent=2))
        return 1

    print(json.dumps({"type": args.type, "result": result.model_dump()}, indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
