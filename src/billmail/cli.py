"""Command-line interface for email bill ingestion."""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .classification import ClassificationPolicy
from .config import Config
from .ingestion import MailboxError
from .models import FetchResult, IngestionStatus
from .processing import EmailParser
from .semantic import InferenceClient
from .service import IngestionService
from .storage import DatabaseClient
from .triage import list_triage

logger = logging.getLogger(__name__)


def print_result(result: FetchResult, verbose: bool = False) -> None:
    """Print a run summary.

    Args:
        result: Outcome of a poll, backfill or reprocess
        verbose: Also print one line per message
    """
    print("\n" + "=" * 80)
    print(f"{result.mailbox} (uidvalidity {result.uid_validity})")
    print("=" * 80)
    print(f"Messages considered: {result.total_fetched}")
    print(f"  Ingested: {result.ingested}")
    print(f"  Ignored:  {result.ignored}")
    print(f"  Skipped:  {result.skipped}")
    print(f"  Failed:   {result.failed}")
    print(f"\nPerformance: {result.duration_sec:.2f}s "
          f"(parse: {result.parse_time_sec:.3f}s, "
          f"classify: {result.classification_time_sec:.3f}s, "
          f"materialize: {result.materialize_time_sec:.3f}s)")

    if verbose:
        print()
        for detail in result.details:
            print(f"  [{detail.status:>8}] uid={detail.uid} {detail.subject or '(no subject)'!r}"
                  f" - {detail.reason or ''}")

    for error in result.errors:
        print(f"  ERROR {error}")


def _service() -> IngestionService:
    return IngestionService.from_config(Config.from_env())


def cmd_poll(args) -> int:
    service = _service()
    try:
        result = service.poll_once()
    finally:
        service.close()
    print_result(result, verbose=args.verbose)
    return 1 if result.failed else 0


def cmd_watch(args) -> int:
    service = _service()
    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, stopping after the current poll")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    try:
        service.run_forever(stop_event)
    finally:
        service.close()
    return 0


def cmd_backfill(args) -> int:
    service = _service()
    try:
        result = service.backfill(days=args.days, force=args.force)
    finally:
        service.close()
    print_result(result, verbose=args.verbose)
    return 1 if result.failed else 0


def cmd_log(args) -> int:
    service = _service()
    try:
        user = service.resolve_user()
        status = IngestionStatus(args.status) if args.status else None
        entries = service.db.list_log_entries(user.id, status=status, limit=args.limit)
    finally:
        service.close()

    for entry in entries:
        marker = "ingested" if entry.ingested else entry.status.value
        received = entry.internal_date.isoformat() if entry.internal_date else "-"
        print(f"{entry.id:>6} [{marker:>9}] uid={entry.uid} {received} "
              f"{entry.from_address or '-'} {entry.subject or '(no subject)'!r}")
        if entry.decision:
            print(f"         {entry.decision.tier.value}: {entry.decision.reason}")
        if entry.error:
            print(f"         error: {entry.error}")
    print(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
    return 0


def cmd_clear_log(args) -> int:
    if not args.yes:
        print("Refusing to clear the ingestion log without --yes", file=sys.stderr)
        return 2

    config = Config.from_env()
    db = DatabaseClient(config.database_url)
    try:
        user_id = None if args.all_users else config.user_id
        deleted = db.delete_log_entries(user_id)
    finally:
        db.close()
    print(f"Deleted {deleted} log entries; the next poll starts from the newest messages")
    return 0


def cmd_triage(args) -> int:
    service = _service()
    try:
        user = service.resolve_user()
        rows = list_triage(service.db, user, limit=args.limit)
    finally:
        service.close()

    for entry, rec in rows:
        verdict = "PROCESS" if rec.should_process else "skip"
        print(f"{entry.id:>6} [{verdict:>7} {rec.confidence:.1f}] {entry.from_address or '-'} "
              f"{entry.subject or '(no subject)'!r}")
        print(f"         {rec.reason}")
    print(f"\n{len(rows)} skipped message(s)")
    return 0


def _reprocess_many(entry_ids: list[int], force_ingest: bool, verbose: bool) -> int:
    service = _service()
    failures = 0
    try:
        for entry_id in entry_ids:
            try:
                result = service.reprocess(entry_id, force_ingest=force_ingest)
            except (LookupError, MailboxError) as e:
                print(f"{entry_id}: {e}", file=sys.stderr)
                failures += 1
                continue
            print_result(result, verbose=verbose)
            failures += result.failed
    finally:
        service.close()
    return 1 if failures else 0


def cmd_promote(args) -> int:
    return _reprocess_many(args.ids, force_ingest=True, verbose=args.verbose)


def cmd_retry(args) -> int:
    return _reprocess_many(args.ids, force_ingest=False, verbose=args.verbose)


def cmd_classify(args) -> int:
    """Dry run of the policy over .eml files; nothing is stored."""
    classifier = None
    if os.getenv("OPENAI_API_KEY"):
        classifier = InferenceClient(
            api_key=os.getenv("OPENAI_API_KEY"),
            model_name=os.getenv("OPENAI_MODEL_NAME", "gpt-4o-mini"),
            base_url=os.getenv("OPENAI_BASE_URL"),
        )
    policy = ClassificationPolicy(classifier, float(os.getenv("LLM_CONFIDENCE_THRESHOLD", "0.6")))

    paths = []
    for path in args.files:
        paths.extend(sorted(path.glob("*.eml")) if path.is_dir() else [path])

    rows = []
    failures = 0
    for path in paths:
        try:
            parsed = EmailParser.parse(path.read_bytes())
            decision = policy.decide(parsed, vendors=[])
        except Exception as e:
            print(f"{path.name}: ERROR {e}", file=sys.stderr)
            failures += 1
            continue
        verdict = "INGEST" if decision.should_ingest else "skip"
        print(f"{path.name}: {verdict} [{decision.tier.value}] {decision.reason}")
        rows.append({"file": str(path), "subject": parsed.subject, **decision.model_dump(mode="json")})

    if args.output:
        with open(args.output, "w") as f:
            for row in rows:
                f.write(json.dumps(row, default=str) + "\n")
        print(f"\nResults saved to: {args.output}")

    print(f"\n{sum(1 for r in rows if r['should_ingest'])}/{len(rows)} would be ingested")
    if failures:
        print(f"{failures} file(s) could not be classified", file=sys.stderr)
    return 1 if failures else 0


def cmd_init_db(args) -> int:
    config = Config.from_env()
    db = DatabaseClient(config.database_url)
    try:
        db.init_schema()
    finally:
        db.close()
    print("Schema ready")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="billmail", description="Ingest bills from an IMAP mailbox")
    parser.add_argument("--env-file", type=Path, default=None, help="Load variables from this .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("poll", help="Process new messages once")
    p.add_argument("-v", "--verbose", action="store_true")
    p.set_defaults(func=cmd_poll)

    p = sub.add_parser("watch", help="Poll on EMAIL_INGESTION_POLLING_INTERVAL until interrupted")
    p.set_defaults(func=cmd_watch)

    p = sub.add_parser("backfill", help="Process messages from the last N days")
    p.add_argument("--days", type=int, default=7)
    p.add_argument("--force", action="store_true", help="Re-run messages already in the log")
    p.add_argument("-v", "--verbose", action="store_true")
    p.set_defaults(func=cmd_backfill)

    p = sub.add_parser("log", help="Show recent ingestion log entries")
    p.add_argument("--status", choices=[s.value for s in IngestionStatus])
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=cmd_log)

    p = sub.add_parser("clear-log", help="Delete ingestion log entries")
    p.add_argument("--yes", action="store_true", help="Confirm deletion")
    p.add_argument("--all-users", action="store_true")
    p.set_defaults(func=cmd_clear_log)

    p = sub.add_parser("triage", help="List skipped messages with a recommendation")
    p.add_argument("--limit", type=int, default=100)
    p.set_defaults(func=cmd_triage)

    p = sub.add_parser("promote", help="Ingest skipped messages regardless of the policy")
    p.add_argument("ids", type=int, nargs="+")
    p.add_argument("-v", "--verbose", action="store_true")
    p.set_defaults(func=cmd_promote)

    p = sub.add_parser("retry", help="Re-run the policy for logged messages")
    p.add_argument("ids", type=int, nargs="+")
    p.add_argument("-v", "--verbose", action="store_true")
    p.set_defaults(func=cmd_retry)

    p = sub.add_parser("classify", help="Dry-run the policy over .eml files")
    p.add_argument("files", type=Path, nargs="+", help=".eml files or directories of them")
    p.add_argument("--output", type=Path, help="Write decisions as JSON lines")
    p.set_defaults(func=cmd_classify)

    p = sub.add_parser("init-db", help="Create tables if missing")
    p.set_defaults(func=cmd_init_db)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)
    logging.basicConfig(level=logging.INFO)

    try:
        return args.func(args)
    except (ValueError, LookupError, MailboxError) as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
