"""Command-line entry point for inbox-tasks."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from pathlib import Path

import httpx

from inbox_tasks.core import AppSettings, configure_logging, load_app_settings
from inbox_tasks.core.errors import BatchPreconditionError
from inbox_tasks.core.models import BatchSummary, Task
from inbox_tasks.ingestion import EmailParser, normalize
from inbox_tasks.intelligence import EmailClassifier, ResponseMapper, build_llm_client
from inbox_tasks.processing import BatchOrchestrator, BatchRequest, TaskMaterializer
from inbox_tasks.storage import SqliteTaskStore


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Normalise stored emails and extract actionable tasks"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.set_defaults(command="info")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("info", help="Show configuration and store counts.")

    import_parser = commands.add_parser(
        "import", help="Store raw RFC822 (.eml) files for later processing."
    )
    import_parser.add_argument("files", nargs="+", type=Path, help="Files to import.")

    process_parser = commands.add_parser(
        "process", help="Run one task-extraction batch."
    )
    process_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum emails to process (default: batch.default_limit).",
    )
    process_parser.add_argument(
        "--days-back",
        dest="days_back",
        type=int,
        default=None,
        help="Only consider emails received within this many days.",
    )
    process_parser.add_argument(
        "--email-id",
        dest="email_ids",
        type=int,
        action="append",
        default=None,
        help="Process this email id regardless of other filters (repeatable).",
    )
    process_parser.add_argument(
        "--all",
        dest="include_processed",
        action="store_true",
        help="Include emails that were already processed.",
    )
    process_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop starting new emails after this many seconds.",
    )

    tasks_parser = commands.add_parser("tasks", help="List stored tasks.")
    tasks_parser.add_argument(
        "--email-id", dest="email_id", type=int, default=None, help="Filter by email."
    )
    tasks_parser.add_argument(
        "--needs-review",
        dest="needs_review",
        action="store_true",
        help="Only show tasks flagged for review.",
    )
    tasks_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Limit for task listing; set to 0 for no limit (default: 20).",
    )

    normalize_parser = commands.add_parser(
        "normalize", help="Print the canonical text of a raw body file."
    )
    normalize_parser.add_argument("file", type=Path, help="Text or HTML body file.")
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit status."""
    command = args.command
    if command == "import":
        return _run_import(settings, args.files)
    if command == "process":
        return _run_process(settings, args)
    if command == "tasks":
        limit = None if args.limit is not None and args.limit <= 0 else args.limit
        return _run_tasks(
            settings,
            email_id=args.email_id,
            needs_review=True if args.needs_review else None,
            limit=limit,
        )
    if command == "normalize":
        print(normalize(args.file.read_bytes()))
        return 0

    with SqliteTaskStore(settings.storage) as store:
        total = store.count_emails()
        pending = store.count_emails(unprocessed_only=True)
    print("inbox-tasks is ready. Import emails and run 'process' to extract tasks.")
    print(f"LLM provider: {settings.llm.provider} ({settings.llm.model})")
    print(f"Database path: {settings.storage.db_path}")
    print(f"Stored emails: {total} ({pending} awaiting task extraction)")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    return execute(args, settings)


def _run_import(settings: AppSettings, files: Sequence[Path]) -> int:
    """Parse ``.eml`` files and store them as uncleaned emails."""
    email_parser = EmailParser()
    with SqliteTaskStore(settings.storage) as store:
        for path in files:
            stored = store.persist_email(email_parser.parse(path.read_bytes()))
            print(f"Imported {path} as email {stored.id}")
    return 0


def _run_process(settings: AppSettings, args: argparse.Namespace) -> int:
    """Run one batch and report the outcome."""
    request = BatchRequest(
        limit=args.limit if args.limit is not None else settings.batch.default_limit,
        unprocessed_only=(
            settings.batch.unprocessed_only and not args.include_processed
        ),
        days_back=(
            args.days_back if args.days_back is not None else settings.batch.days_back
        ),
        email_ids=args.email_ids,
        timeout_seconds=(
            args.timeout if args.timeout is not None else settings.batch.timeout_seconds
        ),
    )
    with (
        httpx.Client() as http_client,
        SqliteTaskStore(settings.storage) as store,
    ):
        llm_client = build_llm_client(settings.llm, http_client=http_client)
        classifier = EmailClassifier(
            llm_client,
            temperature=settings.llm.temperature,
            max_body_chars=settings.llm.max_body_chars,
        )
        orchestrator = BatchOrchestrator(
            store,
            classifier,
            ResponseMapper(default_confidence=settings.extraction.default_confidence),
            TaskMaterializer(
                store,
                review_threshold=settings.extraction.review_threshold,
                ai_model=classifier.provider_id,
            ),
            settings.batch,
        )
        try:
            summary = orchestrator.run(request)
        except BatchPreconditionError as exc:
            print(f"Invalid batch request: {exc}")
            return 2

    _print_summary(summary)
    return 0


def _print_summary(summary: BatchSummary) -> None:
    print(
        f"Processed {summary.processed} email(s): "
        f"{summary.tasks_created} task(s) created, "
        f"{summary.marketing_count} marketing, "
        f"{summary.non_actionable_count} non-actionable, "
        f"{summary.failed} failed."
    )
    for result in summary.results:
        if result.error:
            print(f"  email {result.email_id}: {result.error_type}: {result.error}")
    if summary.timed_out:
        print(f"Timed out: {summary.skipped} email(s) not started.")


def _run_tasks(
    settings: AppSettings,
    *,
    email_id: int | None,
    needs_review: bool | None,
    limit: int | None,
) -> int:
    """List stored tasks."""
    with SqliteTaskStore(settings.storage) as store:
        tasks = store.list_tasks(
            email_id=email_id, needs_review=needs_review, limit=limit
        )

    if not tasks:
        print("No tasks found.")
        return 0

    print(f"Showing {len(tasks)} task(s):")
    header = (
        f"{'ID':>4}  {'Priority':<8}  {'Due':<22}  {'Conf':>4}  {'Email':>5}  Title"
    )
    print(header)
    print("-" * len(header))
    for task in tasks:
        print(_format_task(task))
    return 0


def _format_task(task: Task) -> str:
    task_id = task.id if task.id is not None else "-"
    email_id = task.email_id if task.email_id is not None else "-"
    due_text = task.due_date.isoformat(timespec="minutes") if task.due_date else "-"
    marker = " *" if task.needs_review else ""
    return (
        f"{str(task_id):>4}  {task.priority:<8}  {due_text:<22}  "
        f"{task.confidence:>4}  {str(email_id):>5}  {task.title}{marker}"
    )


if __name__ == "__main__":
    raise SystemExit(main())
