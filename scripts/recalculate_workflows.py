"""
Recalculate every started or paused workflow of a definition.

Usage:
    python -m scripts.recalculate_workflows --definition "Purchase approval"
    python -m scripts.recalculate_workflows --definition "Purchase approval" --dry-run
    python -m scripts.recalculate_workflows --definition "Purchase approval" --workers 8
"""
import argparse
import sys

from workflow_core.config.settings import get_settings
from workflow_core.context import WorkflowContext
from workflow_core.domain.errors import DomainError
from workflow_core.utils.logger import setup_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recalculate the live workflows of a definition")
    parser.add_argument(
        "--definition",
        type=str,
        required=True,
        help="Name of the workflow definition to recalculate"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads (default: RECALCULATION_MAX_WORKERS)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the changes without applying them"
    )
    parser.add_argument(
        "--isolate-failures",
        action="store_true",
        help="Keep going when a workflow fails and report it at the end"
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    updates = {}
    if args.workers is not None:
        updates["recalculation_max_workers"] = max(args.workers, 1)
    if args.isolate_failures:
        updates["recalculation_isolate_failures"] = True
    if updates:
        settings = settings.model_copy(update=updates)
    setup_logging(settings)

    print(f"Recalculating workflows of '{args.definition}'...")
    print(f"  Database: {settings.mongo_db}")
    print(f"  Workers: {settings.recalculation_max_workers}")
    print(f"  Dry run: {args.dry_run}")
    print()

    with WorkflowContext.mongo(settings) as context:
        try:
            definition = context.workflow_service.get_workflow_definition_by_name(args.definition)
            output = context.recalculation_service.recalculate_workflow_definition(
                definition, dry_run=args.dry_run
            )
        except DomainError as e:
            logger.error(f"Recalculation failed: {e.message}", extra={"error_code": e.error_code})
            print(f"Recalculation failed: {e.message}")
            return 1

    for key, count in output.summary().items():
        print(f"  {key}: {count}")
    if output.failed_workflow_ids:
        print(f"Failed workflows: {', '.join(output.failed_workflow_ids)}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
