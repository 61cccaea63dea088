"""
Main entry point for the Why Stack maintenance CLI.
"""

import argparse
import asyncio
import logging
import sys
from uuid import UUID

from why_stack.agents.evidence_classifier import EvidenceClassifier
from why_stack.config import Settings, get_settings
from why_stack.db.session import create_engine, create_schema, create_session_factory
from why_stack.models.llm_client import LLMClient
from why_stack.orchestrator.hypothesis_orchestrator import HypothesisOrchestrator
from why_stack.orchestrator.schemas import ActionResult, HypothesisWithRelations
from why_stack.types import ConfidenceMode


def setup_logging() -> None:
    """Configure application logging."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="why-stack", description="Why Stack maintenance commands")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("init-db", help="Create missing tables")
    subcommands.add_parser("recalculate-all", help="Recalculate every confidence, leaves first")
    subcommands.add_parser("reclassify-evidence", help="Re-run the evidence classifier over all evidence")
    subcommands.add_parser("audit", help="Compare stored confidences with own-evidence values")
    subcommands.add_parser("tree", help="Print the hypothesis graph as an outline")
    return parser


def render_tree(hypotheses: list[HypothesisWithRelations]) -> list[str]:
    """
    Render hypotheses as an indented outline.

    Nodes reachable through several parents are printed under each of them.
    """
    by_id = {h.id: h for h in hypotheses}
    lines: list[str] = []

    def walk(node: HypothesisWithRelations, depth: int, path: set[UUID]) -> None:
        marker = " (manual)" if node.confidence_mode is ConfidenceMode.MANUAL else ""
        lines.append(f"{'  ' * depth}- [{node.confidence:3d}%{marker}] {node.statement}")
        for edge in node.children:
            child = by_id.get(edge.child_id)
            if child is not None and child.id not in path:
                walk(child, depth + 1, path | {child.id})

    for root in (h for h in hypotheses if not any(p in by_id for p in h.parent_ids)):
        walk(root, 0, {root.id})
    return lines


def _report(result: ActionResult) -> int:
    logger = logging.getLogger(__name__)
    if not result.ok:
        logger.error(result.error)
        return 1
    data = result.data
    if isinstance(data, list):
        for item in data:
            print(item.model_dump_json())
    elif data is not None:
        print(data.model_dump_json(indent=2))
    return 0


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    """
    Run one CLI command against the configured database.

    Returns:
        Process exit code.
    """
    logger = logging.getLogger(__name__)
    engine = create_engine(settings, url=args.database_url)
    llm_client = LLMClient(
        endpoint=settings.llm_endpoint,
        model=settings.llm_model_name,
        max_retries=settings.llm_max_retries,
        timeout=settings.llm_timeout,
    )

    try:
        if args.command == "init-db":
            await create_schema(engine)
            return 0

        orchestrator = HypothesisOrchestrator(
            create_session_factory(engine),
            classifier=EvidenceClassifier(
                llm_client=llm_client,
                company_context=settings.company_context,
                enabled=settings.classifier_enabled,
            ),
        )

        if args.command == "recalculate-all":
            return _report(await orchestrator.recalculate_all_confidences())
        if args.command == "reclassify-evidence":
            return _report(await orchestrator.reclassify_all_evidence())
        if args.command == "audit":
            return _report(await orchestrator.audit_confidences())
        if args.command == "tree":
            for line in render_tree(await orchestrator.get_hypotheses_with_relations()):
                print(line)
            return 0

        logger.error(f"Unknown command: {args.command}")
        return 2
    finally:
        await llm_client.close()
        await engine.dispose()


def main() -> None:
    """Main entry point for the application."""
    setup_logging()
    args = build_parser().parse_args(sys.argv[1:])

    try:
        sys.exit(asyncio.run(run_command(args, get_settings())))
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        sys.exit(130)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
