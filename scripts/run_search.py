#!/usr/bin/env python3
"""Run one AI contact search from the command line and optionally import the results."""

from __future__ import annotations

import argparse
import asyncio
import sys

from app.core.auth import Principal, PrincipalRole
from app.core.config import get_settings
from app.core.telemetry import configure_logging
from app.schemas.search import CandidateContact, SearchFilters, SearchRequest
from app.services.container import build_container
from app.services.workflow import SearchWorkflow, WorkflowState


def render_candidates(contacts: list[CandidateContact]) -> str:
    if not contacts:
        return "no candidate contacts found"
    lines = [f"{'confidence':>10}  {'name':<28} {'email':<32} {'company':<24} source"]
    for contact in contacts:
        lines.append(
            f"{contact.confidence_score:>10.2f}  {(contact.name or '-')[:28]:<28} "
            f"{(contact.email or '-')[:32]:<32} {(contact.company or '-')[:24]:<24} {contact.source_url}"
        )
    return "\n".join(lines)


def _print_progress(state: WorkflowState) -> None:
    progress = state.search_progress
    if progress is None:
        return
    print(f"[{progress.percent:>3}%] {progress.stage}: {progress.message}", file=sys.stderr)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    container = build_container(settings)
    role = PrincipalRole.ADMIN if args.admin else PrincipalRole.USER
    workflow = SearchWorkflow(
        container.orchestrator,
        container.channel,
        Principal(user_id=args.user_id, role=role),
        on_change=_print_progress if args.verbose else None,
    )
    request = SearchRequest(
        query=args.query,
        filters=SearchFilters(
            beats=args.beat,
            regions=args.region,
            countries=args.country,
            languages=args.language,
        ),
        max_results=args.max_results,
    )

    try:
        search_id = await workflow.submit_search(request)
        if search_id is None:
            print(f"search rejected: {workflow.state.error_code} {workflow.state.search_error}", file=sys.stderr)
            return 2

        await container.orchestrator.wait_for(search_id)
        await workflow.settle()
        await workflow.refresh_status()
        if not workflow.has_results:
            await workflow.load_results()

        print(render_candidates(workflow.state.contacts))
        if workflow.state.search_error:
            print(f"search {workflow.state.search_status.value}: {workflow.state.search_error}", file=sys.stderr)

        if args.import_all and workflow.has_results:
            workflow.select_all_contacts()
            result = await workflow.import_selected_contacts(tags=args.tag)
            if result is not None:
                print(f"imported={result.imported} failed={result.failed} already={len(result.already_imported)}")
        return 0 if workflow.state.search_status.value == "completed" else 1
    finally:
        await workflow.close()
        await container.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Search for media contacts and print the candidates.")
    parser.add_argument("query", help="Free-text description of the target audience")
    parser.add_argument("--beat", action="append", default=[], help="Beat filter (repeatable)")
    parser.add_argument("--region", action="append", default=[], help="Region filter (repeatable)")
    parser.add_argument("--country", action="append", default=[], help="Country filter (repeatable)")
    parser.add_argument("--language", action="append", default=[], help="Language filter (repeatable)")
    parser.add_argument("--max-results", type=int, default=None, help="Maximum results per provider")
    parser.add_argument("--user-id", default="cli", help="Identity the search is billed and rate limited against")
    parser.add_argument("--admin", action="store_true", help="Run with the admin rate-limit profile")
    parser.add_argument("--import-all", action="store_true", help="Import every candidate after the search")
    parser.add_argument("--tag", action="append", default=[], help="Tag applied to imported contacts (repeatable)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print progress events to stderr")
    args = parser.parse_args()

    configure_logging(get_settings())
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
