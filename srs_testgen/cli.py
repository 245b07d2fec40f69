"""
Command Line Interface for the SRS Test Case Generator

- ``parse``: print a document's outline, requirement clauses and token estimate
- ``generate``: run one generation job end to end and write the test cases
- ``providers``: show which providers are reachable
- ``init-config``: write a default user config file

Errors are reported on stderr as machine-readable JSON with a non-zero exit code.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import PipelineConfig, init_default_config, load_config
from .exceptions import PipelineError, QuotaExceededError
from .ledger import UsageLedger
from .models import GenerationJob, GenerationRequest, JobStatus
from .nodes import DocumentIngestor
from .nodes.ingestor import media_type_for_filename
from .runtime import ProviderFactory
from .stores import (
    InMemoryJobRepository,
    InMemoryRequirementStore,
    InMemoryUsageStore,
    LoggingNotificationSink,
    StaticContextProvider,
)
from .workflow import JobOrchestrator


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Reduce noise from some libraries
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('requests').setLevel(logging.WARNING)


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""

    parser = argparse.ArgumentParser(
        prog="srs-testgen",
        description="SRS Test Case Generator - turn requirement documents into draft test cases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Inspect what the ingestor sees
  srs-testgen parse requirements.pdf

  # Generate with the configured provider
  srs-testgen generate requirements.docx --project checkout --max-test-cases 20

  # Against a local OpenAI-compatible server
  srs-testgen generate srs.md --provider local --base-url http://localhost:8080/v1
        """
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    sub = parser.add_subparsers(dest='command', required=True)

    parse_cmd = sub.add_parser('parse', help='Print outline and requirement clauses as JSON')
    parse_cmd.add_argument('file', type=Path, help='PDF, DOCX, Markdown or text file')
    parse_cmd.add_argument('--media-type', help='Override the media type guessed from the extension')

    gen = sub.add_parser('generate', help='Generate test cases for a requirement document')
    gen.add_argument('file', type=Path, help='PDF, DOCX, Markdown or text file')
    gen.add_argument('--media-type', help='Override the media type guessed from the extension')
    gen.add_argument('--project', default='default', help='Project name for context')
    gen.add_argument('--project-description', default='', help='Short project description')
    gen.add_argument('--test-suite', default='default', help='Target test suite id')
    gen.add_argument('--requester', default='cli', help='Identity usage is billed to')
    gen.add_argument('--existing-titles', type=Path,
                     help='JSON list of existing test case titles to avoid duplicating')
    gen.add_argument('--custom-prompt', help='Extra instructions for the model')
    gen.add_argument('--approach', default='functional', help='Testing approach (default: functional)')
    gen.add_argument('--max-test-cases', type=int, default=10, help='1-50 (default: 10)')
    gen.add_argument('--no-negative', action='store_true', help='Skip negative test cases')
    gen.add_argument('--no-edge-cases', action='store_true', help='Skip edge cases')
    gen.add_argument('--no-boundary', action='store_true', help='Skip boundary tests')
    gen.add_argument('--output', type=Path, help='Write test cases JSON here instead of stdout')

    providers = sub.add_parser('providers', help='List providers and whether they are reachable')

    for p in (gen, providers):
        p.add_argument('--provider', help='openai | local | anthropic | mock')
        p.add_argument('--model', help='Model identifier')
        p.add_argument('--base-url', help='Provider base URL')
        p.add_argument('--api-key', help='Provider API key')

    init = sub.add_parser('init-config', help='Write ~/.config/srs-testgen/config.toml')
    init.add_argument('--force', action='store_true', help='Overwrite an existing file')

    return parser


def read_document(path: Path, media_type: Optional[str]) -> tuple[bytes, str]:
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")
    return path.read_bytes(), media_type or media_type_for_filename(path.name)


def cmd_parse(args: argparse.Namespace) -> int:
    data, media_type = read_document(args.file, args.media_type)
    document = DocumentIngestor().parse(data, media_type)
    report = {
        "file": str(args.file),
        "media_type": media_type,
        "token_estimate": document.token_estimate,
        "sections": [s.model_dump() for s in document.sections],
        "requirements": document.requirement_sentences,
    }
    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 0


def load_titles(path: Optional[Path]) -> List[str]:
    if path is None:
        return []
    data = json.loads(path.read_text(encoding='utf-8'))
    if not isinstance(data, list):
        raise ValueError("--existing-titles must contain a JSON list of strings")
    return [str(t) for t in data]


async def run_generation(args: argparse.Namespace, config: PipelineConfig) -> Dict[str, Any]:
    """Run one job with in-memory collaborators and return job + test cases."""
    data, media_type = read_document(args.file, args.media_type)

    requirements = InMemoryRequirementStore()
    requirement = requirements.add(data, media_type, file_ref=str(args.file))
    context = StaticContextProvider(
        projects={args.project: {"name": args.project, "description": args.project_description}},
        titles={args.project: load_titles(args.existing_titles)},
    )
    jobs = InMemoryJobRepository()
    ledger = UsageLedger(
        InMemoryUsageStore(),
        monthly_cost_limit=config.monthly_cost_limit,
        monthly_request_limit=config.monthly_request_limit,
        project_monthly_cost_limit=config.project_monthly_cost_limit,
    )
    provider = ProviderFactory().create_provider(
        config.provider, api_key=config.api_key, base_url=config.base_url, timeout=config.provider_timeout
    )

    request = GenerationRequest(
        project_id=args.project,
        requirement_id=requirement.id,
        test_suite_id=args.test_suite,
        requester_id=args.requester,
        custom_prompt=args.custom_prompt,
        include_negative_tests=not args.no_negative,
        include_edge_cases=not args.no_edge_cases,
        include_boundary_tests=not args.no_boundary,
        max_test_cases=args.max_test_cases,
        testing_approach=args.approach,
        model=config.model,
    )

    async with JobOrchestrator(provider, ledger, requirements, context, jobs,
                               LoggingNotificationSink(), config=config) as orchestrator:
        admission = await orchestrator.submit(request)
        await orchestrator.join()
        job = await orchestrator.get_job(admission.job_id)

    return {"job": job, "test_cases": jobs.test_cases.get(job.id, [])}


def print_job_summary(job: GenerationJob) -> None:
    """Print brief job summary to stderr, keeping stdout for the JSON result."""
    print(f"Job {job.id}: {job.status.value}", file=sys.stderr)
    print(f"  Model: {job.model}", file=sys.stderr)
    print(f"  Tokens: {job.prompt_tokens} prompt / {job.completion_tokens} completion", file=sys.stderr)
    print(f"  Cost: ${job.cost:.6f}", file=sys.stderr)
    if job.status == JobStatus.COMPLETED:
        print(f"  Test cases: {job.generated_count}", file=sys.stderr)
    if job.error_message:
        print(f"  Error: {job.error_message}", file=sys.stderr)


def cmd_generate(args: argparse.Namespace) -> int:
    config = load_config(provider=args.provider, model=args.model,
                         base_url=args.base_url, api_key=args.api_key, workers=1)
    result = asyncio.run(run_generation(args, config))
    job: GenerationJob = result["job"]
    print_job_summary(job)

    if job.status != JobStatus.COMPLETED:
        print_error_summary(job.failure_reason or job.status.value, job.error_message or "")
        return 1

    payload = json.dumps(
        [tc.model_dump(mode="json") for tc in result["test_cases"]], indent=2, ensure_ascii=False
    )
    if args.output:
        args.output.write_text(payload, encoding='utf-8')
        print(f"Test cases written to {args.output}", file=sys.stderr)
    else:
        print(payload)
    return 0


def cmd_providers(args: argparse.Namespace) -> int:
    config = load_config(provider=args.provider, api_key=args.api_key)
    for info in ProviderFactory().list_providers(api_key=config.api_key):
        mark = "available" if info.get("available") else "unavailable"
        detail = info.get("base_url") or info.get("error") or ""
        print(f"{info['name']:<12} {mark:<12} {detail}")
    return 0


def print_error_summary(error_type: str, message: str, details: Any = None) -> None:
    """Print machine-readable error summary to stderr."""
    error_report = {
        "error_type": error_type,
        "message": message,
        "details": details,
    }
    print(json.dumps(error_report, indent=2, default=str), file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""

    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        if args.command == 'init-config':
            path = init_default_config(force=args.force)
            print(f"Config written: {path}")
            return 0
        if args.command == 'parse':
            return cmd_parse(args)
        if args.command == 'generate':
            return cmd_generate(args)
        return cmd_providers(args)

    except QuotaExceededError as e:
        logger.error(f"Admission denied: {e}")
        print_error_summary(e.reason, str(e), {
            "cost_used": e.decision.cost_used,
            "requests_used": e.decision.requests_used,
        })
        return 1

    except (PipelineError, ValueError, FileNotFoundError) as e:
        logger.error(f"Input validation failed: {e}")
        print_error_summary(getattr(e, "reason", type(e).__name__), str(e))
        return 2

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130  # Standard Unix exit code for SIGINT

    except Exception as e:
        logger.exception("Unexpected error occurred")
        print_error_summary(type(e).__name__, str(e))
        return 3


if __name__ == '__main__':
    sys.exit(main())
