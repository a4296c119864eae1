"""Khodkar CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from rich.console import Console
from rich.text import Text

logger = logging.getLogger("khodkar.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

_DETAIL_LABELS = {
    "server": "Server",
    "tool": "Tool",
    "file_path": "File",
    "status_code": "HTTP status",
    "reason": "Reason",
    "step": "Step",
}


def _version() -> str:
    import importlib.metadata

    try:
        return importlib.metadata.version("khodkar")
    except importlib.metadata.PackageNotFoundError:
        from khodkar import __version__
        return __version__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="khodkar",
        description="Extract business rules and logic from codebases for customer support knowledge bases",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_version()}")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    analyze = subparsers.add_parser("analyze", help="Analyze a codebase and extract business rules")
    analyze.add_argument("-d", "--directory", required=True, help="Target codebase directory to analyze")
    analyze.add_argument("-o", "--output", required=True, help="Output file path for extracted business rules")
    analyze.add_argument(
        "--llm-base-url", required=True,
        help="LLM API base URL (e.g., https://api.openai.com/v1, http://localhost:11434)",
    )
    analyze.add_argument("--llm-api-key", required=True, help="LLM API key for authentication")
    analyze.add_argument("--llm-model", required=True, help="LLM model name (e.g., gpt-4o, qwen3:32b)")
    analyze.add_argument(
        "-f", "--format", choices=("json", "markdown"), default="markdown",
        help="Output format (default: markdown)",
    )
    analyze.add_argument("-v", "--verbose", action="store_true", help="Enable detailed progress logging")
    analyze.add_argument("--llm-max-tokens", type=int, default=None, help="Maximum tokens for LLM response (1000-32000)")
    analyze.add_argument("--llm-max-steps", type=int, default=None, help="Maximum analysis steps for LLM (10-500)")
    analyze.add_argument(
        "--llm-provider", choices=("openai", "ollama"), default=None,
        help="Chat API flavour of the endpoint (default: from config, openai)",
    )
    analyze.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.khodkar/config.json)")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "analyze":
        sys.exit(_run_analyze(args))
    parser.print_help()
    sys.exit(EXIT_ERROR)


def _run_analyze(args: argparse.Namespace) -> int:
    from khodkar.analysis.errors import AnalysisCancelled, KhodkarError

    console = Console()
    err_console = Console(stderr=True)

    try:
        return _analyze(args, console)
    except (KeyboardInterrupt, AnalysisCancelled) as e:
        logger.warning(f"Analysis cancelled: {e}")
        err_console.print(Text("Analysis cancelled.", style="yellow"))
        return EXIT_CANCELLED
    except KhodkarError as e:
        logger.error(f"{e.kind}: {e}")
        _report_error(err_console, e)
        return EXIT_ERROR
    except Exception as e:
        logger.exception("Unexpected error during analysis")
        err_console.print(Text(f"Unexpected error: {type(e).__name__}: {e}", style="red"))
        return EXIT_ERROR


def _analyze(args: argparse.Namespace, console: Console) -> int:
    from khodkar.analysis.agent import AgentEvent
    from khodkar.analysis.analyzer import CodebaseAnalyzer
    from khodkar.analysis.config import build_llm_config, get_config
    from khodkar.analysis.output import OutputFormatter
    from khodkar.logger import setup_logging

    cfg = get_config(args.config)
    setup_logging(cfg.log_file, verbose=args.verbose)

    llm_config = build_llm_config(
        base_url=args.llm_base_url,
        api_key=args.llm_api_key,
        model=args.llm_model,
        max_tokens=args.llm_max_tokens if args.llm_max_tokens is not None else cfg.llm_max_tokens,
        max_steps=args.llm_max_steps if args.llm_max_steps is not None else cfg.llm_max_steps,
        provider=args.llm_provider or cfg.llm_provider,
    )

    if args.verbose:
        console.print(Text("🔍 Starting business rules analysis...", style="blue"))
        console.print(Text(f"Directory: {args.directory}", style="dim"))
        console.print(Text(f"Output: {args.output}", style="dim"))
        console.print(Text(f"Format: {args.format}", style="dim"))

    with console.status("Initializing tool servers...") as status:

        def on_event(event: AgentEvent) -> None:
            if event.type == "step":
                status.update(f"Analyzing codebase with LLM (step {event.data['step']}/{event.data['budget']})...")
            elif event.type == "tool_end" and args.verbose:
                mark = "✓" if event.data.get("success") else "✗"
                detail = f" [{event.data['error_kind']}]" if event.data.get("error_kind") else ""
                console.print(Text(f"  {mark} {event.data['tool']} ({event.data['duration']}s){detail}", style="dim"))

        analyzer = CodebaseAnalyzer(llm_config, cfg, listener=on_event)
        result = asyncio.run(analyzer.analyze(args.directory))

        status.update("Formatting output...")
        formatter = OutputFormatter(
            include_metadata=True,
            include_source_references=True,
            group_by_category=True,
            sort_by_priority=True,
        )
        path = formatter.save(result, args.output, args.format)

    outcome = analyzer.outcome
    if outcome is not None and outcome.status.value == "budget_exhausted":
        console.print(Text(
            f"⚠ Step budget ({outcome.steps}) exhausted before the model finished; results may be partial.",
            style="yellow",
        ))
    if analyzer.catalog is not None:
        for diagnostic in analyzer.catalog.diagnostics:
            console.print(Text(f"⚠ {diagnostic}", style="yellow"))

    summary = result.summary
    console.print(Text("✅ Analysis complete!", style="green"))
    console.print(Text(f"📄 Output saved to: {path}", style="blue"))
    console.print()
    console.print(Text("Summary:", style="bold"))
    console.print(f"  • Business rules extracted: {summary.total_rules}", markup=False)
    console.print(f"  • High priority rules: {summary.high_priority_rules}", markup=False)
    console.print(f"  • User-facing rules: {summary.user_facing_rules}", markup=False)
    return EXIT_OK


def _report_error(err_console: Console, error) -> None:
    err_console.print(Text(f"{error.kind}: {error}", style="red"))
    for key, label in _DETAIL_LABELS.items():
        if key in error.details:
            err_console.print(Text(f"{label}: {error.details[key]}", style="dim"))


if __name__ == "__main__":
    main()
