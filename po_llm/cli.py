"""Command line interface for the PO-LLM translator."""

from __future__ import annotations

import argparse
import asyncio
import glob
import pathlib
import sys
from typing import Iterable, List, Optional

from .configuration import PoLlmConfig, get_settings
from .errors import ConfigurationError, PoLlmError
from .orchestrator import RunSummary, TranslationOrchestrator
from .reporting import ConsoleSink, ProgressReporter
from .structures import BatchConfig
from .translators import build_protocol


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="po-llm",
        description="Translate gettext PO files using an LLM.",
    )
    parser.add_argument(
        "config_path",
        help="Path to the TOML configuration file.",
    )
    parser.add_argument(
        "-d",
        "--dry-run",
        action="store_true",
        help="Dry run mode: placeholder translations, no API calls, no writes.",
    )
    parser.add_argument(
        "-f",
        "--force-write",
        action="store_true",
        help="Write output files even in dry run mode.",
    )
    parser.add_argument(
        "--file-concurrent",
        type=int,
        default=4,
        help="Number of files to process concurrently (default: 4).",
    )
    parser.add_argument(
        "--lang-concurrent",
        type=int,
        default=2,
        help="Number of languages to translate concurrently (default: 2).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show per-batch progress information.",
    )
    parser.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )
    return parser


def discover_inputs(config_path: pathlib.Path, settings: PoLlmConfig) -> List[pathlib.Path]:
    """Expand the configured input pattern relative to the config file."""

    base = config_path.parent / settings.PROJECT_BASE_PATH
    pattern = str(base / settings.TRANSLATION_INPUT_PATTERN)
    return sorted(
        pathlib.Path(match)
        for match in glob.glob(pattern, recursive=True)
        if pathlib.Path(match).is_file()
    )


async def execute_translation(
    *,
    settings: PoLlmConfig,
    input_paths: List[pathlib.Path],
    dry_run: bool,
    force_write: bool,
    file_concurrency: int,
    language_concurrency: int,
    verbose: bool,
    provider_debug: bool,
) -> RunSummary:
    """Run the orchestrator while a console sink drains its progress channel."""

    protocol = build_protocol(settings, dry_run=dry_run, debug=provider_debug)
    reporter = ProgressReporter()
    orchestrator = TranslationOrchestrator(
        protocol=protocol,
        target_languages=settings.TRANSLATION_TARGET_LANGUAGES or [],
        output_pattern=settings.TRANSLATION_OUTPUT_PATTERN,
        batch_config=BatchConfig(
            batch_size=settings.TRANSLATION_BATCH_SIZE,
            file_concurrency=file_concurrency,
            language_concurrency=language_concurrency,
        ),
        skip_translated=settings.PROJECT_SKIP_TRANSLATED,
        custom_instructions=settings.LLM_CUSTOM_PROMPT,
        dry_run=dry_run,
        force_write=force_write,
        reporter=reporter,
    )
    sink = asyncio.create_task(reporter.drain(ConsoleSink(verbose=verbose)))
    try:
        return await orchestrator.run(input_paths)
    finally:
        reporter.close()
        await sink


def print_summary(summary: RunSummary) -> None:
    """Output a friendly report once processing completes."""

    print("\nSummary")
    print(f"  Succeeded:   {summary.succeeded} files")
    print(f"  Failed:      {summary.failed_files} files")
    print(f"  Translated:  {summary.translated} messages")
    if summary.failed:
        print(f"  Rejected:    {summary.failed} messages")
    print(f"  Duration:    {summary.elapsed_seconds:.2f} seconds")
    failures = [outcome for outcome in summary.files if not outcome.ok]
    if failures:
        print("  Notes:")
        for outcome in failures:
            print(f"    - {outcome.input_path}: {outcome.error}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    config_path = pathlib.Path(args.config_path).expanduser().resolve()
    if not config_path.is_file():
        parser.error(f"File '{args.config_path}' not found")
    if args.file_concurrent < 1 or args.lang_concurrent < 1:
        parser.error("concurrency limits must be at least 1")

    try:
        settings = get_settings(config_path)
    except ConfigurationError as exc:
        print(exc)
        return 1

    languages = settings.TRANSLATION_TARGET_LANGUAGES or []
    print("PO-LLM Translator")
    print(f"  Config:           {config_path}")
    print(f"  Target languages: {', '.join(languages)}")
    print(f"  Batch size:       {settings.TRANSLATION_BATCH_SIZE}")
    if args.dry_run:
        print("  Mode:             DRY RUN")

    input_paths = discover_inputs(config_path, settings)
    if not input_paths:
        print("No files found matching pattern.")
        return 0
    print(f"  Found {len(input_paths)} file(s)\n")

    try:
        summary = asyncio.run(
            execute_translation(
                settings=settings,
                input_paths=input_paths,
                dry_run=args.dry_run,
                force_write=args.force_write,
                file_concurrency=args.file_concurrent,
                language_concurrency=args.lang_concurrent,
                verbose=args.verbose,
                provider_debug=bool(
                    args.debug_provider or settings.PO_LLM_PROVIDER_DEBUG
                ),
            )
        )
    except PoLlmError as exc:
        print(exc)
        return 1
    except KeyboardInterrupt:
        print("Translation interrupted by user.")
        return 2

    print_summary(summary)
    return summary.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
