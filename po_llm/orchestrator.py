"""High-level orchestration for catalog translation."""

from __future__ import annotations

import asyncio
import pathlib
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import polib

from .catalogs import apply_translations, catalog_exists, extract_units, load_catalog
from .errors import (
    CatalogError,
    CatalogWriteError,
    ErrorCategory,
    ErrorRecord,
    InvalidOutputPathError,
    TranslationProviderError,
)
from .reporting import EventKind, ProgressReporter
from .structures import BatchConfig, TranslationUnit, chunk_units
from .translators import TranslationProtocol


T = TypeVar("T")
R = TypeVar("R")

PREVIEW_LIMIT = 5


@dataclass
class LanguageOutcome:
    """Result of one (file, language) task."""

    language: str
    output_path: Optional[pathlib.Path]
    translated: int = 0
    failed: int = 0
    batches: int = 0
    error: Optional[ErrorRecord] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FileOutcome:
    """Aggregated result for every target language of one input file."""

    input_path: pathlib.Path
    languages: List[LanguageOutcome] = field(default_factory=list)
    error: Optional[ErrorRecord] = None

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return not self.languages or any(outcome.ok for outcome in self.languages)

    @property
    def translated(self) -> int:
        return sum(outcome.translated for outcome in self.languages)

    @property
    def failed(self) -> int:
        return sum(outcome.failed for outcome in self.languages)


@dataclass
class RunSummary:
    """Report returned after processing every input file."""

    files: List[FileOutcome]
    elapsed_seconds: float

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.files if outcome.ok)

    @property
    def failed_files(self) -> int:
        return len(self.files) - self.succeeded

    @property
    def translated(self) -> int:
        return sum(outcome.translated for outcome in self.files)

    @property
    def failed(self) -> int:
        return sum(outcome.failed for outcome in self.files)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_files else 0


def build_output_path(
    input_path: pathlib.Path, target_language: str, pattern: str
) -> pathlib.Path:
    """Substitute ``{lang}`` and ``{name}`` relative to the input file's directory."""

    stem = input_path.stem
    if not stem or stem in {".", ".."}:
        raise InvalidOutputPathError(f"Invalid filename: {input_path}")
    relative = pattern.replace("{lang}", target_language).replace("{name}", stem)
    return input_path.parent / relative


async def run_bounded(
    items: Sequence[T],
    limit: int,
    worker: Callable[[T], Awaitable[R]],
) -> List[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Results arrive in completion order and are returned in submission order.
    """

    semaphore = asyncio.Semaphore(max(1, limit))

    async def _guarded(position: int, item: T) -> tuple[int, R]:
        async with semaphore:
            return position, await worker(item)

    tasks = [
        asyncio.ensure_future(_guarded(position, item))
        for position, item in enumerate(items)
    ]
    results: List[Optional[R]] = [None] * len(tasks)
    try:
        for next_done in asyncio.as_completed(tasks):
            position, outcome = await next_done
            results[position] = outcome
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    return results  # type: ignore[return-value]


class TranslationOrchestrator:
    """Fans catalogs out over files and target languages and merges results back."""

    def __init__(
        self,
        *,
        protocol: TranslationProtocol,
        target_languages: Sequence[str],
        output_pattern: str,
        batch_config: BatchConfig,
        skip_translated: bool = True,
        custom_instructions: Optional[str] = None,
        dry_run: bool = False,
        force_write: bool = False,
        reporter: Optional[ProgressReporter] = None,
    ) -> None:
        self.protocol = protocol
        self.target_languages = list(target_languages)
        self.output_pattern = output_pattern
        self.batch_config = batch_config
        self.skip_translated = skip_translated
        self.custom_instructions = custom_instructions
        self.dry_run = dry_run
        self.force_write = force_write
        self.reporter = reporter or ProgressReporter()

    @property
    def writes_enabled(self) -> bool:
        return not self.dry_run or self.force_write

    async def run(self, input_paths: Sequence[pathlib.Path]) -> RunSummary:
        start_time = time.time()
        files = await run_bounded(
            list(input_paths),
            self.batch_config.file_concurrency,
            self.translate_file,
        )
        return RunSummary(files=files, elapsed_seconds=time.time() - start_time)

    async def translate_file(self, input_path: pathlib.Path) -> FileOutcome:
        self.reporter.emit(EventKind.FILE_STARTED, "started", file=input_path)
        try:
            template = await asyncio.to_thread(load_catalog, input_path)
        except CatalogError as exc:
            record = ErrorRecord(ErrorCategory.CATALOG, str(exc))
            self.reporter.emit(EventKind.ERROR, record.message, file=input_path)
            return FileOutcome(input_path=input_path, error=record)

        async def _language(language: str) -> LanguageOutcome:
            return await self.translate_language(input_path, template, language)

        languages = await run_bounded(
            self.target_languages,
            self.batch_config.language_concurrency,
            _language,
        )
        outcome = FileOutcome(input_path=input_path, languages=languages)
        if outcome.ok:
            self.reporter.emit(
                EventKind.FILE_FINISHED,
                f"{outcome.translated} messages translated, {outcome.failed} failed",
                file=input_path,
            )
        else:
            outcome.error = ErrorRecord(
                ErrorCategory.TRANSLATION, "all target languages failed"
            )
            self.reporter.emit(EventKind.ERROR, outcome.error.message, file=input_path)
        return outcome

    async def translate_language(
        self,
        input_path: pathlib.Path,
        template: polib.POFile,
        language: str,
    ) -> LanguageOutcome:
        try:
            output_path = build_output_path(input_path, language, self.output_pattern)
        except InvalidOutputPathError as exc:
            return self._fail(
                LanguageOutcome(language=language, output_path=None),
                input_path,
                ErrorRecord(ErrorCategory.PATH, str(exc)),
            )
        outcome = LanguageOutcome(language=language, output_path=output_path)

        if self.writes_enabled:
            try:
                await asyncio.to_thread(_touch, output_path)
            except OSError as exc:
                return self._fail(
                    outcome,
                    input_path,
                    ErrorRecord(
                        ErrorCategory.PATH,
                        f"Could not create output file {output_path}: {exc}",
                    ),
                )

        existing = await self._load_existing(input_path, language, output_path, template)
        units = extract_units(existing, template, self.skip_translated)
        if not units:
            self._finish(outcome, input_path)
            return outcome

        preview: List[TranslationUnit] = []
        for batch in chunk_units(units, self.batch_config.batch_size):
            try:
                result = await self.protocol.translate(
                    language, batch, self.custom_instructions
                )
            except TranslationProviderError as exc:
                return self._fail(
                    outcome,
                    input_path,
                    ErrorRecord(ErrorCategory.TRANSLATION, str(exc)),
                )

            for failure in result.failed:
                self.reporter.emit(
                    EventKind.WARNING,
                    f"{failure.reason.value} translation for '{failure.unit.msgid}'",
                    file=input_path,
                    language=language,
                )
            if result.unexpected_indices:
                self.reporter.emit(
                    EventKind.WARNING,
                    "discarded unexpected indices "
                    + ", ".join(str(index) for index in result.unexpected_indices),
                    file=input_path,
                    language=language,
                )

            if self.writes_enabled and result.translated:
                try:
                    await asyncio.to_thread(
                        apply_translations, result.translated, language, output_path
                    )
                except CatalogWriteError as exc:
                    return self._fail(
                        outcome,
                        input_path,
                        ErrorRecord(
                            ErrorCategory.PERSISTENCE,
                            f"batch {outcome.batches + 1}: {exc}",
                        ),
                    )

            outcome.batches += 1
            outcome.translated += len(result.translated)
            outcome.failed += len(result.failed)
            if len(preview) < PREVIEW_LIMIT:
                preview.extend(result.translated[: PREVIEW_LIMIT - len(preview)])
            self.reporter.emit(
                EventKind.BATCH_FINISHED,
                f"batch {outcome.batches}: {len(result.translated)} translated, "
                f"{len(result.failed)} failed",
                file=input_path,
                language=language,
            )

        if self.dry_run:
            self._emit_preview(input_path, language, preview, outcome.translated)
        self._finish(outcome, input_path)
        return outcome

    async def _load_existing(
        self,
        input_path: pathlib.Path,
        language: str,
        output_path: pathlib.Path,
        template: polib.POFile,
    ) -> polib.POFile:
        if not catalog_exists(output_path):
            return template
        try:
            return await asyncio.to_thread(load_catalog, output_path)
        except CatalogError as exc:
            self.reporter.emit(
                EventKind.WARNING,
                f"{exc}; using the template as baseline",
                file=input_path,
                language=language,
            )
            return template

    def _emit_preview(
        self,
        input_path: pathlib.Path,
        language: str,
        preview: Sequence[TranslationUnit],
        total: int,
    ) -> None:
        lines = [f"--- Dry Run Preview ({language}) ---"]
        lines.extend(f"#{number:02} {unit}" for number, unit in enumerate(preview, 1))
        if total > len(preview):
            lines.append(f"... and {total - len(preview)} more")
        self.reporter.emit(
            EventKind.PREVIEW, "\n".join(lines), file=input_path, language=language
        )

    def _finish(self, outcome: LanguageOutcome, input_path: pathlib.Path) -> None:
        message = f"{outcome.translated} translated"
        if outcome.failed:
            message += f", {outcome.failed} failed"
        self.reporter.emit(
            EventKind.LANGUAGE_FINISHED,
            message,
            file=input_path,
            language=outcome.language,
        )

    def _fail(
        self,
        outcome: LanguageOutcome,
        input_path: pathlib.Path,
        record: ErrorRecord,
    ) -> LanguageOutcome:
        outcome.error = record
        self.reporter.emit(
            EventKind.ERROR, record.message, file=input_path, language=outcome.language
        )
        return outcome


def _touch(path: pathlib.Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
