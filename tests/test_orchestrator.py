"""Tests for the nested file/language scheduler."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from po_llm.catalogs import apply_translations, load_catalog
from po_llm.errors import (
    CatalogWriteError,
    ErrorCategory,
    InvalidOutputPathError,
    TranslationProviderError,
)
from po_llm.orchestrator import TranslationOrchestrator, build_output_path, run_bounded
from po_llm.reporting import EventKind, ProgressReporter
from po_llm.structures import (
    BatchConfig,
    FailureReason,
    TranslationFailure,
    TranslationResult,
    TranslationUnit,
)
from po_llm.translators import (
    EchoTranslationProtocol,
    OpenAITranslationProtocol,
    TranslationProtocol,
)


class ScriptedProtocol(TranslationProtocol):
    """Echo translations, failing the listed call numbers per language.

    Units whose msgid is in ``reject`` come back as invalid failures.
    """

    def __init__(
        self,
        fail_calls: Optional[Dict[str, List[int]]] = None,
        reject: Sequence[str] = (),
    ) -> None:
        self.fail_calls = fail_calls or {}
        self.reject = set(reject)
        self.calls: Dict[str, int] = {}
        self.in_flight = 0
        self.peak = 0
        self._echo = EchoTranslationProtocol()

    async def translate(
        self,
        target_language: str,
        batch: Sequence[TranslationUnit],
        custom_instructions: Optional[str] = None,
    ) -> TranslationResult:
        self.calls[target_language] = self.calls.get(target_language, 0) + 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if self.calls[target_language] in self.fail_calls.get(target_language, []):
                raise TranslationProviderError("backend unavailable")
            accepted = [unit for unit in batch if unit.msgid not in self.reject]
            result = await self._echo.translate(target_language, accepted)
            result.failed = [
                TranslationFailure(unit, FailureReason.INVALID)
                for unit in batch
                if unit.msgid in self.reject
            ]
            return result
        finally:
            self.in_flight -= 1


def _orchestrator(protocol, languages=("fr",), batch_size=10, **kwargs):
    return TranslationOrchestrator(
        protocol=protocol,
        target_languages=list(languages),
        output_pattern="{name}.{lang}.po",
        batch_config=BatchConfig(
            batch_size=batch_size,
            file_concurrency=kwargs.pop("file_concurrency", 2),
            language_concurrency=kwargs.pop("language_concurrency", 2),
        ),
        **kwargs,
    )


def test_output_path_uses_name_and_language(tmp_path):
    input_path = tmp_path / "locales" / "app.pot"

    result = build_output_path(input_path, "fr", "{name}.{lang}.po")

    assert result == tmp_path / "locales" / "app.fr.po"
    assert build_output_path(input_path, "de", "{lang}/LC_MESSAGES/{name}.po") == (
        tmp_path / "locales" / "de" / "LC_MESSAGES" / "app.po"
    )


def test_output_path_rejects_nameless_input():
    with pytest.raises(InvalidOutputPathError):
        build_output_path(Path("/"), "fr", "{name}.{lang}.po")


def test_singular_and_plural_scenario_writes_catalog(template_path, fake_client):
    client = fake_client(
        [
            [
                {"index": 0, "msg_str": "Bonjour", "msg_str_plural": None},
                {"index": 1, "msg_str": None, "msg_str_plural": ["chat", "chats"]},
            ]
        ]
    )
    protocol = OpenAITranslationProtocol(client=client, model="test-model")
    orchestrator = _orchestrator(protocol, skip_translated=False)

    summary = asyncio.run(orchestrator.run([template_path]))

    output = template_path.parent / "app.fr.po"
    catalog = load_catalog(output)
    assert catalog.find("Hello").msgstr == "Bonjour"
    assert catalog.find("cat").msgstr_plural == {0: "chat", 1: "chats"}
    assert summary.translated == 2
    assert summary.failed == 0
    assert summary.exit_code == 0


def test_second_run_skips_translated_entries(context_template_path):
    protocol = ScriptedProtocol()
    orchestrator = _orchestrator(protocol, languages=["fr", "de"])

    first = asyncio.run(orchestrator.run([context_template_path]))
    second = asyncio.run(orchestrator.run([context_template_path]))

    assert first.translated == 8
    assert second.translated == 0
    assert second.files[0].ok
    assert protocol.calls == {"fr": 1, "de": 1}


def test_rerun_revives_obsolete_entry_once(template_path, write_catalog):
    write_catalog(
        "app.fr.po",
        'msgid ""\nmsgstr ""\n"Language: fr\\n"\n\n'
        '#~ msgid "Hello"\n#~ msgstr "Salut"\n',
    )
    protocol = ScriptedProtocol()
    orchestrator = _orchestrator(protocol)

    first = asyncio.run(orchestrator.run([template_path]))
    second = asyncio.run(orchestrator.run([template_path]))

    assert first.translated == 2
    assert second.translated == 0
    assert protocol.calls == {"fr": 1}
    catalog = load_catalog(template_path.parent / "app.fr.po")
    assert catalog.find("Hello").msgstr == "[DRY:fr] Hello"
    assert catalog.obsolete_entries() == []


def test_rejected_units_are_counted_without_failing_the_file(context_template_path):
    protocol = ScriptedProtocol(reject=["Open"])
    orchestrator = _orchestrator(protocol)

    summary = asyncio.run(orchestrator.run([context_template_path]))

    outcome = summary.files[0].languages[0]
    assert outcome.ok
    assert (outcome.translated, outcome.failed) == (3, 1)
    assert summary.files[0].ok
    assert (summary.translated, summary.failed) == (3, 1)
    assert summary.exit_code == 0
    catalog = load_catalog(outcome.output_path)
    assert catalog.find("Open", msgctxt="menu") is None
    assert catalog.find("Save") is not None


def test_write_error_aborts_remaining_batches(context_template_path, monkeypatch):
    writes: List[int] = []

    def flaky_apply(units, target_language, output_path):
        writes.append(len(units))
        if len(writes) == 2:
            raise CatalogWriteError(f"Could not write {output_path}: disk full")
        return apply_translations(units, target_language, output_path)

    monkeypatch.setattr("po_llm.orchestrator.apply_translations", flaky_apply)
    protocol = ScriptedProtocol()
    orchestrator = _orchestrator(protocol, batch_size=1)

    summary = asyncio.run(orchestrator.run([context_template_path]))

    outcome = summary.files[0].languages[0]
    assert outcome.error.category is ErrorCategory.PERSISTENCE
    assert "batch 2" in outcome.error.message
    assert (outcome.batches, outcome.translated) == (1, 1)
    assert protocol.calls == {"fr": 2}
    assert [entry.msgid for entry in load_catalog(outcome.output_path)] == ["Hello"]
    assert summary.exit_code == 1


def test_batches_are_sequential_and_failure_keeps_written_batches(
    context_template_path,
):
    protocol = ScriptedProtocol(fail_calls={"fr": [3]})
    orchestrator = _orchestrator(protocol, batch_size=1, language_concurrency=1)

    summary = asyncio.run(orchestrator.run([context_template_path]))

    outcome = summary.files[0].languages[0]
    assert outcome.batches == 2
    assert outcome.translated == 2
    assert outcome.error is not None
    assert outcome.error.category is ErrorCategory.TRANSLATION
    assert protocol.calls["fr"] == 3
    assert protocol.peak == 1
    catalog = load_catalog(outcome.output_path)
    assert [entry.msgid for entry in catalog] == ["Hello", "Open"]
    # The only language failed, so the file fails too.
    assert not summary.files[0].ok
    assert summary.exit_code == 1


def test_one_failed_language_degrades_but_does_not_fail_the_file(template_path):
    protocol = ScriptedProtocol(fail_calls={"de": [1]})
    orchestrator = _orchestrator(protocol, languages=["fr", "de"])

    summary = asyncio.run(orchestrator.run([template_path]))

    file_outcome = summary.files[0]
    assert file_outcome.ok
    assert [outcome.ok for outcome in file_outcome.languages] == [True, False]
    assert file_outcome.translated == 2
    assert summary.exit_code == 0


def test_unreadable_template_fails_only_that_file(template_path, write_catalog):
    broken = write_catalog("broken.pot", 'msgid "x"\nmsgstr ""\nthis is not a catalog\n')
    orchestrator = _orchestrator(ScriptedProtocol())

    summary = asyncio.run(orchestrator.run([broken, template_path]))

    assert [outcome.ok for outcome in summary.files] == [False, True]
    assert summary.files[0].error.category is ErrorCategory.CATALOG
    assert summary.succeeded == 1
    assert summary.failed_files == 1
    assert summary.exit_code == 1


def test_corrupt_output_falls_back_to_template(template_path, write_catalog):
    write_catalog("app.fr.po", 'msgid "x"\nmsgstr ""\nthis is not a catalog\n')
    reporter = ProgressReporter(keep_history=True)
    orchestrator = _orchestrator(ScriptedProtocol(), reporter=reporter)

    summary = asyncio.run(orchestrator.run([template_path]))

    assert summary.translated == 2
    warnings = [event for event in reporter.history if event.kind is EventKind.WARNING]
    assert warnings and "template" in warnings[0].message
    assert load_catalog(template_path.parent / "app.fr.po").find("Hello") is not None


def test_dry_run_writes_nothing_unless_forced(template_path):
    reporter = ProgressReporter(keep_history=True)
    preview = _orchestrator(EchoTranslationProtocol(), dry_run=True, reporter=reporter)

    summary = asyncio.run(preview.run([template_path]))

    assert summary.translated == 2
    assert not (template_path.parent / "app.fr.po").exists()
    previews = [event for event in reporter.history if event.kind is EventKind.PREVIEW]
    assert "[DRY:fr] Hello" in previews[0].message

    forced = _orchestrator(EchoTranslationProtocol(), dry_run=True, force_write=True)
    asyncio.run(forced.run([template_path]))

    catalog = load_catalog(template_path.parent / "app.fr.po")
    assert catalog.find("Hello").msgstr == "[DRY:fr] Hello"


def test_reporter_keeps_no_history_by_default(template_path):
    reporter = ProgressReporter()
    orchestrator = _orchestrator(ScriptedProtocol(), reporter=reporter)
    received = []

    async def run_and_drain():
        drain = asyncio.create_task(reporter.drain(received.append))
        summary = await orchestrator.run([template_path])
        reporter.close()
        await drain
        return summary

    summary = asyncio.run(run_and_drain())

    assert summary.translated == 2
    assert reporter.history == []
    assert any(event.kind is EventKind.FILE_FINISHED for event in received)


def test_concurrency_is_bounded_by_both_pools(write_catalog):
    paths = [write_catalog(f"file{number}.pot", 'msgid "x"\nmsgstr ""\n') for number in range(4)]
    protocol = ScriptedProtocol()
    orchestrator = _orchestrator(
        protocol,
        languages=["fr", "de", "es"],
        file_concurrency=2,
        language_concurrency=2,
    )

    summary = asyncio.run(orchestrator.run(paths))

    assert summary.translated == 12
    assert 1 <= protocol.peak <= 4
    assert [outcome.input_path for outcome in summary.files] == paths


def test_run_bounded_returns_submission_order():
    active = 0
    peak = 0

    async def worker(delay: float) -> float:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(delay)
        active -= 1
        return delay

    delays = [0.03, 0.01, 0.02, 0.0]
    results = asyncio.run(run_bounded(delays, 2, worker))

    assert results == delays
    assert peak == 2
