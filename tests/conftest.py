"""Shared fixtures for the PO-LLM test suite."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, List

import pytest

from po_llm.configuration import PoLlmConfig


TEMPLATE_POT = r'''msgid ""
msgstr ""
"Content-Type: text/plain; charset=UTF-8\n"

msgid "Hello"
msgstr ""

msgid "cat"
msgid_plural "cats"
msgstr[0] ""
msgstr[1] ""
'''

CONTEXT_POT = r'''msgid ""
msgstr ""
"Content-Type: text/plain; charset=UTF-8\n"

msgid "Hello"
msgstr ""

msgctxt "menu"
msgid "Open"
msgstr ""

msgid "Save"
msgstr ""

msgid "file"
msgid_plural "files"
msgstr[0] ""
msgstr[1] ""
'''


class FakeCompletions:
    """Stands in for ``client.chat.completions`` and replays scripted replies."""

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[dict] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if not isinstance(response, str) and response is not None:
            response = json.dumps(response)
        message = SimpleNamespace(content=response, refusal=None)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    def __init__(self, responses: List[Any]) -> None:
        self.completions = FakeCompletions(responses)
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def fake_client():
    return FakeClient


@pytest.fixture
def write_catalog(tmp_path: Path):
    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def template_path(write_catalog) -> Path:
    return write_catalog("app.pot", TEMPLATE_POT)


@pytest.fixture
def context_template_path(write_catalog) -> Path:
    return write_catalog("messages.pot", CONTEXT_POT)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove schema keys from the process environment."""

    for key in PoLlmConfig.__field_infos__.keys():
        monkeypatch.delenv(key, raising=False)
    return monkeypatch
