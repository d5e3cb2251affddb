"""Translation protocol implementations."""

from __future__ import annotations

import json
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .errors import ConfigurationError, TranslationProviderError
from .structures import (
    FailureReason,
    TranslationFailure,
    TranslationResult,
    TranslationUnit,
)


DEFAULT_SYSTEM_PROMPT = """Role: Professional I18n Translator ({target_lang})
Project Context: {project_context}

Task:
Translate the provided list of texts into {target_lang}.

Strict Requirements:
1. INDEX PRESERVATION: You will be provided with texts marked with "Index: n". Your JSON response MUST include the original "index" for each translation, copied verbatim.
2. NO ID REPETITION: Do not include the original source text in your JSON response, only the "index" and the translated strings.
3. NEVER ALTER SOURCE IDENTIFIERS: Do not modify, correct or re-translate the source texts, contexts or plural sources; they identify the messages and are not part of your output.
4. PLACEHOLDERS: Keep format placeholders such as %s, %(name)s, {0} and {name} exactly as they appear in the source.
5. MULTILINE HANDLING: Translate multiline text preserving the paragraph structure but returning it as a standard JSON string.
6. STRUCTURE: Return exactly one object per input index.
   - "msg_str": The main translation.
   - "msg_str_plural": An array of strings for plural forms. Set to null if the source has no plural.

{custom_prompt}

Output: Return a JSON object whose "translations" key holds an array of objects with keys: "index", "msg_str", "msg_str_plural"."""


RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "translations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "index": {"type": "integer"},
                    "msg_str": {"type": ["string", "null"]},
                    "msg_str_plural": {
                        "type": ["array", "null"],
                        "items": {"type": "string"},
                    },
                },
                "required": ["index", "msg_str", "msg_str_plural"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["translations"],
    "additionalProperties": False,
}


class TranslationProtocol(ABC):
    """Turns a batch of units into a translated/failed partition."""

    name = "abstract"

    @abstractmethod
    async def translate(
        self,
        target_language: str,
        batch: Sequence[TranslationUnit],
        custom_instructions: Optional[str] = None,
    ) -> TranslationResult:
        """Classify every unit of the batch as translated or failed."""


class EchoTranslationProtocol(TranslationProtocol):
    """Dry-run protocol that fills in tagged placeholders without any network call."""

    name = "dry-run"

    @staticmethod
    def placeholder(target_language: str, text: str) -> str:
        return f"[DRY:{target_language}] {text}"

    async def translate(
        self,
        target_language: str,
        batch: Sequence[TranslationUnit],
        custom_instructions: Optional[str] = None,
    ) -> TranslationResult:
        translated = []
        for unit in batch:
            if unit.is_plural:
                translated.append(
                    unit.with_results(
                        msgstr_plural=[
                            self.placeholder(target_language, unit.msgid),
                            self.placeholder(target_language, unit.msgid_plural or ""),
                        ]
                    )
                )
            else:
                translated.append(
                    unit.with_results(
                        msgstr=self.placeholder(target_language, unit.msgid)
                    )
                )
        return TranslationResult(translated=translated)


class OpenAITranslationProtocol(TranslationProtocol):
    """Translation protocol backed by an OpenAI-compatible chat completions API."""

    name = "openai"

    def __init__(
        self,
        *,
        client: Any,
        model: str,
        project_context: str = "",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        debug: bool = False,
    ) -> None:
        self._client = client
        self.model = model
        self.project_context = project_context
        self.system_prompt = system_prompt
        self.debug = debug

    def build_system_prompt(
        self, target_language: str, custom_instructions: Optional[str] = None
    ) -> str:
        custom_block = (
            f"## User Instructions:\n{custom_instructions}\n"
            if custom_instructions
            else ""
        )
        return (
            self.system_prompt.replace("{target_lang}", target_language)
            .replace("{project_context}", self.project_context)
            .replace("{custom_prompt}", custom_block)
        )

    @staticmethod
    def build_user_prompt(batch: Sequence[TranslationUnit]) -> str:
        lines: List[str] = []
        for index, unit in enumerate(batch):
            lines.append(f"**Index**: {index}")
            lines.append(f"Source: {unit.msgid}")
            if unit.msgctxt is not None:
                lines.append(f"Context: {unit.msgctxt}")
            if unit.msgid_plural is not None:
                lines.append(f"Plural Source: {unit.msgid_plural}")
            lines.append("\n---\n")
        return "\n".join(lines)

    async def translate(
        self,
        target_language: str,
        batch: Sequence[TranslationUnit],
        custom_instructions: Optional[str] = None,
    ) -> TranslationResult:
        if not batch:
            return TranslationResult()

        try:
            system_prompt = self.build_system_prompt(
                target_language, custom_instructions
            )
            user_prompt = self.build_user_prompt(batch)
        except (TypeError, ValueError, AttributeError) as exc:
            raise TranslationProviderError(
                f"Failed to build API request: {exc}"
            ) from exc
        self._log_debug("provider.request.system_prompt", system_prompt)
        self._log_debug("provider.request.user_prompt", user_prompt)

        content = await self._invoke_model(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            target_language=target_language,
        )
        self._log_debug("provider.response.content", content)

        items = self._normalise_translations(content, target_language)
        if not items:
            raise TranslationProviderError(
                f"LLM returned empty translation array for {len(batch)} messages "
                f"in language '{target_language}'. Expected {len(batch)} translations."
            )
        return self.reconcile(batch, self._index_items(items))

    async def _invoke_model(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        target_language: str,
    ) -> str:
        """Call the Chat Completions API and return the first choice's content."""

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "translations",
                        "schema": RESPONSE_SCHEMA,
                        "strict": True,
                    },
                },
            )
        except Exception as exc:
            raise TranslationProviderError(
                f"LLM API call failed for language '{target_language}': {exc}. "
                "Check your API key, base URL, and network connectivity."
            ) from exc

        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        content = getattr(message, "content", None) if message is not None else None
        if not content or not str(content).strip():
            refusal = getattr(message, "refusal", None) if message is not None else None
            detail = f" Refusal: {refusal}" if refusal else ""
            raise TranslationProviderError(
                f"LLM returned empty response for language '{target_language}'. "
                "The model may not support structured outputs or encountered an "
                f"error.{detail}"
            )
        return str(content)

    def _strip_code_fence(self, text: str) -> str:
        """Remove leading/trailing markdown code fences if present."""

        stripped = text.strip()
        if not stripped.startswith("```"):
            return stripped

        first_newline = stripped.find("\n")
        if first_newline == -1:
            return stripped
        body = stripped[first_newline + 1 :]
        closing_index = body.rfind("```")
        if closing_index != -1:
            body = body[:closing_index]
        return body.strip()

    def _normalise_translations(
        self, content: str, target_language: str
    ) -> List[Any]:
        """Parse the response body into the list of translation objects."""

        text = self._strip_code_fence(content)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TranslationProviderError(
                f"Failed to parse LLM JSON response for language '{target_language}': "
                f"{exc}. Response preview: {text[:500]}"
            ) from exc

        if isinstance(payload, dict):
            payload = payload.get("translations")
        if not isinstance(payload, list):
            raise TranslationProviderError(
                "Translation provider response malformed: could not find translations list."
            )
        return payload

    @staticmethod
    def _index_items(items: Sequence[Any]) -> Dict[int, Dict[str, Any]]:
        mapping: Dict[int, Dict[str, Any]] = {}
        for item in items:
            if not isinstance(item, dict):
                raise TranslationProviderError(
                    "Translation provider response malformed: expected objects."
                )
            index = item.get("index")
            if isinstance(index, bool) or not isinstance(index, int):
                raise TranslationProviderError(
                    "Translation provider response malformed: missing integer index."
                )
            mapping[index] = item
        return mapping

    @staticmethod
    def _valid_singular(value: Any) -> bool:
        return isinstance(value, str) and bool(value.strip())

    @staticmethod
    def _valid_plural(value: Any) -> bool:
        return (
            isinstance(value, list)
            and bool(value)
            and all(isinstance(form, str) and form.strip() for form in value)
        )

    def reconcile(
        self,
        batch: Sequence[TranslationUnit],
        mapping: Dict[int, Dict[str, Any]],
    ) -> TranslationResult:
        """Match response objects to batch positions and validate their content."""

        result = TranslationResult()
        remaining = dict(mapping)
        for index, unit in enumerate(batch):
            item = remaining.pop(index, None)
            if item is None:
                result.failed.append(TranslationFailure(unit, FailureReason.MISSING))
                continue
            if unit.is_plural:
                plural = item.get("msg_str_plural")
                if self._valid_plural(plural):
                    result.translated.append(unit.with_results(msgstr_plural=plural))
                    continue
            else:
                singular = item.get("msg_str")
                if self._valid_singular(singular):
                    result.translated.append(unit.with_results(msgstr=singular))
                    continue
            result.failed.append(TranslationFailure(unit, FailureReason.INVALID))

        result.unexpected_indices = sorted(remaining)
        return result

    def _log_debug(self, label: str, payload: Any) -> None:
        """Emit structured debug information when enabled."""

        if not self.debug:
            return
        if isinstance(payload, (dict, list)):
            message = json.dumps(payload, ensure_ascii=False, indent=2)
        else:
            message = str(payload)
        print(f"[po-llm][provider-debug] {label}:\n{message}", file=sys.stderr)


def build_client(*, api_base: str, api_key: str) -> Any:
    """Create the async OpenAI client used by the backend protocol."""

    try:
        from openai import AsyncOpenAI  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise ConfigurationError(
            "OpenAI Python SDK not installed. Install with `pip install openai`."
        ) from exc

    return AsyncOpenAI(base_url=api_base, api_key=api_key)


def build_protocol(
    settings: Any,
    *,
    dry_run: bool,
    debug: bool = False,
) -> TranslationProtocol:
    """Pick the dry-run or backend protocol for a run."""

    if dry_run:
        return EchoTranslationProtocol()

    if not settings.LLM_API_KEY:
        raise ConfigurationError(
            "LLM_API_KEY is required unless running with --dry-run."
        )
    client = build_client(api_base=settings.LLM_API_BASE, api_key=settings.LLM_API_KEY)
    return OpenAITranslationProtocol(
        client=client,
        model=settings.LLM_MODEL,
        project_context=settings.PROJECT_CONTEXT or "",
        system_prompt=settings.LLM_SYSTEM_PROMPT or DEFAULT_SYSTEM_PROMPT,
        debug=debug,
    )
