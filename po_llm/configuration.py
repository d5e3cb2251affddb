"""Prepper-backed configuration loader for PO-LLM."""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Sequence

from dotenv import dotenv_values
from prepper import (
    ConfigNotFound,
    Field,
    IoError,
    SchemaError,
    SchemaModel,
    ValidationError,
    model_validator,
)
from prepper.config import ConfigInstance
from prepper.merge import merge_layer
from prepper.provenance import ProvenanceRecorder

from .errors import ConfigurationError
from .translators import DEFAULT_SYSTEM_PROMPT

CONFIG_SECTIONS = ("llm", "translation", "project")


class PoLlmConfig(SchemaModel):
    """Schema describing all supported configuration options."""

    LLM_API_BASE: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the OpenAI-compatible chat completions API.",
    )
    LLM_API_KEY: str | None = Field(default=None, secret=True)
    LLM_MODEL: str = Field(default="gpt-4o-mini")
    LLM_CUSTOM_PROMPT: str | None = Field(
        default=None,
        description="Extra instructions appended to the system prompt.",
    )
    LLM_SYSTEM_PROMPT: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    TRANSLATION_TARGET_LANGUAGES: list[str] | None = Field(default=None)
    TRANSLATION_INPUT_PATTERN: str = Field(default="**/*.pot")
    TRANSLATION_OUTPUT_PATTERN: str = Field(default="{name}.{lang}.po")
    TRANSLATION_BATCH_SIZE: int = Field(default=20)
    PROJECT_CONTEXT: str = Field(default="")
    PROJECT_BASE_PATH: str = Field(default=".")
    PROJECT_SKIP_TRANSLATED: bool = Field(default=True)
    PO_LLM_PROVIDER_DEBUG: bool = Field(default=False)

    @model_validator(mode="before")
    def _normalise_languages(data: Any) -> Any:
        if isinstance(data, dict):
            raw_value = data.get("TRANSLATION_TARGET_LANGUAGES")
            if isinstance(raw_value, str):
                data["TRANSLATION_TARGET_LANGUAGES"] = [
                    part.strip() for part in raw_value.split(",") if part.strip()
                ]
        return data


def flatten_sections(parsed: Mapping[str, Any]) -> dict[str, Any]:
    """Turn ``[llm] api_key = ...`` tables into ``LLM_API_KEY`` keys."""

    flat: dict[str, Any] = {}
    for section, values in parsed.items():
        if section in CONFIG_SECTIONS and isinstance(values, Mapping):
            for key, value in values.items():
                flat[f"{section}_{key}".upper()] = value
        else:
            flat[str(section).upper()] = values
    return flat


@lru_cache(maxsize=8)
def _load_config_instance(config_path: Path) -> ConfigInstance:
    """Load configuration layers once and cache the immutable instance."""

    try:
        provenance = ProvenanceRecorder()
        combined = _load_config_file(config_path, provenance=provenance)
        _merge_env_sources(
            combined,
            provenance=provenance,
            app_dir=config_path.parent,
            schema=PoLlmConfig,
        )

        if not combined:
            raise ConfigNotFound("No configuration sources were found.")

        model = PoLlmConfig.validate(combined, provenance=provenance)
        _validate_translation_settings(model)

        return ConfigInstance(
            model=model,
            provenance=provenance,
            env_prefix=None,
            schema_cls=PoLlmConfig,
        )
    except ConfigNotFound as exc:
        raise ConfigurationError(
            f"No configuration found in {config_path} or the environment."
        ) from exc
    except IoError as exc:
        raise ConfigurationError(
            f"Configuration files could not be read: {exc}"
        ) from exc
    except SchemaError as exc:
        raise ConfigurationError(f"Configuration schema error: {exc}") from exc
    except ValidationError as exc:
        issues = _format_validation_errors(exc.to_dict())
        raise ConfigurationError(issues) from exc


def _load_config_file(
    config_path: Path,
    *,
    provenance: ProvenanceRecorder,
) -> dict[str, Any]:
    """Read the TOML configuration file into a flat mapping."""

    result: dict[str, Any] = {}
    try:
        with config_path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigNotFound(f"Configuration file {config_path} not found.") from exc
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise IoError(f"Invalid configuration file {config_path}: {exc}") from exc

    merge_layer(
        result,
        flatten_sections(parsed),
        provenance=provenance,
        source=f"file:{config_path}",
        layer="file",
    )
    return result


def _merge_env_sources(
    target: dict[str, Any],
    *,
    provenance: ProvenanceRecorder,
    app_dir: Path,
    schema: type[SchemaModel],
) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(schema.__field_infos__.keys())

    def merge_values(values: Mapping[str, str], *, source_prefix: str) -> None:
        for key, value in sorted(values.items()):
            if value is None:
                continue
            if key not in allowed:
                continue
            merge_layer(
                target,
                {key: value},
                provenance=provenance,
                source=f"env:{source_prefix}:{key}",
                layer="env",
            )

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        dotenv_content = dotenv_values(dotenv_path)
        merge_values(
            {k: v for k, v in dotenv_content.items() if v is not None},
            source_prefix=".env",
        )

    merge_values(
        {k: v for k, v in os.environ.items() if isinstance(v, str)},
        source_prefix="process",
    )


def _validate_translation_settings(settings: PoLlmConfig) -> None:
    errors: list[str] = []

    if not settings.TRANSLATION_TARGET_LANGUAGES:
        errors.append("translation.target_languages must list at least one language.")
    if settings.TRANSLATION_BATCH_SIZE < 1:
        errors.append("translation.batch_size must be at least 1.")
    if "{lang}" not in settings.TRANSLATION_OUTPUT_PATTERN:
        errors.append(
            "translation.output_pattern must contain {lang} so languages do not "
            "overwrite each other."
        )

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise ConfigurationError(
            "Configuration validation errors detected:\n" + bullet_list
        )


def _format_validation_errors(entries: Sequence[dict[str, Any]]) -> str:
    details: list[str] = []
    for entry in entries:
        path = entry.get("path") or []
        if isinstance(path, (list, tuple)):
            location = ".".join(str(part) for part in path if part not in {None, ""})
        else:
            location = str(path)
        message = str(entry.get("message") or entry.get("msg") or "Invalid value")
        source = entry.get("source")
        origin = f" (source: {source})" if source else ""
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}{origin}")
    return "Configuration validation errors detected:\n" + "\n".join(details)


def get_config(config_path: Path) -> ConfigInstance:
    """Return the immutable configuration instance."""

    return _load_config_instance(config_path.expanduser().resolve())


def get_settings(config_path: Path) -> PoLlmConfig:
    """Return the validated schema model for typed access."""

    return get_config(config_path).model()
