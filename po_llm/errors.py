"""Error definitions for the PO-LLM translator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto


class ErrorCategory(Enum):
    """Categorises failures by the scope they are fatal to."""

    PATH = auto()
    CATALOG = auto()
    TRANSLATION = auto()
    PERSISTENCE = auto()


class PoLlmError(Exception):
    """Base exception for all custom errors."""


class ConfigurationError(PoLlmError):
    """Raised when the configuration is missing or invalid."""


class CatalogError(PoLlmError):
    """Raised when a catalog cannot be read."""


class InvalidOutputPathError(CatalogError):
    """Raised when an output path cannot be derived from an input file."""


class CatalogWriteError(PoLlmError):
    """Raised when a catalog cannot be persisted."""


class TranslationProviderError(PoLlmError):
    """Raised when a whole batch could not be translated."""


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str

    def __str__(self) -> str:
        return self.message
