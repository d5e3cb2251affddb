"""Core data structures for the PO-LLM translator."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple


IdentityKey = Tuple[str, Optional[str]]


@dataclass(frozen=True)
class TranslationUnit:
    """A single catalog message pending or holding a translation.

    Source fields never change after creation; a translated unit is a copy made
    with :meth:`with_results`.
    """

    msgid: str
    msgid_plural: Optional[str] = None
    msgctxt: Optional[str] = None
    msgstr: Optional[str] = None
    msgstr_plural: Optional[List[str]] = None

    @property
    def is_plural(self) -> bool:
        return self.msgid_plural is not None

    @property
    def key(self) -> IdentityKey:
        """Identity used to match units against catalog entries."""

        return (self.msgid, self.msgctxt)

    def with_results(
        self,
        *,
        msgstr: Optional[str] = None,
        msgstr_plural: Optional[Sequence[str]] = None,
    ) -> "TranslationUnit":
        if self.is_plural:
            return replace(self, msgstr=None, msgstr_plural=list(msgstr_plural or []))
        return replace(self, msgstr=msgstr or "", msgstr_plural=None)

    def __str__(self) -> str:
        context = f"[{self.msgctxt}] " if self.msgctxt is not None else ""
        if self.msgstr:
            translation = self.msgstr
        elif self.msgstr_plural is not None:
            translation = self.msgstr_plural[0] if self.msgstr_plural else "..."
        else:
            translation = "No translations"
        source = f"{self.msgid} (plural)" if self.is_plural else self.msgid
        return f"{context}{source} => {translation}"


class FailureReason(Enum):
    """Why a unit was rejected during reconciliation."""

    MISSING = "missing"
    INVALID = "invalid"


@dataclass(frozen=True)
class TranslationFailure:
    """A unit that came back without a usable translation."""

    unit: TranslationUnit
    reason: FailureReason


@dataclass
class TranslationResult:
    """Partition of one batch into accepted and rejected units."""

    translated: List[TranslationUnit] = field(default_factory=list)
    failed: List[TranslationFailure] = field(default_factory=list)
    unexpected_indices: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.translated) + len(self.failed)


@dataclass(frozen=True)
class BatchConfig:
    """Resource bounds for a run."""

    batch_size: int = 20
    file_concurrency: int = 4
    language_concurrency: int = 2

    def __post_init__(self) -> None:
        for name in ("batch_size", "file_concurrency", "language_concurrency"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1.")


def chunk_units(
    units: Sequence[TranslationUnit], size: int
) -> Iterator[List[TranslationUnit]]:
    """Yield fixed-size batches; the last one may be shorter."""

    if size < 1:
        raise ValueError("Batch size must be at least 1.")
    for start in range(0, len(units), size):
        yield list(units[start : start + size])
