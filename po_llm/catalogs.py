"""Catalog loading, diffing, and merge-back for gettext PO files."""

from __future__ import annotations

import os
import pathlib
import tempfile
from typing import Dict, Iterable, List, Sequence, Set

import polib

from .errors import CatalogError, CatalogWriteError
from .structures import IdentityKey, TranslationUnit


DEFAULT_METADATA = {
    "Project-Id-Version": "1.0",
    "Last-Translator": "PO-LLM",
    "Language-Team": "PO-LLM",
    "MIME-Version": "1.0",
    "Content-Type": "text/plain; charset=UTF-8",
    "Content-Transfer-Encoding": "8bit",
    "Plural-Forms": "nplurals=2; plural=(n != 1);",
}


def catalog_exists(path: pathlib.Path) -> bool:
    """Return True when the path holds a non-empty catalog file."""

    return path.is_file() and path.stat().st_size > 0


def load_catalog(path: pathlib.Path) -> polib.POFile:
    """Parse a PO/POT file, raising CatalogError when it cannot be read."""

    if not path.is_file():
        raise CatalogError(f"Catalog not found: {path}")
    if path.stat().st_size == 0:
        return polib.POFile(encoding="utf-8")
    try:
        return polib.pofile(str(path))
    except (OSError, ValueError) as exc:
        raise CatalogError(f"Could not parse catalog {path}: {exc}") from exc


def new_catalog(target_language: str) -> polib.POFile:
    """Create an empty catalog carrying language metadata."""

    catalog = polib.POFile(encoding="utf-8")
    metadata = dict(DEFAULT_METADATA)
    metadata["Language"] = target_language
    catalog.metadata = metadata
    return catalog


def entry_key(entry: polib.POEntry) -> IdentityKey:
    return (entry.msgid, entry.msgctxt)


def extract_units(
    existing: Iterable[polib.POEntry],
    template: Iterable[polib.POEntry],
    skip_translated: bool,
) -> List[TranslationUnit]:
    """Return the template entries that still need translating, in order."""

    translated_keys: Set[IdentityKey] = set()
    if skip_translated:
        translated_keys = {
            entry_key(entry) for entry in existing if entry.translated()
        }

    units: List[TranslationUnit] = []
    for entry in template:
        if entry.obsolete or entry_key(entry) in translated_keys:
            continue
        if entry.msgid_plural:
            units.append(
                TranslationUnit(
                    msgid=entry.msgid,
                    msgid_plural=entry.msgid_plural,
                    msgctxt=entry.msgctxt,
                    msgstr_plural=[],
                )
            )
        else:
            units.append(
                TranslationUnit(
                    msgid=entry.msgid,
                    msgctxt=entry.msgctxt,
                    msgstr="",
                )
            )
    return units


def _open_for_update(path: pathlib.Path, target_language: str) -> polib.POFile:
    if not catalog_exists(path):
        return new_catalog(target_language)
    try:
        catalog = load_catalog(path)
    except CatalogError:
        # Unparsable output is rebuilt rather than merged into.
        return new_catalog(target_language)
    if not catalog.metadata:
        catalog.metadata = new_catalog(target_language).metadata
    return catalog


def _upsert(
    catalog: polib.POFile,
    index: Dict[IdentityKey, polib.POEntry],
    unit: TranslationUnit,
) -> None:
    entry = index.get(unit.key)
    if entry is None:
        entry = polib.POEntry(
            msgid=unit.msgid,
            msgctxt=unit.msgctxt,
            msgid_plural=unit.msgid_plural or "",
        )
        catalog.append(entry)
        index[unit.key] = entry

    if unit.is_plural:
        entry.msgid_plural = unit.msgid_plural or ""
        entry.msgstr = ""
        entry.msgstr_plural = dict(enumerate(unit.msgstr_plural or []))
    else:
        entry.msgid_plural = ""
        entry.msgstr_plural = {}
        entry.msgstr = unit.msgstr or ""
    entry.obsolete = False
    if "fuzzy" in entry.flags:
        entry.flags.remove("fuzzy")


def save_catalog(catalog: polib.POFile, path: pathlib.Path) -> None:
    """Write the whole catalog, replacing the target only once it is complete."""

    try:
        handle, temp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
    except OSError as exc:
        raise CatalogWriteError(f"Failed to write PO file {path}: {exc}") from exc
    os.close(handle)
    try:
        os.chmod(temp_name, 0o644)
        catalog.save(temp_name)
        os.replace(temp_name, path)
    except (OSError, ValueError) as exc:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise CatalogWriteError(f"Failed to write PO file {path}: {exc}") from exc


def apply_translations(
    units: Sequence[TranslationUnit],
    target_language: str,
    output_path: pathlib.Path,
) -> polib.POFile:
    """Upsert translated units into the catalog at ``output_path`` and persist it.

    Each call rewrites the full file, so applying the same unit twice leaves the
    catalog unchanged and successive batches accumulate.
    """

    if not output_path.parent.is_dir():
        raise CatalogWriteError(
            f"Failed to write PO file {output_path}: directory does not exist."
        )
    catalog = _open_for_update(output_path, target_language)
    index: Dict[IdentityKey, polib.POEntry] = {}
    for entry in catalog:
        # An active entry wins over an obsolete one with the same key.
        if entry_key(entry) not in index or not entry.obsolete:
            index[entry_key(entry)] = entry
    for unit in units:
        _upsert(catalog, index, unit)
    save_catalog(catalog, output_path)
    return catalog
