"""Translate gettext catalogs into many languages with an LLM backend."""

__version__ = "0.1.0"
