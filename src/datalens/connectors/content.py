"""
Field inference for file-like entities (S3 objects, uploaded files).

CSV, JSON and JSON Lines content is read as rows so each column or top
level key becomes a field. Anything else is one ``content`` field whose
sample is the leading text of the file.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from datalens.core.constants import MAX_SAMPLE_CHARS

from .base import DiscoveredField, to_sample_text

logger = logging.getLogger(__name__)

CONTENT_FIELD = "content"

# Graph-hosted files and mail attachments worth downloading for sampling
TEXT_EXTENSIONS = frozenset({
    ".txt", ".csv", ".tsv", ".json", ".jsonl", ".md", ".log", ".xml", ".html", ".htm",
})
MAX_DOWNLOAD_BYTES = 1024 * 1024


@dataclass
class ParsedContent:
    """Rows extracted from a file, or raw text when it has no structure."""

    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    text: str = ""

    @property
    def is_structured(self) -> bool:
        return bool(self.columns)

    def fields(self) -> list[DiscoveredField]:
        if not self.is_structured:
            return [DiscoveredField(name=CONTENT_FIELD, data_type="text")]
        return [DiscoveredField(name=c, data_type="string") for c in self.columns]

    def samples(self, field_name: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        if not self.is_structured:
            if field_name != CONTENT_FIELD:
                return []
            text = self.text[:MAX_SAMPLE_CHARS].strip()
            return [text] if text else []

        samples: list[str] = []
        for row in self.rows:
            text = to_sample_text(row.get(field_name))
            if text is not None:
                samples.append(text)
                if len(samples) >= limit:
                    break
        return samples


def extension_of(name: str) -> str:
    dot = name.rfind(".")
    return name[dot:].lower() if dot != -1 else ""


def parse_content(name: str, data: bytes) -> ParsedContent:
    """Parse file bytes by extension, falling back to plain text."""
    text = data.decode("utf-8", errors="replace")
    ext = extension_of(name)
    try:
        if ext == ".csv":
            return _parse_csv(text)
        if ext == ".json":
            return _parse_json(text)
        if ext in (".jsonl", ".ndjson"):
            return _parse_jsonl(text)
    except (ValueError, csv.Error) as e:
        logger.debug(f"Could not parse {name} as {ext}: {e}")
    return ParsedContent(text=text)


def _parse_csv(text: str) -> ParsedContent:
    reader = csv.DictReader(io.StringIO(text))
    columns = [c for c in (reader.fieldnames or []) if c]
    rows = [dict(row) for row in reader]
    return ParsedContent(columns=columns, rows=rows, text=text)


def _parse_json(text: str) -> ParsedContent:
    payload = json.loads(text)
    if isinstance(payload, dict):
        payload = [payload]
    rows = [r for r in payload if isinstance(r, dict)] if isinstance(payload, list) else []
    return ParsedContent(columns=_columns(rows), rows=rows, text=text)


def _parse_jsonl(text: str) -> ParsedContent:
    rows = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except ValueError:
            # Truncated trailing line from a ranged read
            break
        if isinstance(item, dict):
            rows.append(item)
    return ParsedContent(columns=_columns(rows), rows=rows, text=text)


def _columns(rows: list[dict[str, Any]]) -> list[str]:
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(str(key))
    return columns
