"""
AutoCrisp Design Service - Tools

Tooling layer for:
- Structured output parsing of completion text
- Static reference-genome and guide-library lookup
- Guide table / protocol document exports
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from models import FinalSummary, Guide

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent
MOCK_DB_DIR = BASE_DIR / "mock_db"
SNIPPET_CHARS = 200

GUIDE_CSV_HEADER = [
    "Guide ID",
    "Sequence",
    "Start",
    "End",
    "Efficiency",
    "Off-target Risk",
    "GC Content",
    "PAM Site",
    "Strand",
    "Risk Score",
    "Predicted Off-targets",
]


class ParseError(ValueError):
    """
    Completion text could not be parsed as JSON.
    """

    def __init__(self, message: str, snippet: str = "") -> None:
        super().__init__(message)
        self.snippet = snippet


# =============================================================================
# STRUCTURED OUTPUT PARSING
# =============================================================================


def strip_markdown_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[len("```"):]
    if cleaned.endswith("```"):
        cleaned = cleaned[: -len("```")]
    return cleaned.strip()


def parse_json_payload(raw_text: Optional[str]) -> Any:
    """
    Parse completion text as JSON, allowing fenced markdown wrappers.

    Raises ParseError for empty or malformed text; never returns partial data.
    """
    cleaned = strip_markdown_fences(raw_text or "")
    if not cleaned:
        raise ParseError("Empty completion text.", snippet=(raw_text or "")[:SNIPPET_CHARS])
    if "`" in cleaned:
        logger.debug("Completion text still contains backticks after fence removal.")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        snippet = cleaned[:SNIPPET_CHARS]
        raise ParseError(f"Invalid JSON response: {exc.msg} (line {exc.lineno}, col {exc.colno}).", snippet=snippet) from exc


# =============================================================================
# STATIC REFERENCE DATA
# =============================================================================


def _load_json(file_name: str) -> Dict[str, Any]:
    path = MOCK_DB_DIR / file_name
    if not path.exists():
        raise FileNotFoundError(f"Mock data file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def _reference_genome() -> Dict[str, Any]:
    return _load_json("reference_genome.json")


@lru_cache(maxsize=1)
def _guide_library() -> Dict[str, Any]:
    return _load_json("guide_library.json")


def list_reference_genes() -> List[str]:
    return sorted(_reference_genome().get("genes", {}).keys())


def canonical_gene_symbol(gene: str) -> Optional[str]:
    """
    Resolves a gene symbol or alias to its reference-table symbol.
    """
    symbol = (gene or "").strip().upper()
    genes = _reference_genome().get("genes", {})
    if symbol in genes:
        return symbol
    for name, entry in genes.items():
        if symbol in {alias.upper() for alias in entry.get("aliases", [])}:
            return name
    return None


def get_reference_gene(gene: str) -> Optional[Dict[str, Any]]:
    symbol = canonical_gene_symbol(gene)
    if symbol is None:
        return None
    return _reference_genome()["genes"][symbol]


def resolve_target_exon(gene_entry: Dict[str, Any], region: str) -> tuple[str, Dict[str, int]]:
    exons: Dict[str, Dict[str, int]] = gene_entry.get("exons", {})
    lowered = (region or "").strip().lower()
    aliased = gene_entry.get("region_aliases", {}).get(lowered)
    if aliased and aliased in exons:
        return aliased, exons[aliased]
    match = re.search(r"exon\s*(\d+)", lowered)
    if match:
        name = f"exon{int(match.group(1))}"
        if name in exons:
            return name, exons[name]
    default_name = gene_entry.get("default_exon") or next(iter(exons))
    return default_name, exons[default_name]


def get_guide_templates(gene: str) -> List[Dict[str, Any]]:
    library = _guide_library()
    symbol = canonical_gene_symbol(gene) or (gene or "").strip().upper()
    return [dict(item) for item in library.get(symbol, library["default"])]


def list_example_prompts() -> List[str]:
    return list(_load_json("example_prompts.json").get("prompts", []))


# =============================================================================
# EXPORTS
# =============================================================================


def _blank_if_none(value: Any) -> Any:
    return "" if value is None else value


def guides_to_csv(guides: List[Guide]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(GUIDE_CSV_HEADER)
    for guide in guides:
        writer.writerow(
            [
                guide.id,
                guide.sequence,
                guide.start,
                guide.end,
                guide.efficiency,
                guide.offtarget_risk.value,
                guide.gc_content,
                _blank_if_none(guide.pam_site),
                _blank_if_none(guide.strand),
                _blank_if_none(guide.risk_score),
                _blank_if_none(guide.predicted_offtargets),
            ]
        )
    return buffer.getvalue()


def render_protocol_document(summary: FinalSummary, generated_at: Optional[datetime] = None) -> str:
    stamp = (generated_at or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    next_steps = "\n".join(f"{i}. {step}" for i, step in enumerate(summary.next_steps, start=1))
    recommended = "\n".join(
        f"- {g.id}: {g.sequence} (Efficiency: {g.efficiency * 100:.1f}%)"
        for g in summary.recommended_guides
    )
    return (
        "AutoCrisp Protocol Report\n"
        f"Generated: {stamp}\n\n"
        f"{summary.protocol}\n\n"
        "Risk Summary:\n"
        f"{summary.risk_summary}\n\n"
        "Next Steps:\n"
        f"{next_steps}\n\n"
        "Recommended Guides:\n"
        f"{recommended}\n"
    )


def export_file_stem(kind: str, gene: Optional[str]) -> str:
    safe_gene = re.sub(r"[^A-Za-z0-9_-]", "", gene or "") or "unknown"
    return f"autocrisp_{kind}_{safe_gene}"
