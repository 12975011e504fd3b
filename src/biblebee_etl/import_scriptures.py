"""biblebee_etl.import_scriptures

Scripture import pipeline: spreadsheet rows and JSON text bundles into the
scriptures collection of one competition year.

  read_csv_rows / read_json_upload   file -> plain rows / bundle dict
  validate_csv_rows                  per-row problems, nothing raised
  validate_json_text_upload          bundle problems, nothing raised
  commit_csv_rows_to_year            normalized-reference upsert
  merge_json_texts                   texts-map merge driven by the matcher

Identity is always the normalized reference.  A failed commit leaves the
rows written so far in place; re-running the same file is harmless.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from biblebee_etl.matching import MatchPreview, preview_csv_json_matches
from biblebee_etl.normalize import normalize_reference, normalize_space, parse_int, trim
from biblebee_etl.shared import InvalidUploadError, PreconditionError, normalize_headers
from biblebee_etl.storage import Record, Store

REQUIRED_CSV_HEADERS = frozenset({"reference", "text"})

JSON_MERGE_MODES = ("merge", "overwrite")

# Spreadsheet header spellings accepted for scripture_order.
_ORDER_HEADERS = ("scripture_order", "sort_order", "order")


class CsvHeaderError(ValueError):
    """Raised when a scripture CSV lacks required headers."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass
class ValidationIssue:
    row: int | None  # 1-based; None for file-level problems
    message: str


@dataclass
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def messages(self) -> list[str]:
        return [
            f"row {e.row}: {e.message}" if e.row is not None else e.message
            for e in self.errors
        ]


def validate_csv_rows(rows: Iterable[Mapping[str, Any]]) -> ValidationResult:
    """Report missing reference/text, duplicate references and bad orders."""
    result = ValidationResult()
    seen: dict[str, int] = {}
    for i, row in enumerate(rows, start=1):
        reference = trim(row.get("reference"))
        if not reference or not trim(row.get("text")):
            result.errors.append(ValidationIssue(i, "Missing reference or text"))
        key = normalize_reference(reference)
        if key:
            if key in seen:
                result.errors.append(
                    ValidationIssue(i, f"Duplicate reference in file (first seen on row {seen[key]})")
                )
            else:
                seen[key] = i
        raw_order = trim(row.get("scripture_order"))
        if raw_order is not None and parse_int(raw_order) is None:
            result.errors.append(
                ValidationIssue(i, f"scripture_order '{raw_order}' is not an integer")
            )
    return result


def validate_json_text_upload(data: Any) -> ValidationResult:
    """Check the shape of a JSON text bundle.

    Extra top-level or item fields are allowed; ``order`` on items is
    accepted and ignored downstream.
    """
    result = ValidationResult()
    if not isinstance(data, dict):
        result.errors.append(ValidationIssue(None, "Upload must be a JSON object"))
        return result

    if not isinstance(data.get("competition_year"), str) or not trim(data.get("competition_year")):
        result.errors.append(ValidationIssue(None, "competition_year must be a non-empty string"))

    translations = data.get("translations")
    if (
        not isinstance(translations, list)
        or not translations
        or not all(isinstance(t, str) and t.strip() for t in translations)
    ):
        result.errors.append(ValidationIssue(None, "translations must be a non-empty list of strings"))

    scriptures = data.get("scriptures")
    if not isinstance(scriptures, list):
        result.errors.append(ValidationIssue(None, "scriptures must be a list"))
        return result

    for i, item in enumerate(scriptures, start=1):
        if not isinstance(item, dict):
            result.errors.append(ValidationIssue(i, "scripture item must be an object"))
            continue
        if not isinstance(item.get("reference"), str) or not normalize_reference(item["reference"]):
            result.errors.append(ValidationIssue(i, "reference must be a non-empty string"))
        texts = item.get("texts")
        if not isinstance(texts, dict) or not texts:
            result.errors.append(ValidationIssue(i, "texts must be a non-empty object"))
        elif not all(isinstance(k, str) and isinstance(v, str) for k, v in texts.items()):
            result.errors.append(ValidationIssue(i, "texts must map translation names to strings"))
        order = item.get("order")
        if order is not None and (isinstance(order, bool) or not isinstance(order, (int, float))):
            result.errors.append(ValidationIssue(i, "order must be a number when present"))
    return result


# ---------------------------------------------------------------------------
# File readers
# ---------------------------------------------------------------------------

def read_csv_rows(path: Path) -> list[dict[str, str]]:
    """Read a scripture CSV into rows keyed by trimmed, lowercased headers.

    ``sort_order`` and ``order`` headers are read as ``scripture_order``.

    Raises:
        CsvHeaderError: ``reference`` or ``text`` is missing.
    """
    with path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        headers = {h.strip().lower() for h in (reader.fieldnames or []) if h}
        missing = REQUIRED_CSV_HEADERS - headers
        if missing:
            raise CsvHeaderError(f"missing headers after trim: {sorted(missing)}")
        rows = []
        for raw in reader:
            row = normalize_headers(raw)
            if "scripture_order" not in row:
                for alias in _ORDER_HEADERS[1:]:
                    if alias in row:
                        row["scripture_order"] = row.pop(alias)
                        break
            rows.append(row)
    return rows


def read_json_upload(path: Path) -> dict[str, Any]:
    """Read a JSON text bundle; malformed JSON raises InvalidUploadError."""
    try:
        return json.loads(path.read_text(encoding="utf-8-sig"))
    except json.JSONDecodeError as exc:
        raise InvalidUploadError([f"{path.name} is not valid JSON: {exc}"]) from exc


# ---------------------------------------------------------------------------
# CSV commit
# ---------------------------------------------------------------------------

@dataclass
class CommitResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    rejected: list[tuple[int, dict[str, Any], str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _require_year(store: Store, competition_year_id: str) -> Record:
    year = store.get("competition_years", competition_year_id)
    if year is None:
        raise PreconditionError(f"Competition year {competition_year_id} not found")
    return year


def _scripture_lookup(scriptures: Iterable[Record]) -> dict[str, Record]:
    lookup: dict[str, Record] = {}
    for s in scriptures:
        key = normalize_reference(s.get("reference"))
        if key:
            lookup[key] = s
    return lookup


def _max_order(scriptures: Iterable[Record]) -> int:
    orders = [parse_int(s.get("scripture_order")) for s in scriptures]
    return max((o for o in orders if o is not None), default=0)


def commit_csv_rows_to_year(
    store: Store,
    rows: Iterable[Mapping[str, Any]],
    competition_year_id: str,
) -> CommitResult:
    """Upsert CSV rows into the year's scriptures by normalized reference.

    Matching rows have text, translation and (when given) scripture_order
    updated in place.  New rows keep the CSV scripture_order verbatim, or
    take max+1 when the column is empty.  Rows without a usable reference
    are rejected, not raised.

    Raises:
        PreconditionError: The competition year does not exist.
    """
    _require_year(store, competition_year_id)
    existing = store.where("scriptures", competition_year_id=competition_year_id)
    lookup = _scripture_lookup(existing)
    next_order = _max_order(existing) + 1
    result = CommitResult()

    for i, raw in enumerate(rows, start=1):
        row = dict(raw)
        reference = normalize_space(row.get("reference"))
        key = normalize_reference(reference)
        if not key:
            result.rejected.append((i, row, "missing_reference"))
            continue

        raw_order = trim(row.get("scripture_order"))
        order = parse_int(raw_order)
        if raw_order is not None and order is None:
            result.warnings.append(f"row {i}: scripture_order '{raw_order}' ignored (not an integer)")

        values: dict[str, Any] = {}
        text = trim(row.get("text"))
        if text is not None:
            values["text"] = text
        translation = trim(row.get("translation"))
        if translation is not None:
            values["translation"] = translation
        if trim(row.get("scripture_number")) is not None:
            values["scripture_number"] = trim(row.get("scripture_number"))
        counts_for = parse_int(row.get("counts_for"))
        if counts_for is not None:
            values["counts_for"] = counts_for

        current = lookup.get(key)
        if current is not None:
            if order is not None:
                values["scripture_order"] = order
            patch = {k: v for k, v in values.items() if current.get(k) != v}
            if not patch:
                result.unchanged += 1
                continue
            lookup[key] = store.update("scriptures", current["id"], patch)
            result.updated += 1
            continue

        if order is None:
            order = next_order
        next_order = max(next_order, order + 1)
        lookup[key] = store.add(
            "scriptures",
            {
                "competition_year_id": competition_year_id,
                "reference": reference,
                "text": values.pop("text", ""),
                "scripture_order": order,
                "texts": {},
                **values,
            },
        )
        result.inserted += 1
    return result


# ---------------------------------------------------------------------------
# JSON text merge
# ---------------------------------------------------------------------------

@dataclass
class JsonMergeResult:
    mode: str
    dry_run: bool
    preview: MatchPreview
    updated: int = 0
    unchanged: int = 0
    created: int = 0
    json_only: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def merge_json_texts(
    store: Store,
    upload: Mapping[str, Any],
    competition_year_id: str,
    mode: str = "merge",
    dry_run: bool = False,
    create_missing: bool = False,
) -> JsonMergeResult:
    """Merge a JSON text bundle into the year's scriptures.

    Only the ``texts`` map of matched scriptures changes: ``merge`` adds or
    replaces the uploaded translations, ``overwrite`` replaces the whole
    map.  ``scripture_order`` is never touched.  Bundle items with no
    matching scripture are reported in ``json_only`` and created only when
    create_missing=True; an item whose normalized reference already exists
    in the year, or was created earlier in the same bundle, is skipped with
    a warning.  A dry run computes the same result and writes nothing.

    Raises:
        ValueError: Unknown mode.
        InvalidUploadError: The bundle fails validate_json_text_upload.
        PreconditionError: The competition year does not exist.
    """
    if mode not in JSON_MERGE_MODES:
        raise ValueError(f"Invalid mode '{mode}'. Must be one of {list(JSON_MERGE_MODES)}.")
    validation = validate_json_text_upload(upload)
    if not validation.is_valid:
        raise InvalidUploadError(validation.messages())
    year = _require_year(store, competition_year_id)

    existing = store.where("scriptures", competition_year_id=competition_year_id)
    preview = preview_csv_json_matches(existing, upload["scriptures"])
    result = JsonMergeResult(mode=mode, dry_run=dry_run, preview=preview)

    bundle_year = trim(upload.get("competition_year"))
    if bundle_year not in (year.get("name"), str(year.get("year"))):
        result.warnings.append(
            f"bundle competition_year '{bundle_year}' differs from year '{year.get('name')}'"
        )
    declared = set(upload["translations"])
    undeclared = sorted({
        t for item in upload["scriptures"] for t in item["texts"] if t not in declared
    })
    if undeclared:
        result.warnings.append(f"texts use undeclared translations: {undeclared}")

    for match in preview.matches:
        scripture = match.csv.row
        current = dict(scripture.get("texts") or {})
        incoming = dict(match.json.item["texts"])
        new_texts = {**current, **incoming} if mode == "merge" else incoming
        if new_texts == current:
            result.unchanged += 1
            continue
        result.updated += 1
        if not dry_run:
            store.update("scriptures", scripture["id"], {"texts": new_texts})

    next_order = _max_order(existing) + 1
    known = set(_scripture_lookup(existing))
    for side in preview.json_only:
        item = side.item
        result.json_only.append(item["reference"])
        if not create_missing:
            continue
        key = normalize_reference(item["reference"])
        if key in known:
            result.warnings.append(
                f"item {side.index + 1}: '{item['reference']}' duplicates an existing "
                f"or earlier reference; not created"
            )
            continue
        known.add(key)
        result.created += 1
        if dry_run:
            continue
        texts = dict(item["texts"])
        translation = next((t for t in upload["translations"] if t in texts), next(iter(texts)))
        store.add(
            "scriptures",
            {
                "competition_year_id": competition_year_id,
                "reference": normalize_space(item["reference"]),
                "text": texts[translation],
                "translation": translation,
                "texts": texts,
                "scripture_order": next_order,
            },
        )
        next_order += 1
    return result
