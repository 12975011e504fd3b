"""biblebee_etl.matching

Reconciles spreadsheet rows against JSON text-bundle items by normalized
scripture reference.

Array position and the JSON ``order`` field play no part in identity: the
``order`` key is removed from every JSON item that leaves this module.

Usage:
    from biblebee_etl.matching import preview_csv_json_matches

    preview = preview_csv_json_matches(csv_rows, json_items)
    for m in preview.matches:
        print(m.csv.row["reference"], m.json.item["texts"])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from biblebee_etl.normalize import normalize_reference

# Import-only metadata that never crosses into matched or persisted records.
TRANSIENT_JSON_FIELDS = frozenset({"order"})


@dataclass
class CsvSide:
    index: int
    row: dict[str, Any]


@dataclass
class JsonSide:
    index: int
    item: dict[str, Any]


@dataclass
class Match:
    key: str
    csv: CsvSide
    json: JsonSide


@dataclass
class MatchPreview:
    matches: list[Match] = field(default_factory=list)
    csv_only: list[CsvSide] = field(default_factory=list)
    json_only: list[JsonSide] = field(default_factory=list)
    duplicate_csv_keys: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "matches": len(self.matches),
            "csv_only": len(self.csv_only),
            "json_only": len(self.json_only),
            "duplicate_csv_keys": list(self.duplicate_csv_keys),
        }


def strip_transient_fields(item: Mapping[str, Any]) -> dict[str, Any]:
    """Return a shallow copy of a JSON item without import-only fields."""
    return {k: v for k, v in item.items() if k not in TRANSIENT_JSON_FIELDS}


def preview_csv_json_matches(
    csv_rows: Iterable[Mapping[str, Any]],
    json_items: Iterable[Mapping[str, Any]],
) -> MatchPreview:
    """Pair CSV rows and JSON items whose normalized references are equal.

    The lookup is built from the CSV side.  When several CSV rows normalize
    to the same key the last one wins; the earlier rows are reported in
    ``csv_only`` and the key in ``duplicate_csv_keys``.  Each CSV row is
    matched at most once, so a second JSON item for an already-claimed key
    lands in ``json_only``.  Empty keys never match.

    For every input, ``len(matches) + len(csv_only) == len(csv_rows)`` and
    ``len(matches) + len(json_only) == len(json_items)``.
    """
    csv_list = [dict(r) for r in csv_rows]
    json_list = [dict(i) for i in json_items]
    preview = MatchPreview()

    lookup: dict[str, int] = {}
    for idx, row in enumerate(csv_list):
        key = normalize_reference(row.get("reference"))
        if not key:
            continue
        if key in lookup and key not in preview.duplicate_csv_keys:
            preview.duplicate_csv_keys.append(key)
        lookup[key] = idx

    claimed: set[int] = set()
    for idx, item in enumerate(json_list):
        clean = strip_transient_fields(item)
        key = normalize_reference(item.get("reference"))
        csv_idx = lookup.get(key) if key else None
        if csv_idx is None or csv_idx in claimed:
            preview.json_only.append(JsonSide(index=idx, item=clean))
            continue
        claimed.add(csv_idx)
        preview.matches.append(
            Match(
                key=key,
                csv=CsvSide(index=csv_idx, row=csv_list[csv_idx]),
                json=JsonSide(index=idx, item=clean),
            )
        )

    preview.csv_only = [
        CsvSide(index=idx, row=row)
        for idx, row in enumerate(csv_list)
        if idx not in claimed
    ]
    return preview
