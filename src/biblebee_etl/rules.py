"""biblebee_etl.rules

Grade-range requirement resolution and YAML competition-year configuration.

Responsibilities:
  - Find the Division or GradeRule whose inclusive grade range contains a
    child's grade, flagging overlapping ranges instead of guessing
  - Resolve a child's requirement for a competition year with the
    precedence: enrollment override > enrollment > grade-matched division >
    legacy grade rule
  - Load and validate YAML year files from config/competition_years/*.yml
  - Register a year file into the store (idempotent upsert)
  - Hash YAML content for traceability

Usage:
    from pathlib import Path
    from biblebee_etl.rules import load_year_config, register_year_config

    config = load_year_config(Path("config/competition_years/2025-2026.yml"))
    counts = register_year_config(store, config)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from biblebee_etl.normalize import grade_range_label, parse_grade, parse_int, trim
from biblebee_etl.storage import Record, Store

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_RULE_TYPES = ("scripture", "essay")

REQUIRED_YAML_KEYS = frozenset({"year", "name"})

REQUIRED_DIVISION_KEYS = frozenset({"name", "min_grade", "max_grade"})

REQUIRED_GRADE_RULE_KEYS = frozenset({"type", "min_grade", "max_grade"})

MIN_GRADE_CODE = -1
MAX_GRADE_CODE = 12


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class YearConfigValidationError(ValueError):
    """Raised when a YAML year file fails schema validation."""


class AmbiguousRuleError(Exception):
    """Raised when more than one rule or division covers the same grade."""

    def __init__(self, kind: str, grade: int, candidates: list[Record]) -> None:
        self.kind = kind
        self.grade = grade
        self.candidates = candidates
        ids = ", ".join(str(c.get("id")) for c in candidates)
        super().__init__(
            f"{len(candidates)} {kind} records cover grade {grade} ({ids}); "
            f"fix the overlapping ranges or pass first_match_wins=True."
        )


# ---------------------------------------------------------------------------
# Range lookup
# ---------------------------------------------------------------------------

def _range_key(record: Record) -> tuple[int, int, str]:
    return (int(record["min_grade"]), int(record["max_grade"]), str(record.get("id")))


def _covers(record: Record, grade: int) -> bool:
    return int(record["min_grade"]) <= grade <= int(record["max_grade"])


def _pick_one(
    kind: str,
    grade: int,
    candidates: list[Record],
    first_match_wins: bool,
) -> Record | None:
    if not candidates:
        return None
    candidates = sorted(candidates, key=_range_key)
    if len(candidates) > 1 and not first_match_wins:
        raise AmbiguousRuleError(kind, grade, candidates)
    return candidates[0]


def get_applicable_grade_rule(
    store: Store,
    competition_year_id: str,
    grade: int,
    type: str | None = None,
    first_match_wins: bool = False,
) -> Record | None:
    """Return the GradeRule whose [min_grade, max_grade] contains grade.

    None means "no obligation", not a failure.  Overlapping rules raise
    AmbiguousRuleError unless first_match_wins=True, in which case the rule
    with the lowest (min_grade, max_grade, id) is returned.
    """
    rules = store.where("grade_rules", competition_year_id=competition_year_id)
    if type is not None:
        rules = [r for r in rules if r.get("type") == type]
    matching = [r for r in rules if _covers(r, grade)]
    # One rule per type may cover a grade; only same-type overlaps are ambiguous.
    by_type: dict[Any, list[Record]] = {}
    for r in matching:
        by_type.setdefault(r.get("type"), []).append(r)
    for rule_type, group in by_type.items():
        _pick_one(f"{rule_type} grade_rule", grade, group, first_match_wins)
    if not matching:
        return None
    return sorted(matching, key=_range_key)[0]


def get_applicable_division(
    store: Store,
    competition_year_id: str,
    grade: int,
    first_match_wins: bool = False,
) -> Record | None:
    """Return the Division whose grade range contains grade, or None."""
    divisions = store.where("divisions", competition_year_id=competition_year_id)
    matching = [d for d in divisions if _covers(d, grade)]
    return _pick_one("division", grade, matching, first_match_wins)


def find_overlapping_ranges(records: Iterable[Record]) -> list[tuple[Record, Record]]:
    """Return every pair of records of the same type whose grade ranges overlap.

    Records without a ``type`` (divisions) are compared against each other.
    """
    groups: dict[Any, list[Record]] = {}
    for rec in records:
        groups.setdefault(rec.get("type"), []).append(rec)
    overlaps: list[tuple[Record, Record]] = []
    for group in groups.values():
        ordered = sorted(group, key=_range_key)
        for i, a in enumerate(ordered):
            for b in ordered[i + 1:]:
                if int(b["min_grade"]) > int(a["max_grade"]):
                    break
                overlaps.append((a, b))
    return overlaps


# ---------------------------------------------------------------------------
# Requirement resolution
# ---------------------------------------------------------------------------

@dataclass
class Requirement:
    """What a child owes for one competition year."""

    kind: str  # "scripture" | "essay"
    source: str  # "override" | "enrollment" | "division" | "grade_rule"
    target_count: int | None = None
    division: Record | None = None
    grade_rule: Record | None = None
    essay_prompt: Record | None = None

    @property
    def prompt_text(self) -> str:
        if self.essay_prompt is not None:
            return self.essay_prompt.get("prompt") or ""
        if self.grade_rule is not None:
            return self.grade_rule.get("prompt_text") or ""
        return ""

    @property
    def instructions(self) -> str | None:
        if self.essay_prompt is not None:
            return self.essay_prompt.get("instructions")
        if self.grade_rule is not None:
            return self.grade_rule.get("instructions")
        return None


def _division_essay_prompt(
    store: Store, competition_year_id: str, division_id: str
) -> Record | None:
    prompts = store.where(
        "essay_prompts",
        competition_year_id=competition_year_id,
        division_id=division_id,
    )
    if not prompts:
        return None
    return sorted(prompts, key=lambda p: (str(p.get("title") or ""), str(p["id"])))[0]


def requirement_for_division(
    store: Store, competition_year_id: str, division: Record, source: str
) -> Requirement:
    if division.get("requires_essay"):
        return Requirement(
            kind="essay",
            source=source,
            target_count=1,
            division=division,
            essay_prompt=_division_essay_prompt(store, competition_year_id, str(division["id"])),
        )
    return Requirement(
        kind="scripture",
        source=source,
        target_count=parse_int(division.get("minimum_required")),
        division=division,
    )


def resolve_requirement(
    store: Store,
    competition_year_id: str,
    child: Record,
    first_match_wins: bool = False,
) -> Requirement | None:
    """Resolve the single requirement a child owes for a competition year.

    Divisions take precedence over legacy grade rules.  Within divisions an
    administrator override wins, then an existing enrollment, then the
    division whose range contains the child's grade.  Grade rules are only
    consulted when no division applies; a scripture rule is preferred over
    an essay rule covering the same grade.
    """
    child_id = child["child_id"]

    for collection, source in (("enrollment_overrides", "override"), ("enrollments", "enrollment")):
        rows = store.where(
            collection, child_id=child_id, competition_year_id=competition_year_id
        )
        for row in rows:
            division = store.get("divisions", row["division_id"]) if row.get("division_id") else None
            if division is not None:
                return requirement_for_division(store, competition_year_id, division, source)

    grade = parse_grade(child.get("grade"))
    if grade is None:
        return None

    division = get_applicable_division(store, competition_year_id, grade, first_match_wins)
    if division is not None:
        return requirement_for_division(store, competition_year_id, division, "division")

    for rule_type in VALID_RULE_TYPES:
        rule = get_applicable_grade_rule(
            store, competition_year_id, grade, type=rule_type, first_match_wins=first_match_wins
        )
        if rule is None:
            continue
        if rule_type == "essay":
            return Requirement(kind="essay", source="grade_rule", target_count=1, grade_rule=rule)
        return Requirement(
            kind="scripture",
            source="grade_rule",
            target_count=parse_int(rule.get("target_count")),
            grade_rule=rule,
        )
    return None


# ---------------------------------------------------------------------------
# YearConfig dataclass
# ---------------------------------------------------------------------------

@dataclass
class YearConfig:
    """Parsed, validated competition-year configuration loaded from YAML."""

    year: int
    name: str
    yaml_hash: str
    description: str | None = None
    opens_at: Any = None
    closes_at: Any = None
    divisions: list[dict[str, Any]] = field(default_factory=list)
    grade_rules: list[dict[str, Any]] = field(default_factory=list)
    raw_yaml: str = field(repr=False, default="")


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_year_config(yaml_path: Path) -> YearConfig:
    """Load, validate, and return a YearConfig from a YAML file.

    Grades may be written as codes (-1..12) or labels ("K", "Pre-K", "3rd").

    Raises:
        YearConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_year_config(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    divisions = []
    for d in data.get("divisions") or []:
        prompt = d.get("essay_prompt")
        divisions.append({
            "name": trim(str(d["name"])),
            "min_grade": parse_grade(d["min_grade"]),
            "max_grade": parse_grade(d["max_grade"]),
            "minimum_required": parse_int(d.get("minimum_required")),
            "requires_essay": bool(d.get("requires_essay", False)),
            "description": d.get("description"),
            "essay_prompt": dict(prompt) if prompt else None,
        })
    grade_rules = []
    for r in data.get("grade_rules") or []:
        grade_rules.append({
            "type": r["type"],
            "min_grade": parse_grade(r["min_grade"]),
            "max_grade": parse_grade(r["max_grade"]),
            "target_count": parse_int(r.get("target_count")),
            "prompt_text": r.get("prompt_text"),
            "instructions": r.get("instructions"),
        })

    return YearConfig(
        year=int(data["year"]),
        name=str(data["name"]),
        yaml_hash=yaml_hash,
        description=data.get("description"),
        opens_at=data.get("opens_at"),
        closes_at=data.get("closes_at"),
        divisions=divisions,
        grade_rules=grade_rules,
        raw_yaml=raw,
    )


def _validate_range(label: str, entry: dict[str, Any]) -> tuple[int, int]:
    lo = parse_grade(entry.get("min_grade"))
    hi = parse_grade(entry.get("max_grade"))
    if lo is None:
        raise YearConfigValidationError(f"{label}: min_grade '{entry.get('min_grade')}' is not a grade.")
    if hi is None:
        raise YearConfigValidationError(f"{label}: max_grade '{entry.get('max_grade')}' is not a grade.")
    if lo > hi:
        raise YearConfigValidationError(f"{label}: min_grade ({lo}) must be <= max_grade ({hi}).")
    return lo, hi


def validate_year_config(data: dict[str, Any]) -> None:
    """Raise YearConfigValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present, year is an integer
      - Every division/grade rule has a valid grade range
      - Scripture requirements carry a non-negative count
      - Essay divisions/rules carry a prompt
      - No two divisions (or two grade rules of one type) overlap
    """
    if not isinstance(data, dict):
        raise YearConfigValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise YearConfigValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    if parse_int(data.get("year")) is None:
        raise YearConfigValidationError(f"'year' value '{data.get('year')}' is not an integer.")

    divisions = data.get("divisions") or []
    grade_rules = data.get("grade_rules") or []
    if not isinstance(divisions, list) or not isinstance(grade_rules, list):
        raise YearConfigValidationError("'divisions' and 'grade_rules' must be lists.")
    if not divisions and not grade_rules:
        raise YearConfigValidationError("At least one division or grade rule is required.")

    ranges: list[dict[str, Any]] = []
    seen_names: set[str] = set()
    for i, d in enumerate(divisions):
        label = f"divisions[{i}]"
        if not isinstance(d, dict):
            raise YearConfigValidationError(f"{label} must be a mapping.")
        missing = REQUIRED_DIVISION_KEYS - set(d.keys())
        if missing:
            raise YearConfigValidationError(f"{label}: missing keys {sorted(missing)}")
        name = trim(str(d["name"]))
        if not name:
            raise YearConfigValidationError(f"{label}: name must not be empty.")
        if name.lower() in seen_names:
            raise YearConfigValidationError(f"{label}: duplicate division name '{name}'.")
        seen_names.add(name.lower())
        lo, hi = _validate_range(f"{label} ({name})", d)
        if d.get("requires_essay"):
            prompt = d.get("essay_prompt")
            if not isinstance(prompt, dict) or not trim(prompt.get("prompt")):
                raise YearConfigValidationError(
                    f"{label} ({name}): requires_essay divisions need essay_prompt.prompt."
                )
        else:
            required = parse_int(d.get("minimum_required"))
            if required is None or required < 0:
                raise YearConfigValidationError(
                    f"{label} ({name}): minimum_required '{d.get('minimum_required')}' "
                    f"must be an integer >= 0."
                )
        ranges.append({"id": name, "min_grade": lo, "max_grade": hi})

    for i, r in enumerate(grade_rules):
        label = f"grade_rules[{i}]"
        if not isinstance(r, dict):
            raise YearConfigValidationError(f"{label} must be a mapping.")
        missing = REQUIRED_GRADE_RULE_KEYS - set(r.keys())
        if missing:
            raise YearConfigValidationError(f"{label}: missing keys {sorted(missing)}")
        if r["type"] not in VALID_RULE_TYPES:
            raise YearConfigValidationError(
                f"{label}: invalid type '{r['type']}'. Must be one of {list(VALID_RULE_TYPES)}."
            )
        lo, hi = _validate_range(label, r)
        if r["type"] == "scripture":
            target = parse_int(r.get("target_count"))
            if target is None or target < 0:
                raise YearConfigValidationError(
                    f"{label}: target_count '{r.get('target_count')}' must be an integer >= 0."
                )
        ranges.append({"id": label, "type": r["type"], "min_grade": lo, "max_grade": hi})

    overlaps = find_overlapping_ranges(ranges)
    if overlaps:
        a, b = overlaps[0]
        raise YearConfigValidationError(
            f"Overlapping grade ranges: '{a['id']}' "
            f"({grade_range_label(a['min_grade'], a['max_grade'])}) and '{b['id']}' "
            f"({grade_range_label(b['min_grade'], b['max_grade'])})."
        )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def _upsert(
    store: Store,
    collection: str,
    match: dict[str, Any],
    values: dict[str, Any],
) -> tuple[Record, bool]:
    """Update the record matching ``match`` or add a new one.

    Returns (record, changed).
    """
    existing = store.where(collection, **match)
    if existing:
        rec = existing[0]
        patch = {k: v for k, v in values.items() if rec.get(k) != v}
        if not patch:
            return rec, False
        return store.update(collection, rec["id"], patch), True
    return store.add(collection, {**match, **values}), True


def register_year_config(store: Store, config: YearConfig) -> dict[str, int]:
    """Upsert the competition year, divisions, essay prompts and grade rules.

    Idempotent: re-registering an unchanged file writes nothing.  Existing
    records are matched by year, division name, prompt title and
    (type, min_grade, max_grade) respectively.

    Returns:
        Counts of records written per collection.
    """
    counts = {
        "competition_years_upserted": 0,
        "divisions_upserted": 0,
        "essay_prompts_upserted": 0,
        "grade_rules_upserted": 0,
    }
    year, changed = _upsert(
        store,
        "competition_years",
        {"year": config.year},
        {
            "name": config.name,
            "description": config.description,
            "opens_at": config.opens_at,
            "closes_at": config.closes_at,
        },
    )
    counts["competition_years_upserted"] += int(changed)
    year_id = year["id"]

    for d in config.divisions:
        division, changed = _upsert(
            store,
            "divisions",
            {"competition_year_id": year_id, "name": d["name"]},
            {
                "min_grade": d["min_grade"],
                "max_grade": d["max_grade"],
                "minimum_required": d["minimum_required"],
                "requires_essay": d["requires_essay"],
                "description": d["description"],
            },
        )
        counts["divisions_upserted"] += int(changed)
        prompt = d.get("essay_prompt")
        if prompt:
            _, changed = _upsert(
                store,
                "essay_prompts",
                {
                    "competition_year_id": year_id,
                    "division_id": division["id"],
                    "title": prompt.get("title") or d["name"],
                },
                {
                    "prompt": prompt.get("prompt"),
                    "instructions": prompt.get("instructions"),
                    "due_date": prompt.get("due_date"),
                },
            )
            counts["essay_prompts_upserted"] += int(changed)

    for r in config.grade_rules:
        _, changed = _upsert(
            store,
            "grade_rules",
            {
                "competition_year_id": year_id,
                "type": r["type"],
                "min_grade": r["min_grade"],
                "max_grade": r["max_grade"],
            },
            {
                "target_count": r["target_count"],
                "prompt_text": r["prompt_text"],
                "instructions": r["instructions"],
            },
        )
        counts["grade_rules_upserted"] += int(changed)

    return counts


def find_competition_year(store: Store, ref: str) -> Record | None:
    """Look up a competition year by id, numeric year, or name."""
    rec = store.get("competition_years", ref) if _looks_like_id(ref) else None
    if rec is not None:
        return rec
    year = parse_int(ref)
    if year is not None:
        found = store.where("competition_years", year=year)
        if found:
            return found[0]
    found = store.where("competition_years", name=ref)
    return found[0] if found else None


def _looks_like_id(ref: str) -> bool:
    return len(ref) == 36 and ref.count("-") == 4
