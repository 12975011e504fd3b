"""biblebee_etl.auto_enroll

Division auto-enrollment: propose a division for every child from their
grade, then commit the proposals as enrollment rows.

An administrator override for (child, year) always wins over the grade
match.  Preview never writes; commit only writes rows whose division or
auto_enrolled flag differs from what is stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from biblebee_etl.normalize import parse_grade
from biblebee_etl.shared import PreconditionError, RunCounters
from biblebee_etl.storage import Record, Store, utcnow

STATUS_PROPOSED = "proposed"
STATUS_OVERRIDE = "override"
STATUS_UNASSIGNED = "unassigned"
STATUS_UNKNOWN_GRADE = "unknown_grade"
STATUS_MULTIPLE_MATCHES = "multiple_matches"


@dataclass
class EnrollmentPreview:
    child_id: str
    child_name: str
    grade_text: str
    grade_code: int | None
    status: str
    division_id: str | None = None
    division_name: str | None = None
    override_reason: str | None = None


@dataclass
class AutoEnrollPreview:
    previews: list[EnrollmentPreview] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=lambda: {
        STATUS_PROPOSED: 0,
        STATUS_OVERRIDE: 0,
        STATUS_UNASSIGNED: 0,
        STATUS_UNKNOWN_GRADE: 0,
        STATUS_MULTIPLE_MATCHES: 0,
    })


def _child_name(child: Record) -> str:
    parts = [child.get("first_name"), child.get("last_name")]
    name = " ".join(p for p in parts if p)
    return name or str(child["child_id"])


def preview_auto_enrollment(
    store: Store,
    competition_year_id: str,
    children: Iterable[Record] | None = None,
) -> AutoEnrollPreview:
    """Propose a division per child.

    Args:
        children: Children to consider; defaults to every child in the store.

    Raises:
        PreconditionError: The year does not exist or has no divisions.
    """
    if store.get("competition_years", competition_year_id) is None:
        raise PreconditionError(f"Competition year {competition_year_id} not found")
    divisions = store.where("divisions", competition_year_id=competition_year_id)
    if not divisions:
        raise PreconditionError(f"No divisions found for competition year {competition_year_id}")
    by_id = {str(d["id"]): d for d in divisions}
    overrides = {
        o["child_id"]: o
        for o in store.where("enrollment_overrides", competition_year_id=competition_year_id)
    }
    if children is None:
        children = store.where("children")

    result = AutoEnrollPreview()
    for child in sorted(children, key=lambda c: (_child_name(c).lower(), str(c["child_id"]))):
        grade_text = child.get("grade")
        code = parse_grade(grade_text)
        preview = EnrollmentPreview(
            child_id=child["child_id"],
            child_name=_child_name(child),
            grade_text="" if grade_text is None else str(grade_text),
            grade_code=code,
            status=STATUS_UNASSIGNED,
        )

        override = overrides.get(child["child_id"])
        division = by_id.get(str(override["division_id"])) if override else None
        if division is not None:
            preview.status = STATUS_OVERRIDE
            preview.division_id = division["id"]
            preview.division_name = division.get("name")
            preview.override_reason = override.get("reason")
        elif code is None:
            preview.status = STATUS_UNKNOWN_GRADE
        else:
            matching = [
                d for d in divisions
                if int(d["min_grade"]) <= code <= int(d["max_grade"])
            ]
            if len(matching) == 1:
                preview.status = STATUS_PROPOSED
                preview.division_id = matching[0]["id"]
                preview.division_name = matching[0].get("name")
            elif len(matching) > 1:
                preview.status = STATUS_MULTIPLE_MATCHES

        result.counts[preview.status] += 1
        result.previews.append(preview)
    return result


def commit_auto_enrollment(
    store: Store,
    competition_year_id: str,
    previews: Iterable[EnrollmentPreview],
    counters: RunCounters | None = None,
) -> RunCounters:
    """Write enrollment rows for proposed and override previews.

    Children in any other status are skipped and counted as unassigned.
    """
    counters = counters or RunCounters()
    existing = {
        e["child_id"]: e
        for e in store.where("enrollments", competition_year_id=competition_year_id)
    }
    for p in previews:
        if p.status not in (STATUS_PROPOSED, STATUS_OVERRIDE) or p.division_id is None:
            counters.unassigned_children += 1
            if p.status == STATUS_MULTIPLE_MATCHES:
                counters.warnings.append(
                    f"child {p.child_id} ({p.child_name}): grade {p.grade_code} "
                    f"matches more than one division"
                )
            continue
        auto = p.status == STATUS_PROPOSED
        if not auto:
            counters.overrides_applied += 1
        values: dict[str, Any] = {"division_id": p.division_id, "auto_enrolled": auto}

        current = existing.get(p.child_id)
        if current is None:
            store.add(
                "enrollments",
                {
                    "child_id": p.child_id,
                    "competition_year_id": competition_year_id,
                    "enrolled_at": utcnow(),
                    **values,
                },
            )
            counters.enrollments_created += 1
        elif str(current.get("division_id")) != str(p.division_id) or current.get("auto_enrolled") != auto:
            store.update("enrollments", current["id"], {**values, "enrolled_at": utcnow()})
            counters.enrollments_updated += 1
        else:
            counters.enrollments_unchanged += 1
    return counters


def set_enrollment_override(
    store: Store,
    child_id: str,
    competition_year_id: str,
    division_id: str,
    reason: str | None = None,
    created_by: str | None = None,
) -> Record:
    """Create or replace the administrator override for (child, year)."""
    division = store.get("divisions", division_id)
    if division is None or str(division["competition_year_id"]) != str(competition_year_id):
        raise PreconditionError(
            f"Division {division_id} not found for competition year {competition_year_id}"
        )
    current = store.where(
        "enrollment_overrides", child_id=child_id, competition_year_id=competition_year_id
    )
    values = {"division_id": division_id, "reason": reason, "created_by": created_by}
    if current:
        return store.update("enrollment_overrides", current[0]["id"], values)
    return store.add(
        "enrollment_overrides",
        {"child_id": child_id, "competition_year_id": competition_year_id, **values},
    )
