"""biblebee_etl.assignment

Per-child Bible Bee obligations: idempotent enrollment, completion toggling,
essay submission and progress.

Enrollment computes the desired assignment set from the child's resolved
requirement, diffs it against the rows already stored, and adds only the
missing rows.  Existing rows are never modified, so completion status
survives re-runs, and an interrupted run is finished by simply running it
again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from biblebee_etl.normalize import grade_label, grade_range_label, normalize_reference, parse_grade
from biblebee_etl.rules import Requirement, resolve_requirement
from biblebee_etl.shared import PreconditionError, RunCounters
from biblebee_etl.storage import DuplicateKeyError, Record, Store, utcnow

SCRIPTURE_NOT_STARTED = "not_started"
SCRIPTURE_COMPLETED = "completed"
ESSAY_NOT_STARTED = "not_started"
ESSAY_SUBMITTED = "submitted"

log = logging.getLogger(__name__)

# scripture_order of None sorts after every numbered scripture
_UNORDERED = float("inf")


@dataclass
class AssignmentResult:
    child_id: str
    competition_year_id: str
    kind: str
    source: str
    target_count: int | None = None
    created: int = 0
    already_present: int = 0
    total_assigned: int = 0
    shortfall: int = 0
    essay_prompt_id: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ChildProgress:
    child_id: str
    competition_year_id: str
    required_scriptures: int
    total_scriptures: int
    completed_scriptures: int
    status: str  # "Not Started" | "In-Progress" | "Complete"
    essay_status: str  # "none" | "not_started" | "submitted"
    grade_group: str | None = None
    division_name: str | None = None


def scripture_sort_key(scripture: Record) -> tuple[Any, str, str]:
    order = scripture.get("scripture_order")
    return (
        _UNORDERED if order is None else order,
        normalize_reference(scripture.get("reference")),
        str(scripture.get("id")),
    )


def select_scriptures(scriptures: Iterable[Record], target_count: int | None) -> tuple[list[Record], int]:
    """Return (first target_count scriptures in display order, shortfall).

    A missing or non-positive target selects every scripture.
    """
    ordered = sorted(scriptures, key=scripture_sort_key)
    if target_count is None or target_count <= 0:
        return ordered, 0
    return ordered[:target_count], max(0, target_count - len(ordered))


def _require_year_and_child(store: Store, child_id: str, competition_year_id: str) -> Record:
    if store.get("competition_years", competition_year_id) is None:
        raise PreconditionError(f"Competition year {competition_year_id} not found")
    child = store.get("children", child_id)
    if child is None:
        raise PreconditionError(f"Child {child_id} not found")
    return child


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------

def enroll_child_in_bible_bee(
    store: Store,
    child_id: str,
    competition_year_id: str,
    first_match_wins: bool = False,
) -> AssignmentResult | None:
    """Materialize a child's scripture or essay obligations for one year.

    Returns None when the child has no applicable requirement, or when a
    scripture requirement applies but the year has no scriptures.

    Raises:
        PreconditionError: The competition year or child does not exist.
        AmbiguousRuleError: Overlapping divisions/rules cover the child's grade.
    """
    child = _require_year_and_child(store, child_id, competition_year_id)
    requirement = resolve_requirement(
        store, competition_year_id, child, first_match_wins=first_match_wins
    )
    if requirement is None:
        return None
    if requirement.kind == "essay":
        return _enroll_essay(store, child_id, competition_year_id, requirement)
    return _enroll_scriptures(store, child_id, competition_year_id, requirement)


def _enroll_scriptures(
    store: Store,
    child_id: str,
    competition_year_id: str,
    requirement: Requirement,
) -> AssignmentResult | None:
    scriptures = store.where("scriptures", competition_year_id=competition_year_id)
    if not scriptures:
        return None
    existing = store.where(
        "student_scriptures", child_id=child_id, competition_year_id=competition_year_id
    )
    essays = store.where(
        "student_essays", child_id=child_id, competition_year_id=competition_year_id
    )

    desired, shortfall = select_scriptures(scriptures, requirement.target_count)
    existing_ids = {row["scripture_id"] for row in existing}
    missing = [s for s in desired if s["id"] not in existing_ids]
    slots = max(0, len(desired) - len(existing))
    to_add = missing[:slots]

    result = AssignmentResult(
        child_id=child_id,
        competition_year_id=competition_year_id,
        kind="scripture",
        source=requirement.source,
        target_count=requirement.target_count,
        already_present=len(existing),
        shortfall=shortfall,
    )
    if essays:
        result.shortfall = 0
        result.warnings.append(
            f"child {child_id}: already has an essay assignment for this year; "
            f"scripture assignments not added"
        )
        log.warning(result.warnings[-1])
        result.total_assigned = len(existing)
        return result
    if shortfall:
        result.warnings.append(
            f"child {child_id}: target {requirement.target_count} but only "
            f"{len(scriptures)} scriptures exist"
        )
        log.warning(result.warnings[-1])
    if len(missing) > len(to_add):
        result.warnings.append(
            f"child {child_id}: {len(existing)} existing assignments already fill "
            f"the target; {len(missing) - len(to_add)} desired scriptures not added"
        )

    for scripture in to_add:
        try:
            store.add(
                "student_scriptures",
                {
                    "child_id": child_id,
                    "competition_year_id": competition_year_id,
                    "scripture_id": scripture["id"],
                    "status": SCRIPTURE_NOT_STARTED,
                },
            )
        except DuplicateKeyError:
            log.info("child %s: scripture %s assigned concurrently", child_id, scripture["id"])
            result.already_present += 1
            continue
        result.created += 1

    result.total_assigned = result.created + result.already_present
    return result


def _enroll_essay(
    store: Store,
    child_id: str,
    competition_year_id: str,
    requirement: Requirement,
) -> AssignmentResult:
    prompt_id = requirement.essay_prompt["id"] if requirement.essay_prompt else None
    existing = store.where(
        "student_essays", child_id=child_id, competition_year_id=competition_year_id
    )
    scriptures = store.where(
        "student_scriptures", child_id=child_id, competition_year_id=competition_year_id
    )
    result = AssignmentResult(
        child_id=child_id,
        competition_year_id=competition_year_id,
        kind="essay",
        source=requirement.source,
        target_count=1,
        essay_prompt_id=prompt_id,
    )
    # One essay per child and year, whatever prompt it was created from.
    if existing:
        result.already_present = 1
        result.total_assigned = 1
        if not any(row.get("essay_prompt_id") == prompt_id for row in existing):
            result.warnings.append(
                f"child {child_id}: existing essay kept; current prompt differs"
            )
        return result
    if scriptures:
        result.warnings.append(
            f"child {child_id}: already has {len(scriptures)} scripture assignments "
            f"for this year; essay not added"
        )
        log.warning(result.warnings[-1])
        return result

    if requirement.division is not None and requirement.essay_prompt is None:
        result.warnings.append(
            f"child {child_id}: division '{requirement.division.get('name')}' "
            f"requires an essay but has no prompt"
        )
    try:
        store.add(
            "student_essays",
            {
                "child_id": child_id,
                "competition_year_id": competition_year_id,
                "essay_prompt_id": prompt_id,
                "prompt_text": requirement.prompt_text,
                "instructions": requirement.instructions,
                "status": ESSAY_NOT_STARTED,
            },
        )
        result.created = 1
    except DuplicateKeyError:
        result.already_present = 1
    result.total_assigned = 1
    return result


def enroll_children(
    store: Store,
    competition_year_id: str,
    child_ids: Iterable[str] | None = None,
    counters: RunCounters | None = None,
    first_match_wins: bool = False,
) -> tuple[list[AssignmentResult], RunCounters]:
    """Run enroll_child_in_bible_bee for many children.

    Defaults to every child with an enrollment or override for the year.
    Storage and precondition errors propagate; a re-run resumes where a
    failed run stopped.
    """
    counters = counters or RunCounters()
    if child_ids is None:
        seen: dict[str, None] = {}
        for collection in ("enrollments", "enrollment_overrides"):
            for row in store.where(collection, competition_year_id=competition_year_id):
                seen.setdefault(row["child_id"], None)
        child_ids = list(seen)

    results: list[AssignmentResult] = []
    for child_id in child_ids:
        counters.children_processed += 1
        result = enroll_child_in_bible_bee(
            store, child_id, competition_year_id, first_match_wins=first_match_wins
        )
        if result is None:
            counters.children_without_requirement += 1
            continue
        counters.children_enrolled += 1
        if result.kind == "essay":
            counters.essay_assignments_created += result.created
        else:
            counters.scripture_assignments_created += result.created
        counters.assignments_already_present += result.already_present
        if result.shortfall:
            counters.shortfalls += 1
        counters.warnings.extend(result.warnings)
        results.append(result)
    return results, counters


# ---------------------------------------------------------------------------
# Completion / submission
# ---------------------------------------------------------------------------

def toggle_scripture_completion(store: Store, student_scripture_id: str, complete: bool) -> Record:
    """Mark a student scripture completed, or back to not started.

    RecordNotFoundError propagates from the store for unknown ids.
    """
    return store.update(
        "student_scriptures",
        student_scripture_id,
        {
            "status": SCRIPTURE_COMPLETED if complete else SCRIPTURE_NOT_STARTED,
            "completed_at": utcnow() if complete else None,
        },
    )


def _first_essay(essays: list[Record]) -> Record:
    return min(essays, key=lambda e: (str(e.get("created_at") or ""), str(e["id"])))


def submit_essay(store: Store, child_id: str, competition_year_id: str) -> Record | None:
    """Mark the child's essay for the year submitted; None if none is assigned."""
    essays = store.where(
        "student_essays", child_id=child_id, competition_year_id=competition_year_id
    )
    if not essays:
        return None
    return store.update(
        "student_essays",
        _first_essay(essays)["id"],
        {"status": ESSAY_SUBMITTED, "submitted_at": utcnow()},
    )


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

def get_child_progress(
    store: Store,
    child_id: str,
    competition_year_id: str,
    first_match_wins: bool = False,
) -> ChildProgress:
    child = _require_year_and_child(store, child_id, competition_year_id)
    rows = store.where(
        "student_scriptures", child_id=child_id, competition_year_id=competition_year_id
    )
    essays = store.where(
        "student_essays", child_id=child_id, competition_year_id=competition_year_id
    )
    total = len(rows)
    completed = sum(1 for r in rows if r.get("status") == SCRIPTURE_COMPLETED)
    essay_status = (
        (_first_essay(essays).get("status") or ESSAY_NOT_STARTED) if essays else "none"
    )

    requirement = resolve_requirement(
        store, competition_year_id, child, first_match_wins=first_match_wins
    )
    required = total
    grade_group = None
    division_name = None
    if requirement is not None:
        if requirement.kind == "scripture" and requirement.target_count:
            required = requirement.target_count
        ranged = requirement.division or requirement.grade_rule
        grade_group = grade_range_label(int(ranged["min_grade"]), int(ranged["max_grade"]))
        if requirement.division is not None:
            division_name = requirement.division.get("name")
    elif parse_grade(child.get("grade")) is not None:
        grade_group = grade_label(parse_grade(child.get("grade")))

    if requirement is not None and requirement.kind == "essay":
        status = "Complete" if essay_status == ESSAY_SUBMITTED else "Not Started"
    elif completed == 0:
        status = "Not Started"
    elif completed >= required:
        status = "Complete"
    else:
        status = "In-Progress"

    return ChildProgress(
        child_id=child_id,
        competition_year_id=competition_year_id,
        required_scriptures=required,
        total_scriptures=total,
        completed_scriptures=completed,
        status=status,
        essay_status=essay_status,
        grade_group=grade_group,
        division_name=division_name,
    )
