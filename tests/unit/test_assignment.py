"""Unit tests for biblebee_etl.assignment."""

from __future__ import annotations

import pytest

from biblebee_etl.assignment import (
    enroll_child_in_bible_bee,
    enroll_children,
    get_child_progress,
    select_scriptures,
    submit_essay,
    toggle_scripture_completion,
)
from biblebee_etl.auto_enroll import set_enrollment_override
from biblebee_etl.rules import AmbiguousRuleError
from biblebee_etl.shared import PreconditionError
from biblebee_etl.storage import DuplicateKeyError, MemoryStore, RecordNotFoundError


def _assigned(store, child, year):
    return store.where(
        "student_scriptures", child_id=child["child_id"], competition_year_id=year["id"]
    )


# ---------------------------------------------------------------------------
# select_scriptures
# ---------------------------------------------------------------------------

class TestSelectScriptures:
    def test_first_n_by_display_order(self):
        rows = [
            {"id": "c", "reference": "C 1:1", "scripture_order": 3},
            {"id": "a", "reference": "A 1:1", "scripture_order": 1},
            {"id": "b", "reference": "B 1:1", "scripture_order": 2},
        ]
        chosen, shortfall = select_scriptures(rows, 2)
        assert [r["id"] for r in chosen] == ["a", "b"]
        assert shortfall == 0

    def test_unordered_last_then_by_reference(self):
        rows = [
            {"id": "z", "reference": "Zeph 1:1", "scripture_order": None},
            {"id": "j", "reference": "John 1:1", "scripture_order": None},
            {"id": "r", "reference": "Ruth 1:1", "scripture_order": 9},
        ]
        chosen, _ = select_scriptures(rows, None)
        assert [r["id"] for r in chosen] == ["r", "j", "z"]

    def test_shortfall(self):
        rows = [{"id": "a", "reference": "A 1:1", "scripture_order": 1}]
        chosen, shortfall = select_scriptures(rows, 4)
        assert len(chosen) == 1
        assert shortfall == 3

    @pytest.mark.parametrize("target", [None, 0, -2])
    def test_missing_target_selects_all(self, target):
        rows = [{"id": str(i), "reference": f"A {i}:1", "scripture_order": i} for i in range(5)]
        chosen, shortfall = select_scriptures(rows, target)
        assert len(chosen) == 5
        assert shortfall == 0


# ---------------------------------------------------------------------------
# enroll_child_in_bible_bee: scripture path
# ---------------------------------------------------------------------------

class TestEnrollScriptures:
    def test_assigns_target_count(self, store, year, add_child, add_scriptures, add_division):
        scriptures = add_scriptures()
        add_division("Junior", 3, 5, minimum_required=4)
        child = add_child("4th")

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.kind == "scripture"
        assert result.created == 4
        assert result.total_assigned == 4
        rows = _assigned(store, child, year)
        assert {r["scripture_id"] for r in rows} == {s["id"] for s in scriptures[:4]}
        assert {r["status"] for r in rows} == {"not_started"}

    def test_idempotent(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("Junior", 3, 5, minimum_required=4)
        child = add_child(4)

        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        first = {r["id"] for r in _assigned(store, child, year)}
        second_result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        second = {r["id"] for r in _assigned(store, child, year)}

        assert len(first) == 4
        assert first == second
        assert second_result.created == 0
        assert second_result.already_present == 4

    def test_rerun_preserves_completion(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("Junior", 3, 5, minimum_required=3)
        child = add_child(4)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        done = _assigned(store, child, year)[0]
        toggle_scripture_completion(store, done["id"], True)

        enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert store.get("student_scriptures", done["id"])["status"] == "completed"

    def test_resumes_partial_run(self, store, year, add_child, add_scriptures, add_division):
        scriptures = add_scriptures()
        add_division("Junior", 3, 5, minimum_required=4)
        child = add_child(4)
        store.add("student_scriptures", {
            "child_id": child["child_id"],
            "competition_year_id": year["id"],
            "scripture_id": scriptures[0]["id"],
            "status": "completed",
        })

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.created == 3
        assert len(_assigned(store, child, year)) == 4

    def test_total_never_exceeds_target(self, store, year, add_child, add_scriptures, add_division):
        scriptures = add_scriptures()
        add_division("Junior", 3, 5, minimum_required=2)
        child = add_child(4)
        # Assigned under an earlier ordering: scriptures outside today's first two.
        for s in scriptures[4:6]:
            store.add("student_scriptures", {
                "child_id": child["child_id"],
                "competition_year_id": year["id"],
                "scripture_id": s["id"],
                "status": "not_started",
            })

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.created == 0
        assert len(_assigned(store, child, year)) == 2
        assert result.warnings

    def test_shortfall_assigns_all_available(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures(["John 3:16", "Ruth 1:16"])
        add_division("Junior", 3, 5, minimum_required=5)
        child = add_child(4)

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.created == 2
        assert result.shortfall == 3
        assert any("only 2 scriptures" in w for w in result.warnings)

    def test_legacy_grade_rule(self, store, year, add_child, add_scriptures, add_grade_rule):
        add_scriptures()
        add_grade_rule(1, 3, target_count=2)
        child = add_child("2nd grade")

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.source == "grade_rule"
        assert result.created == 2

    def test_no_rule_no_assignment(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("Junior", 3, 5, minimum_required=4)
        child = add_child(9)

        assert enroll_child_in_bible_bee(store, child["child_id"], year["id"]) is None
        assert _assigned(store, child, year) == []

    def test_unparseable_grade(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("Junior", 3, 5, minimum_required=4)
        child = add_child("n/a")
        assert enroll_child_in_bible_bee(store, child["child_id"], year["id"]) is None

    def test_no_scriptures(self, store, year, add_child, add_division):
        add_division("Junior", 3, 5, minimum_required=4)
        child = add_child(4)
        assert enroll_child_in_bible_bee(store, child["child_id"], year["id"]) is None

    def test_ambiguous_rules_raise(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("A", 3, 5, minimum_required=4)
        add_division("B", 4, 6, minimum_required=2)
        child = add_child(4)
        with pytest.raises(AmbiguousRuleError):
            enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert _assigned(store, child, year) == []

    def test_first_match_wins_opt_in(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("A", 3, 5, minimum_required=4)
        add_division("B", 4, 6, minimum_required=2)
        child = add_child(4)
        result = enroll_child_in_bible_bee(
            store, child["child_id"], year["id"], first_match_wins=True
        )
        assert result.created == 4


class TestPreconditions:
    def test_missing_year(self, store, add_child):
        child = add_child(4)
        with pytest.raises(PreconditionError, match="Competition year"):
            enroll_child_in_bible_bee(store, child["child_id"], "no-such-year")

    def test_missing_child(self, store, year):
        with pytest.raises(PreconditionError, match="Child"):
            enroll_child_in_bible_bee(store, "no-such-child", year["id"])


class _FailingAddStore(MemoryStore):
    """MemoryStore whose add() fails after a number of successful calls."""

    def __init__(self, fail_after: int, exc: Exception) -> None:
        super().__init__()
        self.fail_after = fail_after
        self.exc = exc
        self.armed = False

    def add(self, collection, record):
        if self.armed and collection == "student_scriptures":
            if self.fail_after == 0:
                raise self.exc
            self.fail_after -= 1
        return super().add(collection, record)


class _FailingReadStore(MemoryStore):
    armed = False

    def where(self, collection, predicate=None, **equals):
        if self.armed and collection == "scriptures":
            raise ConnectionError("scripture read failed")
        return super().where(collection, predicate, **equals)


class TestStorageFailures:
    def _seed(self, store):
        year = store.add("competition_years", {"year": 2025, "name": "2025-2026"})
        for i, ref in enumerate(["John 3:16", "Ruth 1:16", "Romans 12:2"], start=1):
            store.add("scriptures", {
                "competition_year_id": year["id"], "reference": ref,
                "text": ref, "scripture_order": i, "texts": {},
            })
        store.add("divisions", {
            "competition_year_id": year["id"], "name": "Junior",
            "min_grade": 3, "max_grade": 5, "minimum_required": 3,
        })
        child = store.add("children", {"grade": "4"})
        return year, child

    def test_read_failure_writes_nothing(self):
        store = _FailingReadStore()
        year, child = self._seed(store)
        store.armed = True
        with pytest.raises(ConnectionError):
            enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert store.where("student_scriptures") == []

    def test_mid_loop_failure_is_resumable(self):
        store = _FailingAddStore(fail_after=1, exc=ConnectionError("write failed"))
        year, child = self._seed(store)
        store.armed = True
        with pytest.raises(ConnectionError):
            enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert len(store.where("student_scriptures")) == 1

        store.armed = False
        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert result.created == 2
        assert len(store.where("student_scriptures")) == 3

    def test_concurrent_duplicate_counts_as_present(self):
        store = _FailingAddStore(fail_after=0, exc=DuplicateKeyError("raced"))
        year, child = self._seed(store)
        store.armed = True
        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert result.created == 0
        assert result.already_present == 3


# ---------------------------------------------------------------------------
# Essay path
# ---------------------------------------------------------------------------

class TestEnrollEssay:
    def _senior(self, store, year, add_division):
        senior = add_division("Senior", 9, 12, requires_essay=True)
        prompt = store.add("essay_prompts", {
            "competition_year_id": year["id"],
            "division_id": senior["id"],
            "title": "Senior essay",
            "prompt": "Write about Ruth 1:16.",
            "instructions": "500 words",
        })
        return senior, prompt

    def test_creates_one_essay(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        _, prompt = self._senior(store, year, add_division)
        child = add_child("11th")

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.kind == "essay"
        assert result.created == 1
        essays = store.where("student_essays", child_id=child["child_id"])
        assert len(essays) == 1
        assert essays[0]["essay_prompt_id"] == prompt["id"]
        assert essays[0]["prompt_text"] == "Write about Ruth 1:16."
        assert essays[0]["status"] == "not_started"
        assert _assigned(store, child, year) == []

    def test_essay_idempotent(self, store, year, add_child, add_division):
        self._senior(store, year, add_division)
        child = add_child(10)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert result.created == 0
        assert result.already_present == 1
        assert len(store.where("student_essays", child_id=child["child_id"])) == 1

    def test_essay_rule_without_scriptures(self, store, year, add_child, add_grade_rule):
        add_grade_rule(9, 12, type="essay", prompt_text="Describe grace.")
        child = add_child(12)
        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert result.created == 1
        essay = store.where("student_essays", child_id=child["child_id"])[0]
        assert essay["essay_prompt_id"] is None
        assert essay["prompt_text"] == "Describe grace."

    def test_division_without_prompt_warns(self, store, year, add_child, add_division):
        add_division("Senior", 9, 12, requires_essay=True)
        child = add_child(10)
        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert result.created == 1
        assert any("no prompt" in w for w in result.warnings)


class TestRequirementChanges:
    """A child keeps one kind of assignment per year across re-runs."""

    def _divisions(self, store, year, add_division):
        junior = add_division("Junior", 3, 5, minimum_required=3)
        writers = add_division("Writers", 9, 12, requires_essay=True)
        store.add("essay_prompts", {
            "competition_year_id": year["id"],
            "division_id": writers["id"],
            "title": "Writers essay",
            "prompt": "Write about Romans 12:2.",
        })
        return junior, writers

    def test_override_to_essay_keeps_scriptures_only(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        _, writers = self._divisions(store, year, add_division)
        child = add_child(3)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        set_enrollment_override(store, child["child_id"], year["id"], writers["id"])

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.kind == "essay"
        assert result.created == 0
        assert any("essay not added" in w for w in result.warnings)
        assert len(_assigned(store, child, year)) == 3
        assert store.where("student_essays", child_id=child["child_id"]) == []

    def test_override_to_scriptures_keeps_essay_only(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        junior, _ = self._divisions(store, year, add_division)
        child = add_child(10)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        set_enrollment_override(store, child["child_id"], year["id"], junior["id"])

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.kind == "scripture"
        assert result.created == 0
        assert any("scripture assignments not added" in w for w in result.warnings)
        assert _assigned(store, child, year) == []
        assert len(store.where("student_essays", child_id=child["child_id"])) == 1

    def test_changed_prompt_keeps_existing_essay(self, store, year, add_child, add_division, add_grade_rule):
        add_grade_rule(9, 12, type="essay", prompt_text="Describe grace.")
        child = add_child(11)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        # A division with its own prompt now takes precedence over the rule.
        self._divisions(store, year, add_division)

        result = enroll_child_in_bible_bee(store, child["child_id"], year["id"])

        assert result.created == 0
        assert result.already_present == 1
        assert any("prompt differs" in w for w in result.warnings)
        essays = store.where("student_essays", child_id=child["child_id"])
        assert len(essays) == 1
        assert essays[0]["prompt_text"] == "Describe grace."

        submitted = submit_essay(store, child["child_id"], year["id"])
        assert submitted["id"] == essays[0]["id"]
        assert get_child_progress(store, child["child_id"], year["id"]).essay_status == "submitted"

    def test_store_rejects_second_essay_for_year(self, store, year, add_child):
        child = add_child(11)
        row = {"child_id": child["child_id"], "competition_year_id": year["id"], "status": "not_started"}
        store.add("student_essays", {**row, "essay_prompt_id": "p1"})
        with pytest.raises(DuplicateKeyError):
            store.add("student_essays", {**row, "essay_prompt_id": "p2"})


# ---------------------------------------------------------------------------
# Batch, completion, submission, progress
# ---------------------------------------------------------------------------

class TestEnrollChildren:
    def test_defaults_to_enrolled_children(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        junior = add_division("Junior", 3, 5, minimum_required=2)
        enrolled = add_child(4)
        add_child(4)  # not enrolled
        store.add("enrollments", {
            "child_id": enrolled["child_id"],
            "competition_year_id": year["id"],
            "division_id": junior["id"],
            "auto_enrolled": True,
        })

        results, counters = enroll_children(store, year["id"])

        assert [r.child_id for r in results] == [enrolled["child_id"]]
        assert counters.children_processed == 1
        assert counters.scripture_assignments_created == 2

    def test_counts_children_without_requirement(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("Junior", 3, 5, minimum_required=2)
        ids = [add_child(4)["child_id"], add_child(8)["child_id"]]

        _, counters = enroll_children(store, year["id"], ids)

        assert counters.children_enrolled == 1
        assert counters.children_without_requirement == 1


class TestCompletionAndSubmission:
    def test_toggle(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("Junior", 3, 5, minimum_required=1)
        child = add_child(4)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        row = _assigned(store, child, year)[0]

        done = toggle_scripture_completion(store, row["id"], True)
        assert done["status"] == "completed"
        assert done["completed_at"] is not None

        undone = toggle_scripture_completion(store, row["id"], False)
        assert undone["status"] == "not_started"
        assert undone["completed_at"] is None

    def test_toggle_unknown_id(self, store):
        with pytest.raises(RecordNotFoundError):
            toggle_scripture_completion(store, "missing", True)

    def test_submit_essay(self, store, year, add_child, add_grade_rule):
        add_grade_rule(9, 12, type="essay", prompt_text="Describe grace.")
        child = add_child(12)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        essay = submit_essay(store, child["child_id"], year["id"])
        assert essay["status"] == "submitted"
        assert essay["submitted_at"] is not None

    def test_submit_without_essay(self, store, year, add_child):
        child = add_child(12)
        assert submit_essay(store, child["child_id"], year["id"]) is None


class TestProgress:
    def test_status_transitions(self, store, year, add_child, add_scriptures, add_division):
        add_scriptures()
        add_division("Junior", 3, 5, minimum_required=2)
        child = add_child(4)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        rows = _assigned(store, child, year)

        progress = get_child_progress(store, child["child_id"], year["id"])
        assert progress.status == "Not Started"
        assert progress.required_scriptures == 2
        assert progress.division_name == "Junior"
        assert progress.grade_group == "Grades 3-5"

        toggle_scripture_completion(store, rows[0]["id"], True)
        assert get_child_progress(store, child["child_id"], year["id"]).status == "In-Progress"

        toggle_scripture_completion(store, rows[1]["id"], True)
        progress = get_child_progress(store, child["child_id"], year["id"])
        assert progress.status == "Complete"
        assert progress.completed_scriptures == 2
        assert progress.essay_status == "none"

    def test_essay_progress(self, store, year, add_child, add_grade_rule):
        add_grade_rule(9, 12, type="essay", prompt_text="Describe grace.")
        child = add_child(12)
        enroll_child_in_bible_bee(store, child["child_id"], year["id"])
        assert get_child_progress(store, child["child_id"], year["id"]).essay_status == "not_started"
        submit_essay(store, child["child_id"], year["id"])
        progress = get_child_progress(store, child["child_id"], year["id"])
        assert progress.essay_status == "submitted"
        assert progress.status == "Complete"
