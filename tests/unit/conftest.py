"""Shared fixtures for unit tests: an in-memory store seeded per test."""

from __future__ import annotations

import pytest

from biblebee_etl.storage import MemoryStore

REFERENCES = [
    "John 3:16",
    "Romans 12:2",
    "Proverbs 3:5-6",
    "Philippians 4:13",
    "Psalm 23:1",
    "Joshua 1:9",
]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def year(store):
    return store.add("competition_years", {"year": 2025, "name": "2025-2026"})


@pytest.fixture
def add_child(store):
    def _add(grade, child_id=None, first_name="Test", last_name="Child"):
        record = {"grade": grade, "first_name": first_name, "last_name": last_name}
        if child_id:
            record["child_id"] = child_id
        return store.add("children", record)
    return _add


@pytest.fixture
def add_scriptures(store, year):
    def _add(references=REFERENCES, year_id=None):
        return [
            store.add("scriptures", {
                "competition_year_id": year_id or year["id"],
                "reference": ref,
                "text": f"text of {ref}",
                "translation": "NIV",
                "scripture_order": i,
                "texts": {},
            })
            for i, ref in enumerate(references, start=1)
        ]
    return _add


@pytest.fixture
def add_division(store, year):
    def _add(name, min_grade, max_grade, minimum_required=None, requires_essay=False, year_id=None):
        return store.add("divisions", {
            "competition_year_id": year_id or year["id"],
            "name": name,
            "min_grade": min_grade,
            "max_grade": max_grade,
            "minimum_required": minimum_required,
            "requires_essay": requires_essay,
        })
    return _add


@pytest.fixture
def add_grade_rule(store, year):
    def _add(min_grade, max_grade, type="scripture", target_count=None, prompt_text=None, year_id=None):
        return store.add("grade_rules", {
            "competition_year_id": year_id or year["id"],
            "min_grade": min_grade,
            "max_grade": max_grade,
            "type": type,
            "target_count": target_count,
            "prompt_text": prompt_text,
        })
    return _add
