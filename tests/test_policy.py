import pytest

from ledger import Complaint
from policy import (
    CATEGORIES, CATEGORY_VALUES, ComplaintStatus, STATUS_VALUES, compute_stats, filter_by_status,
    is_valid_category, normalize_category, status_display, validate_transition,
)


def test_status_values():
    assert STATUS_VALUES == ["pending", "in-progress", "resolved"]
    assert ComplaintStatus.in_progress.value == "in-progress"


@pytest.mark.parametrize("status, glyph, color, label", [
    ("pending", "clock", "orange", "Pending"),
    ("in-progress", "alert-circle", "blue", "In-progress"),
    ("resolved", "check-circle", "green", "Resolved"),
    ("archived", "clock", "gray", "Archived"),
    ("", "clock", "gray", ""),
])
def test_status_display_is_total(status, glyph, color, label):
    assert status_display(status) == {"glyph": glyph, "color": color, "label": label}


def test_status_display_returns_a_copy():
    status_display("pending")["glyph"] = "changed"
    assert status_display("pending")["glyph"] == "clock"


@pytest.mark.parametrize("current, new", [
    ("pending", "in-progress"),
    ("in-progress", "resolved"),
    ("resolved", "pending"),
    ("resolved", "in-progress"),
    ("pending", "pending"),
    ("garbled", "resolved"),
])
def test_any_legal_status_is_reachable(current, new):
    assert validate_transition(new) == new


def test_validate_transition_accepts_enum_members():
    assert validate_transition(ComplaintStatus.resolved) == "resolved"


@pytest.mark.parametrize("new", ["done", "Resolved", "", None])
def test_illegal_status_is_rejected(new):
    with pytest.raises(ValueError):
        validate_transition(new)


def test_categories_normalize_to_hyphenated_tokens():
    assert len(CATEGORIES) == 10
    assert normalize_category("Garbage Collection") == "garbage-collection"
    assert normalize_category("  Lack of   Water Supply ") == "lack-of-water-supply"
    assert "traffic-signals" in CATEGORY_VALUES
    assert "other" in CATEGORY_VALUES


def test_is_valid_category():
    assert is_valid_category("Pothole")
    assert is_valid_category("street-lighting")
    assert not is_valid_category("noise")


def test_stats_and_filter():
    complaints = [
        Complaint(id="1", status="pending"),
        Complaint(id="2", status="resolved"),
        Complaint(id="3", status="resolved"),
        Complaint(id="4", status="weird"),
    ]

    assert compute_stats(complaints) == {"total": 4, "pending": 1, "in-progress": 0, "resolved": 2}
    assert [c.id for c in filter_by_status(complaints, "resolved")] == ["2", "3"]
    assert len(filter_by_status(complaints, "all")) == 4
    assert len(filter_by_status(complaints, None)) == 4
