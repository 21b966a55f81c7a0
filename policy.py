"""
Complaint status lifecycle and category rules shared by the citizen and admin views
"""

import enum
import re
from typing import Dict, Iterable, List, Optional


class ComplaintStatus(str, enum.Enum):
    pending = "pending"             # Submitted, not picked up yet
    in_progress = "in-progress"     # Authorities are working on it
    resolved = "resolved"           # Closed


DEFAULT_STATUS = ComplaintStatus.pending.value
STATUS_VALUES = [s.value for s in ComplaintStatus]

STATUS_DISPLAY: Dict[str, Dict[str, str]] = {
    ComplaintStatus.pending.value: {'glyph': 'clock', 'color': 'orange'},
    ComplaintStatus.in_progress.value: {'glyph': 'alert-circle', 'color': 'blue'},
    ComplaintStatus.resolved.value: {'glyph': 'check-circle', 'color': 'green'},
}
UNKNOWN_STATUS_DISPLAY = {'glyph': 'clock', 'color': 'gray'}

CATEGORIES = [
    "Pothole",
    "Garbage Collection",
    "Drainage Issues",
    "Damaged Road",
    "Lack of Water Supply",
    "Electricity Issues",
    "Street Lighting",
    "Public Transportation",
    "Traffic Signals",
    "Other",
]


def normalize_category(label: str) -> str:
    """'Garbage Collection' -> 'garbage-collection'"""
    return re.sub(r'\s+', '-', label.strip().lower())


CATEGORY_VALUES = [normalize_category(label) for label in CATEGORIES]


def is_valid_category(value: str) -> bool:
    return normalize_category(value) in CATEGORY_VALUES


def is_valid_status(status: Optional[str]) -> bool:
    return status in STATUS_VALUES


def validate_transition(new_status: str) -> str:
    """Check the target of a status change and return the status to store.

    Every legal status is reachable from every other one, including moving a
    resolved complaint back to pending. The current status is not consulted,
    so a record whose status was corrupted can still be repaired.
    """
    if isinstance(new_status, ComplaintStatus):
        new_status = new_status.value
    if not is_valid_status(new_status):
        raise ValueError(f'Status must be one of: {", ".join(STATUS_VALUES)}')
    return new_status


def status_label(status: str) -> str:
    return status[:1].upper() + status[1:]


def status_display(status: str) -> Dict[str, str]:
    """Glyph, color and label for a status; unknown values get the gray clock"""
    display = dict(STATUS_DISPLAY.get(status, UNKNOWN_STATUS_DISPLAY))
    display['label'] = status_label(status or "")
    return display


def filter_by_status(complaints: Iterable, status: Optional[str] = None) -> List:
    if not status or status == "all":
        return list(complaints)
    return [c for c in complaints if c.status == status]


def compute_stats(complaints: Iterable) -> Dict[str, int]:
    """Counters shown on both dashboards"""
    complaints = list(complaints)
    stats = {'total': len(complaints)}
    for status in STATUS_VALUES:
        stats[status] = len([c for c in complaints if c.status == status])
    return stats
