import re

import pytest

from db import MemoryStore
from ledger import (
    ADMIN_LEDGER, USER_LEDGER, Complaint, LedgerService, decode_ledger, encode_ledger, generate_complaint_id,
)


class FailingStore(MemoryStore):
    """Raises on writes to one key"""

    def __init__(self, fail_key):
        super().__init__()
        self.fail_key = fail_key

    def write(self, key, raw):
        if key == self.fail_key:
            raise IOError(f"write to {key} failed")
        super().write(key, raw)


def snapshot(store):
    return {key: store.read(key) for key in (USER_LEDGER, ADMIN_LEDGER)}


def test_submission_lands_in_both_ledgers(service, complaint_data):
    created = service.create_complaint(**complaint_data)

    user_ledger = service.read_ledger(USER_LEDGER)
    admin_ledger = service.read_ledger(ADMIN_LEDGER)
    assert len(user_ledger) == 1
    assert len(admin_ledger) == 1
    assert user_ledger[0] == admin_ledger[0] == created
    assert created.status == "pending"
    assert created.image is None
    assert re.fullmatch(r"\d{1,2}/\d{1,2}/\d{4}", created.date)


def test_create_normalizes_category(service, complaint_data):
    complaint_data["category"] = "Lack of Water Supply"

    created = service.create_complaint(**complaint_data)

    assert created.category == "lack-of-water-supply"


def test_append_keeps_insertion_order(service):
    for index in range(3):
        service.append(Complaint(id=str(index), name=f"n{index}"))

    assert [c.id for c in service.read_ledger(USER_LEDGER)] == ["0", "1", "2"]
    assert [c.id for c in service.read_ledger(ADMIN_LEDGER)] == ["0", "1", "2"]


def test_append_over_malformed_ledger_starts_fresh(store, service):
    store.write(USER_LEDGER, "{broken")

    service.append(Complaint(id="1"))

    assert [c.id for c in service.read_ledger(USER_LEDGER)] == ["1"]


def test_update_status_changes_only_status(service, complaint_data):
    created = service.create_complaint(**complaint_data)
    service.create_complaint(**dict(complaint_data, name="B"))

    updated = service.update_status(created.id, "resolved")

    assert updated == created.copy(update={"status": "resolved"})
    for ledger_key in (USER_LEDGER, ADMIN_LEDGER):
        ledger = service.read_ledger(ledger_key)
        assert ledger[0] == created.copy(update={"status": "resolved"})
        assert ledger[1].status == "pending"


def test_update_status_on_unknown_id_leaves_ledgers_untouched(store, service, complaint_data):
    service.create_complaint(**complaint_data)
    before = snapshot(store)

    assert service.update_status("does-not-exist", "resolved") is None
    assert snapshot(store) == before


def test_update_status_is_idempotent(store, service, complaint_data):
    created = service.create_complaint(**complaint_data)

    service.update_status(created.id, "in-progress")
    once = snapshot(store)
    service.update_status(created.id, "in-progress")

    assert snapshot(store) == once


def test_resolved_can_move_back_to_pending(service, complaint_data):
    created = service.create_complaint(**complaint_data)
    service.update_status(created.id, "resolved")

    updated = service.update_status(created.id, "pending")

    assert updated.status == "pending"


def test_illegal_status_is_rejected_before_any_write(store, service, complaint_data):
    created = service.create_complaint(**complaint_data)
    before = snapshot(store)

    with pytest.raises(ValueError):
        service.update_status(created.id, "closed")
    assert snapshot(store) == before


def test_update_only_touches_ledgers_holding_the_id(store, service):
    store.write(USER_LEDGER, encode_ledger([Complaint(id="1")]))
    store.write(ADMIN_LEDGER, encode_ledger([Complaint(id="1"), Complaint(id="2")]))
    user_before = store.read(USER_LEDGER)

    updated = service.update_status("2", "resolved")

    assert updated.id == "2"
    assert store.read(USER_LEDGER) == user_before
    assert service.get_complaint("2", ADMIN_LEDGER).status == "resolved"


def test_upsert_rejects_id_changes(service):
    service.append(Complaint(id="1"))

    with pytest.raises(ValueError):
        service.upsert_across_ledgers("1", lambda c: c.copy(update={"id": "2"}))


def test_upsert_returns_one_record_per_ledger(service):
    service.append(Complaint(id="1", name="old"))

    changed = service.upsert_across_ledgers("1", lambda c: c.copy(update={"name": "new"}))

    assert set(changed) == {USER_LEDGER, ADMIN_LEDGER}
    assert [c.name for c in changed.values()] == ["new", "new"]


def test_update_status_answers_with_admin_copy_when_ledgers_disagree(store, service):
    store.write(USER_LEDGER, encode_ledger([Complaint(id="1", name="citizen copy")]))
    store.write(ADMIN_LEDGER, encode_ledger([Complaint(id="1", name="admin copy")]))

    updated = service.update_status("1", "in-progress")

    assert updated.name == "admin copy"
    assert updated.status == "in-progress"
    assert service.get_complaint("1", USER_LEDGER).status == "in-progress"


def test_update_status_falls_back_to_citizen_copy(store, service):
    store.write(USER_LEDGER, encode_ledger([Complaint(id="1", name="citizen copy")]))

    updated = service.update_status("1", "resolved")

    assert updated.name == "citizen copy"
    assert service.read_ledger(ADMIN_LEDGER) == []


def test_write_paths_survive_deeply_nested_ledger(store, service):
    store.write(ADMIN_LEDGER, "[" * 200000)

    service.append(Complaint(id="1"))

    assert [c.id for c in service.read_ledger(ADMIN_LEDGER)] == ["1"]
    assert service.update_status("1", "resolved").status == "resolved"


def test_extra_ledger_needs_no_call_site_changes(store):
    service = LedgerService(store, ledger_keys=(USER_LEDGER, ADMIN_LEDGER, "audit_complaints"))

    created = service.create_complaint("A", "X", "123", "pothole", "d")
    service.update_status(created.id, "resolved")

    for key in (USER_LEDGER, ADMIN_LEDGER, "audit_complaints"):
        assert decode_ledger(store.read(key)) == [created.copy(update={"status": "resolved"})]


def test_failed_second_write_leaves_ledgers_diverged():
    store = FailingStore(fail_key=ADMIN_LEDGER)
    service = LedgerService(store)

    with pytest.raises(IOError):
        service.create_complaint("A", "X", "123", "pothole", "d")

    assert len(service.read_ledger(USER_LEDGER)) == 1
    assert service.read_ledger(ADMIN_LEDGER) == []


def test_divergence_report_and_reconcile_from_citizen_ledger(store, service):
    store.write(USER_LEDGER, encode_ledger([Complaint(id="1"), Complaint(id="2")]))
    store.write(ADMIN_LEDGER, encode_ledger([Complaint(id="1")]))

    report = service.find_divergence()
    assert report == {
        "consistent": False,
        "missing": {USER_LEDGER: [], ADMIN_LEDGER: ["2"]},
        "mismatched": [],
    }

    assert service.reconcile(USER_LEDGER) == ["2"]
    assert service.find_divergence()["consistent"] is True


def test_reconcile_from_admin_ledger_fixes_status_mismatch(store, service):
    store.write(USER_LEDGER, encode_ledger([Complaint(id="1", status="pending")]))
    store.write(ADMIN_LEDGER, encode_ledger([Complaint(id="1", status="resolved")]))

    assert service.find_divergence()["mismatched"] == ["1"]
    assert service.reconcile() == ["1"]
    assert service.get_complaint("1", USER_LEDGER).status == "resolved"
    assert service.reconcile() == []


def test_reconcile_keeps_records_only_in_target(store, service):
    store.write(USER_LEDGER, encode_ledger([Complaint(id="1"), Complaint(id="2")]))
    store.write(ADMIN_LEDGER, encode_ledger([Complaint(id="1")]))

    service.reconcile()

    assert [c.id for c in service.read_ledger(USER_LEDGER)] == ["1", "2"]


def test_reconcile_rejects_unknown_source(service):
    with pytest.raises(ValueError):
        service.reconcile("nope")


def test_consistent_ledgers_report_nothing(service, complaint_data):
    service.create_complaint(**complaint_data)

    assert service.find_divergence() == {
        "consistent": True,
        "missing": {USER_LEDGER: [], ADMIN_LEDGER: []},
        "mismatched": [],
    }


def test_ids_are_unique_and_increasing():
    ids = [int(generate_complaint_id()) for _ in range(500)]

    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


def test_stats_follow_status_updates(service, complaint_data):
    created = service.create_complaint(**complaint_data)
    assert service.get_stats(USER_LEDGER) == {"total": 1, "pending": 1, "in-progress": 0, "resolved": 0}

    service.update_status(created.id, "resolved")

    assert service.get_stats(USER_LEDGER) == {"total": 1, "pending": 0, "in-progress": 0, "resolved": 1}
    assert service.get_stats(ADMIN_LEDGER) == service.get_stats(USER_LEDGER)


def test_list_complaints_filters_by_status(service):
    service.append(Complaint(id="1", status="pending"))
    service.append(Complaint(id="2", status="resolved"))

    assert [c.id for c in service.list_complaints(ADMIN_LEDGER, "resolved")] == ["2"]
    assert [c.id for c in service.list_complaints(ADMIN_LEDGER, "all")] == ["1", "2"]
    assert service.list_complaints(ADMIN_LEDGER, "in-progress") == []
