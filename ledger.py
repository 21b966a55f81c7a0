import json
import logging
import threading
import time
from datetime import date
from typing import Optional, Dict, Any, List, Callable, Sequence

from pydantic import BaseModel

from db import StoreAdapter, info_logger, error_logger, app_info_logger, app_error_logger
from policy import DEFAULT_STATUS, filter_by_status, compute_stats, normalize_category, validate_transition

logger = logging.getLogger(__name__)

# Ledger keys
USER_LEDGER = "user_complaints"
ADMIN_LEDGER = "admin_complaints"
LEDGER_KEYS = (USER_LEDGER, ADMIN_LEDGER)

COMPLAINT_FIELDS = ("id", "name", "address", "phone", "category", "description", "image", "date", "status")


class Complaint(BaseModel):
    id: str
    name: str = ""
    address: str = ""
    phone: str = ""
    category: str = ""
    description: str = ""
    image: Optional[str] = None  # filename only, the file itself is never stored
    date: str = ""
    status: str = DEFAULT_STATUS


_id_lock = threading.Lock()
_last_id = 0


def generate_complaint_id() -> str:
    """Microsecond timestamp, bumped so ids stay strictly increasing in this process"""
    global _last_id
    with _id_lock:
        candidate = time.time_ns() // 1000
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


def format_display_date(day: Optional[date] = None) -> str:
    day = day or date.today()
    return f"{day.month}/{day.day}/{day.year}"


# ==========================================================
# Codec
# ==========================================================
def _decode_entry(entry: Any) -> Optional[Complaint]:
    if not isinstance(entry, dict):
        return None
    complaint_id = entry.get("id")
    if complaint_id is None or complaint_id == "":
        return None

    fields: Dict[str, Any] = {}
    for field in COMPLAINT_FIELDS:
        value = entry.get(field)
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        fields[field] = str(value)
    return Complaint(**fields)


def decode_ledger(raw: Optional[str]) -> List[Complaint]:
    """Parse a stored ledger. Anything unreadable decodes to an empty ledger."""
    if not raw:
        return []
    try:
        entries = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        app_info_logger.info("APP_INFO: Malformed ledger treated as empty")
        return []
    if not isinstance(entries, list):
        app_info_logger.info("APP_INFO: Ledger is not a list, treated as empty")
        return []

    complaints = []
    for entry in entries:
        complaint = _decode_entry(entry)
        if complaint is not None:
            complaints.append(complaint)
    return complaints


def encode_ledger(complaints: Sequence[Complaint]) -> str:
    return json.dumps([complaint.dict() for complaint in complaints], separators=(",", ":"))


# ==========================================================
# Dual-ledger writer
# ==========================================================
class LedgerService:
    """Keeps the citizen and admin ledgers in step.

    Each logical write is applied to every ledger key in turn, as a separate
    decode / modify / encode / store cycle. There is no transaction around
    the cycles: if a later one fails, the earlier ones stay written.
    """

    def __init__(self, store: StoreAdapter, ledger_keys: Sequence[str] = LEDGER_KEYS):
        self.store = store
        self.ledger_keys = tuple(ledger_keys)

    def read_ledger(self, ledger_key: str) -> List[Complaint]:
        return decode_ledger(self.store.read(ledger_key))

    def _write_ledger(self, ledger_key: str, complaints: Sequence[Complaint]) -> None:
        self.store.write(ledger_key, encode_ledger(complaints))

    def append(self, complaint: Complaint) -> Complaint:
        """Add a complaint to the end of every ledger"""
        app_info_logger.info(f"APP_INFO: Appending complaint - ID: {complaint.id}, Ledgers: {', '.join(self.ledger_keys)}")

        for ledger_key in self.ledger_keys:
            try:
                ledger = self.read_ledger(ledger_key)
                ledger.append(complaint)
                self._write_ledger(ledger_key, ledger)
            except Exception as e:
                app_error_logger.error(f"APP_ERROR: Append failed - ID: {complaint.id}, Ledger: {ledger_key}, Error: {str(e)}")
                raise e

        logger.info(f"✅ Complaint stored in all ledgers: {complaint.id}")
        return complaint

    def upsert_across_ledgers(self, complaint_id: str, mutation: Callable[[Complaint], Complaint]) -> Dict[str, Complaint]:
        """Apply ``mutation`` to the record with ``complaint_id`` in every ledger holding it.

        Ledgers that do not hold the id are left alone. Returns the mutated
        record keyed by ledger, for each ledger that held the id.
        """
        updated: Dict[str, Complaint] = {}

        for ledger_key in self.ledger_keys:
            try:
                ledger = self.read_ledger(ledger_key)
                found = False
                for index, complaint in enumerate(ledger):
                    if complaint.id != complaint_id:
                        continue
                    changed = mutation(complaint)
                    if changed.id != complaint_id:
                        raise ValueError("Complaint id cannot be changed")
                    ledger[index] = changed
                    if not found:
                        updated[ledger_key] = changed
                    found = True

                if not found:
                    app_info_logger.info(f"APP_INFO: Complaint not in ledger, skipped - ID: {complaint_id}, Ledger: {ledger_key}")
                    continue
                self._write_ledger(ledger_key, ledger)
            except Exception as e:
                app_error_logger.error(f"APP_ERROR: Ledger update failed - ID: {complaint_id}, Ledger: {ledger_key}, Error: {str(e)}")
                raise e

        return updated

    def update_status(self, complaint_id: str, new_status: str) -> Optional[Complaint]:
        """Change only the status of a complaint, in every ledger holding it"""
        app_info_logger.info(f"APP_INFO: Updating complaint status - ComplaintID: {complaint_id}, New Status: {new_status}")
        new_status = validate_transition(new_status)

        updated = self.upsert_across_ledgers(
            complaint_id,
            lambda complaint: complaint.copy(update={"status": new_status}),
        )

        if not updated:
            app_info_logger.info(f"APP_INFO: Complaint not found for status update - ComplaintID: {complaint_id}")
            return None

        app_info_logger.info(f"APP_INFO: Complaint status updated successfully - ComplaintID: {complaint_id}, Status: {new_status}, Ledgers: {len(updated)}")
        # the admin copy answers when the ledgers disagree
        if ADMIN_LEDGER in updated:
            return updated[ADMIN_LEDGER]
        return next(iter(updated.values()))

    def create_complaint(
        self,
        name: str,
        address: str,
        phone: str,
        category: str,
        description: str,
        image: Optional[str] = None,
    ) -> Complaint:
        """Build a new pending complaint and fan it out to every ledger"""
        complaint = Complaint(
            id=generate_complaint_id(),
            name=name,
            address=address,
            phone=phone,
            category=normalize_category(category),
            description=description,
            image=image or None,
            date=format_display_date(),
            status=DEFAULT_STATUS,
        )
        info_logger.info(f"SYSTEM_INFO: Complaint created - ID: {complaint.id}, Category: {complaint.category}")
        return self.append(complaint)

    def list_complaints(self, ledger_key: str, status_filter: Optional[str] = None) -> List[Complaint]:
        complaints = filter_by_status(self.read_ledger(ledger_key), status_filter)
        app_info_logger.info(f"APP_INFO: Retrieved {len(complaints)} complaints - Ledger: {ledger_key}, Status Filter: {status_filter}")
        return complaints

    def get_complaint(self, complaint_id: str, ledger_key: str) -> Optional[Complaint]:
        for complaint in self.read_ledger(ledger_key):
            if complaint.id == complaint_id:
                return complaint
        return None

    def get_stats(self, ledger_key: str) -> Dict[str, int]:
        return compute_stats(self.read_ledger(ledger_key))

    # ------------------------------------------------------
    # Divergence
    # ------------------------------------------------------
    def find_divergence(self) -> Dict[str, Any]:
        """Report ids missing from a ledger and ids whose records disagree"""
        indexed: Dict[str, Dict[str, Complaint]] = {}
        all_ids: List[str] = []
        for ledger_key in self.ledger_keys:
            indexed[ledger_key] = {}
            for complaint in self.read_ledger(ledger_key):
                indexed[ledger_key].setdefault(complaint.id, complaint)
                if complaint.id not in all_ids:
                    all_ids.append(complaint.id)

        missing = {
            ledger_key: [cid for cid in all_ids if cid not in records]
            for ledger_key, records in indexed.items()
        }
        mismatched = []
        for cid in all_ids:
            present = [records[cid] for records in indexed.values() if cid in records]
            if any(record != present[0] for record in present[1:]):
                mismatched.append(cid)

        consistent = not mismatched and not any(missing.values())
        if not consistent:
            error_logger.error(f"SYSTEM_ERROR: Ledger divergence detected - Missing: {missing}, Mismatched: {mismatched}")
        return {"consistent": consistent, "missing": missing, "mismatched": mismatched}

    def reconcile(self, source_key: str = ADMIN_LEDGER) -> List[str]:
        """Copy the source ledger's records over the other ledgers.

        Differing records are overwritten in place and missing ones are
        appended. Records only present in a target ledger are kept.
        """
        if source_key not in self.ledger_keys:
            raise ValueError(f"Unknown ledger: {source_key}")

        app_info_logger.info(f"APP_INFO: Reconciling ledgers - Source: {source_key}")
        source = self.read_ledger(source_key)
        touched: List[str] = []

        for ledger_key in self.ledger_keys:
            if ledger_key == source_key:
                continue
            ledger = self.read_ledger(ledger_key)
            positions = {}
            for index, complaint in enumerate(ledger):
                positions.setdefault(complaint.id, []).append(index)

            changed = False
            for record in source:
                if record.id in positions:
                    for index in positions[record.id]:
                        if ledger[index] != record:
                            ledger[index] = record
                            changed = True
                            if record.id not in touched:
                                touched.append(record.id)
                else:
                    ledger.append(record)
                    positions[record.id] = [len(ledger) - 1]
                    changed = True
                    if record.id not in touched:
                        touched.append(record.id)

            if changed:
                self._write_ledger(ledger_key, ledger)

        app_info_logger.info(f"APP_INFO: Reconciliation finished - Records touched: {len(touched)}")
        return touched
