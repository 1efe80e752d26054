"""
Duplicate detection and cleanup.

Both cleanups group rows by their natural key, keep one row and delete the
rest:

- role assignments by (mid, month), keeping the most recently created row
- monthly data by (merchant, processor) within a month, keeping the highest
  net revenue (ties go to the most recent row)

A merchant fed by two processors in one month is two natural keys, not a
duplicate. After cleanup a unique index on role_assignments(mid, month) is
installed so repeats fail at insert time.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .storage import ResidualsStore

log = logging.getLogger("residuals")


class DuplicatePrevention:

    def __init__(self, store: ResidualsStore):
        self.store = store

    def cleanup_role_assignments(self, month: Optional[str] = None) -> Dict[str, Any]:
        removed, kept, errors = 0, 0, []
        for group in self.store.duplicate_assignment_groups(month):
            try:
                with self.store.transaction():
                    ids = self.store.assignment_ids_newest_first(group["mid"], group["month"])
                    removed += self.store.delete_assignment_ids(ids[1:])
                    kept += 1
            except sqlite3.Error as e:
                log.exception("[DUPLICATE CLEANUP] role assignment %s/%s", group["mid"], group["month"])
                errors.append({"mid": group["mid"], "error": str(e)})
        return {"removed": removed, "kept": kept, "errors": errors}

    def cleanup_monthly_data(self, month: str) -> Dict[str, Any]:
        removed, kept, errors = 0, 0, []
        for group in self.store.duplicate_monthly_groups(month):
            try:
                with self.store.transaction():
                    rows = self.store.monthly_rows_for(month, group["merchant_id"], group["processor_id"])
                    removed += self.store.delete_monthly_ids([r.id for r in rows[1:]])
                    kept += 1
            except sqlite3.Error as e:
                log.exception("[DUPLICATE CLEANUP] monthly data %s", group["mid"])
                errors.append({"mid": group["mid"], "error": str(e)})
        return {"removed": removed, "kept": kept, "errors": errors}

    def cleanup(self, month: str) -> Dict[str, Any]:
        """Run both cleanups for the month, then install the constraint."""
        assignments = self.cleanup_role_assignments(month)
        monthly = self.cleanup_monthly_data(month)
        # other months may still hold duplicates that block the index
        if self.store.duplicate_assignment_groups():
            others = self.cleanup_role_assignments()
            assignments["removed"] += others["removed"]
            assignments["kept"] += others["kept"]
            assignments["errors"].extend(others["errors"])
        constraint = self.store.create_assignment_unique_index()

        result = {
            "month": month,
            "roleAssignments": assignments,
            "monthlyData": monthly,
            "removed": assignments["removed"] + monthly["removed"],
            "kept": assignments["kept"] + monthly["kept"],
            "constraintsCreated": constraint,
            "errors": assignments["errors"] + monthly["errors"],
        }
        log.info("[DUPLICATE CLEANUP] %s: removed %d, kept %d, constraint=%s",
                 month, result["removed"], result["kept"], constraint)
        return result

    def report(self, month: str) -> List[Dict[str, Any]]:
        """MIDs with more than one monthly row for the same processor this month."""
        return [
            {
                "mid": g["mid"],
                "processorId": g["processor_id"],
                "processorName": g["processor_name"],
                "rowCount": g["row_count"],
                "totalNet": round(g["total_net"] or 0.0, 2),
            }
            for g in self.store.duplicate_monthly_groups(month)
        ]
