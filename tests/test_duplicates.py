from __future__ import annotations

import sqlite3
import unittest

from residuals_backend.models import AssignmentStatus, MonthlyDataRecord, RoleAssignment
from tests.support import load_month, make_engine, processor_id


class DuplicatePreventionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.store = self.engine.store
        load_month(self.engine, "2025-05", {"M1": 10, "M2": 20})
        self.clearent = processor_id(self.engine, "clearent")

    def _assignment(self, mid: str, rep: str, created_at: str) -> RoleAssignment:
        return RoleAssignment(
            mid=mid, month="2025-05", rep=rep, rep_percentage=100.0,
            assignment_status=AssignmentStatus.ASSIGNED, created_at=created_at, last_updated=created_at,
        )

    def test_role_assignment_duplicates_keep_newest(self) -> None:
        self.store.insert_assignment(self._assignment("M1", "Old Rep", "2025-05-01T00:00:00+00:00"))
        self.store.insert_assignment(self._assignment("M1", "New Rep", "2025-05-20T00:00:00+00:00"))
        self.store.insert_assignment(self._assignment("M1", "Mid Rep", "2025-05-10T00:00:00+00:00"))

        result = self.engine.cleanup_duplicates("2025-05")

        self.assertEqual(result["roleAssignments"]["removed"], 2)
        self.assertEqual(result["roleAssignments"]["kept"], 1)
        self.assertTrue(result["constraintsCreated"])
        rows = self.store.list_assignments("2025-05")
        self.assertEqual([r.rep for r in rows], ["New Rep"])

    def test_monthly_duplicates_keep_highest_net(self) -> None:
        merchant = self.store.get_merchant("M1")
        self.store.insert_monthly(MonthlyDataRecord(merchant.id, self.clearent, "2025-05", net=80.0,
                                                    created_at="2025-05-02T00:00:00+00:00"))
        self.store.insert_monthly(MonthlyDataRecord(merchant.id, self.clearent, "2025-05", net=80.0,
                                                    created_at="2025-05-03T00:00:00+00:00", group_code="LATEST"))

        report = self.engine.duplicate_report("2025-05")
        self.assertEqual([(r["mid"], r["rowCount"]) for r in report], [("M1", 3)])

        result = self.engine.cleanup_duplicates("2025-05")

        self.assertEqual(result["monthlyData"]["removed"], 2)
        rows = [r for r in self.store.list_monthly("2025-05") if r.merchant_id == merchant.id]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].net, 80.0)
        self.assertEqual(rows[0].group_code, "LATEST")
        self.assertEqual(self.engine.duplicate_report("2025-05"), [])

    def test_second_run_removes_nothing(self) -> None:
        self.store.insert_assignment(self._assignment("M2", "A", "2025-05-01T00:00:00+00:00"))
        self.store.insert_assignment(self._assignment("M2", "B", "2025-05-02T00:00:00+00:00"))
        merchant = self.store.get_merchant("M2")
        self.store.insert_monthly(MonthlyDataRecord(merchant.id, self.clearent, "2025-05", net=1.0))

        self.engine.cleanup_duplicates("2025-05")
        second = self.engine.cleanup_duplicates("2025-05")

        self.assertEqual(second["removed"], 0)
        self.assertTrue(second["constraintsCreated"])

    def test_constraint_blocks_new_duplicates(self) -> None:
        self.engine.cleanup_duplicates("2025-05")
        self.assertTrue(self.store.has_assignment_unique_index())

        self.store.insert_assignment(self._assignment("M1", "A", "2025-05-01T00:00:00+00:00"))
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.insert_assignment(self._assignment("M1", "B", "2025-05-02T00:00:00+00:00"))
        self.assertEqual(len(self.store.list_assignments("2025-05")), 1)

    def test_other_months_are_cleaned_before_constraint(self) -> None:
        load_month(self.engine, "2025-04", {"M1": 1})
        for rep in ("A", "B"):
            self.store.insert_assignment(RoleAssignment(
                mid="M1", month="2025-04", rep=rep, rep_percentage=100.0,
                assignment_status=AssignmentStatus.ASSIGNED))

        result = self.engine.cleanup_duplicates("2025-05")

        self.assertTrue(result["constraintsCreated"])
        self.assertEqual(len(self.store.list_assignments("2025-04")), 1)


if __name__ == "__main__":
    unittest.main()
