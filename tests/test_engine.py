from __future__ import annotations

import io
import tempfile
import unittest
from pathlib import Path

from openpyxl import load_workbook

from residuals_backend.models import (
    AssignmentConflictError,
    AssignmentStatus,
    InvalidActionError,
    InvalidMonthError,
    LeadSheetRow,
    MonthlyDataRecord,
    RoleAssignment,
    RoleSplit,
    RoleType,
    SplitTotalError,
    UnknownMerchantError,
    UnknownProcessorError,
    UploadStatus,
)
from tests.support import (
    clearent_csv,
    lead_sheet_csv,
    load_month,
    make_engine,
    processor_id,
    shift4_csv,
)


def _split(**pcts):
    roles = {"agent": RoleType.AGENT, "partner": RoleType.PARTNER, "company": RoleType.COMPANY}
    return [RoleSplit(roles[k], k.title() + " Person", v) for k, v in pcts.items()]


class IngestTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.clearent = processor_id(self.engine, "clearent")

    def test_upload_creates_merchants_and_monthly_rows(self) -> None:
        result = self.engine.ingest_processor_file("2025-05", self.clearent, clearent_csv([("1001", 80), ("1002", 20)]), "c.csv")

        self.assertEqual(result["recordCount"], 2)
        self.assertEqual(result["status"], "validated")
        self.assertEqual(result["fileName"], "c.csv")
        self.assertEqual(result["matchedHeaders"], 10)
        self.assertEqual(self.engine.store.get_merchant("1001").legal_name, "Merchant 1001")
        self.assertEqual(len(self.engine.store.list_monthly("2025-05")), 2)

    def test_reupload_upserts_by_natural_key(self) -> None:
        self.engine.ingest_processor_file("2025-05", self.clearent, clearent_csv([("1001", 80)]), "c.csv")
        result = self.engine.ingest_processor_file("2025-05", self.clearent, clearent_csv([("1001", 95)]), "c.csv")

        rows = self.engine.store.list_monthly("2025-05")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].net, 95.0)
        self.assertEqual(result["updated"], 1)

    def test_uploads_are_logged(self) -> None:
        self.engine.ingest_processor_file("2025-05", self.clearent, clearent_csv([("1001", 80)]), "c.csv")
        self.engine.ingest_lead_sheet("2025-05", lead_sheet_csv([{"Existing MID": "1001"}]), "lead.csv")

        uploads = self.engine.store.list_uploads("2025-05")
        self.assertEqual([(u["kind"], u["file_name"], u["record_count"]) for u in uploads],
                         [("processor", "c.csv", 1), ("lead_sheet", "lead.csv", 1)])
        self.assertEqual(uploads[0]["processor_id"], self.clearent)
        self.assertEqual(uploads[1]["status"], "validated")

    def test_unknown_processor(self) -> None:
        with self.assertRaises(UnknownProcessorError):
            self.engine.ingest_processor_file("2025-05", 999, clearent_csv([("1", 1)]), "c.csv")

    def test_bad_month(self) -> None:
        with self.assertRaises(InvalidMonthError):
            self.engine.ingest_processor_file("2025-13", self.clearent, clearent_csv([("1", 1)]), "c.csv")

    def test_file_on_disk(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "clearent.csv"
            path.write_bytes(clearent_csv([("1001", 10)], title=True))
            result = self.engine.ingest_processor_file("2025-05", self.clearent, path)
        self.assertEqual(result["fileName"], "clearent.csv")
        self.assertEqual(result["recordCount"], 1)

    def test_lead_sheet_enriches_additively(self) -> None:
        self.engine.ingest_processor_file("2025-05", self.clearent, clearent_csv([("1001", 80)]), "c.csv")
        result = self.engine.ingest_lead_sheet("2025-05", lead_sheet_csv([
            {"Existing MID": "1001", "Legal Name": "", "DBA": "Corner Shop", "Partner Branch Number": "B12",
             "Sales Reps": "Tom Brown, Jane Smith"},
            {"Existing MID": "2002", "Legal Name": "New Co"},
        ]), "lead.csv")

        self.assertEqual(result["recordCount"], 2)
        self.assertEqual(result["newMerchants"], 1)
        self.assertEqual(result["updatedMerchants"], 1)
        self.assertEqual(result["partnerTagged"], 1)
        self.assertEqual(result["columnIUsers"], ["Tom Brown", "Jane Smith"])

        merchant = self.engine.store.get_merchant("1001")
        self.assertEqual(merchant.legal_name, "Merchant 1001")
        self.assertEqual(merchant.dba, "Corner Shop")
        self.assertEqual(merchant.branch_id, "B12")
        self.assertEqual(merchant.partner_type, "Centennial")


class CrossReferenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()

    def _master_rows(self):
        return [tuple(r) for r in self.engine.store.conn.execute(
            "SELECT * FROM master_dataset ORDER BY mid, month").fetchall()]

    def test_compile_is_idempotent(self) -> None:
        self.engine.ingest_lead_sheet("2025-05", lead_sheet_csv([
            {"Existing MID": "1001", "Partner Branch Number": "B1", "Column I": "Agent: Tom 100%"},
        ]), "lead.csv")
        load_month(self.engine, "2025-05", {"1001": 80, "1002": 20})
        first = self._master_rows()
        self.engine.cross_reference("2025-05")
        self.assertEqual(self._master_rows(), first)
        self.assertEqual(len(first), 2)

    def test_matched_and_unmatched(self) -> None:
        self.engine.ingest_lead_sheet("2025-05", lead_sheet_csv([{"Existing MID": "1001"}]), "lead.csv")
        self.engine.ingest_processor_file(
            "2025-05", processor_id(self.engine, "clearent"), clearent_csv([("1001", 1), ("1002", 2)]), "c.csv")
        result = self.engine.cross_reference("2025-05")

        self.assertEqual(result["matchedRecords"], 1)
        self.assertEqual(result["unmatchedRecords"], 1)
        self.assertTrue(self.engine.store.get_master("1001", "2025-05").in_lead_sheet)

    def test_last_processor_wins_and_monthly_rows_survive_cleanup(self) -> None:
        month = "2025-05"
        self.engine.ingest_processor_file(month, processor_id(self.engine, "clearent"), clearent_csv([("M1", 100)]), "c.csv")
        self.engine.ingest_processor_file(month, processor_id(self.engine, "shift4"), shift4_csv([("M1", 40)]), "s.csv")
        self.engine.cross_reference(month)

        master = self.engine.store.get_master("M1", month)
        self.assertEqual(master.net, 40.0)
        self.assertEqual(master.processor, "Shift4")
        self.assertEqual(len(self.engine.store.list_master(month)), 1)

        cleanup = self.engine.cleanup_duplicates(month)
        self.assertEqual(cleanup["monthlyData"]["removed"], 0)
        self.assertEqual(sorted(r.net for r in self.engine.store.list_monthly(month)), [40.0, 100.0])
        self.assertEqual(self.engine.duplicate_report(month), [])

    def test_branch_backfill_only_fills_empty(self) -> None:
        month = "2025-05"
        store = self.engine.store
        self.engine.ingest_processor_file(
            month, processor_id(self.engine, "clearent"), clearent_csv([("1001", 1), ("1002", 2)]), "c.csv")
        store.upsert_merchant("1002", {"branch_id": "KEEP"})
        store.upsert_lead_sheet_entry(month, LeadSheetRow(mid="1001", branch_id="B9"))
        store.upsert_lead_sheet_entry(month, LeadSheetRow(mid="1002", branch_id="OTHER"))

        result = self.engine.cross_reference(month)

        self.assertEqual(result["branchBackfills"], 1)
        self.assertEqual(store.get_merchant("1001").branch_id, "B9")
        self.assertEqual(store.get_merchant("1002").branch_id, "KEEP")

    def test_group_code_stands_in_for_missing_branch(self) -> None:
        month = "2025-05"
        data = b"Merchant ID,Merchant Name,Sales Amount,Net,Group\nM9,Shop,100,5,G77\n"
        self.engine.ingest_processor_file(month, processor_id(self.engine, "clearent"), data, "c.csv")

        result = self.engine.cross_reference(month)

        self.assertEqual(result["matchedRecords"], 1)
        self.assertEqual(self.engine.store.get_master("M9", month).branch_id, "G77")

    def test_snapshots_without_monthly_data_are_dropped(self) -> None:
        month = "2025-05"
        load_month(self.engine, month, {"1001": 5})
        self.engine.delete_processor_data(month, processor_id(self.engine, "clearent"))
        self.engine.cross_reference(month)
        self.assertEqual(self.engine.store.list_master(month), [])


class CarryForwardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        load_month(self.engine, "2025-04", {"M1": 10})
        self.engine.assign("M1", "2025-04", _split(agent=60, partner=40))
        load_month(self.engine, "2025-05", {"M1": 12, "M2": 8})

    def test_copies_previous_month(self) -> None:
        result = self.engine.auto_populate("2025-05")

        self.assertEqual(result["autoPopulated"], 1)
        self.assertEqual(result["newMIDs"], ["M2"])
        self.assertEqual(result["totalMIDs"], 2)
        self.assertEqual(result["sourceMonth"], "2025-04")
        self.assertEqual(result["sourceMonths"], ["2025-04"])
        ra = self.engine.store.get_assignment("M1", "2025-05")
        self.assertEqual(ra.assignment_status, AssignmentStatus.AUTO_POPULATED)
        self.assertEqual(ra.first_assigned_month, "2025-04")
        self.assertEqual(ra.rep_percentage, 60.0)
        self.assertEqual(result["validation"]["invalid"], 0)

    def test_never_overwrites_current_month(self) -> None:
        self.engine.assign("M1", "2025-05", _split(agent=100))
        result = self.engine.auto_populate("2025-05")

        self.assertEqual(result["autoPopulated"], 0)
        self.assertEqual(result["alreadyAssigned"], 1)
        rows = self.engine.store.list_assignments("2025-05")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].rep_percentage, 100.0)
        self.assertIsNone(rows[0].partner)

    def test_rerun_is_stable(self) -> None:
        self.engine.auto_populate("2025-05")
        second = self.engine.auto_populate("2025-05")
        self.assertEqual(second["autoPopulated"], 0)
        self.assertEqual(len(self.engine.store.list_assignments("2025-05")), 1)

    def test_lookback_window(self) -> None:
        load_month(self.engine, "2025-07", {"M1": 3})
        self.assertEqual(self.engine.carry_forward("2025-07")["autoPopulated"], 0)

        wide = make_engine(carry_forward_lookback_months=4)
        load_month(wide, "2025-04", {"M1": 10})
        wide.assign("M1", "2025-04", _split(agent=100))
        load_month(wide, "2025-07", {"M1": 3})
        result = wide.carry_forward("2025-07")
        self.assertEqual(result["autoPopulated"], 1)
        self.assertEqual(result["sourceMonth"], "2025-03")
        self.assertEqual(result["sourceMonths"], ["2025-04"])


class AssignTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        load_month(self.engine, "2025-05", {"M1": 10, "M2": 5})

    def test_rejects_bad_total_without_writing(self) -> None:
        with self.assertRaises(SplitTotalError) as ctx:
            self.engine.assign("M1", "2025-05", _split(agent=59.5, partner=40))
        self.assertEqual(ctx.exception.total, 99.5)
        self.assertIsNone(self.engine.store.get_assignment("M1", "2025-05"))

    def test_tolerance(self) -> None:
        ra = self.engine.assign("M1", "2025-05", _split(agent=66.67, partner=33.335))
        self.assertEqual(ra.assignment_status, AssignmentStatus.ASSIGNED)

    def test_conflict_before_total_check(self) -> None:
        self.engine.assign("M1", "2025-05", _split(agent=100))
        with self.assertRaises(AssignmentConflictError):
            self.engine.assign("M1", "2025-05", _split(agent=10))
        self.assertEqual(self.engine.store.get_assignment("M1", "2025-05").rep_percentage, 100.0)

    def test_unknown_mid(self) -> None:
        with self.assertRaises(UnknownMerchantError):
            self.engine.assign("NOPE", "2025-05", _split(agent=100))

    def test_assign_updates_master_and_completed(self) -> None:
        self.engine.assign("M1", "2025-05", _split(agent=70, company=30))

        self.assertEqual(self.engine.store.get_master("M1", "2025-05").assignment_status, AssignmentStatus.ASSIGNED)
        self.assertEqual([c["mid"] for c in self.engine.completed("2025-05")], ["M1"])

    def test_delete_then_reassign(self) -> None:
        self.engine.assign("M1", "2025-05", _split(agent=100))
        self.assertEqual(self.engine.delete_assignment("M1", "2025-05")["deleted"], 1)
        self.assertEqual(self.engine.store.get_master("M1", "2025-05").assignment_status, AssignmentStatus.PENDING)
        ra = self.engine.assign("M1", "2025-05", _split(partner=100))
        self.assertEqual(ra.partner_percentage, 100.0)

    def test_first_assigned_month_is_kept(self) -> None:
        load_month(self.engine, "2025-04", {"M1": 1})
        self.engine.assign("M1", "2025-04", _split(agent=100))
        ra = self.engine.assign("M1", "2025-05", _split(partner=100))
        self.assertEqual(ra.first_assigned_month, "2025-04")


class QueryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()

    def test_no_data(self) -> None:
        self.assertEqual(self.engine.unassigned("2025-05")["status"], "no_data_uploaded")

    def test_unassigned_partitions(self) -> None:
        load_month(self.engine, "2025-04", {"M1": 1})
        self.engine.assign("M1", "2025-04", _split(agent=100))
        load_month(self.engine, "2025-05", {"M1": 1, "M2": 2, "M3": 3})
        self.engine.assign("M3", "2025-05", _split(agent=100))

        result = self.engine.unassigned("2025-05")

        self.assertEqual([r["mid"] for r in result["newUnassigned"]], ["M2"])
        self.assertEqual([r["mid"] for r in result["previouslyAssigned"]], ["M1"])
        self.assertEqual(result["previouslyAssigned"][0]["currentAssignment"]["month"], "2025-04")
        self.assertEqual(result["summary"]["total"], 2)

    def test_completed_lists_each_mid_once(self) -> None:
        load_month(self.engine, "2025-05", {"M1": 1})
        for rep, created in (("New Rep", "2025-05-20T00:00:00+00:00"), ("Old Rep", "2025-05-01T00:00:00+00:00")):
            self.engine.store.insert_assignment(RoleAssignment(
                mid="M1", month="2025-05", rep=rep, rep_percentage=100.0,
                assignment_status=AssignmentStatus.ASSIGNED, created_at=created, last_updated=created,
            ))

        completed = self.engine.completed("2025-05")

        self.assertEqual([c["mid"] for c in completed], ["M1"])
        self.assertEqual(completed[0]["assignment"]["createdAt"], "2025-05-20T00:00:00+00:00")

    def test_previous_and_existing(self) -> None:
        load_month(self.engine, "2025-04", {"M1": 1})
        self.engine.assign("M1", "2025-04", _split(agent=100))
        load_month(self.engine, "2025-05", {"M1": 1})
        self.engine.assign("M1", "2025-05", _split(partner=100))

        self.assertEqual(self.engine.previous_assignment("M1", "2025-05").month, "2025-04")
        self.assertEqual(self.engine.existing_assignment("M1").month, "2025-05")
        self.assertIsNone(self.engine.previous_assignment("M1", "2025-04"))


class BulkParseAndQCTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.engine.ingest_lead_sheet("2025-05", lead_sheet_csv([
            {"Existing MID": "M1", "Column I": "Tom Brown 60%, Acme Payments LLC 20%"},
            {"Existing MID": "M2", "Column I": "ask finance"},
            {"Existing MID": "M3", "Column I": ""},
        ]), "lead.csv")
        load_month(self.engine, "2025-05", {"M1": 10, "M2": 20, "M3": 30})

    def test_bulk_parse(self) -> None:
        result = self.engine.bulk_parse("2025-05")

        self.assertEqual(result["parsedMids"], ["M1"])
        self.assertEqual([u["mid"] for u in result["unparseable"]], ["M2"])
        ra = self.engine.store.get_assignment("M1", "2025-05")
        self.assertEqual(ra.rep, "Tom Brown")
        self.assertEqual(ra.rep_percentage, 75.0)
        self.assertEqual(ra.company_percentage, 25.0)
        self.assertEqual(ra.original_column_i, "Tom Brown 60%, Acme Payments LLC 20%")
        self.assertEqual(ra.assignment_status, AssignmentStatus.ASSIGNED)

    def test_qc_approve_skips_invalid(self) -> None:
        self.engine.assign("M1", "2025-05", _split(agent=100))
        self.engine.store.insert_assignment(RoleAssignment(
            mid="M2", month="2025-05", rep="X", rep_percentage=50.0, assignment_status=AssignmentStatus.ASSIGNED))

        result = self.engine.master_data_qc("2025-05", "approve")

        self.assertEqual(result["updated"], 1)
        self.assertEqual(result["skipped"], ["M2"])
        self.assertEqual(self.engine.store.get_assignment("M1", "2025-05").assignment_status, AssignmentStatus.APPROVED)
        self.assertEqual(self.engine.store.get_master("M1", "2025-05").assignment_status, AssignmentStatus.APPROVED)

    def test_qc_reject(self) -> None:
        self.engine.assign("M1", "2025-05", _split(agent=100))
        self.engine.master_data_qc("2025-05", "reject")
        self.assertEqual(self.engine.store.get_assignment("M1", "2025-05").assignment_status,
                         AssignmentStatus.NEEDS_REVISION)

    def test_qc_bad_action(self) -> None:
        with self.assertRaises(InvalidActionError):
            self.engine.master_data_qc("2025-05", "maybe")


class TrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.clearent = processor_id(self.engine, "clearent")

    def test_initialize_seeds_active_processors(self) -> None:
        progress = self.engine.initialize("2025-05")
        self.assertEqual(len(progress), len(self.engine.settings.processors))
        self.assertTrue(all(p["uploadStatus"] == "needs_upload" for p in progress))

    def test_initialize_backfills_existing_data(self) -> None:
        self.engine.store.seed_processors(self.engine.settings.processors)
        merchant, _, _ = self.engine.store.upsert_merchant("1001", {})
        self.engine.store.insert_monthly(MonthlyDataRecord(merchant.id, self.clearent, "2025-05", net=7.5))

        row = next(p for p in self.engine.initialize("2025-05") if p["processorId"] == self.clearent)

        self.assertEqual(row["uploadStatus"], "validated")
        self.assertEqual(row["compilationStatus"], "compiled")
        self.assertEqual(row["auditStatus"], "passed")
        self.assertEqual(row["recordCount"], 1)

    def test_progress_follows_live_counts(self) -> None:
        self.engine.ingest_processor_file("2025-05", self.clearent, clearent_csv([("1", 10), ("2", 5)]), "c.csv")
        row = next(p for p in self.engine.progress("2025-05") if p["processorId"] == self.clearent)
        self.assertEqual(row["uploadStatus"], "validated")
        self.assertEqual(row["recordCount"], 2)
        self.assertEqual(row["totalRevenue"], 15.0)

        self.engine.store.delete_monthly("2025-05", self.clearent)
        row = next(p for p in self.engine.progress("2025-05") if p["processorId"] == self.clearent)
        self.assertEqual(row["uploadStatus"], "needs_upload")
        self.assertEqual(row["recordCount"], 0)

    def test_stage_statuses(self) -> None:
        load_month(self.engine, "2025-05", {"M1": 1})
        progress = self.engine.progress("2025-05")
        self.assertTrue(all(p["compilationStatus"] == "compiled" for p in progress))

        self.engine.audit("2025-05")
        self.assertTrue(all(p["auditStatus"] == "failed" for p in self.engine.progress("2025-05")))
        self.engine.assign("M1", "2025-05", _split(agent=100))
        self.engine.audit("2025-05")
        progress = self.engine.progress("2025-05")
        self.assertTrue(all(p["auditStatus"] == "passed" for p in progress))
        self.assertTrue(all(p["assignmentStatus"] == "assigned" for p in progress))

    def test_delete_lead_sheet_marks_error(self) -> None:
        self.engine.ingest_lead_sheet("2025-05", lead_sheet_csv([{"Existing MID": "1"}]), "lead.csv")
        self.engine.delete_lead_sheet("2025-05")
        self.assertTrue(all(p["leadSheetStatus"] == "error" for p in self.engine.progress("2025-05")))


class ExportTests(unittest.TestCase):
    def test_workbook_sheets(self) -> None:
        engine = make_engine()
        load_month(engine, "2025-05", {"M1": 10})
        engine.assign("M1", "2025-05", _split(agent=100))
        engine.audit("2025-05")

        bio = io.BytesIO()
        engine.export_xlsx("2025-05", bio)
        wb = load_workbook(io.BytesIO(bio.getvalue()))

        self.assertEqual(wb.sheetnames, ["Summary", "Master Dataset", "Assignments", "Audit Issues"])
        self.assertEqual(wb["Master Dataset"]["A2"].value, "M1")
        self.assertEqual(wb["Assignments"]["B2"].value, "Agent Person")


if __name__ == "__main__":
    unittest.main()
