"""
Residuals engine.

One ResidualsEngine per store. It owns the monthly cycle:

    upload -> field map & store -> cross-reference compile
           -> (carry-forward | free-text parse | manual assignment)
           -> split validation -> audit

Every stage is a single batch over one month and may be re-run.
"""
from __future__ import annotations

import io
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .adapters import FieldMapper, read_lead_sheet, read_table, split_user_names
from .duplicates import DuplicatePrevention
from .outputs import write_residuals_xlsx
from .models import (
    AssignmentConflictError,
    AssignmentStatus,
    CompilationStatus,
    InvalidActionError,
    InvalidRoleError,
    MasterDatasetRecord,
    MonthlyDataRecord,
    RoleAssignment,
    RoleSplit,
    SplitTotalError,
    StageAssignmentStatus,
    UnknownMerchantError,
    UnknownProcessorError,
    UploadStatus,
    parse_month,
    previous_month,
    shift_month,
)
from .role_parser import parse_column_i, parse_legacy
from .settings import DEFAULT_SETTINGS, ResidualsSettings
from .storage import ResidualsStore
from .tracker import UploadTracker
from .validation import SplitValidator

log = logging.getLogger("residuals")

FileData = Union[bytes, Path, str]

# Statuses that still need someone's attention on the unassigned list
_NEEDS_ATTENTION = (AssignmentStatus.PENDING, AssignmentStatus.VALIDATION_FAILED, AssignmentStatus.NEEDS_REVISION)


class ResidualsEngine:

    def __init__(self, store: ResidualsStore, settings: ResidualsSettings = DEFAULT_SETTINGS):
        self.store = store
        self.settings = settings
        self.mapper = FieldMapper(min_matches=settings.min_header_matches)
        self.tracker = UploadTracker(store)
        self.validator = SplitValidator(store, settings, self.tracker)
        self.duplicates = DuplicatePrevention(store)
        store.seed_processors(settings.processors)

    def apply_settings(self, settings: ResidualsSettings) -> None:
        self.settings = settings
        self.validator.settings = settings
        self.mapper.min_matches = settings.min_header_matches

    @classmethod
    def from_settings(cls, settings: ResidualsSettings = DEFAULT_SETTINGS) -> "ResidualsEngine":
        return cls(ResidualsStore(settings.db_path, batch_size=settings.batch_size), settings)

    def _processor(self, processor_id: int):
        proc = self.store.get_processor(processor_id)
        if proc is None:
            raise UnknownProcessorError(f"Unknown processor id: {processor_id}")
        return proc

    # =========================================================================
    # Tracking
    # =========================================================================

    def initialize(self, month: str) -> List[Dict[str, Any]]:
        month = parse_month(month)
        return [p.to_dict() for p in self.tracker.initialize(month)]

    def progress(self, month: str) -> List[Dict[str, Any]]:
        month = parse_month(month)
        return [p.to_dict() for p in self.tracker.progress(month)]

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest_processor_file(
        self,
        month: str,
        processor_id: int,
        data: FileData,
        filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Map one processor export and upsert it into monthly data."""
        month = parse_month(month)
        proc = self._processor(processor_id)
        if filename is None and isinstance(data, (str, Path)):
            filename = Path(data).name
        size = len(data) if isinstance(data, bytes) else Path(data).stat().st_size

        df = read_table(data, filename)
        result = self.mapper.map_frame(df, proc.mapping_key)

        inserted = updated = 0
        with self.store.transaction():
            for rec in result.records:
                merchant, _, _ = self.store.upsert_merchant(
                    rec.mid,
                    {
                        "legal_name": rec.merchant_name,
                        "dba": rec.merchant_dba,
                        "branch_id": rec.branch_id,
                        "current_processor": proc.name,
                        "status": rec.status,
                    },
                    fill_only=True,
                )
                row = MonthlyDataRecord(
                    merchant_id=merchant.id,
                    processor_id=proc.id,
                    month=month,
                    transactions=rec.transactions,
                    sales_amount=rec.volume,
                    income=rec.gross_revenue,
                    expenses=rec.total_expenses,
                    net=rec.net_revenue,
                    bps=rec.basis_points,
                    rep_net=rec.net_revenue,
                    group_code=rec.agent_id or None,
                )
                if self.store.upsert_monthly(row):
                    inserted += 1
                else:
                    updated += 1

            if not result.records:
                status = UploadStatus.ERROR
            elif result.errors:
                status = UploadStatus.UPLOADED
            else:
                status = UploadStatus.VALIDATED
            self.tracker.mark_upload(month, proc.id, status, file_name=filename, file_size=size)
            self.store.log_upload(month, "processor", filename, size, len(result.records),
                                  len(result.errors), status.value, processor_id=proc.id)

        log.info("[UPLOAD] %s %s: %d records (%d new, %d updated), %d errors, %d warnings",
                 month, proc.name, len(result.records), inserted, updated, len(result.errors), len(result.warnings))
        for err in result.errors:
            log.warning("[UPLOAD] %s row %s: %s", proc.name, err.get("row"), err.get("error"))

        return {
            "fileName": filename,
            "recordCount": len(result.records),
            "status": status.value,
            "processor": proc.name,
            "mappingUsed": result.processor_key,
            "matchedHeaders": result.matched_headers,
            "inserted": inserted,
            "updated": updated,
            "errors": result.errors,
            "warnings": result.warnings,
        }

    def ingest_lead_sheet(self, month: str, data: FileData, filename: Optional[str] = None) -> Dict[str, Any]:
        """Load the roster: enrich merchants and keep the month's entries."""
        month = parse_month(month)
        if filename is None and isinstance(data, (str, Path)):
            filename = Path(data).name
        size = len(data) if isinstance(data, bytes) else Path(data).stat().st_size

        rows, errors = read_lead_sheet(read_table(data, filename))
        new_merchants = updated_merchants = tagged = 0
        with self.store.transaction():
            for row in rows:
                if row.branch_id and not row.partner_type:
                    row.partner_type = self.settings.branch_partner_type
                    tagged += 1
                _, created, updated = self.store.upsert_merchant(
                    row.mid,
                    {
                        "legal_name": row.legal_name,
                        "dba": row.dba,
                        "branch_id": row.branch_id,
                        "partner_type": row.partner_type,
                        "partner_name": row.partner_name,
                        "current_processor": row.current_processor,
                        "status": row.status,
                    },
                )
                new_merchants += int(created)
                updated_merchants += int(updated)
                self.store.upsert_lead_sheet_entry(month, row)

            status = UploadStatus.VALIDATED if rows else UploadStatus.ERROR
            self.tracker.set_lead_sheet(month, status)
            self.store.log_upload(month, "lead_sheet", filename, size, len(rows), len(errors), status.value)

        users = split_user_names(*[t for r in rows for t in (r.sales_reps, r.assigned_users)])
        log.info("[LEAD SHEET] %s: %d rows, %d new merchants, %d updated, %d tagged %s",
                 month, len(rows), new_merchants, updated_merchants, tagged, self.settings.branch_partner_type)
        return {
            "fileName": filename,
            "recordCount": len(rows),
            "status": status.value,
            "newMerchants": new_merchants,
            "updatedMerchants": updated_merchants,
            "partnerTagged": tagged,
            "columnIUsers": users,
            "errors": errors,
        }

    def delete_processor_data(self, month: str, processor_id: int) -> Dict[str, Any]:
        month = parse_month(month)
        proc = self._processor(processor_id)
        with self.store.transaction():
            deleted = self.store.delete_monthly(month, proc.id)
            self.tracker.mark_upload(month, proc.id, UploadStatus.ERROR)
        log.info("[DELETE] %s %s: %d monthly rows", month, proc.name, deleted)
        return {"month": month, "processorId": proc.id, "deleted": deleted}

    def delete_lead_sheet(self, month: str) -> Dict[str, Any]:
        month = parse_month(month)
        with self.store.transaction():
            deleted = self.store.delete_lead_sheet(month)
            self.tracker.set_lead_sheet(month, UploadStatus.ERROR)
        log.info("[DELETE] %s lead sheet: %d rows", month, deleted)
        return {"month": month, "deleted": deleted}

    # =========================================================================
    # Cross-reference compile
    # =========================================================================

    def cross_reference(self, month: str) -> Dict[str, Any]:
        """
        Rebuild the month's master dataset from monthly data, the lead sheet
        and merchants. When several processors feed one MID the last row in
        (processor id, row id) order wins; nothing is summed across processors.
        """
        month = parse_month(month)
        lead = self.store.lead_sheet_entries(month)
        statuses = {ra.mid: ra.assignment_status for ra in self.store.list_assignments(month)}
        seen, matched, errors = set(), set(), []

        try:
            with self.store.transaction():
                self.store.delete_master_without_monthly(month)
            for batch in self.store.iter_monthly_joined(month):
                with self.store.transaction():
                    for row in batch:
                        mid = row["mid"]
                        try:
                            entry = lead.get(mid)
                            branch = row["branch_id"] or (entry.branch_id if entry else None) or row["group_code"] or None
                            rec = MasterDatasetRecord(
                                mid=mid,
                                month=month,
                                legal_name=row["legal_name"] or (entry.legal_name if entry else None),
                                dba=row["dba"] or (entry.dba if entry else None),
                                branch_id=branch,
                                partner_type=row["partner_type"] or (entry.partner_type if entry else None) or None,
                                processor=row["processor_name"],
                                transactions=row["transactions"],
                                sales_amount=row["sales_amount"],
                                income=row["income"],
                                expenses=row["expenses"],
                                net=row["net"],
                                bps=row["bps"],
                                rep_net=row["rep_net"],
                                column_i=(entry.column_i if entry else None) or None,
                                in_lead_sheet=entry is not None,
                                assignment_status=statuses.get(mid, AssignmentStatus.PENDING),
                            )
                            self.store.upsert_master(rec)
                            seen.add(mid)
                            if entry is not None or branch or row["group_code"]:
                                matched.add(mid)
                        except sqlite3.Error as e:
                            log.exception("[COMPILE] %s row %s", mid, row["id"])
                            errors.append({"mid": mid, "error": str(e)})

            backfilled = 0
            with self.store.transaction():
                for rec in self.store.list_master(month):
                    if rec.branch_id and self.store.backfill_branch_id(rec.mid, rec.branch_id):
                        backfilled += 1

            self.tracker.set_compilation(month, CompilationStatus.COMPILED)
        except sqlite3.Error:
            log.exception("[COMPILE] %s failed", month)
            self.tracker.set_compilation(month, CompilationStatus.ERROR)
            raise

        result = {
            "month": month,
            "matchedRecords": len(matched),
            "unmatchedRecords": len(seen - matched),
            "masterRecords": len(seen),
            "branchBackfills": backfilled,
            "errors": errors,
        }
        log.info("[COMPILE] %s: %d master rows, %d matched, %d unmatched, %d branch backfills",
                 month, len(seen), result["matchedRecords"], result["unmatchedRecords"], backfilled)
        return result

    # =========================================================================
    # Assignments
    # =========================================================================

    def _sync_assignment_stage(self, month: str) -> None:
        masters = {m.mid for m in self.store.list_master(month)}
        done = masters and masters <= self.store.assigned_mids(month)
        self.tracker.set_assignment(month, StageAssignmentStatus.ASSIGNED if done else StageAssignmentStatus.PENDING)

    def carry_forward(self, month: str) -> Dict[str, Any]:
        """Copy the most recent prior assignment to master MIDs that have none this month."""
        month = parse_month(month)
        lookback = max(1, self.settings.carry_forward_lookback_months)
        window_start = shift_month(month, -lookback)
        prior = self.store.latest_assignments_between(window_start, previous_month(month))

        populated, already, new_mids, sources = 0, 0, [], set()
        with self.store.transaction():
            assigned = self.store.assigned_mids(month)
            masters = self.store.list_master(month)
            for rec in masters:
                if rec.mid in assigned:
                    already += 1
                    continue
                source = prior.get(rec.mid)
                if source is None:
                    new_mids.append(rec.mid)
                    continue
                copy = source.carried_to(month)
                self.store.insert_assignment(copy)
                self.store.set_master_status(rec.mid, month, copy.assignment_status)
                populated += 1
                sources.add(source.month)
            self._sync_assignment_stage(month)

        log.info("[CARRY FORWARD] %s: %d populated, %d already assigned, %d new",
                 month, populated, already, len(new_mids))
        return {
            "month": month,
            "sourceMonth": window_start,
            "sourceMonths": sorted(sources),
            "autoPopulated": populated,
            "alreadyAssigned": already,
            "newMIDs": new_mids,
            "totalMIDs": len(masters),
            "errors": [],
        }

    def auto_populate(self, month: str) -> Dict[str, Any]:
        with self.store.transaction():
            result = self.carry_forward(month)
            result["validation"] = self.validator.validate_splits(result["month"])
        return result

    def validate_splits(self, month: str) -> Dict[str, Any]:
        return self.validator.validate_splits(parse_month(month))

    def audit(self, month: str) -> Dict[str, Any]:
        return self.validator.run_audit(parse_month(month))

    def assign(
        self,
        mid: str,
        month: str,
        splits: List[RoleSplit],
        original_column_i: Optional[str] = None,
    ) -> RoleAssignment:
        """
        Manual assignment. Rejects an existing (mid, month) row, a total off
        100% and a MID without monthly data, in that order. The insert and
        the validation sweep share one transaction.
        """
        month = parse_month(month)
        mid = str(mid).strip()
        with self.store.transaction():
            if self.store.get_assignment(mid, month) is not None:
                raise AssignmentConflictError(
                    f"MID {mid} already has an assignment for {month}; delete it before re-assigning"
                )
            total = sum(s.percentage for s in splits)
            if abs(total - 100.0) > self.settings.split_tolerance:
                raise SplitTotalError(total)
            if not self.store.mid_has_monthly(mid, month):
                raise UnknownMerchantError(f"MID {mid} has no monthly data for {month}")
            for s in splits:
                if not s.user_name.strip():
                    raise InvalidRoleError(f"Missing user name for role {s.role_type.value}")
                if s.percentage < 0:
                    raise InvalidRoleError(f"Negative percentage for {s.user_name}")

            earlier = self.store.get_current_assignment(mid, previous_month(month))
            ra = RoleAssignment.from_splits(
                mid,
                month,
                splits,
                AssignmentStatus.ASSIGNED,
                original_column_i=original_column_i,
                first_assigned_month=(earlier.first_assigned_month or earlier.month) if earlier else month,
            )
            self.store.insert_assignment(ra)
            self.store.set_master_status(mid, month, ra.assignment_status)
            self.validator.validate_splits(month)
            self._sync_assignment_stage(month)

        log.info("[ASSIGN] %s %s: %s", month, mid, ", ".join(f"{s.role_type.value}={s.percentage}" for s in splits))
        return self.store.get_assignment(mid, month)

    def delete_assignment(self, mid: str, month: str) -> Dict[str, Any]:
        month = parse_month(month)
        with self.store.transaction():
            deleted = self.store.delete_assignment(mid, month)
            if deleted:
                self.store.set_master_status(mid, month, AssignmentStatus.PENDING)
                self.validator.validate_splits(month)
                self._sync_assignment_stage(month)
        return {"mid": mid, "month": month, "deleted": deleted}

    def bulk_parse(self, month: str) -> Dict[str, Any]:
        """Assign unassigned master MIDs from their Column I text."""
        month = parse_month(month)
        parsed, unparseable, skipped = [], [], 0
        with self.store.transaction():
            assigned = self.store.assigned_mids(month)
            for rec in self.store.list_master(month):
                if rec.mid in assigned or not rec.column_i:
                    skipped += 1
                    continue
                splits = parse_legacy(rec.column_i)
                if not splits:
                    unparseable.append({"mid": rec.mid, "text": rec.column_i})
                    continue
                ra = RoleAssignment.from_splits(
                    rec.mid, month, _merge_roles(splits), AssignmentStatus.ASSIGNED, original_column_i=rec.column_i
                )
                self.store.insert_assignment(ra)
                parsed.append(rec.mid)
            validation = self.validator.validate_splits(month)
            self._sync_assignment_stage(month)

        log.info("[BULK PARSE] %s: %d parsed, %d unparseable, %d skipped", month, len(parsed), len(unparseable), skipped)
        return {
            "month": month,
            "parsed": len(parsed),
            "parsedMids": parsed,
            "unparseable": unparseable,
            "skipped": skipped,
            "validation": validation,
        }

    def parse_preview(self, text: str, mode: str = "keyword") -> Dict[str, Any]:
        if mode == "keyword":
            splits = parse_column_i(text)
        elif mode == "legacy":
            splits = parse_legacy(text)
        else:
            raise InvalidActionError(f"Unknown parse mode: {mode}")
        return {
            "assignments": [s.to_dict() for s in splits],
            "totalPercentage": round(sum(s.percentage for s in splits), 2),
        }

    def master_data_qc(self, month: str, action: str) -> Dict[str, Any]:
        """Approve every valid assignment of the month, or send them all back."""
        month = parse_month(month)
        if action not in ("approve", "reject"):
            raise InvalidActionError(f"Invalid action: {action!r} (expected approve or reject)")

        updated, skipped = 0, []
        with self.store.transaction():
            for ra in self.store.list_assignments(month):
                if action == "approve":
                    if not ra.is_valid_split(self.settings.split_tolerance):
                        skipped.append(ra.mid)
                        continue
                    status = AssignmentStatus.APPROVED
                else:
                    status = AssignmentStatus.NEEDS_REVISION
                self.store.set_assignment_status(ra.id, status)
                self.store.set_master_status(ra.mid, month, status)
                updated += 1

        log.info("[QC] %s %s: %d updated, %d skipped", month, action, updated, len(skipped))
        return {
            "month": month,
            "action": action,
            "status": AssignmentStatus.APPROVED.value if action == "approve" else AssignmentStatus.NEEDS_REVISION.value,
            "updated": updated,
            "skipped": skipped,
        }

    # =========================================================================
    # Queries
    # =========================================================================

    def unassigned(self, month: str) -> Dict[str, Any]:
        month = parse_month(month)
        masters = self.store.list_master(month)
        if not masters:
            return {"status": "no_data_uploaded", "month": month, "newUnassigned": [], "previouslyAssigned": [],
                    "summary": {"total": 0, "new": 0, "previouslyAssigned": 0}}

        prev = previous_month(month)
        new, previously = [], []
        for rec in masters:
            this_month = self.store.get_assignment(rec.mid, month)
            if this_month is not None and this_month.assignment_status not in _NEEDS_ATTENTION:
                continue
            current = self.store.get_current_assignment(rec.mid, month)
            item = rec.to_dict()
            item["currentAssignment"] = current.to_dict() if current else None
            if self.store.get_current_assignment(rec.mid, prev) is not None:
                previously.append(item)
            else:
                new.append(item)
        return {
            "status": "ok",
            "month": month,
            "newUnassigned": new,
            "previouslyAssigned": previously,
            "summary": {"total": len(new) + len(previously), "new": len(new), "previouslyAssigned": len(previously)},
        }

    def completed(self, month: str) -> List[Dict[str, Any]]:
        month = parse_month(month)
        out = []
        masters = {m.mid: m for m in self.store.list_master(month)}
        # newest row per MID, as the validator reads it
        latest: Dict[str, RoleAssignment] = {}
        for ra in self.store.list_assignments(month):
            latest[ra.mid] = ra
        for ra in latest.values():
            if not ra.is_valid_split(self.settings.split_tolerance):
                continue
            rec = masters.get(ra.mid)
            out.append({
                "mid": ra.mid,
                "legalName": rec.legal_name if rec else None,
                "dba": rec.dba if rec else None,
                "net": rec.net if rec else None,
                "assignment": ra.to_dict(),
            })
        return out

    def previous_assignment(self, mid: str, month: str) -> Optional[RoleAssignment]:
        return self.store.get_current_assignment(mid, previous_month(parse_month(month)))

    def existing_assignment(self, mid: str) -> Optional[RoleAssignment]:
        return self.store.get_current_assignment(mid)

    def master_dataset(self, month: str) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.store.list_master(parse_month(month))]

    def audit_issues(self, month: str) -> List[Dict[str, Any]]:
        return [i.to_dict() for i in self.store.list_issues(parse_month(month))]

    # =========================================================================
    # Duplicates
    # =========================================================================

    def cleanup_duplicates(self, month: str) -> Dict[str, Any]:
        month = parse_month(month)
        result = self.duplicates.cleanup(month)
        result["validation"] = self.validator.validate_splits(month)
        return result

    def duplicate_report(self, month: str) -> List[Dict[str, Any]]:
        return self.duplicates.report(parse_month(month))

    # =========================================================================
    # Export
    # =========================================================================

    def export_xlsx(self, month: str, output: Union[io.BytesIO, Path]) -> None:
        month = parse_month(month)
        write_residuals_xlsx(
            output,
            month,
            self.tracker.progress(month),
            self.store.list_master(month),
            self.store.list_assignments(month),
            self.store.list_issues(month),
        )

    # =========================================================================
    # Full cycle
    # =========================================================================

    def run_cycle(self, month: str) -> Dict[str, Any]:
        """Compile, carry forward, validate and audit one month."""
        month = parse_month(month)
        return {
            "crossReference": self.cross_reference(month),
            "autoPopulate": self.auto_populate(month),
            "audit": self.audit(month),
        }


def _merge_roles(splits: List[RoleSplit]) -> List[RoleSplit]:
    """Fold repeated roles into one slot; names are joined, shares summed."""
    merged: Dict[Any, RoleSplit] = {}
    for s in splits:
        if s.role_type in merged:
            m = merged[s.role_type]
            m.user_name = f"{m.user_name}, {s.user_name}"
            m.percentage = round(m.percentage + s.percentage, 2)
        else:
            merged[s.role_type] = RoleSplit(s.role_type, s.user_name, s.percentage)
    return list(merged.values())


def output_filename(month: str) -> str:
    return f"residuals_{month}.xlsx"
