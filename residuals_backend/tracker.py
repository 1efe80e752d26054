"""Per-(processor, month) stage tracking."""
from __future__ import annotations

import logging
from typing import List, Optional

from .models import (
    AuditStatus,
    CompilationStatus,
    StageAssignmentStatus,
    UploadProgress,
    UploadStatus,
)
from .storage import ResidualsStore

log = logging.getLogger("residuals")


class UploadTracker:
    """
    Five independent status fields per (processor, month):
    upload and lead sheet (needs_upload -> uploaded -> validated | error),
    compilation (pending -> compiled | error), assignment (pending -> assigned | error)
    and audit (pending -> passed | failed).

    Reads are refreshed against live record counts so the reported status
    follows the data, not the event history.
    """

    def __init__(self, store: ResidualsStore):
        self.store = store

    def initialize(self, month: str) -> List[UploadProgress]:
        """Seed a row for every active processor not yet tracked this month."""
        has_lead_sheet = self.store.count_lead_sheet(month) > 0
        seeded = 0
        with self.store.transaction():
            for proc in self.store.list_processors(active_only=True):
                if self.store.get_progress(month, proc.id) is not None:
                    continue
                count, total = self.store.monthly_stats(month, proc.id)
                p = UploadProgress(month=month, processor_id=proc.id, record_count=count, total_revenue=total)
                if count:
                    # Data predates tracking; reflect it rather than asking for a re-upload
                    p.upload_status = UploadStatus.VALIDATED
                    p.compilation_status = CompilationStatus.COMPILED
                    p.audit_status = AuditStatus.PASSED
                if has_lead_sheet:
                    p.lead_sheet_status = UploadStatus.VALIDATED
                self.store.insert_progress(p)
                seeded += 1
        if seeded:
            log.info("[PROGRESS] Seeded %d processor rows for %s", seeded, month)
        return self.store.list_progress(month)

    def refresh(self, month: str) -> List[UploadProgress]:
        has_lead_sheet = self.store.count_lead_sheet(month) > 0
        with self.store.transaction():
            for p in self.store.list_progress(month):
                count, total = self.store.monthly_stats(month, p.processor_id)
                updates = {"record_count": count, "total_revenue": total}
                if count and p.upload_status == UploadStatus.NEEDS_UPLOAD:
                    updates["upload_status"] = UploadStatus.VALIDATED
                elif not count and p.upload_status in (UploadStatus.UPLOADED, UploadStatus.VALIDATED):
                    updates["upload_status"] = UploadStatus.NEEDS_UPLOAD
                if has_lead_sheet and p.lead_sheet_status == UploadStatus.NEEDS_UPLOAD:
                    updates["lead_sheet_status"] = UploadStatus.VALIDATED
                elif not has_lead_sheet and p.lead_sheet_status in (UploadStatus.UPLOADED, UploadStatus.VALIDATED):
                    updates["lead_sheet_status"] = UploadStatus.NEEDS_UPLOAD
                self.store.update_progress(month, p.processor_id, **updates)
        return self.store.list_progress(month)

    def progress(self, month: str) -> List[UploadProgress]:
        self.initialize(month)
        return self.refresh(month)

    def mark_upload(
        self,
        month: str,
        processor_id: int,
        status: UploadStatus,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> None:
        self.initialize(month)
        count, total = self.store.monthly_stats(month, processor_id)
        self.store.update_progress(
            month,
            processor_id,
            upload_status=status,
            record_count=count,
            total_revenue=total,
            file_name=file_name,
            file_size=file_size,
        )

    def set_lead_sheet(self, month: str, status: UploadStatus) -> None:
        self.initialize(month)
        self.store.update_progress(month, None, lead_sheet_status=status)

    def set_compilation(self, month: str, status: CompilationStatus) -> None:
        self.initialize(month)
        self.store.update_progress(month, None, compilation_status=status)

    def set_assignment(self, month: str, status: StageAssignmentStatus) -> None:
        self.initialize(month)
        self.store.update_progress(month, None, assignment_status=status)

    def set_audit(self, month: str, status: AuditStatus) -> None:
        self.initialize(month)
        self.store.update_progress(month, None, audit_status=status)
