"""
Split validation and audit generation.

Audit issues are derived facts: an `invalid_split` issue exists for a
(month, MID) exactly while that MID's assignment for the month does not
total 100%, and a `missing_assignment` issue exists exactly while a master
dataset MID has no assignment for the month. Every sweep recomputes both
from the current rows, so it is safe to run after every write.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from .models import (
    AssignmentStatus,
    AuditIssue,
    AuditStatus,
    IssueType,
    RoleAssignment,
    Severity,
)
from .settings import DEFAULT_SETTINGS, ResidualsSettings
from .storage import ResidualsStore
from .tracker import UploadTracker

log = logging.getLogger("residuals")


class SplitValidator:

    def __init__(self, store: ResidualsStore, settings: ResidualsSettings = DEFAULT_SETTINGS,
                 tracker: Optional[UploadTracker] = None):
        self.store = store
        self.settings = settings
        self.tracker = tracker or UploadTracker(store)

    def _invalid_split_issue(self, ra: RoleAssignment) -> AuditIssue:
        return AuditIssue(
            month=ra.month,
            entity_id=ra.mid,
            issue_type=IssueType.INVALID_SPLIT,
            severity=Severity.CRITICAL,
            description=f"Role percentages for MID {ra.mid} total {ra.total_percentage():g}% (expected 100%)",
        )

    def validate_splits(self, month: str) -> Dict[str, Any]:
        """Full sweep of the month's assignments."""
        tol = self.settings.split_tolerance
        summary = {"checked": 0, "valid": 0, "invalid": 0, "issuesCreated": 0, "issuesResolved": 0, "invalidMids": []}

        with self.store.transaction():
            by_mid: "OrderedDict[str, List[RoleAssignment]]" = OrderedDict()
            for ra in self.store.list_assignments(month):
                by_mid.setdefault(ra.mid, []).append(ra)
            open_issues = {i.entity_id for i in self.store.list_issues(month, IssueType.INVALID_SPLIT)}

            for mid, rows in by_mid.items():
                for ra in rows:
                    valid = ra.is_valid_split(tol)
                    if not valid and ra.assignment_status != AssignmentStatus.VALIDATION_FAILED:
                        ra.assignment_status = AssignmentStatus.VALIDATION_FAILED
                        self.store.set_assignment_status(ra.id, ra.assignment_status)
                    elif valid and ra.assignment_status == AssignmentStatus.VALIDATION_FAILED:
                        ra.assignment_status = AssignmentStatus.ASSIGNED
                        self.store.set_assignment_status(ra.id, ra.assignment_status)

                # newest row is the MID's assignment for the month
                current = rows[-1]
                summary["checked"] += 1
                self.store.set_master_status(mid, month, current.assignment_status)
                self.store.delete_issue(month, mid, IssueType.MISSING_ASSIGNMENT)
                if current.is_valid_split(tol):
                    summary["valid"] += 1
                    if mid in open_issues and self.store.delete_issue(month, mid, IssueType.INVALID_SPLIT):
                        summary["issuesResolved"] += 1
                else:
                    summary["invalid"] += 1
                    summary["invalidMids"].append(mid)
                    if self.store.insert_issue(self._invalid_split_issue(current)):
                        summary["issuesCreated"] += 1

            # assignment deleted since the issue was raised
            for mid in open_issues - set(by_mid):
                if self.store.delete_issue(month, mid, IssueType.INVALID_SPLIT):
                    summary["issuesResolved"] += 1

        log.info(
            "[VALIDATE] %s: %d checked, %d invalid, %d issues opened, %d resolved",
            month, summary["checked"], summary["invalid"], summary["issuesCreated"], summary["issuesResolved"],
        )
        return summary

    def run_audit(self, month: str) -> Dict[str, Any]:
        """Split sweep plus missing-assignment issues; sets the audit stage."""
        with self.store.transaction():
            validation = self.validate_splits(month)
            master_mids = [m.mid for m in self.store.list_master(month)]
            assigned = self.store.assigned_mids(month)
            open_missing = {i.entity_id for i in self.store.list_issues(month, IssueType.MISSING_ASSIGNMENT)}

            missing = []
            for mid in master_mids:
                if mid in assigned:
                    continue
                missing.append(mid)
                self.store.insert_issue(AuditIssue(
                    month=month,
                    entity_id=mid,
                    issue_type=IssueType.MISSING_ASSIGNMENT,
                    severity=Severity.HIGH,
                    description=f"MID {mid} has no role assignment for {month}",
                ))
            for mid in open_missing - set(missing):
                self.store.delete_issue(month, mid, IssueType.MISSING_ASSIGNMENT)

            status = AuditStatus.FAILED if (validation["invalid"] or missing) else AuditStatus.PASSED
            self.tracker.set_audit(month, status)

        log.info("[AUDIT] %s %s: %d invalid splits, %d missing assignments",
                 month, status.value, validation["invalid"], len(missing))
        return {
            "month": month,
            "status": status.value,
            "invalidSplits": validation["invalid"],
            "missingAssignments": len(missing),
            "validation": validation,
            "issues": [i.to_dict() for i in self.store.list_issues(month)],
        }
