"""
Residuals Data Models

This module defines the records that flow through one monthly residuals cycle:
- Processor files are mapped into StandardRecord rows, stored as MonthlyDataRecord
- The lead sheet enriches Merchant rows
- Cross-referencing produces one MasterDatasetRecord per MID per month
- RoleAssignment rows split each MID's net revenue across commercial roles
- UploadProgress tracks how far each (processor, month) has progressed
- AuditIssue rows are derived facts raised and cleared by validation

Months are always "YYYY-MM" strings. RoleAssignment rows are keyed by
(mid, month); the current assignment of a MID is its latest month.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# Enums
# =============================================================================

class RoleType(str, Enum):
    """Commercial roles that can receive a share of a MID's residual"""
    AGENT = "agent"
    PARTNER = "partner"
    SALES_MANAGER = "sales_manager"
    COMPANY = "company"
    ASSOCIATION = "association"


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    AUTO_POPULATED = "auto_populated"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    VALIDATION_FAILED = "validation_failed"


class UploadStatus(str, Enum):
    """Upload and lead-sheet stages"""
    NEEDS_UPLOAD = "needs_upload"
    UPLOADED = "uploaded"
    VALIDATED = "validated"
    ERROR = "error"


class CompilationStatus(str, Enum):
    PENDING = "pending"
    COMPILED = "compiled"
    ERROR = "error"


class StageAssignmentStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    ERROR = "error"


class AuditStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class IssueType(str, Enum):
    INVALID_SPLIT = "invalid_split"
    MISSING_ASSIGNMENT = "missing_assignment"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# RoleAssignment column prefix for each role; agents are stored as "rep"
ROLE_SLOTS: Dict[RoleType, str] = {
    RoleType.AGENT: "rep",
    RoleType.PARTNER: "partner",
    RoleType.SALES_MANAGER: "sales_manager",
    RoleType.COMPANY: "company",
    RoleType.ASSOCIATION: "association",
}

# Statuses whose splits must total 100
FINAL_STATUSES = (AssignmentStatus.ASSIGNED, AssignmentStatus.APPROVED)


# =============================================================================
# Errors
# =============================================================================

class InvalidMonthError(ValueError):
    pass


class UnsupportedFileError(ValueError):
    pass


class UnknownProcessorError(ValueError):
    pass


class UnknownMerchantError(ValueError):
    pass


class InvalidRoleError(ValueError):
    pass


class AssignmentConflictError(ValueError):
    pass


class InvalidActionError(ValueError):
    pass


class SplitTotalError(ValueError):
    """Raised when a manual assignment does not total 100%."""

    def __init__(self, total: float):
        self.total = round(total, 2)
        super().__init__(f"Percentages must total 100% (got {self.total}%)")


# =============================================================================
# Month helpers
# =============================================================================

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


def parse_month(month: str) -> str:
    """Validate a "YYYY-MM" month and return it unchanged."""
    m = _MONTH_RE.match(str(month or "").strip())
    if not m or not 1 <= int(m.group(2)) <= 12:
        raise InvalidMonthError(f"Invalid month: {month!r} (expected YYYY-MM)")
    return m.group(0)


def shift_month(month: str, delta: int) -> str:
    """Move a "YYYY-MM" month by delta months (negative goes back)."""
    parse_month(month)
    year, mon = int(month[:4]), int(month[5:7])
    index = year * 12 + (mon - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def previous_month(month: str) -> str:
    return shift_month(month, -1)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Reference data
# =============================================================================

@dataclass
class Processor:
    id: int
    name: str
    mapping_key: str
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "mappingKey": self.mapping_key, "isActive": self.is_active}


@dataclass
class Merchant:
    """A merchant account; mid is the business key"""
    mid: str
    id: Optional[int] = None
    legal_name: Optional[str] = None
    dba: Optional[str] = None
    branch_id: Optional[str] = None
    partner_type: Optional[str] = None
    partner_name: Optional[str] = None
    current_processor: Optional[str] = None
    status: Optional[str] = None


# =============================================================================
# Ingested data
# =============================================================================

@dataclass
class StandardRecord:
    """One processor row after header mapping"""
    mid: str
    merchant_name: str = ""
    merchant_dba: str = ""
    volume: float = 0.0
    transactions: float = 0.0
    gross_revenue: float = 0.0
    net_revenue: float = 0.0
    interchange: float = 0.0
    processing_fees: float = 0.0
    other_fees: float = 0.0
    expenses: Optional[float] = None
    bps: Optional[float] = None
    branch_id: str = ""
    agent_id: str = ""
    partner_id: str = ""
    status: str = ""

    @property
    def total_expenses(self) -> float:
        if self.expenses is not None:
            return self.expenses
        return self.interchange + self.processing_fees + self.other_fees

    @property
    def basis_points(self) -> float:
        if self.bps is not None:
            return self.bps
        if self.volume > 0:
            return round(self.gross_revenue / self.volume * 10000, 4)
        return 0.0


@dataclass
class MappingResult:
    """Output of the field mapper; diagnostics never abort the batch"""
    processor_key: str
    records: List[StandardRecord] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    matched_headers: int = 0


@dataclass
class LeadSheetRow:
    """One roster row after header mapping"""
    mid: str
    legal_name: str = ""
    dba: str = ""
    branch_id: str = ""
    status: str = ""
    current_processor: str = ""
    partner_name: str = ""
    partner_type: str = ""
    sales_reps: str = ""
    assigned_users: str = ""
    column_i: str = ""


@dataclass
class MonthlyDataRecord:
    """Revenue for one merchant from one processor in one month"""
    merchant_id: int
    processor_id: int
    month: str
    id: Optional[int] = None
    transactions: float = 0.0
    sales_amount: float = 0.0
    income: float = 0.0
    expenses: float = 0.0
    net: float = 0.0
    bps: float = 0.0
    rep_net: float = 0.0
    group_code: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class MasterDatasetRecord:
    """
    Canonical per-(mid, month) snapshot.
    Derived by the cross-reference compiler; never hand-edited.
    """
    mid: str
    month: str
    legal_name: Optional[str] = None
    dba: Optional[str] = None
    branch_id: Optional[str] = None
    partner_type: Optional[str] = None
    processor: Optional[str] = None
    transactions: float = 0.0
    sales_amount: float = 0.0
    income: float = 0.0
    expenses: float = 0.0
    net: float = 0.0
    bps: float = 0.0
    rep_net: float = 0.0
    column_i: Optional[str] = None
    in_lead_sheet: bool = False
    assignment_status: AssignmentStatus = AssignmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mid": self.mid,
            "month": self.month,
            "legalName": self.legal_name,
            "dba": self.dba,
            "branchId": self.branch_id,
            "partnerType": self.partner_type,
            "processor": self.processor,
            "transactions": self.transactions,
            "salesAmount": self.sales_amount,
            "income": self.income,
            "expenses": self.expenses,
            "net": self.net,
            "bps": self.bps,
            "repNet": self.rep_net,
            "columnI": self.column_i,
            "inLeadSheet": self.in_lead_sheet,
            "assignmentStatus": self.assignment_status.value,
        }


# =============================================================================
# Assignments
# =============================================================================

@dataclass
class RoleSplit:
    """A single (role, name, percentage) share"""
    role_type: RoleType
    user_name: str
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {"roleType": self.role_type.value, "userName": self.user_name, "percentage": self.percentage}


@dataclass
class RoleAssignment:
    mid: str
    month: str
    id: Optional[int] = None
    rep: Optional[str] = None
    rep_percentage: Optional[float] = None
    partner: Optional[str] = None
    partner_percentage: Optional[float] = None
    sales_manager: Optional[str] = None
    sales_manager_percentage: Optional[float] = None
    company: Optional[str] = None
    company_percentage: Optional[float] = None
    association: Optional[str] = None
    association_percentage: Optional[float] = None
    original_column_i: Optional[str] = None
    first_assigned_month: Optional[str] = None
    assignment_status: AssignmentStatus = AssignmentStatus.PENDING
    last_updated: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_splits(
        cls,
        mid: str,
        month: str,
        splits: List[RoleSplit],
        status: AssignmentStatus,
        original_column_i: Optional[str] = None,
        first_assigned_month: Optional[str] = None,
    ) -> "RoleAssignment":
        ra = cls(
            mid=mid,
            month=month,
            assignment_status=status,
            original_column_i=original_column_i,
            first_assigned_month=first_assigned_month or month,
        )
        for split in splits:
            slot = ROLE_SLOTS[split.role_type]
            if getattr(ra, slot) is not None:
                raise InvalidRoleError(f"Role {split.role_type.value} assigned more than once")
            setattr(ra, slot, split.user_name)
            setattr(ra, f"{slot}_percentage", float(split.percentage))
        return ra

    def splits(self) -> List[RoleSplit]:
        out = []
        for role, slot in ROLE_SLOTS.items():
            pct = getattr(self, f"{slot}_percentage")
            name = getattr(self, slot)
            if name is not None or pct is not None:
                out.append(RoleSplit(role, name or "", pct or 0.0))
        return out

    def total_percentage(self) -> float:
        return round(sum(s.percentage for s in self.splits()), 4)

    def is_valid_split(self, tolerance: float) -> bool:
        return abs(self.total_percentage() - 100.0) <= tolerance

    def carried_to(self, month: str) -> "RoleAssignment":
        """Copy of this assignment stamped for a later month."""
        copy = RoleAssignment(mid=self.mid, month=month)
        for slot in ROLE_SLOTS.values():
            setattr(copy, slot, getattr(self, slot))
            setattr(copy, f"{slot}_percentage", getattr(self, f"{slot}_percentage"))
        copy.original_column_i = self.original_column_i
        copy.first_assigned_month = self.first_assigned_month or self.month
        copy.assignment_status = AssignmentStatus.AUTO_POPULATED
        return copy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mid": self.mid,
            "month": self.month,
            "assignments": [s.to_dict() for s in self.splits()],
            "totalPercentage": self.total_percentage(),
            "originalColumnI": self.original_column_i,
            "firstAssignedMonth": self.first_assigned_month,
            "assignmentStatus": self.assignment_status.value,
            "lastUpdated": self.last_updated,
            "createdAt": self.created_at,
        }


# =============================================================================
# Tracking and audit
# =============================================================================

@dataclass
class UploadProgress:
    """Per-(processor, month) stage state machine"""
    month: str
    processor_id: int
    processor_name: str = ""
    upload_status: UploadStatus = UploadStatus.NEEDS_UPLOAD
    lead_sheet_status: UploadStatus = UploadStatus.NEEDS_UPLOAD
    compilation_status: CompilationStatus = CompilationStatus.PENDING
    assignment_status: StageAssignmentStatus = StageAssignmentStatus.PENDING
    audit_status: AuditStatus = AuditStatus.PENDING
    record_count: int = 0
    total_revenue: float = 0.0
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    last_updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "month": self.month,
            "processorId": self.processor_id,
            "processorName": self.processor_name,
            "uploadStatus": self.upload_status.value,
            "leadSheetStatus": self.lead_sheet_status.value,
            "compilationStatus": self.compilation_status.value,
            "assignmentStatus": self.assignment_status.value,
            "auditStatus": self.audit_status.value,
            "recordCount": self.record_count,
            "totalRevenue": round(self.total_revenue, 2),
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "lastUpdated": self.last_updated,
        }


@dataclass
class AuditIssue:
    month: str
    entity_id: str
    issue_type: IssueType
    severity: Severity
    description: str
    id: Optional[int] = None
    entity_type: str = "mid_assignment"
    status: str = "pending"
    created_by: str = "system_validation"
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "month": self.month,
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "issueType": self.issue_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "status": self.status,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
        }
