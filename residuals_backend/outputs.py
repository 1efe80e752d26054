"""
Workbook export for one residuals month.

Sheets:
- Summary: stage progress per processor and assignment counts
- Master Dataset: the compiled per-MID snapshot
- Assignments: role splits with their totals
- Audit Issues: open validation issues
"""
from __future__ import annotations

import io
from collections import Counter
from pathlib import Path
from typing import Dict, List, Union

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Border, Side
from openpyxl.utils import get_column_letter

from .models import (
    AssignmentStatus,
    AuditIssue,
    MasterDatasetRecord,
    ROLE_SLOTS,
    RoleAssignment,
    Severity,
    UploadProgress,
)


# =============================================================================
# Style Constants
# =============================================================================

HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF")

GREEN_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
YELLOW_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
RED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")

THIN_BORDER = Border(
    left=Side(style='thin'),
    right=Side(style='thin'),
    top=Side(style='thin'),
    bottom=Side(style='thin')
)

CURRENCY_FORMAT = '_("$"* #,##0.00_);_("$"* (#,##0.00);_("$"* "-"??_);_(@_)'
PCT_NUMBER_FORMAT = '0.00"%"'


def get_status_fill(status: AssignmentStatus) -> PatternFill:
    if status in (AssignmentStatus.ASSIGNED, AssignmentStatus.APPROVED):
        return GREEN_FILL
    if status in (AssignmentStatus.AUTO_POPULATED, AssignmentStatus.PENDING):
        return YELLOW_FILL
    return RED_FILL


# =============================================================================
# Main Output Function
# =============================================================================

def write_residuals_xlsx(
    output: Union[io.BytesIO, Path],
    month: str,
    progress: List[UploadProgress],
    master: List[MasterDatasetRecord],
    assignments: List[RoleAssignment],
    issues: List[AuditIssue],
) -> None:
    wb = Workbook()
    wb.remove(wb.active)

    _create_summary_sheet(wb, month, progress, master, issues)
    _create_master_sheet(wb, master)
    _create_assignments_sheet(wb, assignments)
    _create_issues_sheet(wb, issues)

    if isinstance(output, Path):
        output.parent.mkdir(parents=True, exist_ok=True)
    wb.save(output)


def _write_header(ws, row: int, headers: List[str]) -> None:
    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=row, column=col, value=header)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER


def _border_row(ws, row: int, width: int) -> None:
    for col in range(1, width + 1):
        ws.cell(row=row, column=col).border = THIN_BORDER


# =============================================================================
# Summary Sheet
# =============================================================================

def _create_summary_sheet(
    wb: Workbook,
    month: str,
    progress: List[UploadProgress],
    master: List[MasterDatasetRecord],
    issues: List[AuditIssue],
):
    ws = wb.create_sheet("Summary")

    ws["A1"] = "Residuals Summary"
    ws["A1"].font = Font(bold=True, size=14)
    ws["A2"] = f"Month: {month}"

    counts = Counter(m.assignment_status for m in master)
    ws["A4"] = "Assignment Overview"
    ws["A4"].font = Font(bold=True)

    row = 5
    ws[f"A{row}"] = "Master MIDs:"
    ws[f"B{row}"] = len(master)
    row += 1
    ws[f"A{row}"] = "Total Net:"
    ws[f"B{row}"] = round(sum(m.net for m in master), 2)
    ws[f"B{row}"].number_format = CURRENCY_FORMAT
    for status in AssignmentStatus:
        row += 1
        ws[f"A{row}"] = f"{status.value.replace('_', ' ').title()}:"
        ws[f"B{row}"] = counts.get(status, 0)
        if counts.get(status):
            ws[f"B{row}"].fill = get_status_fill(status)
    row += 1
    ws[f"A{row}"] = "Open Audit Issues:"
    ws[f"B{row}"] = len(issues)
    ws[f"B{row}"].fill = RED_FILL if issues else GREEN_FILL

    row += 2
    ws[f"A{row}"] = "Processor Progress"
    ws[f"A{row}"].font = Font(bold=True)
    row += 1
    headers = ["Processor", "Upload", "Lead Sheet", "Compilation", "Assignment", "Audit", "Records", "Net Revenue", "File"]
    _write_header(ws, row, headers)

    row += 1
    for p in progress:
        ws.cell(row=row, column=1, value=p.processor_name)
        ws.cell(row=row, column=2, value=p.upload_status.value)
        ws.cell(row=row, column=3, value=p.lead_sheet_status.value)
        ws.cell(row=row, column=4, value=p.compilation_status.value)
        ws.cell(row=row, column=5, value=p.assignment_status.value)
        audit = ws.cell(row=row, column=6, value=p.audit_status.value)
        if p.audit_status.value == "passed":
            audit.fill = GREEN_FILL
        elif p.audit_status.value == "failed":
            audit.fill = RED_FILL
        ws.cell(row=row, column=7, value=p.record_count)
        ws.cell(row=row, column=8, value=p.total_revenue).number_format = CURRENCY_FORMAT
        ws.cell(row=row, column=9, value=p.file_name or "")
        _border_row(ws, row, len(headers))
        row += 1

    _auto_width(ws)


# =============================================================================
# Master Dataset Sheet
# =============================================================================

def _create_master_sheet(wb: Workbook, master: List[MasterDatasetRecord]):
    ws = wb.create_sheet("Master Dataset")
    headers = ["MID", "Legal Name", "DBA", "Branch", "Partner Type", "Processor", "Transactions",
               "Volume", "Income", "Expenses", "Net", "BPS", "Column I", "Status"]
    _write_header(ws, 1, headers)

    for row, m in enumerate(master, start=2):
        ws.cell(row=row, column=1, value=m.mid)
        ws.cell(row=row, column=2, value=m.legal_name)
        ws.cell(row=row, column=3, value=m.dba)
        ws.cell(row=row, column=4, value=m.branch_id)
        ws.cell(row=row, column=5, value=m.partner_type)
        ws.cell(row=row, column=6, value=m.processor)
        ws.cell(row=row, column=7, value=m.transactions)
        for col, value in ((8, m.sales_amount), (9, m.income), (10, m.expenses), (11, m.net)):
            ws.cell(row=row, column=col, value=value).number_format = CURRENCY_FORMAT
        ws.cell(row=row, column=12, value=m.bps)
        ws.cell(row=row, column=13, value=m.column_i)
        status = ws.cell(row=row, column=14, value=m.assignment_status.value)
        status.fill = get_status_fill(m.assignment_status)
        _border_row(ws, row, len(headers))

    ws.freeze_panes = "A2"
    _auto_width(ws)


# =============================================================================
# Assignments Sheet
# =============================================================================

def _create_assignments_sheet(wb: Workbook, assignments: List[RoleAssignment]):
    ws = wb.create_sheet("Assignments")
    headers = ["MID"]
    for slot in ROLE_SLOTS.values():
        title = slot.replace("_", " ").title()
        headers += [title, f"{title} %"]
    headers += ["Total %", "Status", "First Assigned", "Column I"]
    _write_header(ws, 1, headers)

    for row, ra in enumerate(assignments, start=2):
        ws.cell(row=row, column=1, value=ra.mid)
        col = 2
        for slot in ROLE_SLOTS.values():
            ws.cell(row=row, column=col, value=getattr(ra, slot))
            pct = getattr(ra, f"{slot}_percentage")
            if pct is not None:
                ws.cell(row=row, column=col + 1, value=pct).number_format = PCT_NUMBER_FORMAT
            col += 2
        total = ws.cell(row=row, column=col, value=ra.total_percentage())
        total.number_format = PCT_NUMBER_FORMAT
        total.fill = GREEN_FILL if abs(ra.total_percentage() - 100.0) <= 0.01 else RED_FILL
        ws.cell(row=row, column=col + 1, value=ra.assignment_status.value).fill = get_status_fill(ra.assignment_status)
        ws.cell(row=row, column=col + 2, value=ra.first_assigned_month)
        ws.cell(row=row, column=col + 3, value=ra.original_column_i)
        _border_row(ws, row, len(headers))

    ws.freeze_panes = "A2"
    _auto_width(ws)


# =============================================================================
# Audit Issues Sheet
# =============================================================================

def _create_issues_sheet(wb: Workbook, issues: List[AuditIssue]):
    ws = wb.create_sheet("Audit Issues")
    headers = ["MID", "Issue", "Severity", "Description", "Status", "Created"]
    _write_header(ws, 1, headers)

    if not issues:
        ws["A2"] = "No open audit issues"
        ws["A2"].fill = GREEN_FILL
        _auto_width(ws)
        return

    for row, issue in enumerate(issues, start=2):
        ws.cell(row=row, column=1, value=issue.entity_id)
        ws.cell(row=row, column=2, value=issue.issue_type.value)
        sev = ws.cell(row=row, column=3, value=issue.severity.value)
        sev.fill = RED_FILL if issue.severity in (Severity.CRITICAL, Severity.HIGH) else YELLOW_FILL
        ws.cell(row=row, column=4, value=issue.description)
        ws.cell(row=row, column=5, value=issue.status)
        ws.cell(row=row, column=6, value=issue.created_at)
        _border_row(ws, row, len(headers))

    _auto_width(ws)


# =============================================================================
# Helpers
# =============================================================================

def _auto_width(ws):
    """Auto-adjust column widths"""
    widths: Dict[str, int] = {}
    for column in ws.columns:
        column_letter = get_column_letter(column[0].column)
        widths[column_letter] = max((len(str(c.value)) for c in column if c.value is not None), default=0)
    for letter, width in widths.items():
        ws.column_dimensions[letter].width = min(width + 2, 50)
