"""
Processor Field Mapping

Each upstream processor exports residuals with its own column headers. The
mapper translates those headers into StandardRecord rows so the rest of the
pipeline is processor-agnostic. The lead-sheet reader does the same for the
internal merchant roster.

Header matching is case-sensitive after trimming whitespace. A file whose
headers look like another processor's is re-mapped with the best-scoring
table and flagged with a warning.
"""
from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from .models import LeadSheetRow, MappingResult, StandardRecord, UnknownProcessorError, UnsupportedFileError

log = logging.getLogger("residuals")

FileSource = Union[bytes, Path, str]


# =============================================================================
# Mapping tables
# =============================================================================

PROCESSOR_MAPPINGS: Dict[str, Dict[str, str]] = {
    "clearent": {
        "Merchant ID": "mid", "MID": "mid", "Merchant Number": "mid",
        "Merchant": "merchantName", "Merchant Name": "merchantName", "Business Name": "merchantName",
        "DBA": "merchantDba", "DBA Name": "merchantDba",
        "Sales Amount": "volume", "Volume": "volume", "Sales Volume": "volume",
        "Transactions": "transactions", "Transaction Count": "transactions",
        "Income": "grossRevenue", "Gross Revenue": "grossRevenue", "Total Revenue": "grossRevenue",
        "Net": "netRevenue", "Net Revenue": "netRevenue", "Net Income": "netRevenue",
        "Agent Net": "netRevenue", "Residual Amount": "netRevenue",
        "Expenses": "expenses",
        "Interchange": "interchange",
        "Processing Fees": "processingFees", "Fees": "processingFees",
        "Branch": "branchId", "Branch ID": "branchId",
        "Group": "agentId", "Agent": "agentId",
        "Partner": "partnerId",
        "Status": "status",
        "BPS": "bps",
    },
    "first-data": {
        "MID Number": "mid", "Merchant ID": "mid",
        "Merchant": "merchantName", "Legal Name": "merchantName",
        "DBA": "merchantDba",
        "Monthly Volume": "volume",
        "Trans Count": "transactions",
        "Revenue": "grossRevenue",
        "Net Amount": "netRevenue", "Commission": "netRevenue",
        "Branch Code": "branchId",
        "Agent ID": "agentId",
        "Partner ID": "partnerId",
        "Active": "status",
    },
    "global-payments-tsys": {
        "Merchant Number": "mid", "MID": "mid",
        "Name": "merchantName",
        "DBA Name": "merchantDba",
        "Volume Amount": "volume", "Transaction Volume": "volume",
        "Number of Transactions": "transactions",
        "Gross Income": "grossRevenue",
        "Net Income": "netRevenue", "Residual": "netRevenue",
        "Branch Number": "branchId",
        "Agent Number": "agentId",
        "Status Code": "status",
    },
    "merchant-lynx": {
        "MID": "mid", "Merchant ID": "mid",
        "Business Name": "merchantName",
        "DBA": "merchantDba",
        "Processing Volume": "volume",
        "Transaction Count": "transactions",
        "Total Revenue": "grossRevenue",
        "Net Revenue": "netRevenue",
        "Branch": "branchId",
        "Agent": "agentId",
        "Partner": "partnerId",
    },
    "micamp-solutions": {
        "Merchant ID": "mid",
        "Merchant": "merchantName", "Merchant Name": "merchantName",
        "DBA Name": "merchantDba",
        "Sales Amount": "volume", "Monthly Volume": "volume",
        "Transactions": "transactions",
        "Income": "grossRevenue", "Gross Revenue": "grossRevenue",
        "Expenses": "expenses",
        "Net": "netRevenue", "Net Revenue": "netRevenue", "Agent Net": "netRevenue",
        "BPS": "bps",
        "Group": "agentId",
        "Branch ID": "branchId",
        "Agent ID": "agentId",
    },
    "payment-advisors": {
        "MID": "mid",
        "Merchant": "merchantName",
        "DBA": "merchantDba",
        "Volume": "volume",
        "Trans": "transactions",
        "Revenue": "grossRevenue",
        "Net": "netRevenue",
        "Branch": "branchId",
        "Agent": "agentId",
    },
    "shift4": {
        "Merchant ID": "mid",
        "Business Name": "merchantName",
        "DBA Name": "merchantDba",
        "Total Volume": "volume",
        "Total Transactions": "transactions",
        "Gross Amount": "grossRevenue",
        "Net Amount": "netRevenue",
        "Branch Code": "branchId",
        "Agent Code": "agentId",
        "Partner Code": "partnerId",
    },
}

NUMERIC_FIELDS = {
    "volume", "transactions", "grossRevenue", "netRevenue",
    "interchange", "processingFees", "otherFees", "expenses", "bps",
}

REQUIRED_FIELDS = ("mid", "merchantName", "netRevenue")

# standard field -> StandardRecord attribute
_RECORD_ATTRS = {
    "mid": "mid",
    "merchantName": "merchant_name",
    "merchantDba": "merchant_dba",
    "volume": "volume",
    "transactions": "transactions",
    "grossRevenue": "gross_revenue",
    "netRevenue": "net_revenue",
    "interchange": "interchange",
    "processingFees": "processing_fees",
    "otherFees": "other_fees",
    "expenses": "expenses",
    "bps": "bps",
    "branchId": "branch_id",
    "agentId": "agent_id",
    "partnerId": "partner_id",
    "status": "status",
}

CLEARENT_TITLE = "Residuals - Clearent"


# =============================================================================
# File reading
# =============================================================================

def _decode(data: bytes) -> str:
    for encoding in ["utf-8-sig", "latin-1", "cp1252"]:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="ignore")


def read_table(source: FileSource, filename: Optional[str] = None) -> pd.DataFrame:
    """
    Read a CSV/XLSX/XLS file into an all-string DataFrame.

    `source` may be raw upload bytes (then `filename` decides the format) or a
    path on disk. A leading "Residuals - Clearent" title line is skipped.
    """
    if isinstance(source, (str, Path)):
        path = Path(source)
        filename = filename or path.name
        data = path.read_bytes()
    else:
        data = source
    ext = Path(filename or "").suffix.lower()

    if not data:
        return pd.DataFrame()

    try:
        if ext == ".csv":
            text = _decode(data)
            lines = text.splitlines()
            skip = 1 if lines and CLEARENT_TITLE in lines[0] else 0
            return pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False, skiprows=skip)
        elif ext in [".xlsx", ".xls"]:
            df = pd.read_excel(io.BytesIO(data), dtype=str)
            if len(df.columns) and CLEARENT_TITLE in str(df.columns[0]):
                df = pd.read_excel(io.BytesIO(data), dtype=str, header=1)
            return df.fillna("")
        else:
            raise UnsupportedFileError(f"Unsupported file type: {ext or filename!r}")
    except pd.errors.EmptyDataError:
        log.warning("Empty file: %s", filename)
        return pd.DataFrame()


def _clean_headers(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [str(c).strip() for c in df.columns]
    return df


def parse_number(value: Any) -> float:
    """
    Parse a money/count cell. Blank cells are 0; unparseable text raises
    ValueError so the caller can record a diagnostic.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        if pd.isna(value):
            return 0.0
        return float(value)
    s = str(value).strip().replace(",", "").replace("$", "")
    if s in ("", "-", "nan", "NaN", "None"):
        return 0.0
    # Handle parentheses for negative
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1]
    return float(s)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    return str(value).strip()


# =============================================================================
# Processor field mapper
# =============================================================================

class FieldMapper:
    """Maps processor exports onto StandardRecord rows."""

    def __init__(self, mappings: Optional[Dict[str, Dict[str, str]]] = None, min_matches: int = 3):
        self.mappings = mappings or PROCESSOR_MAPPINGS
        self.min_matches = min_matches

    def score(self, processor_key: str, headers: List[str]) -> int:
        mapping = self.mappings.get(processor_key, {})
        present = {h.strip() for h in headers}
        return sum(1 for source in mapping if source in present)

    def detect(self, headers: List[str]) -> Optional[str]:
        """Best-scoring processor for these headers, or None below the minimum."""
        best_key, best_score = None, 0
        for key in self.mappings:
            s = self.score(key, headers)
            if s > best_score:
                best_key, best_score = key, s
        if best_score >= self.min_matches:
            return best_key
        return None

    def missing_required(self, processor_key: str, headers: List[str]) -> List[str]:
        mapping = self.mappings.get(processor_key, {})
        present = {h.strip() for h in headers}
        covered = {target for source, target in mapping.items() if source in present}
        return [f for f in REQUIRED_FIELDS if f not in covered]

    def map_frame(self, df: pd.DataFrame, processor_key: str) -> MappingResult:
        df = _clean_headers(df)
        return self.map_rows(df.to_dict(orient="records"), processor_key, headers=list(df.columns))

    def map_rows(
        self,
        rows: List[Dict[str, Any]],
        processor_key: str,
        headers: Optional[List[str]] = None,
    ) -> MappingResult:
        if processor_key not in self.mappings:
            raise UnknownProcessorError(f"No field mapping for processor: {processor_key}")

        if headers is None:
            headers = list(rows[0].keys()) if rows else []
        headers = [str(h).strip() for h in headers]

        result = MappingResult(processor_key=processor_key)
        key, matched = self._choose_mapping(processor_key, headers, result)
        result.processor_key = key
        result.matched_headers = matched

        missing = self.missing_required(key, headers)
        if missing and rows:
            result.warnings.append({"warning": f"Missing required columns for {key}: {', '.join(missing)}"})

        mapping = self.mappings[key]
        for i, raw in enumerate(rows, start=1):
            row = {str(k).strip(): v for k, v in raw.items()}
            if all(_text(v) == "" for v in row.values()):
                continue
            record, errors = self._map_row(row, mapping, i)
            result.errors.extend(errors)
            if record is not None:
                result.records.append(record)
        return result

    def _choose_mapping(self, processor_key: str, headers: List[str], result: MappingResult) -> Tuple[str, int]:
        own = self.score(processor_key, headers)
        if own >= self.min_matches or not headers:
            return processor_key, own

        result.warnings.append({
            "warning": f"Only {own} of the expected {processor_key} headers found; wrong processor selected?"
        })
        detected = self.detect(headers)
        if detected and detected != processor_key:
            result.warnings.append({"warning": f"Headers match {detected}; mapping with {detected} instead"})
            log.warning("[UPLOAD] %s file looks like %s, re-mapping", processor_key, detected)
            return detected, self.score(detected, headers)
        return processor_key, own

    def _map_row(
        self, row: Dict[str, Any], mapping: Dict[str, str], row_no: int
    ) -> Tuple[Optional[StandardRecord], List[Dict[str, Any]]]:
        errors: List[Dict[str, Any]] = []
        values: Dict[str, Any] = {}
        for source, target in mapping.items():
            if source not in row:
                continue
            raw = row[source]
            if target in NUMERIC_FIELDS:
                if target in values and values[target] is not None:
                    continue
                # blank cell: a later alias column may still carry the value
                if _text(raw) == "":
                    values.setdefault(target, None)
                    continue
                try:
                    values[target] = parse_number(raw)
                except ValueError:
                    errors.append({"row": row_no, "error": f"Unparseable number in '{source}': {raw!r}"})
                    values.setdefault(target, None)
            else:
                if values.get(target):
                    continue
                values[target] = _text(raw)

        mid = values.get("mid") or ""
        if not mid:
            errors.append({"row": row_no, "error": "Missing MID"})
            return None, errors

        record = StandardRecord(mid=mid)
        for target, value in values.items():
            if value is None:
                if target in ("expenses", "bps"):
                    continue
                value = 0.0
            setattr(record, _RECORD_ATTRS[target], value)
        return record, errors


# =============================================================================
# Lead sheet reader
# =============================================================================

LEAD_SHEET_COLUMNS: Dict[str, List[str]] = {
    "mid": ["Existing MID", "MID"],
    "legal_name": ["Legal Name"],
    "dba": ["DBA"],
    "branch_id": ["Partner Branch Number", "Branch Number"],
    "status": ["Status"],
    "current_processor": ["Current Processor"],
    "partner_name": ["Partner Name"],
    "partner_type": ["Partner Type"],
    "sales_reps": ["Sales Reps"],
    "assigned_users": ["Assigned Users"],
    "column_i": ["Column I", "Role Split", "Splits"],
}

# Column I was the ninth column of the legacy roster
COLUMN_I_POSITION = 8


def read_lead_sheet(df: pd.DataFrame) -> Tuple[List[LeadSheetRow], List[Dict[str, Any]]]:
    """Map roster rows; rows without a MID are reported and skipped."""
    df = _clean_headers(df)
    headers = list(df.columns)
    resolved: Dict[str, Optional[str]] = {}
    for attr, aliases in LEAD_SHEET_COLUMNS.items():
        resolved[attr] = next((a for a in aliases if a in headers), None)
    if resolved["column_i"] is None and len(headers) > COLUMN_I_POSITION:
        taken = {h for h in resolved.values() if h}
        if headers[COLUMN_I_POSITION] not in taken:
            resolved["column_i"] = headers[COLUMN_I_POSITION]

    rows: List[LeadSheetRow] = []
    errors: List[Dict[str, Any]] = []
    if resolved["mid"] is None and len(df):
        errors.append({"row": 0, "error": "Lead sheet has no 'Existing MID' or 'MID' column"})
        return rows, errors

    for i, raw in enumerate(df.to_dict(orient="records"), start=1):
        if all(_text(v) == "" for v in raw.values()):
            continue
        values = {attr: _text(raw.get(col)) if col else "" for attr, col in resolved.items()}
        if not values["mid"]:
            errors.append({"row": i, "error": "Missing MID"})
            continue
        rows.append(LeadSheetRow(**values))
    return rows, errors


_NAME_SPLIT = re.compile(r"[,;|]")


def split_user_names(*texts: str) -> List[str]:
    """Distinct names from comma/semicolon/pipe separated cells, first seen first."""
    seen: Dict[str, str] = {}
    for text in texts:
        for part in _NAME_SPLIT.split(text or ""):
            name = part.strip()
            if name and name.lower() not in seen:
                seen[name.lower()] = name
    return list(seen.values())
