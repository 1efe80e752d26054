from __future__ import annotations

import io
import logging
import sqlite3
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .engine import ResidualsEngine, output_filename
from .models import (
    AssignmentConflictError,
    InvalidActionError,
    InvalidMonthError,
    InvalidRoleError,
    RoleSplit,
    RoleType,
    SplitTotalError,
    UnknownMerchantError,
    UnknownProcessorError,
    UnsupportedFileError,
)
from .settings import DEFAULT_SETTINGS, ResidualsSettings

log = logging.getLogger("residuals")

app = FastAPI(title="Residuals API", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_settings: ResidualsSettings = DEFAULT_SETTINGS
_engine: Optional[ResidualsEngine] = None


def get_engine() -> ResidualsEngine:
    """Engine bound to the configured database, created on first use."""
    global _engine
    if _engine is None:
        _engine = ResidualsEngine.from_settings(_settings)
    return _engine


def set_engine(engine: Optional[ResidualsEngine]) -> None:
    global _engine, _settings
    _engine = engine
    if engine is not None:
        _settings = engine.settings


# ============================================================================
# Request Models
# ============================================================================

class RoleAssignmentIn(BaseModel):
    roleType: str
    userName: str
    percentage: float


class AssignRequest(BaseModel):
    mid: str
    month: str
    assignments: List[RoleAssignmentIn]
    originalColumnI: Optional[str] = None


class QCRequest(BaseModel):
    action: str


class ParseRequest(BaseModel):
    text: str
    mode: str = "keyword"


class SettingsUpdate(BaseModel):
    output_dir: Optional[str] = None
    split_tolerance: Optional[float] = None
    carry_forward_lookback_months: Optional[int] = None
    branch_partner_type: Optional[str] = None
    min_header_matches: Optional[int] = None


# ============================================================================
# Error Mapping
# ============================================================================

_STATUS_BY_ERROR = [
    (AssignmentConflictError, 409),
    (UnknownProcessorError, 404),
    (UnknownMerchantError, 404),
    (SplitTotalError, 400),
    (InvalidMonthError, 400),
    (InvalidRoleError, 400),
    (InvalidActionError, 400),
    (UnsupportedFileError, 400),
]


def _domain_error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        body = {"detail": str(exc)}
        if isinstance(exc, SplitTotalError):
            body["totalPercentage"] = exc.total
        return JSONResponse(status_code=status_code, content=body)
    return handler


for _exc_type, _status in _STATUS_BY_ERROR:
    app.add_exception_handler(_exc_type, _domain_error_handler(_status))


@app.exception_handler(sqlite3.Error)
async def _storage_error(request: Request, exc: sqlite3.Error):
    log.error("[ERROR] Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage error; the stage is safe to retry"})


def _role_type(value: str) -> RoleType:
    v = (value or "").strip().lower()
    if v == "rep":
        return RoleType.AGENT
    try:
        return RoleType(v)
    except ValueError:
        raise InvalidRoleError(f"Unknown role type: {value!r}")


def _settings_dict(s: ResidualsSettings) -> dict:
    return {
        "db_path": s.db_path,
        "output_dir": s.output_dir,
        "timezone": s.timezone,
        "split_tolerance": s.split_tolerance,
        "min_header_matches": s.min_header_matches,
        "carry_forward_lookback_months": s.carry_forward_lookback_months,
        "branch_partner_type": s.branch_partner_type,
        "port": s.port,
    }


# ============================================================================
# API Endpoints
# ============================================================================

@app.on_event("startup")
def _startup():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    get_engine()
    log.info("[OK] Residuals API ready (db=%s)", _settings.db_path)


@app.get("/health")
def health():
    """Simple health check endpoint"""
    return {"ok": True, "status": "running"}


@app.get("/status")
def status(engine: ResidualsEngine = Depends(get_engine)):
    return {
        "settings": _settings_dict(engine.settings),
        "processors": [p.to_dict() for p in engine.store.list_processors()],
    }


@app.patch("/settings")
def update_settings(updates: SettingsUpdate, engine: ResidualsEngine = Depends(get_engine)):
    """Update backend settings"""
    global _settings
    changes = {k: v for k, v in updates.dict().items() if v is not None}
    _settings = replace(engine.settings, **changes)
    engine.apply_settings(_settings)
    log.info("[OK] Updated settings: %s", ", ".join(sorted(changes)) or "nothing")
    return {"ok": True, "settings": _settings_dict(_settings)}


@app.get("/processors")
def processors(engine: ResidualsEngine = Depends(get_engine)):
    return {"processors": [p.to_dict() for p in engine.store.list_processors()]}


# ============================================================================
# Upload & Tracking
# ============================================================================

@app.post("/initialize/{month}")
def initialize(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return {"month": month, "progress": engine.initialize(month)}


@app.get("/progress/{month}")
def progress(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return {"month": month, "progress": engine.progress(month)}


@app.post("/upload/{month}/{processor_id}")
def upload(month: str, processor_id: int, file: UploadFile = File(...), engine: ResidualsEngine = Depends(get_engine)):
    """Ingest one processor's residual file."""
    data = file.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return engine.ingest_processor_file(month, processor_id, data, file.filename)


@app.post("/upload-lead-sheet/{month}")
def upload_lead_sheet(month: str, file: UploadFile = File(...), engine: ResidualsEngine = Depends(get_engine)):
    data = file.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return engine.ingest_lead_sheet(month, data, file.filename)


@app.delete("/delete/{month}/{processor_id}")
def delete_processor_data(month: str, processor_id: int, engine: ResidualsEngine = Depends(get_engine)):
    return engine.delete_processor_data(month, processor_id)


@app.delete("/delete-lead-sheet/{month}")
def delete_lead_sheet(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.delete_lead_sheet(month)


# ============================================================================
# Pipeline Stages
# ============================================================================

@app.post("/cross-reference/{month}")
def cross_reference(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.cross_reference(month)


@app.post("/auto-populate-assignments/{month}")
def auto_populate(month: str, engine: ResidualsEngine = Depends(get_engine)):
    """Carry prior-month assignments forward, then validate splits."""
    return engine.auto_populate(month)


@app.post("/validate-splits/{month}")
def validate_splits(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.validate_splits(month)


@app.post("/audit/{month}")
def audit(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.audit(month)


@app.post("/cleanup-duplicates/{month}")
def cleanup_duplicates(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.cleanup_duplicates(month)


@app.get("/duplicate-report/{month}")
def duplicate_report(month: str, engine: ResidualsEngine = Depends(get_engine)):
    """MIDs with more than one monthly-data row for a processor this month."""
    return engine.duplicate_report(month)


@app.post("/master-data-qc/{month}")
def master_data_qc(month: str, body: QCRequest, engine: ResidualsEngine = Depends(get_engine)):
    return engine.master_data_qc(month, body.action)


@app.get("/master-dataset/{month}")
def master_dataset(month: str, engine: ResidualsEngine = Depends(get_engine)):
    rows = engine.master_dataset(month)
    return {"month": month, "count": len(rows), "records": rows}


@app.get("/audit-issues/{month}")
def audit_issues(month: str, engine: ResidualsEngine = Depends(get_engine)):
    issues = engine.audit_issues(month)
    return {"month": month, "count": len(issues), "issues": issues}


# ============================================================================
# Role Assignment
# ============================================================================

@app.get("/previous-assignments/{mid}/{month}")
def previous_assignment(mid: str, month: str, engine: ResidualsEngine = Depends(get_engine)):
    ra = engine.previous_assignment(mid, month)
    return {"mid": mid, "month": month, "assignment": ra.to_dict() if ra else None}


@app.get("/role-assignment/unassigned/{month}")
def unassigned(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.unassigned(month)


@app.get("/role-assignment/completed/{month}")
def completed(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.completed(month)


@app.get("/role-assignment/existing/{mid}")
def existing(mid: str, engine: ResidualsEngine = Depends(get_engine)):
    ra = engine.existing_assignment(mid)
    if ra is None:
        return {"mid": mid, "exists": False, "assignments": []}
    return {"mid": mid, "exists": True, "month": ra.month, "assignments": [s.to_dict() for s in ra.splits()],
            "assignmentStatus": ra.assignment_status.value}


@app.post("/role-assignment/assign")
def assign(body: AssignRequest, engine: ResidualsEngine = Depends(get_engine)):
    """
    Assign roles to one MID for one month. 409 when the MID already has an
    assignment for the month, 400 when percentages do not total 100.
    """
    splits = [RoleSplit(_role_type(a.roleType), a.userName.strip(), a.percentage) for a in body.assignments]
    ra = engine.assign(body.mid, body.month, splits, original_column_i=body.originalColumnI)
    return {"success": True, "assignment": ra.to_dict()}


@app.delete("/role-assignment/{month}/{mid}")
def delete_assignment(month: str, mid: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.delete_assignment(mid, month)


@app.post("/role-assignment/parse")
def parse(body: ParseRequest, engine: ResidualsEngine = Depends(get_engine)):
    return engine.parse_preview(body.text, body.mode)


@app.post("/role-assignment/auto-parse-bulk/{month}")
def auto_parse_bulk(month: str, engine: ResidualsEngine = Depends(get_engine)):
    return engine.bulk_parse(month)


# ============================================================================
# Export
# ============================================================================

@app.get("/export/{month}")
def export(month: str, save: bool = False, engine: ResidualsEngine = Depends(get_engine)):
    """Download the month as an Excel workbook; save=true also writes it to output_dir."""
    bio = io.BytesIO()
    engine.export_xlsx(month, bio)
    data = bio.getvalue()
    fname = output_filename(month)
    if save:
        out = Path(engine.settings.output_dir) / fname
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(data)
        log.info("[OK] Saved workbook to: %s", out)
    return StreamingResponse(
        io.BytesIO(data),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{fname}"'},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=_settings.port)
