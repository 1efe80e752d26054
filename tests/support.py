from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, Tuple

from residuals_backend.engine import ResidualsEngine
from residuals_backend.settings import DEFAULT_SETTINGS
from residuals_backend.storage import ResidualsStore

CLEARENT_HEADER = "Merchant ID,Merchant Name,DBA,Sales Amount,Transactions,Income,Net,Interchange,Processing Fees,Branch ID"
SHIFT4_HEADER = "Merchant ID,Business Name,DBA Name,Total Volume,Total Transactions,Gross Amount,Net Amount"
LEAD_SHEET_HEADER = "Existing MID,Legal Name,DBA,Partner Branch Number,Status,Current Processor,Partner Name,Sales Reps,Column I"


def make_engine(**overrides) -> ResidualsEngine:
    settings = replace(DEFAULT_SETTINGS, db_path=":memory:", **overrides)
    return ResidualsEngine(ResidualsStore(":memory:"), settings)


def processor_id(engine: ResidualsEngine, mapping_key: str) -> int:
    return next(p.id for p in engine.store.list_processors() if p.mapping_key == mapping_key)


def clearent_csv(rows: Iterable[Tuple[str, float]], title: bool = False) -> bytes:
    """Minimal Clearent export: (mid, net) pairs."""
    lines = []
    if title:
        lines.append("Residuals - Clearent,,,,,,,,,")
    lines.append(CLEARENT_HEADER)
    for mid, net in rows:
        lines.append(f'{mid},Merchant {mid},DBA {mid},"$10,000.00",100,$250.00,{net},$120.00,$30.00,')
    return ("\n".join(lines) + "\n").encode("utf-8")


def shift4_csv(rows: Iterable[Tuple[str, float]]) -> bytes:
    lines = [SHIFT4_HEADER]
    for mid, net in rows:
        lines.append(f"{mid},Business {mid},DBA {mid},5000,50,150,{net}")
    return ("\n".join(lines) + "\n").encode("utf-8")


def lead_sheet_csv(rows: Iterable[Dict[str, str]]) -> bytes:
    cols = LEAD_SHEET_HEADER.split(",")
    lines = [LEAD_SHEET_HEADER]
    for row in rows:
        lines.append(",".join(f'"{row.get(c, "")}"' for c in cols))
    return ("\n".join(lines) + "\n").encode("utf-8")


def load_month(engine: ResidualsEngine, month: str, nets: Dict[str, float]) -> None:
    """Upload a Clearent file for the month and compile it."""
    engine.ingest_processor_file(month, processor_id(engine, "clearent"), clearent_csv(nets.items()), "clearent.csv")
    engine.cross_reference(month)
