from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

# NOTE:
# - db_path and output_dir may be absolute or relative to the working dir.
# - You can override ANY value with environment variables if you prefer.
#
# Suggested env overrides:
#   RESIDUALS_DB_PATH
#   RESIDUALS_OUTPUT_DIR
#   RESIDUALS_TZ                      (default US/Eastern)
#   RESIDUALS_SPLIT_TOL               (float, percentage points)
#   RESIDUALS_MIN_HEADER_MATCHES      (int)
#   RESIDUALS_CARRY_FORWARD_LOOKBACK  (months)
#   RESIDUALS_BATCH_SIZE              (rows per fetch)
#   RESIDUALS_BRANCH_PARTNER_TYPE
#   RESIDUALS_PORT                    (default 8000)


@dataclass(frozen=True)
class ProcessorConfig:
    """One upstream processor and the header mapping it uses."""
    name: str
    mapping_key: str
    active: bool = True


def _default_processors() -> List[ProcessorConfig]:
    return [
        ProcessorConfig(name="Clearent", mapping_key="clearent"),
        ProcessorConfig(name="First Data", mapping_key="first-data"),
        ProcessorConfig(name="Global Payments TSYS", mapping_key="global-payments-tsys"),
        ProcessorConfig(name="Merchant Lynx", mapping_key="merchant-lynx"),
        ProcessorConfig(name="Micamp Solutions", mapping_key="micamp-solutions"),
        ProcessorConfig(name="Payment Advisors", mapping_key="payment-advisors"),
        ProcessorConfig(name="Shift4", mapping_key="shift4"),
    ]


@dataclass(frozen=True)
class ResidualsSettings:
    # SQLite file holding every table; ":memory:" for throwaway runs
    db_path: str = os.environ.get("RESIDUALS_DB_PATH", "residuals.db")

    # Workbook exports land here
    output_dir: str = os.environ.get("RESIDUALS_OUTPUT_DIR", "_output")

    # "Current month" for the CLI is resolved in this zone
    timezone: str = os.environ.get("RESIDUALS_TZ", "US/Eastern")

    # Splits must total 100 within this many percentage points
    split_tolerance: float = float(os.environ.get("RESIDUALS_SPLIT_TOL", "0.01"))

    # Header matches needed before a processor mapping is trusted
    min_header_matches: int = int(os.environ.get("RESIDUALS_MIN_HEADER_MATCHES", "3"))

    # 1 = copy strictly from the previous month
    carry_forward_lookback_months: int = int(os.environ.get("RESIDUALS_CARRY_FORWARD_LOOKBACK", "1"))

    batch_size: int = int(os.environ.get("RESIDUALS_BATCH_SIZE", "500"))

    # Partner type tagged on roster merchants that carry a branch number
    branch_partner_type: str = os.environ.get("RESIDUALS_BRANCH_PARTNER_TYPE", "Centennial")

    port: int = int(os.environ.get("RESIDUALS_PORT", "8000"))

    processors: List[ProcessorConfig] = field(default_factory=_default_processors)


DEFAULT_SETTINGS = ResidualsSettings()
