"""Residuals backend package.

Reconciles monthly processor residual files against the merchant roster and
tracks how each MID's net revenue is split across roles. Run the API via
Uvicorn:

    python -m uvicorn residuals_backend.api_app:app --host 127.0.0.1 --port 8000

(`python -m residuals_backend.api_app` does the same on RESIDUALS_PORT), or
drive a month from the command line:

    python -m residuals_backend.cli --month 2025-05 run
"""
