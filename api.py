"""
api.py - FastAPI HTTP layer for the underwriting review.

Endpoints:
  GET  /health
  POST /cases/{case_id}/review   full review of one CRM case
  POST /reconcile                collateral reconciliation on supplied data
  POST /debt-cycles              debt-cycle analysis on a supplied ledger

No review logic lives here; handlers call the pipeline and the
deterministic components and map errors to status codes.
"""

from __future__ import annotations

import datetime as dt
import os
from typing import Any, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from config import RunContext, Settings
from debt_cycle import analyze_debt_cycles
from errors import CaseNotFoundError, ReviewError, UpstreamUnavailableError
from logging_config import get_logger, setup_logging
from models import Counterparty, CounterpartyReconciliation, DebtCycleReport, ExpectedAmount, Transaction
from pipeline import ReviewServices, review_case
from reconcile import reconcile

logger = get_logger("factoring-review-api")

app = FastAPI(title="Factoring Underwriting Review API", version="1.0.0")


class ReconcileRequest(BaseModel):
    counterparties: list[Counterparty] = Field(..., min_length=1)
    expectations: list[ExpectedAmount] = Field(default_factory=list)
    ledger: list[Transaction] = Field(default_factory=list)
    as_of: Optional[dt.date] = None


class DebtCycleRequest(BaseModel):
    ledger: list[Transaction] = Field(default_factory=list)
    as_of: Optional[dt.date] = None


class ReviewRequest(BaseModel):
    write_back: bool = False
    as_of: Optional[dt.date] = None


def get_settings() -> Settings:
    return Settings.from_env()


def get_services(settings: Settings = Depends(get_settings)) -> ReviewServices:
    missing = settings.missing()
    if missing:
        logger.error("api_config_missing | missing=%s", missing)
        raise HTTPException(status_code=503, detail=f"Missing configuration: {', '.join(missing)}")
    return ReviewServices.from_settings(settings)


def get_context_factory(settings: Settings = Depends(get_settings)):
    """Return a callable building the run context for one request's as_of."""

    def _build(as_of: Optional[dt.date] = None) -> RunContext:
        return RunContext.from_settings(settings, as_of=as_of)

    return _build


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/cases/{case_id}/review")
async def review_endpoint(
    case_id: str,
    request: Optional[ReviewRequest] = None,
    services: ReviewServices = Depends(get_services),
    context_factory=Depends(get_context_factory),
) -> dict[str, Any]:
    """Run the full review; the response is the report with its input data."""
    request = request or ReviewRequest()
    try:
        context = context_factory(request.as_of)
        report = await review_case(case_id, services, context, write_back_report=request.write_back)
    except CaseNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UpstreamUnavailableError as exc:
        logger.error("api_review_upstream_error | case_id=%s | error=%s", case_id, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except (ValueError, FileNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReviewError as exc:
        logger.error("api_review_error | case_id=%s | error=%s", case_id, exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return report.model_dump(mode="json")


@app.post("/reconcile")
def reconcile_endpoint(
    request: ReconcileRequest,
    context_factory=Depends(get_context_factory),
) -> list[CounterpartyReconciliation]:
    try:
        context = context_factory(request.as_of)
        return reconcile(request.counterparties, request.expectations, request.ledger, context)
    except (ValueError, FileNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("api_reconcile_error | error_type=%s | error=%s", type(exc).__name__, exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Unexpected server error during reconciliation.") from exc


@app.post("/debt-cycles")
def debt_cycles_endpoint(
    request: DebtCycleRequest,
    context_factory=Depends(get_context_factory),
) -> DebtCycleReport:
    try:
        context = context_factory(request.as_of)
        return analyze_debt_cycles(request.ledger, context)
    except (ValueError, FileNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("api_debt_cycles_error | error_type=%s | error=%s", type(exc).__name__, exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Unexpected server error during debt-cycle analysis.") from exc


if __name__ == "__main__":
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
