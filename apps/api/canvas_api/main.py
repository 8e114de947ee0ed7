from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .case_study import generate_case_study
from .config import settings
from .errors import CanvasGenerationFailed
from .ledger import TokenLedger, get_ledger
from .llm import ModelClient, get_model_client
from .pipeline import CanvasPipeline
from .schemas import (
    CanvasGenerateRequest,
    CanvasGenerateResponse,
    CaseStudyGenerateRequest,
    CaseStudyGenerateResponse,
    ErrorResponse,
    TokenStatus,
    UsageRecordRead,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

FAILURE_RESPONSES: dict[int | str, dict[str, Any]] = {
    429: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    field_errors: dict[str, list[str]] = {}
    for error in exc.errors():
        if error.get("type") == "json_invalid":
            return JSONResponse(status_code=400, content={"error": "Invalid JSON body."})
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = loc[0] if loc else "body"
        field_errors.setdefault(field, []).append(error.get("msg", "Invalid value."))
    return JSONResponse(status_code=400, content={"error": field_errors})


@app.exception_handler(CanvasGenerationFailed)
async def _generation_failed(request: Request, exc: CanvasGenerationFailed) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/tokens", response_model=TokenStatus)
def token_status(ledger: TokenLedger = Depends(get_ledger)) -> TokenStatus:
    snapshot = ledger.snapshot()
    history = [UsageRecordRead(**record.model_dump()) for record in ledger.history()]
    return TokenStatus(**snapshot.to_dict(), history=history)


@app.post("/canvas/generate", response_model=CanvasGenerateResponse, responses=FAILURE_RESPONSES)
async def generate_canvas_endpoint(
    payload: CanvasGenerateRequest,
    ledger: TokenLedger = Depends(get_ledger),
    client: ModelClient = Depends(get_model_client),
) -> CanvasGenerateResponse:
    pipeline = CanvasPipeline(client, ledger)
    result = await pipeline.run(payload.topic, payload.report_text)
    logger.info(
        "Generated canvas for %r on the %s attempt (%d tokens)",
        payload.topic,
        result.attempt,
        result.tokens_used,
    )
    return CanvasGenerateResponse(
        canvas=result.canvas,
        tokens_used=result.tokens_used,
        allowance=result.snapshot.allowance,
        tokens_remaining=result.snapshot.remaining,
    )


@app.post("/case-study/generate", response_model=CaseStudyGenerateResponse, responses=FAILURE_RESPONSES)
async def generate_case_study_endpoint(
    payload: CaseStudyGenerateRequest,
    ledger: TokenLedger = Depends(get_ledger),
    client: ModelClient = Depends(get_model_client),
) -> CaseStudyGenerateResponse:
    result = await generate_case_study(payload.topic, client, ledger)
    return CaseStudyGenerateResponse(
        topic=result.topic,
        case_study=result.sections,
        presentation=result.presentation,
        tokens_used=result.tokens_used,
        allowance=result.snapshot.allowance,
        tokens_remaining=result.snapshot.remaining,
    )
