from __future__ import annotations

import logging
import os
from pathlib import Path

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from datachat.errors import InputValidationError, PipelineError
from datachat.ingest import MAX_UPLOAD_BYTES, parse_csv
from datachat.llm_client import ModelGateway, create_gateway_from_env
from datachat.models import ChatRequest, ChatResponse, ReportRequest, ReportResponse, UploadResponse
from datachat.service import answer_question, generate_business_report

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CSV Data Assistant API", version="0.1.0")
_gateway: ModelGateway | None = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten this in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_gateway() -> ModelGateway:
    global _gateway
    if _gateway is None:
        _gateway = create_gateway_from_env()
    return _gateway


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind.value)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    detail = first.get("msg", "Invalid request body.")
    message = f"Invalid request: {location}: {detail}" if location else f"Invalid request: {detail}"
    return JSONResponse(status_code=400, content={"error": message})


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/upload", response_model=UploadResponse)
async def upload_csv(file: UploadFile = File(...)) -> UploadResponse | JSONResponse:
    filename = file.filename or "uploaded.csv"
    if Path(filename).suffix.lower() != ".csv":
        raise InputValidationError("Please upload a CSV file.")

    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        return JSONResponse(
            status_code=413,
            content={"error": f"File is too large. Maximum allowed size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB."},
        )
    return UploadResponse(csv_data=parse_csv(content, filename))


@app.post("/chat", response_model=ChatResponse)
def chat(body: ChatRequest) -> ChatResponse:
    reply = answer_question(_get_gateway(), body.message, body.csv_data, body.chat_history)
    return ChatResponse(response=reply)


@app.post("/generate-report", response_model=ReportResponse)
def generate_report(body: ReportRequest) -> ReportResponse:
    report = generate_business_report(_get_gateway(), body.csv_data)
    return ReportResponse(report=report)
