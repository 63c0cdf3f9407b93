"""
AutoCrisp Design Service - FastAPI Application

Endpoints:
  POST /design
  GET  /design
  GET  /design/examples
  GET  /design/{run_id}
  GET  /design/{run_id}/guides.csv
  GET  /design/{run_id}/protocol.txt
  GET  /health
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware

from env_loader import env_flag, load_service_env
from models import (
    DesignRequest,
    DesignResponse,
    DesignRun,
    DesignRunListResponse,
    ExamplePromptsResponse,
    HealthResponse,
)
from orchestrator import orchestrator_agent
from run_repository import InMemoryRunRepository
from tools import export_file_stem, guides_to_csv, list_example_prompts, render_protocol_document

load_service_env()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="AutoCrisp Design Service",
    description="Multi-agent CRISPR guide design pipeline with task-graph orchestration",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DESIGN_TIMEOUT_SECONDS = max(10.0, _env_float("AUTOCRISP_DESIGN_TIMEOUT_SECONDS", 300.0))
run_repository = InMemoryRunRepository(max_entries=_env_int("AUTOCRISP_RUN_HISTORY_LIMIT", 100))


def _error_detail(prefix: str, exc: Exception) -> str:
    if not env_flag("AUTOCRISP_EXPOSE_ERRORS", True):
        return prefix
    detail = str(exc).strip() or exc.__class__.__name__
    # Keep payload concise for UI.
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"{prefix} {detail}"


def _to_response(run: DesignRun) -> DesignResponse:
    return DesignResponse(
        success=True,
        run_id=run.run_id,
        outcome=run.outcome,
        iterations=run.iterations,
        plan=run.result.plan,
        guides=run.result.guides,
        summary=run.result.summary,
        messages=run.messages,
        traces=run.traces,
    )


def _get_run_or_404(run_id: str) -> DesignRun:
    try:
        return run_repository.get_run(run_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0] if exc.args else exc)) from exc


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service="autocrisp-service",
        completion_mode=orchestrator_agent.completion_client.mode,
        model_name=orchestrator_agent.completion_client.model_name,
        max_iterations=orchestrator_agent.max_iterations,
        max_concurrent_tasks=orchestrator_agent.max_concurrent_tasks,
        timestamp=datetime.now(timezone.utc),
    )


@app.get("/")
async def root() -> dict:
    return {
        "service": "autocrisp-service",
        "status": "ok",
        "health": "/health",
        "docs": "/docs",
    }


@app.get("/design/examples", response_model=ExamplePromptsResponse)
async def design_examples() -> ExamplePromptsResponse:
    return ExamplePromptsResponse(success=True, prompts=list_example_prompts())


@app.post("/design", response_model=DesignResponse)
async def create_design(request: DesignRequest) -> DesignResponse:
    prompt = request.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt must not be blank.")
    try:
        run = await asyncio.wait_for(
            orchestrator_agent.process_prompt(prompt),
            timeout=DESIGN_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError as exc:
        timeout_seconds = max(1, int(round(DESIGN_TIMEOUT_SECONDS)))
        logger.error("Design request timed out after %.1fs", DESIGN_TIMEOUT_SECONDS)
        raise HTTPException(
            status_code=504,
            detail=f"Failed to design guides. Timed out after {timeout_seconds}s.",
        ) from exc
    except Exception as exc:
        logger.exception("Design request failed: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to design guides.", exc),
        ) from exc

    run_repository.save_run(run)
    logger.info(
        "Design run %s finished | outcome=%s | iterations=%d | guides=%d",
        run.run_id,
        run.outcome.value,
        run.iterations,
        len(run.result.guides),
    )
    return _to_response(run)


@app.get("/design", response_model=DesignRunListResponse)
async def list_designs() -> DesignRunListResponse:
    return DesignRunListResponse(success=True, run_ids=run_repository.list_run_ids())


@app.get("/design/{run_id}", response_model=DesignResponse)
async def get_design(run_id: str) -> DesignResponse:
    return _to_response(_get_run_or_404(run_id))


@app.get("/design/{run_id}/guides.csv")
async def export_guides_csv(run_id: str) -> Response:
    run = _get_run_or_404(run_id)
    filename = export_file_stem("guides", run.result.plan.gene) + ".csv"
    return Response(
        content=guides_to_csv(run.result.guides),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/design/{run_id}/protocol.txt")
async def export_protocol(run_id: str) -> Response:
    run = _get_run_or_404(run_id)
    filename = export_file_stem("protocol", run.result.plan.gene) + ".txt"
    return Response(
        content=render_protocol_document(run.result.summary, generated_at=run.created_at),
        media_type="text/plain",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
