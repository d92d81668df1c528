"""FastAPI transport for the execution engine.

This module provides:
- REST API for node catalog and workflow CRUD
- Run submission (queued, or synchronous for legacy callers) and stop
- Server-Sent Events stream of live run events from the ExecutionMonitor

The app is built per engine by ``create_app``; there is no module-level app
state. Live events are in-process only: runs executed by another process's
worker pool are visible through ``GET /api/runs/{run_id}`` once recorded,
but do not stream.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from nodeflow import __version__
from nodeflow.core.coordinator import RunOptions
from nodeflow.core.engine import Engine
from nodeflow.core.errors import (
    DuplicateRunError,
    GraphError,
    NodeTypeNotFound,
    WorkflowNotFound,
    WorkflowValidationError,
)
from nodeflow.core.graph_schema import WorkflowDefinition

logger = logging.getLogger(__name__)


# ========== API Models ==========


class RunOptionsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str | None = Field(default=None, alias="runId")
    priority: int = 0


class RunRequest(BaseModel):
    """Request to run a stored workflow"""

    model_config = ConfigDict(populate_by_name=True)

    initial_input: Any = Field(default=None, alias="initialInput")
    run_options: RunOptionsBody = Field(default_factory=RunOptionsBody, alias="runOptions")


class ValidateConfigRequest(BaseModel):
    config: dict[str, Any] = Field(default_factory=dict)


def create_app(engine: Engine, start_workers: bool = True) -> FastAPI:
    """Build the HTTP app around an engine.

    With ``start_workers`` the app's lifespan runs the worker pool and the
    trigger scheduler on the server's event loop.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        trigger_task = None
        if start_workers:
            engine.pool.start()
            trigger_task = asyncio.create_task(
                engine.triggers.run_forever(engine.config.trigger_poll_interval)
            )
        try:
            yield
        finally:
            engine.monitor.close()
            if trigger_task is not None:
                engine.triggers.stop()
                trigger_task.cancel()
                await asyncio.gather(trigger_task, return_exceptions=True)
            if start_workers:
                await engine.pool.stop()

    app = FastAPI(
        title="nodeflow API",
        description="Workflow execution engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # ========== Error Mapping ==========

    @app.exception_handler(WorkflowNotFound)
    async def workflow_not_found(request: Request, exc: WorkflowNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(WorkflowValidationError)
    async def workflow_invalid(request: Request, exc: WorkflowValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(GraphError)
    async def graph_invalid(request: Request, exc: GraphError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(DuplicateRunError)
    async def duplicate_run(request: Request, exc: DuplicateRunError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(NodeTypeNotFound)
    async def node_type_not_found(request: Request, exc: NodeTypeNotFound):
        return JSONResponse(
            status_code=404, content={"detail": str(exc), "candidates": exc.candidates}
        )

    # ========== Health & Catalog ==========

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "activeRuns": engine.coordinator.active_runs(),
            "queued": engine.queue.pending_count(),
        }

    @app.get("/api/nodes")
    def list_nodes() -> list[dict[str, Any]]:
        return [engine.registry.describe(e).model_dump() for e in engine.registry.list_all()]

    @app.get("/api/nodes/categories")
    def node_categories() -> dict[str, list[dict[str, Any]]]:
        return {
            category: [engine.registry.describe(e).model_dump() for e in entries]
            for category, entries in sorted(engine.registry.group_by_category().items())
        }

    @app.get("/api/nodes/{type_key}")
    def get_node_type(type_key: str) -> dict[str, Any]:
        entry = engine.registry.resolve(type_key)
        return engine.registry.describe(entry).model_dump()

    @app.post("/api/nodes/{type_key}/validate")
    def validate_node_config(type_key: str, request: ValidateConfigRequest) -> dict[str, Any]:
        errors = engine.registry.validate_config(type_key, request.config)
        return {"valid": not errors, "errors": errors}

    # ========== Workflow CRUD Endpoints ==========

    @app.get("/api/workflows")
    def list_workflows() -> list[dict[str, Any]]:
        return [wf.model_dump(mode="json") for wf in engine.store.list_workflows()]

    @app.post("/api/workflows", status_code=201)
    def create_workflow(definition: WorkflowDefinition) -> dict[str, Any]:
        saved = engine.store.save_workflow(definition)
        return saved.model_dump(mode="json")

    @app.get("/api/workflows/{workflow_id}")
    def get_workflow(workflow_id: str) -> dict[str, Any]:
        return engine.store.load_workflow(workflow_id).model_dump(mode="json")

    @app.delete("/api/workflows/{workflow_id}")
    def delete_workflow(workflow_id: str) -> dict[str, str]:
        engine.store.delete_workflow(workflow_id)
        return {"status": "deleted", "id": workflow_id}

    # ========== Run Endpoints ==========

    @app.post("/api/workflows/{workflow_id}/run", status_code=202)
    async def run_workflow(workflow_id: str, request: RunRequest, sync: bool = False):
        """Queue a run (202 with its id), or with ``?sync=true`` run it inline
        and return the full summary."""
        definition = await run_in_threadpool(engine.store.load_workflow, workflow_id)

        if sync:
            run_id = request.run_options.run_id
            if run_id and await run_in_threadpool(engine.queue.exists, run_id):
                raise DuplicateRunError(f"Run {run_id} already exists")
            summary = await engine.coordinator.execute_workflow(
                definition,
                request.initial_input,
                RunOptions(run_id=run_id, initiator="http"),
            )
            return JSONResponse(status_code=200, content=summary.model_dump(mode="json"))

        errors = definition.validate_graph()
        if errors:
            raise WorkflowValidationError(errors)
        run_id = await run_in_threadpool(
            engine.queue.submit,
            workflow_id,
            request.initial_input,
            request.run_options.run_id,
            request.run_options.priority,
        )
        return {"runId": run_id}

    @app.post("/api/runs/{run_id}/stop")
    async def stop_run(run_id: str) -> dict[str, Any]:
        """Request cancellation; returns without waiting for in-flight nodes."""
        if engine.coordinator.stop(run_id):
            return {"runId": run_id, "acknowledged": True}
        if await run_in_threadpool(engine.queue.cancel, run_id):
            return {"runId": run_id, "acknowledged": True}
        if await run_in_threadpool(engine.queue.request_stop, run_id):
            # Claimed but not started here yet, or owned by another process
            engine.coordinator.stop(run_id)
            return {"runId": run_id, "acknowledged": True}
        known = await run_in_threadpool(engine.queue.get_status, run_id)
        if known is None and await run_in_threadpool(engine.store.get_run, run_id) is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return {"runId": run_id, "acknowledged": False}

    @app.get("/api/runs/{run_id}")
    def get_run(run_id: str) -> dict[str, Any]:
        summary = engine.store.get_run(run_id)
        if summary is not None:
            return summary.model_dump(mode="json")
        queued_status = engine.queue.get_status(run_id)
        if queued_status is None:
            raise HTTPException(status_code=404, detail="Run not found")
        status = "running" if engine.coordinator.is_active(run_id) else queued_status
        return {"run_id": run_id, "status": status}

    @app.get("/api/runs/{run_id}/events")
    async def stream_run_events(run_id: str) -> StreamingResponse:
        """Stream live run events via Server-Sent Events (SSE)."""

        async def event_generator():
            async for event in engine.monitor.subscribe(run_id):
                yield event.to_sse()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    return app
