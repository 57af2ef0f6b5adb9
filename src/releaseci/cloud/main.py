from __future__ import annotations

import os
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from releaseci.errors import ConcurrencyConflict, OrchestrationError
from releaseci.loader import load_workflow
from releaseci.model import TriggerEvent, TriggerKind
from releaseci.runner import RunCoordinator
from releaseci.settings import Settings

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    kind: TriggerKind
    ref: str = ""
    head_ref: Optional[str] = None
    # names only; values come from the server's environment
    secrets: list[str] = Field(default_factory=list)

class CreateRunResponse(BaseModel):
    run_id: str
    group: str
    superseded: Optional[str] = None

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
    outcome: str

# -------------------- App --------------------

def create_app(coordinator: Optional[RunCoordinator] = None) -> FastAPI:
    """
    HTTP surface over one RunCoordinator. Without an explicit coordinator,
    one is built on first use from Settings.from_env() and the configured
    workflow file.
    """
    app = FastAPI(title="releaseci Control Plane")
    holder: dict[str, RunCoordinator] = {}
    if coordinator is not None:
        holder["coordinator"] = coordinator

    def get_coordinator() -> RunCoordinator:
        if "coordinator" not in holder:
            settings = Settings.from_env()
            try:
                graph = load_workflow(settings.workflow)
            except OrchestrationError as e:
                raise HTTPException(status_code=500, detail=str(e))
            holder["coordinator"] = RunCoordinator(graph, settings=settings)
        return holder["coordinator"]

    def get_run(run_id: str):
        try:
            return get_coordinator().get(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")

    # -------------------- Endpoints --------------------

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: CreateRunRequest):
        trigger = TriggerEvent(
            kind=req.kind,
            ref=req.ref,
            head_ref=req.head_ref,
            secrets={name: os.environ.get(name, "") for name in req.secrets},
        )
        try:
            handle = get_coordinator().submit(trigger)
        except ConcurrencyConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        return CreateRunResponse(run_id=handle.id, group=handle.run.group, superseded=handle.superseded)

    @app.get("/runs")
    def list_runs() -> list[dict[str, Any]]:
        return [
            {"run_id": r.id, "group": r.group, "outcome": r.outcome.value, "ref": r.trigger.ref}
            for r in get_coordinator().runs
        ]

    @app.get("/runs/{run_id}")
    def get_run_result(run_id: str) -> dict[str, Any]:
        return get_run(run_id).result().to_dict()

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        run = get_run(run_id)
        cancelled = run.cancel("cancelled via API")
        return CancelResponse(run_id=run.id, cancelled=cancelled, outcome=run.outcome.value)

    return app


app = create_app()
