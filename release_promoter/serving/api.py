"""
Approval API
- Start pipeline runs in the background
- Manual approval / rejection of gated deploy targets
- Abort, run status, health check, Prometheus metrics
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ..cicd.models import (
    DeployTargetKind,
    KubernetesCredentials,
    SwarmCredentials,
)
from ..cicd.notifications import NotificationChannel, NotificationManager
from ..cicd.pipeline import ReleasePipeline
from ..cicd.promoter import ReleasePromoter
from ..core.config import get_settings
from ..core.exceptions import PromoterException
from ..core.logging import get_logger
from ..monitoring.metrics import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)

pipeline: Optional[ReleasePipeline] = None
metrics: Optional[MetricsCollector] = None


# --- Pydantic Models ---
class RunRequest(BaseModel):
    image: str = Field(..., description="registry/repository:tag")
    branch: str = Field(..., description="Branch the image was built from")
    commit_ref: str = Field("", description="Commit SHA")


class ApproveRequest(BaseModel):
    approver: str = Field(..., min_length=1)
    target: DeployTargetKind = DeployTargetKind.KUBERNETES


class RejectRequest(BaseModel):
    reason: str = ""
    target: DeployTargetKind = DeployTargetKind.KUBERNETES


class HealthResponse(BaseModel):
    status: str
    release_branch: str
    total_runs: int


def build_pipeline() -> ReleasePipeline:
    settings = get_settings()
    notifier = NotificationManager(
        slack_token=settings.slack_token,
        slack_channel=settings.slack_channel,
        webhook_url=settings.webhook_url,
        channels=[NotificationChannel.SLACK, NotificationChannel.WEBHOOK],
    )
    promoter = ReleasePromoter(
        settings=settings, metrics=get_metrics_collector(), notifier=notifier
    )
    return ReleasePipeline(promoter=promoter, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global pipeline, metrics
    if pipeline is None:
        pipeline = build_pipeline()
    metrics = pipeline.promoter.metrics or get_metrics_collector()
    logger.info("Approval API ready")
    yield
    for run in pipeline.get_run_history(limit=1000):
        if run["status"] in ("pending", "running"):
            pipeline.abort(run["id"])


app = FastAPI(
    title="Release Promoter",
    description="Promotion runs and manual deployment approval",
    version="1.0.0",
    lifespan=lifespan,
)


def _get_pipeline() -> ReleasePipeline:
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


def _run_or_404(run_id: str) -> Dict[str, Any]:
    run = _get_pipeline().get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run.to_dict()


@app.get("/health", response_model=HealthResponse)
async def health():
    p = _get_pipeline()
    return HealthResponse(
        status="ok",
        release_branch=p.promoter.gate.release_branch,
        total_runs=p.get_pipeline_status()["total_runs"],
    )


@app.post("/runs", status_code=202)
async def start_run(request: RunRequest):
    p = _get_pipeline()
    settings = p.settings
    credentials = {
        DeployTargetKind.SWARM: SwarmCredentials(settings.ssh_endpoint),
        DeployTargetKind.KUBERNETES: KubernetesCredentials(
            context=settings.kube_context, kubeconfig_path=settings.kubeconfig_path
        ),
    }
    try:
        run = p.start(request.image, request.branch, credentials, commit_ref=request.commit_ref)
    except PromoterException as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    return run.to_dict()


@app.get("/runs")
async def list_runs(limit: int = 10) -> List[Dict[str, Any]]:
    return _get_pipeline().get_run_history(limit=limit)


@app.get("/runs/{run_id}")
async def get_run(run_id: str):
    data = _run_or_404(run_id)
    approvals = {}
    for kind in DeployTargetKind:
        gate = _get_pipeline().get_approval(run_id, kind)
        if gate is not None:
            approvals[kind.value] = gate.to_dict()
    data["approvals"] = approvals
    return data


@app.post("/runs/{run_id}/approve")
async def approve(run_id: str, request: ApproveRequest):
    _run_or_404(run_id)
    p = _get_pipeline()
    gate = p.get_approval(run_id, request.target)
    if gate is None:
        raise HTTPException(status_code=409, detail=f"{request.target.value} needs no approval")
    if not p.approve(run_id, request.approver, request.target):
        raise HTTPException(status_code=409, detail=f"Approval already {gate.decision.value}")
    return gate.to_dict()


@app.post("/runs/{run_id}/reject")
async def reject(run_id: str, request: RejectRequest):
    _run_or_404(run_id)
    p = _get_pipeline()
    gate = p.get_approval(run_id, request.target)
    if gate is None:
        raise HTTPException(status_code=409, detail=f"{request.target.value} needs no approval")
    if not p.reject(run_id, request.reason, request.target):
        raise HTTPException(status_code=409, detail=f"Approval already {gate.decision.value}")
    return gate.to_dict()


@app.post("/runs/{run_id}/abort")
async def abort(run_id: str):
    _run_or_404(run_id)
    aborted = _get_pipeline().abort(run_id)
    return {"run_id": run_id, "aborted": aborted}


@app.get("/metrics")
async def prometheus_metrics():
    collector = metrics or get_metrics_collector()
    return Response(content=collector.get_metrics(), media_type=collector.get_content_type())
