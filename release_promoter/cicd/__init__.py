"""CI/CD - release promotion, environment gates, pipeline orchestration, notifications"""

from .gates import ApprovalGate, ApprovalDecision, EnvironmentGate, GateDecision
from .models import (
    DeployAction,
    DeployOutcome,
    DeployTarget,
    DeployTargetKind,
    ImageReference,
    KubernetesCredentials,
    PipelineRun,
    RunStatus,
    StageResult,
    StageStatus,
    SwarmCredentials,
    TargetState,
)
from .notifications import DeploymentNotification, NotificationChannel, NotificationManager
from .pipeline import ReleasePipeline
from .promoter import ReleasePromoter

__all__ = [
    "ApprovalGate",
    "ApprovalDecision",
    "EnvironmentGate",
    "GateDecision",
    "DeployAction",
    "DeployOutcome",
    "DeployTarget",
    "DeployTargetKind",
    "ImageReference",
    "KubernetesCredentials",
    "PipelineRun",
    "RunStatus",
    "StageResult",
    "StageStatus",
    "SwarmCredentials",
    "TargetState",
    "DeploymentNotification",
    "NotificationChannel",
    "NotificationManager",
    "ReleasePipeline",
    "ReleasePromoter",
]
