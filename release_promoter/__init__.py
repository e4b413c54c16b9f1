"""Release Promoter - promotes a tested container image to Docker Swarm and Kubernetes"""

__version__ = "1.0.0"

from .cicd import (
    ApprovalGate,
    DeployOutcome,
    DeployTargetKind,
    EnvironmentGate,
    ImageReference,
    KubernetesCredentials,
    PipelineRun,
    ReleasePipeline,
    ReleasePromoter,
    SwarmCredentials,
    TargetState,
)

__all__ = [
    "ApprovalGate",
    "DeployOutcome",
    "DeployTargetKind",
    "EnvironmentGate",
    "ImageReference",
    "KubernetesCredentials",
    "PipelineRun",
    "ReleasePipeline",
    "ReleasePromoter",
    "SwarmCredentials",
    "TargetState",
]
