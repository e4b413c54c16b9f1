from .base import KubernetesBackend, RolloutStatus, SwarmBackend
from .kubernetes import KubeClusterBackend, manifest_hash, rollout_status_from
from .swarm import DockerSwarmBackend

__all__ = [
    "SwarmBackend",
    "KubernetesBackend",
    "RolloutStatus",
    "DockerSwarmBackend",
    "KubeClusterBackend",
    "manifest_hash",
    "rollout_status_from",
]
