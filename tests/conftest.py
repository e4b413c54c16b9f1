"""
Pytest fixtures

In-memory Swarm / Kubernetes backends that record every call.
"""

import sys
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from release_promoter.cicd.backends.base import RolloutStatus
from release_promoter.cicd.backends.kubernetes import manifest_hash
from release_promoter.cicd.models import KubernetesCredentials, SwarmCredentials, DeployTargetKind
from release_promoter.cicd.promoter import ReleasePromoter
from release_promoter.core.config import Settings
from release_promoter.core.exceptions import AuthFailure, TransientNetworkError
from release_promoter.monitoring.metrics import MetricsCollector


class FakeSwarmBackend:
    def __init__(self, services: Optional[Dict[str, str]] = None):
        self.services: Dict[str, str] = dict(services or {})
        self.calls: List[Tuple[str, str]] = []
        self.transient_failures = 0
        self.auth_fails = False
        self.closed = False
        self._lock = threading.Lock()

    def _maybe_fail(self):
        if self.auth_fails:
            raise AuthFailure("swarm", "permission denied (publickey)")
        with self._lock:
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientNetworkError("swarm", "connection reset")

    def update_service(self, name: str, image: str) -> bool:
        self.calls.append(("update", name))
        self._maybe_fail()
        if name not in self.services:
            return False
        self.services[name] = image
        return True

    def create_service(self, name: str, image: str) -> None:
        self.calls.append(("create", name))
        self.services[name] = image

    def service_image(self, name: str) -> Optional[str]:
        self.calls.append(("inspect", name))
        return self.services.get(name)

    def close(self) -> None:
        self.closed = True


class FakeKubernetesBackend:
    def __init__(self, converge_after: int = 1):
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.hashes: Dict[Tuple[str, str], str] = {}
        self.calls: List[str] = []
        self.images: Dict[str, str] = {}
        self.converge_after = converge_after  # None = never converges
        self.polls = 0
        self.transient_failures = 0
        self.auth_fails = False
        self.closed = False

    def apply_manifest(self, documents: List[Dict[str, Any]]) -> bool:
        self.calls.append("apply")
        if self.auth_fails:
            raise AuthFailure("kubernetes", "Unauthorized")
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientNetworkError("kubernetes", "503 Service Unavailable")
        changed = False
        for doc in documents:
            key = (doc["kind"], doc["metadata"]["name"])
            digest = manifest_hash(doc)
            if self.hashes.get(key) != digest:
                self.hashes[key] = digest
                self.objects[key] = doc
                changed = True
        return changed

    def set_image(self, deployment: str, container: str, image: str) -> None:
        self.calls.append("set_image")
        self.images[deployment] = image

    def rollout_status(self, deployment: str) -> RolloutStatus:
        self.calls.append("rollout_status")
        self.polls += 1
        if self.converge_after is not None and self.polls >= self.converge_after:
            return RolloutStatus(True, "successfully rolled out", 2, 2, 2)
        return RolloutStatus(False, "1 of 2 updated replicas are available", 2, 1, 1)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        release_branch="main",
        retry_attempts=3,
        retry_base_delay=0.0,
        retry_backoff=2.0,
        rollout_timeout=0.3,
        poll_interval=0.01,
        swarm_service_name="web",
        deployment_name="web",
        container_name="web",
        swarm_environment_url="http://swarm.example",
        kubernetes_environment_url="http://k8s.example",
    )


@pytest.fixture
def swarm_backend():
    return FakeSwarmBackend()


@pytest.fixture
def kube_backend():
    return FakeKubernetesBackend()


@pytest.fixture
def metrics():
    return MetricsCollector(app_name=f"test_{uuid.uuid4().hex[:8]}")


@pytest.fixture
def promoter(settings, swarm_backend, kube_backend, metrics):
    return ReleasePromoter(
        settings=settings,
        swarm_factory=lambda creds: swarm_backend,
        kubernetes_factory=lambda creds: kube_backend,
        metrics=metrics,
    )


@pytest.fixture
def credentials():
    return {
        DeployTargetKind.SWARM: SwarmCredentials("deploy@swarm.example"),
        DeployTargetKind.KUBERNETES: KubernetesCredentials(context="prod"),
    }
