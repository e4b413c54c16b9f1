"""
Promotion data model

- ImageReference: immutable image identifier produced once per run
- PipelineRun / StageResult: ordered stage results of one run
- DeployTarget: desired vs observed image with a guarded state machine
- DeployOutcome: tagged result returned for each target
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.exceptions import InvalidImageReference, InvalidStateTransition

_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[A-Za-z0-9_+.-]+:[A-Fa-f0-9]{32,}$")
_REPO_RE = re.compile(r"^[a-z0-9]+(?:[._-]+[a-z0-9]+)*(?:/[a-z0-9]+(?:[._-]+[a-z0-9]+)*)*$")


@dataclass(frozen=True)
class ImageReference:
    """registry/repository[:tag][@digest]"""

    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None
    registry: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        ref = (reference or "").strip()
        if not ref:
            raise InvalidImageReference(reference, "empty reference")

        digest = None
        if "@" in ref:
            ref, digest = ref.split("@", 1)
            if not _DIGEST_RE.match(digest):
                raise InvalidImageReference(reference, f"bad digest {digest!r}")

        tag = None
        last = ref.rsplit("/", 1)[-1]
        if ":" in last:
            ref, tag = ref.rsplit(":", 1)
            if not _TAG_RE.match(tag):
                raise InvalidImageReference(reference, f"bad tag {tag!r}")

        registry = None
        parts = ref.split("/", 1)
        if len(parts) == 2 and (
            "." in parts[0] or ":" in parts[0] or parts[0] == "localhost"
        ):
            registry, ref = parts

        if not _REPO_RE.match(ref):
            raise InvalidImageReference(reference, f"bad repository {ref!r}")
        if tag is None and digest is None:
            raise InvalidImageReference(reference, "tag or digest required")

        return cls(repository=ref, tag=tag, digest=digest, registry=registry)

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repository}" if self.registry else self.repository
        if self.tag:
            name += f":{self.tag}"
        if self.digest:
            name += f"@{self.digest}"
        return name


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    MANUAL = "manual"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    MANUAL = "manual"


class DeployTargetKind(str, Enum):
    SWARM = "swarm"
    KUBERNETES = "kubernetes"


class TargetState(str, Enum):
    PENDING = "pending"
    UPDATING = "updating"
    CONVERGED = "converged"
    ROLLOUT_TIMEOUT = "rollout_timeout"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (TargetState.PENDING, TargetState.UPDATING)


_TRANSITIONS = {
    TargetState.PENDING: {TargetState.UPDATING, TargetState.SKIPPED, TargetState.FAILED},
    TargetState.UPDATING: {
        TargetState.CONVERGED,
        TargetState.ROLLOUT_TIMEOUT,
        TargetState.FAILED,
    },
}


class DeployAction(str, Enum):
    UPDATED = "updated"
    CREATED = "created"
    APPLIED = "applied"
    NONE = "none"


@dataclass
class DeployTarget:
    """One reconciliation attempt: owns desired/observed image for a target"""

    kind: DeployTargetKind
    name: str
    desired: Optional[ImageReference] = None
    observed: Optional[str] = None
    state: TargetState = TargetState.PENDING
    history: List[TargetState] = field(default_factory=lambda: [TargetState.PENDING])

    def transition(self, new_state: TargetState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise InvalidStateTransition(self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    @property
    def converged(self) -> bool:
        return self.desired is not None and self.observed == str(self.desired)


@dataclass
class DeployOutcome:
    """Tagged result of promoting one image to one target"""

    target: DeployTargetKind
    state: TargetState
    image: str
    action: DeployAction = DeployAction.NONE
    environment_url: str = ""
    attempts: int = 0
    error_code: Optional[str] = None
    message: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state in (TargetState.CONVERGED, TargetState.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.value,
            "state": self.state.value,
            "image": self.image,
            "action": self.action.value,
            "environment_url": self.environment_url,
            "attempts": self.attempts,
            "error_code": self.error_code,
            "message": self.message,
            "duration": self.duration,
        }


@dataclass(frozen=True)
class SwarmCredentials:
    ssh_endpoint: str  # user@host[:port]


@dataclass(frozen=True)
class KubernetesCredentials:
    context: Optional[str] = None
    kubeconfig_path: Optional[str] = None


@dataclass
class StageResult:
    name: str
    status: StageStatus = StageStatus.PENDING
    duration: float = 0.0
    logs: List[str] = field(default_factory=list)
    artifacts: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineRun:
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    commit_ref: str = ""
    branch: str = ""
    stages: List[StageResult] = field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    image: Optional[ImageReference] = None
    tested_image: Optional[ImageReference] = None
    outcomes: Dict[DeployTargetKind, DeployOutcome] = field(default_factory=dict)
    aborted: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    def stage(self, name: str) -> Optional[StageResult]:
        return next((s for s in self.stages if s.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "commit_ref": self.commit_ref,
            "branch": self.branch,
            "status": self.status.value,
            "image": str(self.image) if self.image else None,
            "tested_image": str(self.tested_image) if self.tested_image else None,
            "aborted": self.aborted,
            "created_at": self.created_at.isoformat(),
            "stages": [
                {"name": s.name, "status": s.status.value, "duration": s.duration}
                for s in self.stages
            ],
            "outcomes": {k.value: v.to_dict() for k, v in self.outcomes.items()},
        }
