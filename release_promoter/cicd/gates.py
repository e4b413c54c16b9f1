"""
Environment gates

- EnvironmentGate: branch / approval policy keyed by (target, branch)
- ApprovalGate: one-shot manual approval signal awaited by a deploy
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from ..core.config import Settings
from ..core.exceptions import ApprovalCancelled, ApprovalRejected, ApprovalTimeout
from ..core.logging import get_logger
from .models import DeployTargetKind

logger = get_logger(__name__)


class GateDecision(str, Enum):
    ALLOW = "allow"
    SKIP = "skip"
    REQUIRE_APPROVAL = "require_approval"


@dataclass
class EnvironmentGate:
    """Release-branch and manual-approval policy"""

    release_branch: str = "main"
    requires_approval: Dict[DeployTargetKind, bool] = field(
        default_factory=lambda: {
            DeployTargetKind.SWARM: False,
            DeployTargetKind.KUBERNETES: True,
        }
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "EnvironmentGate":
        return cls(
            release_branch=settings.release_branch,
            requires_approval={
                DeployTargetKind.SWARM: settings.swarm_requires_approval,
                DeployTargetKind.KUBERNETES: settings.kubernetes_requires_approval,
            },
        )

    def evaluate(self, target: DeployTargetKind, branch: str) -> GateDecision:
        if branch != self.release_branch:
            return GateDecision.SKIP
        if self.requires_approval.get(target, False):
            return GateDecision.REQUIRE_APPROVAL
        return GateDecision.ALLOW


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalGate:
    """Manual approval signal

    The first decision (approve, reject or cancel) wins; later calls are ignored
    and return False. ``wait`` blocks on an event and honours task cancellation.
    """

    def __init__(self, target: DeployTargetKind = DeployTargetKind.KUBERNETES):
        self.target = target
        self.decision = ApprovalDecision.PENDING
        self.approver: Optional[str] = None
        self.reason: str = ""
        self.decided_at: Optional[datetime] = None
        self._event = asyncio.Event()

    @property
    def is_pending(self) -> bool:
        return self.decision == ApprovalDecision.PENDING

    @property
    def is_approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED

    def _decide(self, decision: ApprovalDecision) -> bool:
        if not self.is_pending:
            logger.info(
                f"Ignoring {decision.value} for {self.target.value}: already {self.decision.value}"
            )
            return False
        self.decision = decision
        self.decided_at = datetime.now()
        self._event.set()
        return True

    def approve(self, approver: str = "anonymous") -> bool:
        if self.is_pending:
            self.approver = approver
        accepted = self._decide(ApprovalDecision.APPROVED)
        if accepted:
            logger.info(f"Deploy to {self.target.value} approved by {approver}")
        return accepted

    def reject(self, reason: str = "") -> bool:
        if self.is_pending:
            self.reason = reason
        return self._decide(ApprovalDecision.REJECTED)

    def cancel(self) -> bool:
        return self._decide(ApprovalDecision.CANCELLED)

    async def wait(self, timeout: Optional[float] = None) -> str:
        """Block until a decision arrives; returns the approver"""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ApprovalTimeout(timeout) from None

        if self.decision == ApprovalDecision.APPROVED:
            return self.approver or "anonymous"
        if self.decision == ApprovalDecision.REJECTED:
            raise ApprovalRejected(self.reason)
        raise ApprovalCancelled()

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "target": self.target.value,
            "decision": self.decision.value,
            "approver": self.approver,
            "reason": self.reason or None,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }
