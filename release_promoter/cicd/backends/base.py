"""Backend contracts for the two deploy targets"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


@dataclass
class RolloutStatus:
    converged: bool
    message: str = ""
    desired: int = 0
    updated: int = 0
    available: int = 0


class SwarmBackend(Protocol):
    def update_service(self, name: str, image: str) -> bool:
        """Point an existing service at ``image``. Returns False if the service is absent."""

    def create_service(self, name: str, image: str) -> None:
        ...

    def service_image(self, name: str) -> Optional[str]:
        ...


class KubernetesBackend(Protocol):
    def apply_manifest(self, documents: List[Dict[str, Any]]) -> bool:
        """Create or patch every document. Returns True if anything changed."""

    def set_image(self, deployment: str, container: str, image: str) -> None:
        ...

    def rollout_status(self, deployment: str) -> RolloutStatus:
        ...
