"""
Docker Swarm backend

Talks to the swarm manager over SSH through the docker SDK and maps SDK
failures onto AuthFailure / TransientNetworkError.
"""

from typing import Optional

import docker
import paramiko
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.types import EndpointSpec, ServiceMode

from ...core.exceptions import AuthFailure, DeployError, PromoterException, TransientNetworkError
from ...core.logging import get_logger

logger = get_logger(__name__)

TARGET = "swarm"


def _translate(error: Exception) -> Exception:
    """Map a docker / transport error onto the promoter's error types"""
    if isinstance(error, PromoterException):
        return error
    if isinstance(error, APIError):
        status = error.status_code
        if status in (401, 403):
            return AuthFailure(TARGET, str(error))
        if status is None or status >= 500 or status in (408, 429):
            return TransientNetworkError(TARGET, str(error))
        return DeployError(message=f"Swarm API error {status}", detail=str(error))
    if isinstance(error, paramiko.AuthenticationException):
        return AuthFailure(TARGET, str(error))
    if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return TransientNetworkError(TARGET, str(error))
    if isinstance(error, (paramiko.SSHException, OSError, DockerException)):
        return TransientNetworkError(TARGET, str(error))
    return DeployError(message="Swarm operation failed", detail=repr(error))


class DockerSwarmBackend:
    """Swarm service operations on a remote manager node"""

    def __init__(
        self,
        ssh_endpoint: str,
        replicas: int = 1,
        published_port: Optional[int] = None,
        target_port: int = 80,
        use_ssh_client: bool = False,
        client: Optional[docker.DockerClient] = None,
    ):
        self.ssh_endpoint = ssh_endpoint
        self.replicas = replicas
        self.published_port = published_port
        self.target_port = target_port
        self.use_ssh_client = use_ssh_client
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            base_url = self.ssh_endpoint
            if not base_url.startswith("ssh://"):
                base_url = f"ssh://{base_url}"
            try:
                self._client = docker.DockerClient(
                    base_url=base_url, use_ssh_client=self.use_ssh_client
                )
            except Exception as e:
                raise _translate(e) from e
        return self._client

    def update_service(self, name: str, image: str) -> bool:
        try:
            service = self.client.services.get(name)
        except NotFound:
            return False
        except PromoterException:
            raise
        except Exception as e:
            raise _translate(e) from e

        try:
            service.update(image=image, fetch_current_spec=True)
        except NotFound:
            # removed between lookup and update
            return False
        except Exception as e:
            raise _translate(e) from e

        logger.info(f"Swarm service {name} updated to {image}")
        return True

    def create_service(self, name: str, image: str) -> None:
        kwargs = {
            "name": name,
            "mode": ServiceMode("replicated", replicas=self.replicas),
        }
        if self.published_port:
            kwargs["endpoint_spec"] = EndpointSpec(
                ports={self.published_port: self.target_port}
            )
        try:
            self.client.services.create(image, **kwargs)
        except PromoterException:
            raise
        except Exception as e:
            raise _translate(e) from e
        logger.info(f"Swarm service {name} created with {image}")

    def service_image(self, name: str) -> Optional[str]:
        try:
            service = self.client.services.get(name)
        except NotFound:
            return None
        except PromoterException:
            raise
        except Exception as e:
            raise _translate(e) from e
        return service.attrs["Spec"]["TaskTemplate"]["ContainerSpec"]["Image"]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
