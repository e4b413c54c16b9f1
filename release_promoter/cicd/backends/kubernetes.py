"""
Kubernetes backend

- Idempotent apply (create or strategic-merge patch, keyed by kind/name)
- Container image patch
- Rollout status with the same rules as `kubectl rollout status`
"""

import copy
import hashlib
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import urllib3
from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.client.rest import ApiException

from ...core.exceptions import (
    AuthFailure,
    DeployError,
    ManifestError,
    PromoterException,
    TransientNetworkError,
)
from ...core.logging import get_logger
from .base import RolloutStatus

logger = get_logger(__name__)

TARGET = "kubernetes"
APPLIED_HASH_ANNOTATION = "release-promoter/applied-hash"


def _translate(error: Exception) -> Exception:
    if isinstance(error, PromoterException):
        return error
    if isinstance(error, ApiException):
        status = error.status or 0
        if status in (401, 403):
            return AuthFailure(TARGET, error.reason)
        if status == 0 or status >= 500 or status in (408, 429):
            return TransientNetworkError(TARGET, f"{status} {error.reason}")
        return DeployError(message=f"Kubernetes API error {status}", detail=str(error.body))
    if isinstance(error, (urllib3.exceptions.HTTPError, OSError)):
        return TransientNetworkError(TARGET, str(error))
    return DeployError(message="Kubernetes operation failed", detail=repr(error))


def manifest_hash(document: Dict[str, Any]) -> str:
    """Stable hash of a document, ignoring our own annotation"""
    doc = copy.deepcopy(document)
    annotations = doc.get("metadata", {}).get("annotations") or {}
    annotations.pop(APPLIED_HASH_ANNOTATION, None)
    canonical = json.dumps(doc, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def _annotations(obj: Any) -> Dict[str, str]:
    metadata = getattr(obj, "metadata", None)
    return dict(getattr(metadata, "annotations", None) or {})


class KubeClusterBackend:
    """Deployment / Service / Ingress operations in one namespace"""

    def __init__(
        self,
        namespace: str = "default",
        context: Optional[str] = None,
        kubeconfig_path: Optional[str] = None,
        api_client: Optional[k8s_client.ApiClient] = None,
        request_timeout: Optional[float] = 10.0,
    ):
        self.namespace = namespace
        self.request_timeout = request_timeout
        self.context = context
        self.kubeconfig_path = kubeconfig_path
        self._api_client = api_client

    @property
    def api_client(self) -> k8s_client.ApiClient:
        if self._api_client is None:
            try:
                self._api_client = k8s_config.new_client_from_config(
                    config_file=self.kubeconfig_path, context=self.context
                )
            except k8s_config.ConfigException as e:
                raise AuthFailure(TARGET, f"kubeconfig: {e}") from e
        return self._api_client

    def _operations(self, kind: str) -> Tuple[Callable, Callable, Callable]:
        if kind == "Deployment":
            api = k8s_client.AppsV1Api(self.api_client)
            return (
                api.read_namespaced_deployment,
                api.create_namespaced_deployment,
                api.patch_namespaced_deployment,
            )
        if kind == "Service":
            api = k8s_client.CoreV1Api(self.api_client)
            return (
                api.read_namespaced_service,
                api.create_namespaced_service,
                api.patch_namespaced_service,
            )
        if kind == "Ingress":
            api = k8s_client.NetworkingV1Api(self.api_client)
            return (
                api.read_namespaced_ingress,
                api.create_namespaced_ingress,
                api.patch_namespaced_ingress,
            )
        raise ManifestError(f"Unsupported manifest kind: {kind}")

    def _apply_one(self, document: Dict[str, Any]) -> bool:
        kind = document.get("kind", "")
        name = document.get("metadata", {}).get("name")
        if not name:
            raise ManifestError(f"{kind or 'document'} without metadata.name")
        read, create, patch = self._operations(kind)

        digest = manifest_hash(document)
        body = copy.deepcopy(document)
        body.setdefault("metadata", {}).setdefault("annotations", {})[
            APPLIED_HASH_ANNOTATION
        ] = digest

        try:
            live = read(name, self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise _translate(e) from e
            live = None
        except Exception as e:
            raise _translate(e) from e

        try:
            if live is None:
                create(self.namespace, body)
                logger.info(f"Created {kind}/{name}")
                return True
            if _annotations(live).get(APPLIED_HASH_ANNOTATION) == digest:
                logger.info(f"{kind}/{name} unchanged")
                return False
            patch(name, self.namespace, body)
            logger.info(f"Configured {kind}/{name}")
            return True
        except Exception as e:
            raise _translate(e) from e

    def apply_manifest(self, documents: List[Dict[str, Any]]) -> bool:
        changed = False
        for document in documents:
            changed = self._apply_one(document) or changed
        return changed

    def set_image(self, deployment: str, container: str, image: str) -> None:
        body = {"spec": {"template": {"spec": {"containers": [{"name": container, "image": image}]}}}}
        try:
            k8s_client.AppsV1Api(self.api_client).patch_namespaced_deployment(
                deployment, self.namespace, body
            )
        except PromoterException:
            raise
        except Exception as e:
            raise _translate(e) from e
        logger.info(f"deployment/{deployment} container {container} image set to {image}")

    def rollout_status(self, deployment: str) -> RolloutStatus:
        try:
            obj = k8s_client.AppsV1Api(self.api_client).read_namespaced_deployment_status(
                deployment, self.namespace, _request_timeout=self.request_timeout
            )
        except PromoterException:
            raise
        except Exception as e:
            raise _translate(e) from e
        return rollout_status_from(obj)

    def close(self) -> None:
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None


def rollout_status_from(obj: Any) -> RolloutStatus:
    """Evaluate a V1Deployment the way `kubectl rollout status` does"""
    generation = obj.metadata.generation or 0
    status = obj.status
    desired = obj.spec.replicas if obj.spec.replicas is not None else 1
    observed_generation = status.observed_generation or 0
    updated = status.updated_replicas or 0
    total = status.replicas or 0
    available = status.available_replicas or 0

    for condition in status.conditions or []:
        if condition.type == "Progressing" and condition.reason == "ProgressDeadlineExceeded":
            return RolloutStatus(
                False, f"progress deadline exceeded: {condition.message}", desired, updated, available
            )

    if observed_generation < generation:
        message = "waiting for deployment spec update to be observed"
    elif updated < desired:
        message = f"{updated} of {desired} updated replicas are available"
    elif total > updated:
        message = f"{total - updated} old replicas are pending termination"
    elif available < updated:
        message = f"{available} of {updated} updated replicas are available"
    else:
        return RolloutStatus(True, "successfully rolled out", desired, updated, available)
    return RolloutStatus(False, message, desired, updated, available)
