"""
Kubernetes manifest rendering

Builds the Deployment + Service (+ Ingress when a host is configured) for the
web application, or loads a user supplied YAML file and pins its image.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..core.config import Settings
from ..core.exceptions import ManifestError
from .models import ImageReference

IMAGE_PLACEHOLDER = "${IMAGE}"


def default_documents(settings: Settings, image: ImageReference) -> List[Dict[str, Any]]:
    labels = {"app": settings.deployment_name}
    documents: List[Dict[str, Any]] = [
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": settings.deployment_name, "labels": labels},
            "spec": {
                "replicas": settings.kubernetes_replicas,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "containers": [
                            {
                                "name": settings.container_name,
                                "image": str(image),
                                "ports": [{"containerPort": settings.container_port}],
                            }
                        ]
                    },
                },
            },
        },
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": settings.deployment_name, "labels": labels},
            "spec": {
                "selector": labels,
                "ports": [{"port": 80, "targetPort": settings.container_port}],
            },
        },
    ]

    if settings.ingress_host:
        documents.append(
            {
                "apiVersion": "networking.k8s.io/v1",
                "kind": "Ingress",
                "metadata": {"name": settings.deployment_name, "labels": labels},
                "spec": {
                    "rules": [
                        {
                            "host": settings.ingress_host,
                            "http": {
                                "paths": [
                                    {
                                        "path": "/",
                                        "pathType": "Prefix",
                                        "backend": {
                                            "service": {
                                                "name": settings.deployment_name,
                                                "port": {"number": 80},
                                            }
                                        },
                                    }
                                ]
                            },
                        }
                    ]
                },
            }
        )
    return documents


def load_documents(path: str, image: ImageReference) -> List[Dict[str, Any]]:
    """Load a multi-document YAML file, substituting ${IMAGE}"""
    manifest_file = Path(path)
    if not manifest_file.exists():
        raise ManifestError(f"Manifest file not found: {path}")

    text = manifest_file.read_text(encoding="utf-8").replace(IMAGE_PLACEHOLDER, str(image))
    try:
        documents = [d for d in yaml.safe_load_all(text) if d]
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}", str(e)) from e

    for doc in documents:
        if not isinstance(doc, dict) or "kind" not in doc:
            raise ManifestError(f"Manifest {path} contains a document without kind")
    return documents


def pin_image(
    documents: List[Dict[str, Any]], deployment: str, container: str, image: ImageReference
) -> None:
    """Set the image of ``container`` in ``deployment`` in place"""
    for doc in documents:
        if doc.get("kind") != "Deployment" or doc.get("metadata", {}).get("name") != deployment:
            continue
        containers = (
            doc.get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []
        )
        for c in containers:
            if c.get("name") == container:
                c["image"] = str(image)
                return
    raise ManifestError(f"No container {container!r} in deployment {deployment!r}")


def render_manifest(
    settings: Settings, image: ImageReference, path: Optional[str] = None
) -> List[Dict[str, Any]]:
    manifest_path = path or settings.manifest_path
    if manifest_path:
        documents = load_documents(manifest_path, image)
    else:
        documents = default_documents(settings, image)
    pin_image(documents, settings.deployment_name, settings.container_name, image)
    return documents


def dump_manifest(documents: List[Dict[str, Any]]) -> str:
    return yaml.safe_dump_all(documents, sort_keys=False)
