"""
Promoter settings

- Environment variable based (PROMOTER_ prefix)
- Pydantic type validation
- Per-environment overrides through a .env file
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment driven settings"""

    # Application
    app_env: str = "development"
    log_level: str = "INFO"

    # Gating
    release_branch: str = "main"
    swarm_requires_approval: bool = False
    kubernetes_requires_approval: bool = True
    approval_timeout: Optional[float] = None  # None = wait until approved/cancelled

    # Retry (transient network failures on upsert/apply)
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_backoff: float = 2.0

    # Rollout
    rollout_timeout: float = 300.0
    poll_interval: float = 2.0
    request_timeout: float = 10.0  # per Kubernetes status read

    # Swarm target
    ssh_endpoint: str = ""  # user@host[:port]
    swarm_service_name: str = "web"
    swarm_replicas: int = 1
    swarm_published_port: Optional[int] = 80
    swarm_environment_url: str = ""

    # Kubernetes target
    kube_context: Optional[str] = None
    kubeconfig_path: Optional[str] = None
    namespace: str = "default"
    deployment_name: str = "web"
    container_name: str = "web"
    container_port: int = 80
    kubernetes_replicas: int = 2
    manifest_path: Optional[str] = None
    ingress_host: Optional[str] = None
    kubernetes_environment_url: str = ""

    # Test stage
    test_command: str = ""

    # Notifications
    slack_token: Optional[str] = None
    slack_channel: str = "#deployments"
    webhook_url: Optional[str] = None

    # API server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance"""
    return Settings()
