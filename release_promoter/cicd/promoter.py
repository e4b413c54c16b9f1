"""
Release Promoter

Converges each eligible deploy target to one tested, immutable image.

- Swarm: upsert (update the service, create it only when it does not exist)
- Kubernetes: manual approval -> idempotent apply -> image patch -> rollout wait
- Transient network errors retried with bounded exponential backoff;
  auth failures and rollout timeouts are surfaced without retry
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..core.async_utils import retry_async, run_blocking
from ..core.config import Settings, get_settings
from ..core.exceptions import (
    ApprovalError,
    ApprovalRequired,
    AuthFailure,
    ErrorCode,
    PromoterException,
    RolloutTimeout,
    StageOrderError,
    TransientNetworkError,
)
from ..core.logging import get_logger
from ..monitoring.metrics import MetricsCollector
from .backends.base import KubernetesBackend, RolloutStatus, SwarmBackend
from .gates import ApprovalGate, EnvironmentGate, GateDecision
from .manifest import render_manifest
from .models import (
    DeployAction,
    DeployOutcome,
    DeployTarget,
    DeployTargetKind,
    ImageReference,
    KubernetesCredentials,
    PipelineRun,
    SwarmCredentials,
    TargetState,
)
from .notifications import NotificationManager

logger = get_logger(__name__)

Credentials = Union[SwarmCredentials, KubernetesCredentials]
SwarmFactory = Callable[[SwarmCredentials], SwarmBackend]
KubernetesFactory = Callable[[KubernetesCredentials], KubernetesBackend]


def image_matches(desired: ImageReference, observed: Optional[str]) -> bool:
    """Swarm pins the resolved digest onto the tag, so accept tag@digest too"""
    if not observed:
        return False
    wanted = str(desired)
    return observed == wanted or (desired.digest is None and observed.startswith(wanted + "@"))


def _default_swarm_factory(settings: Settings) -> SwarmFactory:
    def factory(credentials: SwarmCredentials) -> SwarmBackend:
        from .backends.swarm import DockerSwarmBackend

        if not credentials.ssh_endpoint:
            raise AuthFailure("swarm", "no SSH endpoint configured")
        return DockerSwarmBackend(
            ssh_endpoint=credentials.ssh_endpoint,
            replicas=settings.swarm_replicas,
            published_port=settings.swarm_published_port,
            target_port=settings.container_port,
        )

    return factory


def _default_kubernetes_factory(settings: Settings) -> KubernetesFactory:
    def factory(credentials: KubernetesCredentials) -> KubernetesBackend:
        from .backends.kubernetes import KubeClusterBackend

        return KubeClusterBackend(
            namespace=settings.namespace,
            context=credentials.context,
            kubeconfig_path=credentials.kubeconfig_path,
            request_timeout=settings.request_timeout,
        )

    return factory


class ReleasePromoter:
    """Promotes one image to the Swarm and Kubernetes targets"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gate: Optional[EnvironmentGate] = None,
        swarm_factory: Optional[SwarmFactory] = None,
        kubernetes_factory: Optional[KubernetesFactory] = None,
        metrics: Optional[MetricsCollector] = None,
        notifier: Optional[NotificationManager] = None,
    ):
        self.settings = settings or get_settings()
        self.gate = gate or EnvironmentGate.from_settings(self.settings)
        self.swarm_factory = swarm_factory or _default_swarm_factory(self.settings)
        self.kubernetes_factory = kubernetes_factory or _default_kubernetes_factory(self.settings)
        self.metrics = metrics
        self.notifier = notifier

    # --- public API ---

    async def promote(
        self,
        image_ref: Union[ImageReference, str],
        branch: str,
        target: DeployTargetKind,
        credentials: Optional[Credentials] = None,
        approval: Optional[ApprovalGate] = None,
        run: Optional[PipelineRun] = None,
        manifest: Optional[List[Dict[str, Any]]] = None,
    ) -> DeployOutcome:
        image = image_ref if isinstance(image_ref, ImageReference) else ImageReference.parse(image_ref)
        target = DeployTargetKind(target)

        if run is not None and run.tested_image != image:
            raise StageOrderError(
                f"{image} has not passed the test stage of run {run.id}",
                f"tested image: {run.tested_image}",
            )

        decision = self.gate.evaluate(target, branch)
        if decision == GateDecision.SKIP:
            message = f"branch {branch!r} is not the release branch {self.gate.release_branch!r}"
            logger.info(f"Skipping {target.value}: {message}")
            deploy_target = self._new_target(target, image)
            deploy_target.transition(TargetState.SKIPPED)
            return await self._finish(deploy_target, DeployOutcome(
                target=target,
                state=TargetState.SKIPPED,
                image=str(image),
                message=message,
            ), notify=False)

        deploy_target = self._new_target(target, image)
        try:
            self._check_credentials(target, credentials)
        except AuthFailure as e:
            deploy_target.transition(TargetState.FAILED)
            return await self._finish(deploy_target, self._error_outcome(deploy_target, e, 0, 0.0))

        if decision == GateDecision.REQUIRE_APPROVAL:
            try:
                approver = await self._await_approval(target, image, approval)
            except ApprovalError as e:
                deploy_target.transition(TargetState.FAILED)
                return await self._finish(deploy_target, self._error_outcome(deploy_target, e, 0, 0.0))
            logger.info(f"{target.value} deploy of {image} approved by {approver}")

        return await self._reconcile(deploy_target, credentials, manifest)

    async def promote_all(
        self,
        image_ref: Union[ImageReference, str],
        branch: str,
        credentials: Mapping[DeployTargetKind, Credentials],
        approvals: Optional[Mapping[DeployTargetKind, ApprovalGate]] = None,
        run: Optional[PipelineRun] = None,
        targets: Optional[List[DeployTargetKind]] = None,
    ) -> Dict[DeployTargetKind, DeployOutcome]:
        """Promote to several targets concurrently; targets share no state"""
        targets = targets or [DeployTargetKind.SWARM, DeployTargetKind.KUBERNETES]
        tasks = [
            asyncio.create_task(
                self.promote(
                    image_ref,
                    branch,
                    kind,
                    credentials=credentials.get(kind),
                    approval=(approvals or {}).get(kind),
                    run=run,
                )
            )
            for kind in targets
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except Exception:
            # gather leaves the other promotions running on failure
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return dict(zip(targets, outcomes))

    # --- internals ---

    def _new_target(self, kind: DeployTargetKind, image: ImageReference) -> DeployTarget:
        name = (
            self.settings.swarm_service_name
            if kind == DeployTargetKind.SWARM
            else self.settings.deployment_name
        )
        return DeployTarget(kind=kind, name=name, desired=image)

    @staticmethod
    def _check_credentials(kind: DeployTargetKind, credentials: Optional[Credentials]) -> None:
        expected = SwarmCredentials if kind == DeployTargetKind.SWARM else KubernetesCredentials
        if not isinstance(credentials, expected):
            raise AuthFailure(
                kind.value, f"expected {expected.__name__}, got {type(credentials).__name__}"
            )

    def environment_url(self, kind: DeployTargetKind) -> str:
        if kind == DeployTargetKind.SWARM:
            return self.settings.swarm_environment_url
        if self.settings.kubernetes_environment_url:
            return self.settings.kubernetes_environment_url
        if self.settings.ingress_host:
            return f"http://{self.settings.ingress_host}"
        return ""

    async def _await_approval(
        self,
        kind: DeployTargetKind,
        image: ImageReference,
        approval: Optional[ApprovalGate],
    ) -> str:
        if approval is None:
            raise ApprovalRequired(kind.value)

        if approval.is_pending:
            logger.info(f"{kind.value} deploy of {image} waiting for approval")
            await self._notify("notify_approval_pending", kind.value, str(image))

        started = time.monotonic()
        if self.metrics:
            self.metrics.pending_approvals.inc()
        try:
            return await approval.wait(timeout=self.settings.approval_timeout)
        finally:
            if self.metrics:
                self.metrics.pending_approvals.dec()
                self.metrics.record_approval_wait(kind.value, time.monotonic() - started)

    async def _reconcile(
        self,
        deploy_target: DeployTarget,
        credentials: Credentials,
        manifest: Optional[List[Dict[str, Any]]],
    ) -> DeployOutcome:
        kind = deploy_target.kind
        image = deploy_target.desired
        started = time.monotonic()
        attempts = {"count": 0}

        deploy_target.transition(TargetState.UPDATING)
        await self._notify("notify_deployment_start", kind.value, str(image))

        backend = None
        try:
            if kind == DeployTargetKind.SWARM:
                backend = self.swarm_factory(credentials)
                action = await self._reconcile_swarm(backend, deploy_target, attempts)
            else:
                backend = self.kubernetes_factory(credentials)
                action = await self._reconcile_kubernetes(backend, deploy_target, manifest, attempts)
        except RolloutTimeout as e:
            # reported for manual remediation, never retried
            deploy_target.transition(TargetState.ROLLOUT_TIMEOUT)
            outcome = self._error_outcome(
                deploy_target, e, attempts["count"], time.monotonic() - started
            )
            return await self._finish(deploy_target, outcome)
        except PromoterException as e:
            deploy_target.transition(TargetState.FAILED)
            outcome = self._error_outcome(
                deploy_target, e, attempts["count"], time.monotonic() - started
            )
            return await self._finish(deploy_target, outcome)
        except Exception:
            deploy_target.transition(TargetState.FAILED)
            logger.exception(f"Unexpected error promoting {image} to {kind.value}")
            raise
        finally:
            close = getattr(backend, "close", None)
            if callable(close):
                close()

        deploy_target.transition(TargetState.CONVERGED)
        outcome = DeployOutcome(
            target=kind,
            state=TargetState.CONVERGED,
            image=str(image),
            action=action,
            environment_url=self.environment_url(kind),
            attempts=attempts["count"],
            message=f"{deploy_target.name} running {deploy_target.observed}",
            duration=round(time.monotonic() - started, 3),
        )
        return await self._finish(deploy_target, outcome)

    async def _with_retry(self, kind: DeployTargetKind, operation: str, func, *args, counter=None):
        async def attempt():
            if counter is not None:
                counter["count"] += 1
            return await run_blocking(func, *args)

        def on_retry(attempt_no: int, error: BaseException) -> None:
            logger.warning(f"{kind.value} {operation} attempt {attempt_no} failed: {error}")
            if self.metrics:
                self.metrics.record_retry(kind.value, operation)

        return await retry_async(
            attempt,
            max_attempts=self.settings.retry_attempts,
            delay=self.settings.retry_base_delay,
            backoff=self.settings.retry_backoff,
            exceptions=(TransientNetworkError,),
            on_retry=on_retry,
        )

    async def _reconcile_swarm(
        self, backend: SwarmBackend, deploy_target: DeployTarget, attempts: Dict[str, int]
    ) -> DeployAction:
        name = deploy_target.name
        image = str(deploy_target.desired)

        def upsert() -> DeployAction:
            if backend.update_service(name, image):
                return DeployAction.UPDATED
            backend.create_service(name, image)
            return DeployAction.CREATED

        action = await self._with_retry(
            DeployTargetKind.SWARM, "upsert", upsert, counter=attempts
        )
        logger.info(f"Swarm service {name} {action.value} with {image}")

        deploy_target.observed = await self._with_retry(
            DeployTargetKind.SWARM, "inspect", backend.service_image, name
        )
        if not image_matches(deploy_target.desired, deploy_target.observed):
            raise PromoterException(
                ErrorCode.DEPLOY_FAILED,
                f"Swarm service {name} reports {deploy_target.observed}, expected {image}",
            )
        return action

    async def _reconcile_kubernetes(
        self,
        backend: KubernetesBackend,
        deploy_target: DeployTarget,
        manifest: Optional[List[Dict[str, Any]]],
        attempts: Dict[str, int],
    ) -> DeployAction:
        image = deploy_target.desired
        documents = manifest if manifest is not None else render_manifest(self.settings, image)

        changed = await self._with_retry(
            DeployTargetKind.KUBERNETES, "apply", backend.apply_manifest, documents, counter=attempts
        )
        logger.info(f"Manifest applied ({'changed' if changed else 'unchanged'})")

        await self._with_retry(
            DeployTargetKind.KUBERNETES,
            "set_image",
            backend.set_image,
            deploy_target.name,
            self.settings.container_name,
            str(image),
        )

        status = await self.wait_for_rollout(backend, deploy_target.name)
        deploy_target.observed = str(image)
        logger.info(f"deployment/{deploy_target.name}: {status.message}")
        return DeployAction.APPLIED

    async def wait_for_rollout(
        self,
        backend: KubernetesBackend,
        deployment: str,
        timeout: Optional[float] = None,
    ) -> RolloutStatus:
        """Poll rollout status until converged; RolloutTimeout when the bound elapses

        Each poll is bounded by the remaining time, and the wait sleeps between
        polls, so cancelling the awaiting task stops it.
        """
        timeout = self.settings.rollout_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_message = "no status observed"

        while True:
            if self.metrics:
                self.metrics.record_rollout_poll(deployment)
            try:
                status = await asyncio.wait_for(
                    run_blocking(backend.rollout_status, deployment),
                    timeout=max(deadline - loop.time(), 0.001),
                )
            except asyncio.TimeoutError:
                raise RolloutTimeout(
                    deployment, timeout, f"status poll did not return; last: {last_message}"
                ) from None
            except TransientNetworkError as e:
                logger.warning(f"Rollout status poll for {deployment} failed: {e}")
            else:
                if status.converged:
                    return status
                last_message = status.message
                logger.debug(f"deployment/{deployment}: {status.message}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RolloutTimeout(deployment, timeout, last_message)
            await asyncio.sleep(min(self.settings.poll_interval, remaining))

    def _error_outcome(
        self,
        deploy_target: DeployTarget,
        error: PromoterException,
        attempts: int,
        duration: float,
    ) -> DeployOutcome:
        message = error.message
        if error.detail:
            message = f"{message}: {error.detail}"
        logger.error(f"{deploy_target.kind.value} promotion failed: {message}")
        return DeployOutcome(
            target=deploy_target.kind,
            state=deploy_target.state,
            image=str(deploy_target.desired),
            environment_url=self.environment_url(deploy_target.kind),
            attempts=attempts,
            error_code=error.error_code.name,
            message=message,
            duration=round(duration, 3),
        )

    async def _finish(
        self, deploy_target: DeployTarget, outcome: DeployOutcome, notify: bool = True
    ) -> DeployOutcome:
        if self.metrics:
            self.metrics.record_promotion(outcome.target.value, outcome.state.value, outcome.duration)
        if notify and self.notifier:
            await run_blocking(self.notifier.notify_outcome, outcome)
        return outcome

    async def _notify(self, method: str, *args: Any) -> None:
        if self.notifier:
            await run_blocking(getattr(self.notifier, method), *args)
