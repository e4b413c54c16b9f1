"""Release promoter tests"""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from release_promoter.cicd.gates import ApprovalGate
from release_promoter.cicd.models import (
    DeployAction,
    DeployTargetKind,
    ImageReference,
    KubernetesCredentials,
    PipelineRun,
    SwarmCredentials,
    TargetState,
)
from release_promoter.cicd.promoter import ReleasePromoter, image_matches
from release_promoter.core.exceptions import StageOrderError

from conftest import FakeKubernetesBackend, FakeSwarmBackend

IMAGE = "registry.example/app:v1"
SWARM = DeployTargetKind.SWARM
K8S = DeployTargetKind.KUBERNETES


class HangingKubernetesBackend(FakeKubernetesBackend):
    """Status reads block until released"""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def rollout_status(self, deployment):
        self.calls.append("rollout_status")
        self.release.wait(5)
        return super().rollout_status(deployment)


def approved(name="release-manager"):
    gate = ApprovalGate(K8S)
    gate.approve(name)
    return gate


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_main_branch_converges_both_targets(self, promoter, credentials, swarm_backend, kube_backend):
        outcomes = await promoter.promote_all(
            IMAGE, "main", credentials, approvals={K8S: approved()}
        )

        assert {k: o.state for k, o in outcomes.items()} == {
            SWARM: TargetState.CONVERGED,
            K8S: TargetState.CONVERGED,
        }
        assert swarm_backend.services["web"] == IMAGE
        assert kube_backend.images["web"] == IMAGE
        assert outcomes[SWARM].environment_url == "http://swarm.example"
        assert outcomes[K8S].environment_url == "http://k8s.example"

    @pytest.mark.asyncio
    async def test_feature_branch_skips_without_external_calls(self, settings, credentials):
        swarm_factory = MagicMock()
        kube_factory = MagicMock()
        promoter = ReleasePromoter(
            settings=settings, swarm_factory=swarm_factory, kubernetes_factory=kube_factory
        )

        outcomes = await promoter.promote_all(IMAGE, "feature-x", credentials)

        assert {k: o.state for k, o in outcomes.items()} == {
            SWARM: TargetState.SKIPPED,
            K8S: TargetState.SKIPPED,
        }
        swarm_factory.assert_not_called()
        kube_factory.assert_not_called()
        assert all(o.ok for o in outcomes.values())

    @pytest.mark.asyncio
    async def test_skip_does_not_need_credentials(self, promoter):
        outcome = await promoter.promote(IMAGE, "feature-x", SWARM)
        assert outcome.state == TargetState.SKIPPED
        assert "feature-x" in outcome.message


class TestSwarmUpsert:
    @pytest.mark.asyncio
    async def test_existing_service_is_updated_not_created(self, settings, credentials):
        backend = FakeSwarmBackend({"web": "registry.example/app:v0"})
        promoter = ReleasePromoter(settings=settings, swarm_factory=lambda c: backend)

        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])

        assert outcome.state == TargetState.CONVERGED
        assert outcome.action == DeployAction.UPDATED
        ops = [op for op, _ in backend.calls]
        assert ops.count("update") == 1
        assert "create" not in ops
        assert backend.services["web"] == IMAGE

    @pytest.mark.asyncio
    async def test_missing_service_is_created_after_update_attempt(self, promoter, credentials, swarm_backend):
        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])

        assert outcome.state == TargetState.CONVERGED
        assert outcome.action == DeployAction.CREATED
        ops = [op for op, _ in swarm_backend.calls]
        assert ops[:2] == ["update", "create"]
        assert ops.count("create") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("existing", [True, False])
    async def test_exactly_one_of_update_or_create(self, settings, credentials, existing):
        backend = FakeSwarmBackend({"web": "app:old"} if existing else {})
        promoter = ReleasePromoter(settings=settings, swarm_factory=lambda c: backend)

        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])

        effective = {DeployAction.UPDATED, DeployAction.CREATED}
        assert outcome.action in effective
        created = [op for op, _ in backend.calls].count("create")
        assert created == (0 if existing else 1)

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, promoter, credentials, swarm_backend, metrics):
        swarm_backend.transient_failures = 2

        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])

        assert outcome.state == TargetState.CONVERGED
        assert outcome.attempts == 3
        assert metrics.registry.get_sample_value(
            f"{metrics.app_name}_retries_total", {"target": "swarm", "operation": "upsert"}
        ) == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, promoter, credentials, swarm_backend):
        swarm_backend.transient_failures = 10

        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])

        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "TRANSIENT_NETWORK"
        assert outcome.attempts == 3
        assert [op for op, _ in swarm_backend.calls].count("update") == 3

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self, promoter, credentials, swarm_backend):
        swarm_backend.auth_fails = True

        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])

        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "AUTH_FAILURE"
        assert swarm_backend.calls == [("update", "web")]

    @pytest.mark.asyncio
    async def test_backend_closed_after_promote(self, promoter, credentials, swarm_backend):
        await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])
        assert swarm_backend.closed

    def test_image_matches_accepts_pinned_digest(self):
        ref = ImageReference.parse(IMAGE)
        assert image_matches(ref, IMAGE)
        assert image_matches(ref, IMAGE + "@sha256:" + "c" * 64)
        assert not image_matches(ref, "registry.example/app:v2")
        assert not image_matches(ref, None)


class TestKubernetesPromotion:
    @pytest.mark.asyncio
    async def test_apply_then_set_image_then_rollout(self, promoter, credentials, kube_backend):
        outcome = await promoter.promote(
            IMAGE, "main", K8S, credentials[K8S], approval=approved()
        )

        assert outcome.state == TargetState.CONVERGED
        assert outcome.action == DeployAction.APPLIED
        assert kube_backend.calls[:3] == ["apply", "set_image", "rollout_status"]

    @pytest.mark.asyncio
    async def test_repeated_promote_leaves_manifest_unchanged(self, promoter, credentials, kube_backend):
        await promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=approved())
        snapshot = dict(kube_backend.hashes)

        await promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=approved())

        assert kube_backend.hashes == snapshot

    @pytest.mark.asyncio
    async def test_no_deploy_before_approval(self, promoter, credentials, kube_backend):
        gate = ApprovalGate(K8S)
        task = asyncio.create_task(
            promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=gate)
        )
        await asyncio.sleep(0.05)

        assert not task.done()
        assert kube_backend.calls == []

        gate.approve("ops")
        outcome = await task
        assert outcome.state == TargetState.CONVERGED
        assert kube_backend.calls[0] == "apply"

    @pytest.mark.asyncio
    async def test_missing_approval_signal(self, promoter, credentials, kube_backend):
        outcome = await promoter.promote(IMAGE, "main", K8S, credentials[K8S])

        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "APPROVAL_REQUIRED"
        assert kube_backend.calls == []

    @pytest.mark.asyncio
    async def test_rejected_approval(self, promoter, credentials, kube_backend):
        gate = ApprovalGate(K8S)
        gate.reject("not today")

        outcome = await promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=gate)

        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "APPROVAL_REJECTED"
        assert kube_backend.calls == []

    @pytest.mark.asyncio
    async def test_approval_timeout(self, promoter, credentials, kube_backend):
        promoter.settings = promoter.settings.model_copy(update={"approval_timeout": 0.01})

        outcome = await promoter.promote(
            IMAGE, "main", K8S, credentials[K8S], approval=ApprovalGate(K8S)
        )

        assert outcome.error_code == "APPROVAL_TIMEOUT"
        assert kube_backend.calls == []

    @pytest.mark.asyncio
    async def test_pending_approval_is_cancellable(self, promoter, credentials, kube_backend, metrics):
        task = asyncio.create_task(
            promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=ApprovalGate(K8S))
        )
        await asyncio.sleep(0.01)
        assert metrics.registry.get_sample_value(f"{metrics.app_name}_pending_approvals") == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert kube_backend.calls == []
        assert metrics.registry.get_sample_value(f"{metrics.app_name}_pending_approvals") == 0

    @pytest.mark.asyncio
    async def test_rollout_timeout_is_not_retried(self, settings, credentials):
        backend = FakeKubernetesBackend(converge_after=None)
        promoter = ReleasePromoter(settings=settings, kubernetes_factory=lambda c: backend)

        outcome = await promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=approved())

        assert outcome.state == TargetState.ROLLOUT_TIMEOUT
        assert outcome.error_code == "ROLLOUT_TIMEOUT"
        assert backend.calls.count("apply") == 1
        assert backend.calls.count("set_image") == 1
        assert backend.polls > 1
        assert "updated replicas" in outcome.message

    @pytest.mark.asyncio
    async def test_rollout_waits_for_convergence(self, settings, credentials):
        backend = FakeKubernetesBackend(converge_after=4)
        promoter = ReleasePromoter(settings=settings, kubernetes_factory=lambda c: backend)

        outcome = await promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=approved())

        assert outcome.state == TargetState.CONVERGED
        assert backend.polls == 4

    @pytest.mark.asyncio
    async def test_hanging_status_poll_honours_timeout(self, settings, credentials):
        backend = HangingKubernetesBackend()
        promoter = ReleasePromoter(settings=settings, kubernetes_factory=lambda c: backend)
        loop = asyncio.get_running_loop()

        started = loop.time()
        try:
            outcome = await promoter.promote(
                IMAGE, "main", K8S, credentials[K8S], approval=approved()
            )
        finally:
            backend.release.set()

        assert outcome.state == TargetState.ROLLOUT_TIMEOUT
        assert loop.time() - started < 1.5
        assert "did not return" in outcome.message

    @pytest.mark.asyncio
    async def test_rollout_wait_is_cancellable(self, settings, credentials):
        backend = FakeKubernetesBackend(converge_after=None)
        settings = settings.model_copy(update={"rollout_timeout": 60.0})
        promoter = ReleasePromoter(settings=settings, kubernetes_factory=lambda c: backend)

        task = asyncio.create_task(
            promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=approved())
        )
        await wait_until(lambda: backend.polls >= 2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.02)
        polls = backend.polls
        await asyncio.sleep(0.05)
        assert backend.polls == polls
        assert backend.closed

    @pytest.mark.asyncio
    async def test_apply_transient_failure_retried(self, promoter, credentials, kube_backend):
        kube_backend.transient_failures = 1

        outcome = await promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=approved())

        assert outcome.state == TargetState.CONVERGED
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_apply_auth_failure(self, promoter, credentials, kube_backend):
        kube_backend.auth_fails = True

        outcome = await promoter.promote(IMAGE, "main", K8S, credentials[K8S], approval=approved())

        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "AUTH_FAILURE"
        assert kube_backend.calls == ["apply"]


class TestConcurrencyAndOrdering:
    @pytest.mark.asyncio
    async def test_swarm_proceeds_while_kubernetes_awaits_approval(
        self, promoter, credentials, swarm_backend, kube_backend
    ):
        gate = ApprovalGate(K8S)
        task = asyncio.create_task(
            promoter.promote_all(IMAGE, "main", credentials, approvals={K8S: gate})
        )

        await wait_until(lambda: swarm_backend.services.get("web") == IMAGE)
        assert kube_backend.calls == []

        gate.approve("ops")
        outcomes = await task
        assert outcomes[SWARM].state == TargetState.CONVERGED
        assert outcomes[K8S].state == TargetState.CONVERGED

    @pytest.mark.asyncio
    async def test_untested_image_is_refused(self, promoter, credentials, swarm_backend):
        run = PipelineRun(tested_image=ImageReference.parse("registry.example/app:v0"))

        with pytest.raises(StageOrderError):
            await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM], run=run)
        assert swarm_backend.calls == []

    @pytest.mark.asyncio
    async def test_tested_image_is_accepted(self, promoter, credentials):
        run = PipelineRun(tested_image=ImageReference.parse(IMAGE))
        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM], run=run)
        assert outcome.state == TargetState.CONVERGED

    @pytest.mark.asyncio
    async def test_wrong_credentials_type(self, promoter, swarm_backend):
        outcome = await promoter.promote(IMAGE, "main", SWARM, KubernetesCredentials(context="x"))

        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "AUTH_FAILURE"
        assert swarm_backend.calls == []

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_only_that_target(self, promoter, credentials, kube_backend):
        outcomes = await promoter.promote_all(
            IMAGE, "main", {SWARM: credentials[SWARM]}, approvals={K8S: approved()}
        )

        assert outcomes[SWARM].state == TargetState.CONVERGED
        assert outcomes[K8S].state == TargetState.FAILED
        assert outcomes[K8S].error_code == "AUTH_FAILURE"
        assert kube_backend.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_error_cancels_other_target(self, promoter, credentials, kube_backend):
        promoter.metrics = MagicMock()
        promoter.metrics.record_promotion.side_effect = RuntimeError("metrics registry closed")
        gate = ApprovalGate(K8S)

        with pytest.raises(RuntimeError, match="metrics registry closed"):
            await promoter.promote_all(IMAGE, "main", credentials, approvals={K8S: gate})

        gate.approve("ops")
        await asyncio.sleep(0.05)
        assert kube_backend.calls == []

    @pytest.mark.asyncio
    async def test_default_swarm_factory_requires_endpoint(self, settings):
        promoter = ReleasePromoter(settings=settings)
        outcome = await promoter.promote(IMAGE, "main", SWARM, SwarmCredentials(""))
        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "AUTH_FAILURE"


class TestReporting:
    @pytest.mark.asyncio
    async def test_metrics_recorded(self, promoter, credentials, metrics):
        await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])
        await promoter.promote(IMAGE, "feature-x", SWARM, credentials[SWARM])

        name = f"{metrics.app_name}_promotions_total"
        assert metrics.registry.get_sample_value(name, {"target": "swarm", "state": "converged"}) == 1
        assert metrics.registry.get_sample_value(name, {"target": "swarm", "state": "skipped"}) == 1

    @pytest.mark.asyncio
    async def test_notifier_receives_outcome(self, settings, credentials, swarm_backend):
        notifier = MagicMock()
        promoter = ReleasePromoter(
            settings=settings, swarm_factory=lambda c: swarm_backend, notifier=notifier
        )

        outcome = await promoter.promote(IMAGE, "main", SWARM, credentials[SWARM])

        notifier.notify_deployment_start.assert_called_once_with("swarm", IMAGE)
        notifier.notify_outcome.assert_called_once_with(outcome)
