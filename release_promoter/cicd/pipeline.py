"""
Release pipeline orchestration
- Strict stage order per run: build -> test -> deploy
- Both deploy targets promoted concurrently once the test stage succeeded
- Runs can be aborted; pending approvals and rollout waits are cancelled
"""

import asyncio
import inspect
import os
import subprocess
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from ..core.async_utils import run_blocking
from ..core.config import Settings, get_settings
from ..core.exceptions import ErrorCode
from ..core.logging import get_logger, set_run_id
from .gates import ApprovalGate, GateDecision
from .models import (
    DeployOutcome,
    DeployTargetKind,
    ImageReference,
    PipelineRun,
    RunStatus,
    StageResult,
    StageStatus,
    TargetState,
)
from .promoter import Credentials, ReleasePromoter

logger = get_logger(__name__)

BuildHook = Callable[[ImageReference], Union[ImageReference, None, Awaitable[Optional[ImageReference]]]]
TestHook = Callable[[ImageReference], Union[Any, Awaitable[Any]]]

DEPLOY_ORDER = [DeployTargetKind.SWARM, DeployTargetKind.KUBERNETES]


def _stage_status(outcome: DeployOutcome) -> StageStatus:
    if outcome.state == TargetState.CONVERGED:
        return StageStatus.SUCCESS
    if outcome.state == TargetState.SKIPPED:
        return StageStatus.SKIPPED
    if outcome.error_code == ErrorCode.APPROVAL_REQUIRED.name:
        return StageStatus.MANUAL
    return StageStatus.FAILED


async def _call_hook(hook: Callable, *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ReleasePipeline:
    """Pipeline run orchestrator"""

    def __init__(
        self,
        promoter: Optional[ReleasePromoter] = None,
        settings: Optional[Settings] = None,
        project_dir: str = ".",
    ):
        self.settings = settings or (promoter.settings if promoter else get_settings())
        self.promoter = promoter or ReleasePromoter(settings=self.settings)
        self.project_dir = project_dir
        self._runs: Dict[str, PipelineRun] = {}
        self._approvals: Dict[str, Dict[DeployTargetKind, ApprovalGate]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._current_run: Optional[PipelineRun] = None

    # --- run lifecycle ---

    def create_run(
        self,
        image: Union[ImageReference, str],
        branch: str,
        commit_ref: str = "",
        with_approvals: bool = True,
    ) -> PipelineRun:
        image = image if isinstance(image, ImageReference) else ImageReference.parse(image)
        run = PipelineRun(commit_ref=commit_ref, branch=branch, image=image)
        self._runs[run.id] = run
        if with_approvals:
            self._approvals[run.id] = {
                kind: ApprovalGate(kind)
                for kind in DEPLOY_ORDER
                if self.promoter.gate.evaluate(kind, branch) == GateDecision.REQUIRE_APPROVAL
            }
        return run

    async def run(
        self,
        image: Union[ImageReference, str],
        branch: str,
        credentials: Mapping[DeployTargetKind, Credentials],
        commit_ref: str = "",
        build: Optional[BuildHook] = None,
        test: Optional[TestHook] = None,
        approvals: Optional[Mapping[DeployTargetKind, ApprovalGate]] = None,
    ) -> PipelineRun:
        """Create and execute a run in the current task"""
        run = self.create_run(image, branch, commit_ref, with_approvals=False)
        if approvals:
            self._approvals[run.id] = dict(approvals)
        return await self.execute(run, credentials, build=build, test=test)

    def start(
        self,
        image: Union[ImageReference, str],
        branch: str,
        credentials: Mapping[DeployTargetKind, Credentials],
        commit_ref: str = "",
        build: Optional[BuildHook] = None,
        test: Optional[TestHook] = None,
    ) -> PipelineRun:
        """Create a run and execute it as a background task"""
        run = self.create_run(image, branch, commit_ref)
        task = asyncio.create_task(self.execute(run, credentials, build=build, test=test))
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))
        return run

    async def execute(
        self,
        run: PipelineRun,
        credentials: Mapping[DeployTargetKind, Credentials],
        build: Optional[BuildHook] = None,
        test: Optional[TestHook] = None,
    ) -> PipelineRun:
        set_run_id(run.id)
        self._current_run = run
        run.status = RunStatus.RUNNING
        logger.info(f"Run {run.id} started for {run.image} on {run.branch}")

        try:
            build_stage = await self._execute_stage(
                run, "build", lambda: self._build(run, build)
            )
            if build_stage.status != StageStatus.SUCCESS:
                return self._finalize(run, RunStatus.FAILED)

            test_stage = await self._execute_stage(
                run, "test", lambda: self._test(run, test)
            )
            if test_stage.status != StageStatus.SUCCESS:
                return self._finalize(run, RunStatus.FAILED)
            run.tested_image = run.image

            outcomes = await self.promoter.promote_all(
                run.tested_image,
                run.branch,
                credentials,
                approvals=self._approvals.get(run.id),
                run=run,
                targets=DEPLOY_ORDER,
            )
        except asyncio.CancelledError:
            run.aborted = True
            self._finalize(run, RunStatus.FAILED)
            logger.warning(f"Run {run.id} aborted")
            raise
        except Exception as e:
            logger.exception(f"Run {run.id} failed during deploy")
            run.stages.append(
                StageResult(name="deploy", status=StageStatus.FAILED, logs=[f"Unexpected error: {e!r}"])
            )
            return self._finalize(run, RunStatus.FAILED)

        for kind in DEPLOY_ORDER:
            outcome = outcomes[kind]
            run.outcomes[kind] = outcome
            run.stages.append(
                StageResult(
                    name=f"deploy_{kind.value}",
                    status=_stage_status(outcome),
                    duration=outcome.duration,
                    logs=[outcome.message] if outcome.message else [],
                    artifacts=outcome.to_dict(),
                )
            )

        statuses = [s.status for s in run.stages]
        if StageStatus.FAILED in statuses:
            return self._finalize(run, RunStatus.FAILED)
        if StageStatus.MANUAL in statuses:
            return self._finalize(run, RunStatus.MANUAL)
        return self._finalize(run, RunStatus.SUCCESS)

    def _finalize(self, run: PipelineRun, status: RunStatus) -> PipelineRun:
        run.status = status
        for gate in self._approvals.get(run.id, {}).values():
            gate.cancel()
        logger.info(f"Run {run.id} finished: {status.value}")
        return run

    async def _execute_stage(
        self, run: PipelineRun, name: str, fn: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> StageResult:
        stage = StageResult(name=name, status=StageStatus.RUNNING)
        run.stages.append(stage)
        start = time.monotonic()
        try:
            result = await fn()
            stage.status = StageStatus.SUCCESS
            stage.logs.append(f"Stage '{name}' completed successfully")
            if isinstance(result, dict):
                stage.artifacts.update(result)
        except asyncio.CancelledError:
            stage.status = StageStatus.FAILED
            stage.logs.append(f"Stage '{name}' aborted")
            raise
        except Exception as e:
            stage.status = StageStatus.FAILED
            stage.logs.append(f"Stage '{name}' failed: {e}")
            logger.error(f"Stage '{name}' of run {run.id} failed: {e}")
        finally:
            stage.duration = round(time.monotonic() - start, 2)
        return stage

    async def _build(self, run: PipelineRun, build: Optional[BuildHook]) -> Dict[str, Any]:
        if build is not None:
            built = await _call_hook(build, run.image)
            if built is not None:
                run.image = built if isinstance(built, ImageReference) else ImageReference.parse(built)
        return {"image": str(run.image)}

    async def _test(self, run: PipelineRun, test: Optional[TestHook]) -> Dict[str, Any]:
        if test is not None:
            result = await _call_hook(test, run.image)
            if result is False:
                raise RuntimeError("test hook reported failure")
            return {"tested_image": str(run.image)}

        command = self.settings.test_command
        if not command:
            return {"tested_image": str(run.image), "test_output": "no test command configured"}

        result = await run_blocking(
            subprocess.run,
            command,
            shell=True,
            capture_output=True,
            text=True,
            cwd=self.project_dir,
            env={**os.environ, "IMAGE": str(run.image)},
        )
        if result.returncode != 0:
            raise RuntimeError(f"Tests failed:\n{result.stdout}\n{result.stderr}")
        return {"tested_image": str(run.image), "test_output": result.stdout}

    # --- signals ---

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def get_approval(
        self, run_id: str, target: DeployTargetKind = DeployTargetKind.KUBERNETES
    ) -> Optional[ApprovalGate]:
        return self._approvals.get(run_id, {}).get(target)

    def approve(
        self,
        run_id: str,
        approver: str,
        target: DeployTargetKind = DeployTargetKind.KUBERNETES,
    ) -> bool:
        gate = self.get_approval(run_id, target)
        return gate.approve(approver) if gate else False

    def reject(
        self,
        run_id: str,
        reason: str = "",
        target: DeployTargetKind = DeployTargetKind.KUBERNETES,
    ) -> bool:
        gate = self.get_approval(run_id, target)
        return gate.reject(reason) if gate else False

    def abort(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        if run is None:
            return False
        for gate in self._approvals.get(run_id, {}).values():
            gate.cancel()
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            task.cancel()
        run.aborted = run.aborted or run.status in (RunStatus.PENDING, RunStatus.RUNNING)
        return run.aborted

    async def wait(self, run_id: str) -> Optional[PipelineRun]:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        return self._runs.get(run_id)

    # --- status ---

    def get_pipeline_status(self) -> Dict[str, Any]:
        current = self._current_run.to_dict() if self._current_run else None
        return {"current_run": current, "total_runs": len(self._runs)}

    def get_run_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        runs = list(self._runs.values())[-limit:]
        return [
            {
                "id": r.id,
                "status": r.status.value,
                "commit_ref": r.commit_ref,
                "branch": r.branch,
                "image": str(r.image) if r.image else None,
                "created_at": r.created_at.isoformat(),
                "stages": len(r.stages),
            }
            for r in runs
        ]
