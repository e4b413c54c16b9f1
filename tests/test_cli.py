"""CLI tests"""

import json

import pytest
import yaml

from release_promoter import cli
from release_promoter.cicd.models import DeployOutcome, DeployTargetKind, TargetState
from release_promoter.cicd.promoter import ReleasePromoter

IMAGE = "registry.example/app:v1"


@pytest.fixture
def run_cli(settings, swarm_backend, kube_backend, metrics, monkeypatch, capsys):
    def make_promoter(settings, metrics=None, notifier=None):
        return ReleasePromoter(
            settings=settings,
            swarm_factory=lambda creds: swarm_backend,
            kubernetes_factory=lambda creds: kube_backend,
        )

    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "ReleasePromoter", make_promoter)

    def run(*argv):
        code = cli.main(list(argv))
        return code, capsys.readouterr().out

    return run


class TestPromoteCommand:
    def test_swarm(self, run_cli, swarm_backend):
        code, out = run_cli("promote", "--image", IMAGE, "--branch", "main", "--target", "swarm")

        assert code == cli.EXIT_OK
        assert json.loads(out)["swarm"]["state"] == "converged"
        assert swarm_backend.services["web"] == IMAGE

    def test_kubernetes_without_approval_is_manual(self, run_cli, kube_backend):
        code, out = run_cli("promote", "--image", IMAGE, "--branch", "main", "--target", "kubernetes")

        assert code == cli.EXIT_MANUAL
        assert json.loads(out)["kubernetes"]["error_code"] == "APPROVAL_REQUIRED"
        assert kube_backend.calls == []

    def test_all_with_approval(self, run_cli):
        code, out = run_cli("promote", "--image", IMAGE, "--branch", "main", "--approve-as", "ops")

        assert code == cli.EXIT_OK
        data = json.loads(out)
        assert data["swarm"]["state"] == "converged"
        assert data["kubernetes"]["state"] == "converged"

    def test_feature_branch(self, run_cli, swarm_backend):
        code, out = run_cli("promote", "--image", IMAGE, "--branch", "feature-x")

        assert code == cli.EXIT_OK
        assert {v["state"] for v in json.loads(out).values()} == {"skipped"}
        assert swarm_backend.calls == []

    def test_rollout_timeout(self, run_cli, kube_backend):
        kube_backend.converge_after = None
        code, _ = run_cli(
            "promote", "--image", IMAGE, "--branch", "main", "--target", "kubernetes",
            "--approve-as", "ops", "--rollout-timeout", "0.05",
        )
        assert code == cli.EXIT_ROLLOUT_TIMEOUT

    def test_auth_failure(self, run_cli, swarm_backend):
        swarm_backend.auth_fails = True
        code, _ = run_cli("promote", "--image", IMAGE, "--branch", "main", "--target", "swarm")
        assert code == cli.EXIT_FAILED

    def test_invalid_image(self, run_cli):
        code, out = run_cli("promote", "--image", "Bad Image", "--branch", "main")

        assert code == cli.EXIT_USAGE
        assert json.loads(out)["code"] == "INVALID_IMAGE_REFERENCE"


class TestRenderManifest:
    def test_render(self, run_cli):
        code, out = run_cli("render-manifest", "--image", IMAGE)

        assert code == cli.EXIT_OK
        docs = list(yaml.safe_load_all(out))
        assert docs[0]["kind"] == "Deployment"
        assert docs[0]["spec"]["template"]["spec"]["containers"][0]["image"] == IMAGE

    def test_missing_manifest(self, run_cli, tmp_path):
        code, _ = run_cli("render-manifest", "--image", IMAGE, "--manifest", str(tmp_path / "x.yaml"))
        assert code == cli.EXIT_USAGE


class TestExitCode:
    def outcome(self, state, error_code=None):
        return DeployOutcome(
            target=DeployTargetKind.SWARM, state=state, image=IMAGE, error_code=error_code
        )

    def test_precedence(self):
        converged = self.outcome(TargetState.CONVERGED)
        failed = self.outcome(TargetState.FAILED, "DEPLOY_FAILED")
        manual = self.outcome(TargetState.FAILED, "APPROVAL_REQUIRED")
        timeout = self.outcome(TargetState.ROLLOUT_TIMEOUT, "ROLLOUT_TIMEOUT")

        assert cli.exit_code([converged]) == cli.EXIT_OK
        assert cli.exit_code([converged, manual]) == cli.EXIT_MANUAL
        assert cli.exit_code([manual, failed]) == cli.EXIT_FAILED
        assert cli.exit_code([failed, timeout]) == cli.EXIT_ROLLOUT_TIMEOUT

    def test_missing_subcommand(self):
        with pytest.raises(SystemExit):
            cli.main([])
