"""
Command line entry point

Meant to be called from the deploy jobs of a CI pipeline:

    release-promoter promote --image $CI_REGISTRY_IMAGE:$CI_COMMIT_SHORT_SHA \
        --branch $CI_COMMIT_BRANCH --target swarm

A manual Kubernetes job passes --approve-as "$GITLAB_USER_LOGIN", since the
person starting the manual job is the approval signal.
"""

import argparse
import asyncio
import json
import sys
from typing import Dict, List, Optional

from .cicd.gates import ApprovalGate
from .cicd.manifest import dump_manifest, render_manifest
from .cicd.models import (
    DeployOutcome,
    DeployTargetKind,
    ImageReference,
    KubernetesCredentials,
    SwarmCredentials,
    TargetState,
)
from .cicd.notifications import NotificationChannel, NotificationManager
from .cicd.promoter import ReleasePromoter
from .core.config import Settings, get_settings
from .core.exceptions import ErrorCode, PromoterException
from .core.logging import get_logger
from .monitoring.metrics import get_metrics_collector

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLOUT_TIMEOUT = 2
EXIT_MANUAL = 3
EXIT_USAGE = 64


def exit_code(outcomes: List[DeployOutcome]) -> int:
    if any(o.state == TargetState.ROLLOUT_TIMEOUT for o in outcomes):
        return EXIT_ROLLOUT_TIMEOUT
    if any(o.state == TargetState.FAILED and o.error_code != ErrorCode.APPROVAL_REQUIRED.name
           for o in outcomes):
        return EXIT_FAILED
    if any(o.error_code == ErrorCode.APPROVAL_REQUIRED.name for o in outcomes):
        return EXIT_MANUAL
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="release-promoter",
        description="Promote a tested container image to Docker Swarm and Kubernetes",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    promote = sub.add_parser("promote", help="Deploy an image to one or both targets")
    promote.add_argument("--image", required=True, help="registry/repository:tag")
    promote.add_argument("--branch", required=True, help="Branch the image was built from")
    promote.add_argument(
        "--target",
        choices=["swarm", "kubernetes", "all"],
        default="all",
        help="Deploy target",
    )
    promote.add_argument("--approve-as", help="Approve gated targets on behalf of this user")
    promote.add_argument("--ssh-endpoint", help="Swarm manager, user@host[:port]")
    promote.add_argument("--kube-context", help="kubeconfig context")
    promote.add_argument("--kubeconfig", help="kubeconfig file")
    promote.add_argument("--manifest", help="Kubernetes YAML manifest (${IMAGE} is substituted)")
    promote.add_argument("--rollout-timeout", type=float, help="Seconds to wait for the rollout")

    render = sub.add_parser("render-manifest", help="Print the Kubernetes manifest for an image")
    render.add_argument("--image", required=True)
    render.add_argument("--manifest", help="Template YAML file")

    return parser


def _notifier(settings: Settings) -> NotificationManager:
    channels = [NotificationChannel.SLACK]
    if settings.webhook_url:
        channels.append(NotificationChannel.WEBHOOK)
    return NotificationManager(
        slack_token=settings.slack_token,
        slack_channel=settings.slack_channel,
        webhook_url=settings.webhook_url,
        channels=channels,
    )


async def _promote(args: argparse.Namespace, settings: Settings) -> List[DeployOutcome]:
    if args.rollout_timeout is not None:
        settings = settings.model_copy(update={"rollout_timeout": args.rollout_timeout})
    if args.manifest:
        settings = settings.model_copy(update={"manifest_path": args.manifest})

    promoter = ReleasePromoter(
        settings=settings,
        metrics=get_metrics_collector(),
        notifier=_notifier(settings),
    )

    targets = (
        [DeployTargetKind.SWARM, DeployTargetKind.KUBERNETES]
        if args.target == "all"
        else [DeployTargetKind(args.target)]
    )
    credentials = {
        DeployTargetKind.SWARM: SwarmCredentials(args.ssh_endpoint or settings.ssh_endpoint),
        DeployTargetKind.KUBERNETES: KubernetesCredentials(
            context=args.kube_context or settings.kube_context,
            kubeconfig_path=args.kubeconfig or settings.kubeconfig_path,
        ),
    }

    approvals: Dict[DeployTargetKind, ApprovalGate] = {}
    if args.approve_as:
        for kind in targets:
            gate = ApprovalGate(kind)
            gate.approve(args.approve_as)
            approvals[kind] = gate

    outcomes = await promoter.promote_all(
        args.image, args.branch, credentials, approvals=approvals, targets=targets
    )
    return list(outcomes.values())


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    try:
        if args.command == "render-manifest":
            image = ImageReference.parse(args.image)
            print(dump_manifest(render_manifest(settings, image, path=args.manifest)))
            return EXIT_OK

        outcomes = asyncio.run(_promote(args, settings))
    except PromoterException as e:
        logger.error(e.message)
        print(json.dumps(e.to_dict(), indent=2))
        return EXIT_USAGE

    print(json.dumps({o.target.value: o.to_dict() for o in outcomes}, indent=2))
    return exit_code(outcomes)


if __name__ == "__main__":
    sys.exit(main())
