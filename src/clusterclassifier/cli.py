from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

import yaml

from clusterclassifier import __version__ as CLASSIFIER_VERSION
from clusterclassifier.api.classifier import CLASSIFIER_KIND, Classifier
from clusterclassifier.config import ControllerConfig, ReportMode
from clusterclassifier.controllers.manager import Manager
from clusterclassifier.controllers.reconciler import ClassifierReconciler
from clusterclassifier.controllers.report_collection import select_report_strategy
from clusterclassifier.core.errors import ApiError
from clusterclassifier.core.fingerprint import fingerprint
from clusterclassifier.deployer import Deployer
from clusterclassifier.k8s.client import KubectlClient
from clusterclassifier.logsettings import configure_logging

logger = logging.getLogger("clusterclassifier.cli")


def _build_config(args: argparse.Namespace) -> ControllerConfig:
    """Flags win over environment variables."""
    config = ControllerConfig.from_env()
    if args.report_mode is not None:
        config.report_mode = ReportMode(args.report_mode)
    if args.control_plane_endpoint is not None:
        config.control_plane_endpoint = args.control_plane_endpoint
    if args.concurrent_reconciles is not None:
        config.concurrent_reconciles = args.concurrent_reconciles
    if args.worker_number is not None:
        config.worker_number = args.worker_number
    if args.v is not None:
        config.verbosity = args.v
    if args.resync_interval is not None:
        config.resync_interval = args.resync_interval
    if args.agent_manifest is not None:
        config.agent_manifest = args.agent_manifest
    return config.validate()


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = _build_config(args)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    agent_manifest = None
    if config.agent_manifest:
        try:
            agent_manifest = Path(config.agent_manifest).read_text(encoding="utf-8")
        except OSError as exc:
            print(f"ERROR: cannot read agent manifest: {exc}", file=sys.stderr)
            return 2

    configure_logging(config.verbosity)
    client = KubectlClient(config.kubectl)
    reports = select_report_strategy(config, agent_manifest)
    deployer = Deployer(client, config.worker_number)
    reconciler = ClassifierReconciler(client, deployer, reports)
    try:
        reconciler.initialize()
    except ApiError as exc:
        logger.error("failed to read classifiers: %s", exc)
        return 1

    manager = Manager(
        client,
        concurrent_reconciles=config.concurrent_reconciles,
        resync_interval=config.resync_interval,
    )
    reconciler.setup_with_manager(manager)

    stop_event = threading.Event()

    def _stop(signum, frame) -> None:
        logger.info("received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    logger.info("starting classifier controller (report mode %d)", int(config.report_mode))
    deployer.start()
    reports.start(client, stop_event)
    manager.start(stop_event)
    while not stop_event.wait(1.0):
        pass
    manager.stop()
    deployer.stop()
    return 0


def _load_classifier(path: str) -> Classifier:
    with open(path, "r", encoding="utf-8") as f:
        docs = [doc for doc in yaml.safe_load_all(f) if isinstance(doc, dict)]
    for doc in docs:
        if doc.get("kind") == CLASSIFIER_KIND:
            return Classifier.from_dict(doc)
    raise ValueError(f"no {CLASSIFIER_KIND} found in {path}")


def cmd_hash(args: argparse.Namespace) -> int:
    try:
        classifier = _load_classifier(args.policy)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    kubeconfig = None
    if args.credential:
        try:
            kubeconfig = Path(args.credential).read_bytes()
        except OSError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 2
    digest = fingerprint(classifier.spec, kubeconfig, args.control_plane_endpoint or "")
    print(digest.hex())
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    print(f"clusterclassifier {CLASSIFIER_VERSION}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="classifier")
    parser.add_argument("--version", action="version", version=f"clusterclassifier {CLASSIFIER_VERSION}")

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the classifier controller")
    run.add_argument("--v", type=int, default=None, help="Log verbosity (0 info, 5 debug, 10 verbose)")
    run.add_argument(
        "--report-mode",
        type=int,
        choices=[int(mode) for mode in ReportMode],
        default=None,
        help="0: collect reports from managed clusters, 1: agents send reports",
    )
    run.add_argument(
        "--control-plane-endpoint",
        default=None,
        help="Management cluster endpoint https://host:port (required with --report-mode 1)",
    )
    run.add_argument("--concurrent-reconciles", type=int, default=None, help="Reconcile workers (default 10)")
    run.add_argument("--worker-number", type=int, default=None, help="Deploy workers (default 20)")
    run.add_argument("--agent-manifest", default=None, help="Path to the classifier agent manifest")
    run.add_argument("--resync-interval", type=float, default=None, help="Seconds between API polls (default 10)")
    run.set_defaults(func=cmd_run)

    hash_cmd = sub.add_parser("hash", help="Print the fingerprint of a Classifier manifest")
    hash_cmd.add_argument("--policy", required=True, help="Path to a Classifier YAML manifest")
    hash_cmd.add_argument("--credential", default=None, help="Kubeconfig granted to the agent (push mode)")
    hash_cmd.add_argument("--control-plane-endpoint", default=None, help="Management endpoint (push mode)")
    hash_cmd.set_defaults(func=cmd_hash)

    version = sub.add_parser("version", help="Print version")
    version.set_defaults(func=cmd_version)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
