"""Entrypoint for the pgBackRest reconciler process."""

from __future__ import annotations

import argparse
import functools
import logging
import signal
import sys

import kopf
from kubernetes import client

from common import execute_in_pod, init_api_client

from .controller import BackrestController, install
from .events import EventRecorder
from .reconciler import Reconciler
from .settings import load_settings
from .store import KubeStore

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Reconcile pgBackRest resources of PostgresClusters")
    parser.add_argument(
        "-c",
        "--config",
        help="Path to YAML config file. Overrides APP_CONFIG and default /config/config.yaml.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Reconcile every cluster a single time and exit",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = load_settings(args.config)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='[%(levelname)s] %(message)s',
        stream=sys.stdout,
    )

    try:
        api_client = init_api_client()
    except Exception as exc:
        logger.error(f"Failed to load Kubernetes configuration: {exc}")
        sys.exit(3)

    store = KubeStore(api_client)
    recorder = EventRecorder(client.CoreV1Api(api_client), settings.component)
    pod_exec = functools.partial(execute_in_pod, api_client, timeout=settings.exec_timeout_seconds)
    reconciler = Reconciler(store, recorder, pod_exec, settings)
    controller = BackrestController(store, reconciler, settings)

    if args.once:
        signal.signal(signal.SIGTERM, lambda s, f: controller.stop_event.set())
        signal.signal(signal.SIGINT, lambda s, f: controller.stop_event.set())
        controller.run_once()
        return

    # kopf handles SIGTERM/SIGINT and calls the cleanup handler on shutdown
    install(controller)
    kopf.run(
        standalone=True,
        clusterwide=not settings.namespace,
        namespaces=[settings.namespace] if settings.namespace else [],
    )


if __name__ == "__main__":
    main()
