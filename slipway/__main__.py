#!/usr/bin/env python3
"""Run the slipway operator standalone: ``python -m slipway``."""

import logging
import os
import socket
import sys

import kopf

from slipway.config import KOPF_PEERING, LOG_LEVEL, POD_NAME

# Importing registers the kopf handlers.
from slipway import controller  # noqa: F401


def configure_logging():
    """Configure logging with hostname and pod name for better traceability"""
    log_format = '%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s'

    hostname = socket.gethostname()
    pod_name = POD_NAME or "unknown"

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format=log_format,
        stream=sys.stdout
    )

    old_factory = logging.getLogRecordFactory()
    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = pod_name
        return record
    logging.setLogRecordFactory(record_factory)

    logging.info(f"Logging configured at {LOG_LEVEL} level")


def main():
    configure_logging()

    namespace = os.environ.get("KOPF_NAMESPACE")
    if namespace:
        logging.info(f"slipway operator watching ImageMirror resources in namespace {namespace}")
    else:
        logging.info("slipway operator watching ImageMirror resources across all namespaces")

    # Standalone: run a single replica. Per-resource serialization is in-process only.
    identity = POD_NAME or socket.gethostname()
    logging.info(f"Operator identity: {identity}")

    kopf.run(
        standalone=True,
        clusterwide=namespace is None,
        namespaces=[namespace] if namespace else (),
        peering_name=KOPF_PEERING,
        identity=identity,
        priority=0,
    )


if __name__ == "__main__":
    main()
