"""
controller.py
-------------
Kopf-based Kubernetes operator that mirrors container image tags for the
``ImageMirror`` CRD.

Key responsibilities
~~~~~~~~~~~~~~~~~~~~
* Bootstrap the operator (load configuration, create the ImageMirror CRD if required).
* Turn every create / update / resume notification, and the periodic resync timer,
  into one full reconcile cycle (see ``slipway.reconciler``).
* Translate reconcile outcomes into kopf retry semantics: a failed cycle raises
  ``kopf.TemporaryError`` with the fixed retry delay.

Run with ``kopf run -m slipway.controller`` or ``python -m slipway``.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional

import kopf
import kubernetes
from kopf import OperatorSettings
from kubernetes.client import (
    ApiException,
    ApiextensionsV1Api,
    CoreV1Api,
    CustomObjectsApi,
)

from slipway.config import (
    ENSURE_CRD,
    IMAGEMIRROR_KIND,
    IMAGEMIRROR_PLURAL,
    RESYNC_INTERVAL_S,
    SLIPWAY_GROUP,
    SLIPWAY_VERSION,
)
from slipway.credentials import CredentialResolver
from slipway.reconciler import KubernetesResourceStore, Reconciler
from slipway.registry import RegistryTagSource
from slipway.resources import ResourceIdentity

logger = logging.getLogger(__name__)

# Set during startup; handlers never run before it.
RECONCILER: Optional[Reconciler] = None

# ---------------------------------------------------------------------------
# CRD definition -------------------------------------------------------------
# ---------------------------------------------------------------------------
IMAGEMIRROR_CRD_MANIFEST: dict = {
    "apiVersion": "apiextensions.k8s.io/v1",
    "kind": "CustomResourceDefinition",
    "metadata": {"name": f"{IMAGEMIRROR_PLURAL}.{SLIPWAY_GROUP}"},
    "spec": {
        "group": SLIPWAY_GROUP,
        "scope": "Namespaced",
        "names": {
            "plural": IMAGEMIRROR_PLURAL,
            "singular": "imagemirror",
            "kind": IMAGEMIRROR_KIND,
            "listKind": f"{IMAGEMIRROR_KIND}List",
            "shortNames": ["im"],
        },
        "versions": [
            {
                "name": SLIPWAY_VERSION,
                "served": True,
                "storage": True,
                "schema": {
                    "openAPIV3Schema": {
                        "type": "object",
                        "properties": {
                            "spec": {
                                "type": "object",
                                "properties": {
                                    "source_repository": {
                                        "type": "string",
                                        "description": "Registry host and organization to pull from, e.g. docker.io/dwat/.",
                                    },
                                    "dest_repository": {
                                        "type": "string",
                                        "description": "Registry host and organization to push to.",
                                    },
                                    "image_name": {"type": "string", "description": "Image name without tag."},
                                    "tag_regex": {
                                        "type": "string",
                                        "description": "Regular expression selecting the tags to mirror. Empty selects nothing.",
                                    },
                                    "source_secret_name": {"type": "string"},
                                    "dest_secret_name": {"type": "string"},
                                },
                                "required": [
                                    "source_repository",
                                    "dest_repository",
                                    "image_name",
                                    "source_secret_name",
                                    "dest_secret_name",
                                ],
                            },
                            "status": {
                                "type": "object",
                                "properties": {
                                    "mirrored_tags": {"type": "array", "items": {"type": "string"}},
                                },
                                # kopf keeps its handler progress here as well.
                                "x-kubernetes-preserve-unknown-fields": True,
                            },
                        },
                    }
                },
                "subresources": {"status": {}},
                "additionalPrinterColumns": [
                    {"name": "Image", "type": "string", "jsonPath": ".spec.image_name"},
                    {"name": "Pattern", "type": "string", "jsonPath": ".spec.tag_regex"},
                    {"name": "Age", "type": "date", "jsonPath": ".metadata.creationTimestamp"},
                ],
            }
        ],
    },
}

# ---------------------------------------------------------------------------
# Bootstrap helpers ----------------------------------------------------------
# ---------------------------------------------------------------------------

def _init_kubernetes_clients() -> tuple[CoreV1Api, CustomObjectsApi, ApiextensionsV1Api]:
    """Return (core_v1, custom_objects, apiext) after loading config."""
    try:
        kubernetes.config.load_kube_config()
        logger.info("Loaded kube-config from local file")
    except kubernetes.config.config_exception.ConfigException:
        try:
            kubernetes.config.load_incluster_config()
            logger.info("Loaded in-cluster kube-config")
        except kubernetes.config.config_exception.ConfigException as exc:
            logger.critical("Failed to load Kubernetes configuration: %s", exc)
            raise kopf.PermanentError("Cannot load Kubernetes config") from exc

    return CoreV1Api(), CustomObjectsApi(), ApiextensionsV1Api()


def ensure_crd(apiext: ApiextensionsV1Api) -> None:
    """Create the ImageMirror CRD unless it already exists."""
    try:
        apiext.create_custom_resource_definition(body=IMAGEMIRROR_CRD_MANIFEST)
        logger.info("ImageMirror CRD applied")
    except ApiException as exc:
        if exc.status == 409:  # already present
            logger.debug("ImageMirror CRD already present")
        elif exc.status == 429:
            raise kopf.TemporaryError("API busy, retrying", delay=10) from exc
        else:
            raise kopf.PermanentError(f"CRD creation failed: {exc.status} {exc.reason}") from exc


def build_reconciler(core_v1: CoreV1Api, custom_objects: CustomObjectsApi) -> Reconciler:
    return Reconciler(
        store=KubernetesResourceStore(custom_objects),
        resolver=CredentialResolver(core_v1),
        tag_source=RegistryTagSource(),
    )


def _reconciler() -> Reconciler:
    if RECONCILER is None:
        raise kopf.TemporaryError("Operator not initialised yet", delay=5)
    return RECONCILER


def run_cycle(namespace: str, name: str, logger: logging.Logger) -> None:
    """Run one reconcile cycle and map its outcome onto kopf."""
    identity = ResourceIdentity(namespace=namespace, name=name)
    # PersistError propagates as-is; kopf retries it with its default backoff.
    result = _reconciler().reconcile(identity, log=logger)
    if not result.found:
        return
    if result.error is not None:
        raise kopf.TemporaryError(
            f"ImageMirror {identity} failed in {result.phase.value}: {result.error}",
            delay=result.requeue_after,
        )
    if result.copied:
        logger.info("Mirrored %s for ImageMirror %s", ", ".join(result.copied), identity)

# ---------------------------------------------------------------------------
# Kopf handlers --------------------------------------------------------------
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure_kopf(settings: OperatorSettings, **_: Dict[str, object]) -> None:
    """Tune watch timeouts, build the reconciler and make sure the CRD exists."""
    global RECONCILER
    settings.watching.server_timeout = 210  # seconds
    logger.info("Kopf watch server_timeout set to %s", settings.watching.server_timeout)

    core_v1, custom_objects, apiext = _init_kubernetes_clients()
    if ENSURE_CRD:
        ensure_crd(apiext)
    RECONCILER = build_reconciler(core_v1, custom_objects)


@kopf.on.cleanup()
def close_clients(**_: Dict[str, object]) -> None:
    global RECONCILER
    if RECONCILER is not None:
        tag_source = RECONCILER.tag_source
        if isinstance(tag_source, RegistryTagSource):
            tag_source.close()
        RECONCILER = None
    logger.info("Registry clients closed")


@kopf.on.create(SLIPWAY_GROUP, SLIPWAY_VERSION, IMAGEMIRROR_PLURAL)
@kopf.on.update(SLIPWAY_GROUP, SLIPWAY_VERSION, IMAGEMIRROR_PLURAL)
@kopf.on.resume(SLIPWAY_GROUP, SLIPWAY_VERSION, IMAGEMIRROR_PLURAL)
def imagemirror_reconcile(namespace: str, name: str, logger: kopf.Logger, retry: int, **_: Dict[str, object]) -> None:
    """Reconcile an ImageMirror whenever it (or its spec) changes."""
    logger.info(f"Reconciling ImageMirror '{namespace}/{name}' (Attempt #{retry})")
    run_cycle(namespace, name, logger)


if RESYNC_INTERVAL_S > 0:

    @kopf.on.timer(
        SLIPWAY_GROUP,
        SLIPWAY_VERSION,
        IMAGEMIRROR_PLURAL,
        interval=RESYNC_INTERVAL_S,
        initial_delay=RESYNC_INTERVAL_S,
    )
    def imagemirror_resync(namespace: str, name: str, logger: kopf.Logger, **_: Dict[str, object]) -> None:
        """Periodic level-triggered resync, picking up new source tags."""
        logger.debug(f"Resyncing ImageMirror '{namespace}/{name}'")
        run_cycle(namespace, name, logger)


@kopf.on.delete(SLIPWAY_GROUP, SLIPWAY_VERSION, IMAGEMIRROR_PLURAL, optional=True)
def imagemirror_delete(namespace: str, name: str, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Nothing mirrored is ever removed; only forget the per-resource lock."""
    logger.info(f"ImageMirror '{namespace}/{name}' deleted; mirrored tags are left in place.")
    if RECONCILER is not None:
        RECONCILER.forget(ResourceIdentity(namespace=namespace, name=name))
