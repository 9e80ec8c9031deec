"""
reconciler.py
-------------
One reconcile cycle for one ``ImageMirror``::

    Idle -> Loading -> ResolvingCredentials -> Mirroring -> PersistingStatus -> Idle

Every change notification re-runs the whole cycle (level triggered). Any error
returns to Idle with a retry scheduled ``retry_delay`` seconds later, except a
resource that vanished while loading, which is a silent no-op.

Cycles of the same resource are serialized with a per-identity lock; the status
write is a read-modify-write of ``mirrored_tags`` and must not interleave.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Dict, FrozenSet, Iterable, Optional, Protocol, Tuple

from kubernetes.client import ApiException, CustomObjectsApi

from slipway.config import (
    IMAGEMIRROR_PLURAL,
    RECONCILE_TIMEOUT_S,
    RETRY_DELAY_S,
    SLIPWAY_GROUP,
    SLIPWAY_VERSION,
)
from slipway.credentials import CredentialResolver
from slipway.deadline import Deadline
from slipway.errors import (
    PersistError,
    ResourceLoadError,
    ResourceNotFoundError,
    SlipwayError,
)
from slipway.mirror import mirror_image
from slipway.registry import TagSource
from slipway.resources import MirrorResource, MirrorStatus, ResourceIdentity

logger = logging.getLogger(__name__)


class ReconcilePhase(str, Enum):
    """Where a reconcile cycle is (or stopped)."""

    IDLE = "Idle"
    LOADING = "Loading"
    RESOLVING_CREDENTIALS = "ResolvingCredentials"
    MIRRORING = "Mirroring"
    PERSISTING_STATUS = "PersistingStatus"


class ResourceStore(Protocol):
    def get(self, identity: ResourceIdentity) -> MirrorResource:
        """Return the resource or raise ``ResourceNotFoundError``."""
        ...

    def update_status(self, identity: ResourceIdentity, status: MirrorStatus) -> None:
        """Persist *status* or raise ``PersistError``."""
        ...


class KubernetesResourceStore:
    """``ResourceStore`` over the ImageMirror custom objects and their status subresource."""

    def __init__(self, custom_objects: CustomObjectsApi) -> None:
        self._api = custom_objects

    def get(self, identity: ResourceIdentity) -> MirrorResource:
        try:
            body = self._api.get_namespaced_custom_object(
                group=SLIPWAY_GROUP,
                version=SLIPWAY_VERSION,
                namespace=identity.namespace,
                plural=IMAGEMIRROR_PLURAL,
                name=identity.name,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise ResourceNotFoundError(f"ImageMirror {identity} not found") from exc
            raise ResourceLoadError(f"Failed to fetch ImageMirror {identity}: {exc.status} {exc.reason}") from exc
        return MirrorResource.from_manifest(body)

    def update_status(self, identity: ResourceIdentity, status: MirrorStatus) -> None:
        try:
            self._api.patch_namespaced_custom_object_status(
                group=SLIPWAY_GROUP,
                version=SLIPWAY_VERSION,
                namespace=identity.namespace,
                plural=IMAGEMIRROR_PLURAL,
                name=identity.name,
                body={"status": status.to_status()},
            )
        except ApiException as exc:
            raise PersistError(f"Failed to update ImageMirror {identity} status: {exc.status} {exc.reason}") from exc


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one cycle. ``requeue_after`` is set whenever a retry is wanted."""

    identity: ResourceIdentity
    phase: ReconcilePhase
    found: bool = True
    mirrored_tags: FrozenSet[str] = frozenset()
    copied: Tuple[str, ...] = ()
    error: Optional[SlipwayError] = None
    requeue_after: Optional[float] = None


class Reconciler:
    """Drives an ImageMirror toward its policy, one serialized cycle at a time."""

    def __init__(
        self,
        store: ResourceStore,
        resolver: CredentialResolver,
        tag_source: TagSource,
        retry_delay: float = RETRY_DELAY_S,
        timeout_s: float = RECONCILE_TIMEOUT_S,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.tag_source = tag_source
        self.retry_delay = retry_delay
        self.timeout_s = timeout_s
        self._locks: Dict[ResourceIdentity, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, identity: ResourceIdentity) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(identity, threading.Lock())

    def forget(self, identity: ResourceIdentity) -> None:
        """Drop the lock of a deleted resource, unless a cycle still holds it."""
        with self._locks_guard:
            lock = self._locks.get(identity)
            if lock is None or not lock.acquire(blocking=False):
                return
            try:
                del self._locks[identity]
            finally:
                lock.release()

    def reconcile(
        self,
        identity: ResourceIdentity,
        deadline: Optional[Deadline] = None,
        log: Optional[logging.Logger] = None,
    ) -> ReconcileResult:
        """
        Run one full cycle for *identity*.

        Returns a ``ReconcileResult``; raises ``PersistError`` only when the final
        status write fails, which the caller reports and retries with its default
        backoff.
        """
        log = log or logger
        with self._lock_for(identity):
            return self._reconcile(identity, deadline or Deadline(self.timeout_s), log)

    def _failed(
        self,
        identity: ResourceIdentity,
        phase: ReconcilePhase,
        error: SlipwayError,
        mirrored_tags: AbstractSet[str] = frozenset(),
        copied: Iterable[str] = (),
    ) -> ReconcileResult:
        return ReconcileResult(
            identity=identity,
            phase=phase,
            mirrored_tags=frozenset(mirrored_tags),
            copied=tuple(copied),
            error=error,
            requeue_after=self.retry_delay,
        )

    def _reconcile(self, identity: ResourceIdentity, deadline: Deadline, log: logging.Logger) -> ReconcileResult:
        phase = ReconcilePhase.LOADING
        log.debug("ImageMirror %s: %s", identity, phase.value)
        try:
            resource = self.store.get(identity)
        except ResourceNotFoundError:
            # Deleted under us; the next notification (if any) starts over.
            log.info("ImageMirror %s not found; nothing to do", identity)
            return ReconcileResult(identity=identity, phase=ReconcilePhase.IDLE, found=False)
        except SlipwayError as exc:
            log.error("Unable to fetch ImageMirror %s: %s", identity, exc)
            return self._failed(identity, phase, exc)

        policy = resource.policy
        recorded = resource.status.mirrored_tags

        phase = ReconcilePhase.RESOLVING_CREDENTIALS
        log.debug("ImageMirror %s: %s", identity, phase.value)
        tokens = []
        for side, ref in (("source", policy.source_credential_ref), ("dest", policy.dest_credential_ref)):
            try:
                tokens.append(self.resolver.resolve(ref.namespace, ref.name))
            except SlipwayError as exc:
                log.error("Unable to resolve %s credentials from Secret %s/%s: %s", side, ref.namespace, ref.name, exc)
                return self._failed(identity, phase, exc, recorded)
        source_token, dest_token = tokens

        phase = ReconcilePhase.MIRRORING
        log.debug("ImageMirror %s: %s", identity, phase.value)
        result = mirror_image(policy, recorded, source_token, dest_token, self.tag_source, deadline, log)

        phase = ReconcilePhase.PERSISTING_STATUS
        log.debug("ImageMirror %s: %s", identity, phase.value)
        # Written even after a failed copy so partial progress is durable.
        self.store.update_status(identity, MirrorStatus(mirrored_tags=result.mirrored_tags))
        log.info("ImageMirror %s status: %d mirrored tags", identity, len(result.mirrored_tags))

        if result.error is not None:
            log.warning("ImageMirror %s will be retried in %ss: %s", identity, self.retry_delay, result.error)
            return self._failed(identity, phase, result.error, result.mirrored_tags, result.copied)

        return ReconcileResult(
            identity=identity,
            phase=ReconcilePhase.IDLE,
            mirrored_tags=result.mirrored_tags,
            copied=result.copied,
        )
