"""
resources.py
------------
Data model for the ``ImageMirror`` custom resource.

The policy (``spec``) is user-authored, the status is written only by the operator.
Field names on the wire are part of the public contract and are pinned through
pydantic aliases::

    spec:
      source_repository: docker.io/dwat/
      dest_repository: mirror.example/dwat/
      image_name: cuda
      tag_regex: '^v[0-9]+\\.[0-9]+$'
      source_secret_name: docker-hub-token
      dest_secret_name: mirror-token
    status:
      mirrored_tags: [v1.0, v1.1]
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from slipway.config import IMAGEMIRROR_KIND, SLIPWAY_GROUP, SLIPWAY_VERSION
from slipway.errors import InvalidResourceError


@dataclass(frozen=True)
class ResourceIdentity:
    """(namespace, name) pair; unique per namespace."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class CredentialRef(BaseModel):
    """Reference to a Secret holding a registry bearer token."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str


class MirrorPolicy(BaseModel):
    """Desired state: what to mirror, from where, to where."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source_repository: str
    dest_repository: str
    image_name: str
    # An empty pattern selects nothing; mirroring is strictly opt-in.
    pattern: str = Field(default="", alias="tag_regex")
    source_credential_ref: CredentialRef
    dest_credential_ref: CredentialRef

    @field_validator("pattern", mode="before")
    @classmethod
    def _none_pattern_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @classmethod
    def from_spec(cls, spec: Dict[str, Any], namespace: str) -> "MirrorPolicy":
        """Build a policy from the wire ``spec``; secrets live in the resource namespace."""
        return cls(
            source_repository=spec.get("source_repository"),
            dest_repository=spec.get("dest_repository"),
            image_name=spec.get("image_name"),
            tag_regex=spec.get("tag_regex"),
            source_credential_ref={"namespace": namespace, "name": spec.get("source_secret_name")},
            dest_credential_ref={"namespace": namespace, "name": spec.get("dest_secret_name")},
        )

    def to_spec(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "source_repository": self.source_repository,
            "dest_repository": self.dest_repository,
            "image_name": self.image_name,
            "source_secret_name": self.source_credential_ref.name,
            "dest_secret_name": self.dest_credential_ref.name,
        }
        if self.pattern:
            spec["tag_regex"] = self.pattern
        return spec


class MirrorStatus(BaseModel):
    """Observed state: every tag mirrored so far. Only ever grows."""

    model_config = ConfigDict(frozen=True)

    mirrored_tags: FrozenSet[str] = frozenset()

    @field_validator("mirrored_tags", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any) -> Any:
        return frozenset() if value is None else value

    @classmethod
    def from_status(cls, status: Optional[Dict[str, Any]]) -> "MirrorStatus":
        # kopf keeps its own bookkeeping in status too; only our field matters.
        return cls(mirrored_tags=(status or {}).get("mirrored_tags"))

    def to_status(self) -> Dict[str, Any]:
        return {"mirrored_tags": sorted(self.mirrored_tags)}


class MirrorResource:
    """An ``ImageMirror`` object: identity, policy and status. Compared by identity."""

    def __init__(self, identity: ResourceIdentity, policy: MirrorPolicy, status: Optional[MirrorStatus] = None) -> None:
        self.identity = identity
        self.policy = policy
        self.status = status or MirrorStatus()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MirrorResource):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    def __repr__(self) -> str:
        return f"MirrorResource({self.identity}, tags={sorted(self.status.mirrored_tags)})"

    @classmethod
    def from_manifest(cls, body: Dict[str, Any]) -> "MirrorResource":
        """Parse a custom object as returned by the Kubernetes API."""
        meta = body.get("metadata") or {}
        identity = ResourceIdentity(namespace=meta.get("namespace", ""), name=meta.get("name", ""))
        try:
            policy = MirrorPolicy.from_spec(body.get("spec") or {}, identity.namespace)
            status = MirrorStatus.from_status(body.get("status"))
        except ValidationError as exc:
            raise InvalidResourceError(f"ImageMirror {identity} is malformed: {exc}") from exc
        return cls(identity, policy, status)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "apiVersion": f"{SLIPWAY_GROUP}/{SLIPWAY_VERSION}",
            "kind": IMAGEMIRROR_KIND,
            "metadata": {"name": self.identity.name, "namespace": self.identity.namespace},
            "spec": self.policy.to_spec(),
            "status": self.status.to_status(),
        }
