"""
gateway.py

FastAPI micro-gateway in front of the ImageMirror custom resources:

1. Creates / deletes *ImageMirror* resources via the Kubernetes API.
2. Reports a mirror's policy and the tags mirrored so far.

Designed to run either:

* Inside a Kubernetes cluster (uses ServiceAccount), **or**
* Locally, picking up ~/.kube/config for dev workflows.

Serve with ``uvicorn slipway.gateway:app``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, status
from kubernetes import client, config
from kubernetes.client import ApiException, CustomObjectsApi
from pydantic import BaseModel, Field

from slipway.config import IMAGEMIRROR_PLURAL, SLIPWAY_GROUP, SLIPWAY_NAMESPACE, SLIPWAY_VERSION
from slipway.errors import InvalidResourceError
from slipway.resources import CredentialRef, MirrorPolicy, MirrorResource, ResourceIdentity

LOG = logging.getLogger("slipway.gateway")

# --------------------------------------------------------------------------- #
# Kubernetes client bootstrap
# --------------------------------------------------------------------------- #


def init_kube_client() -> Optional[CustomObjectsApi]:
    """Attempt to build a Kubernetes CustomObjectsApi, returning *None* on failure."""
    try:
        config.load_incluster_config()
        LOG.info("Loaded in-cluster Kubernetes config")
        return client.CustomObjectsApi()
    except config.ConfigException:
        try:
            config.load_kube_config()
            LOG.info("Loaded local ~/.kube/config")
            return client.CustomObjectsApi()
        except config.ConfigException as exc:
            LOG.warning("No Kubernetes configuration available: %s", exc)
            return None


K8S_CUSTOM_API = init_kube_client()

# --------------------------------------------------------------------------- #
# Pydantic DTOs
# --------------------------------------------------------------------------- #


class ImageMirrorCreateRequest(BaseModel):
    """Payload for POST /imagemirrors/{namespace}/{name}"""

    source_repository: str = Field(min_length=1)
    dest_repository: str = Field(min_length=1)
    image_name: str = Field(min_length=1)
    tag_regex: str = ""
    source_secret_name: str = Field(min_length=1)
    dest_secret_name: str = Field(min_length=1)


class ImageMirrorResponse(BaseModel):
    """A mirror's policy and progress."""

    namespace: str
    name: str
    source_repository: str
    dest_repository: str
    image_name: str
    tag_regex: str
    mirrored_tags: List[str]


class StatusMessageResponse(BaseModel):
    """Generic response model for status and message."""
    status: str
    message: str


class HealthCheckResponse(BaseModel):
    """Response for GET /healthz"""
    status: str


def _to_response(resource: MirrorResource) -> ImageMirrorResponse:
    return ImageMirrorResponse(
        namespace=resource.identity.namespace,
        name=resource.identity.name,
        source_repository=resource.policy.source_repository,
        dest_repository=resource.policy.dest_repository,
        image_name=resource.policy.image_name,
        tag_regex=resource.policy.pattern,
        mirrored_tags=sorted(resource.status.mirrored_tags),
    )


def _parse(body: dict) -> MirrorResource:
    try:
        return MirrorResource.from_manifest(body)
    except InvalidResourceError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


# --------------------------------------------------------------------------- #
# FastAPI application
# --------------------------------------------------------------------------- #

app = FastAPI(title="slipway ImageMirror Gateway", version="1.0")


def require_k8s() -> CustomObjectsApi:
    """Return a live CustomObjectsApi or raise 503 HTTPException."""
    if K8S_CUSTOM_API is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Kubernetes client not configured.",
        )
    return K8S_CUSTOM_API


@app.post(
    "/imagemirrors/{namespace}/{name}",
    status_code=status.HTTP_201_CREATED,
    response_model=ImageMirrorResponse,
)
async def create_imagemirror(namespace: str, name: str, payload: ImageMirrorCreateRequest):
    """Create an ImageMirror CR in the cluster."""
    api = require_k8s()

    policy = MirrorPolicy(
        source_repository=payload.source_repository,
        dest_repository=payload.dest_repository,
        image_name=payload.image_name,
        tag_regex=payload.tag_regex,
        source_credential_ref=CredentialRef(namespace=namespace, name=payload.source_secret_name),
        dest_credential_ref=CredentialRef(namespace=namespace, name=payload.dest_secret_name),
    )
    body = MirrorResource(ResourceIdentity(namespace, name), policy).to_manifest()
    # Status belongs to the operator.
    del body["status"]

    try:
        resp = await asyncio.to_thread(
            api.create_namespaced_custom_object,
            group=SLIPWAY_GROUP,
            version=SLIPWAY_VERSION,
            namespace=namespace,
            plural=IMAGEMIRROR_PLURAL,
            body=body,
        )
    except ApiException as exc:
        LOG.error("Kubernetes API error: %s", exc, exc_info=False)
        if exc.status == 409:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Already exists") from exc
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.reason) from exc
    return _to_response(_parse(resp))


@app.get("/imagemirrors/{namespace}/{name}", response_model=ImageMirrorResponse)
async def get_imagemirror(namespace: str, name: str):
    """Return an ImageMirror's policy and mirrored tags."""
    api = require_k8s()
    try:
        resp = await asyncio.to_thread(
            api.get_namespaced_custom_object,
            group=SLIPWAY_GROUP,
            version=SLIPWAY_VERSION,
            namespace=namespace,
            plural=IMAGEMIRROR_PLURAL,
            name=name,
        )
    except ApiException as exc:
        LOG.error("Kubernetes API error: %s", exc, exc_info=False)
        if exc.status == 404:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from exc
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.reason) from exc
    return _to_response(_parse(resp))


@app.get("/imagemirrors/{namespace}", response_model=List[ImageMirrorResponse])
async def list_imagemirrors(namespace: str):
    """List the ImageMirrors of a namespace."""
    api = require_k8s()
    try:
        resp = await asyncio.to_thread(
            api.list_namespaced_custom_object,
            group=SLIPWAY_GROUP,
            version=SLIPWAY_VERSION,
            namespace=namespace,
            plural=IMAGEMIRROR_PLURAL,
        )
    except ApiException as exc:
        LOG.error("Kubernetes API error: %s", exc, exc_info=False)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.reason) from exc

    mirrors = []
    for item in resp.get("items", []):
        try:
            mirrors.append(_to_response(MirrorResource.from_manifest(item)))
        except InvalidResourceError as exc:
            LOG.warning("Skipping malformed ImageMirror: %s", exc)
    return mirrors


@app.get("/imagemirrors", response_model=List[ImageMirrorResponse])
async def list_default_imagemirrors():
    """List the ImageMirrors of the gateway's default namespace (SLIPWAY_NAMESPACE)."""
    return await list_imagemirrors(SLIPWAY_NAMESPACE)


@app.delete(
    "/imagemirrors/{namespace}/{name}",
    status_code=status.HTTP_200_OK,
    response_model=StatusMessageResponse,
)
async def delete_imagemirror(namespace: str, name: str):
    """Delete an ImageMirror CR. Already mirrored tags stay in the destination."""
    api = require_k8s()
    try:
        await asyncio.to_thread(
            api.delete_namespaced_custom_object,
            group=SLIPWAY_GROUP,
            version=SLIPWAY_VERSION,
            namespace=namespace,
            plural=IMAGEMIRROR_PLURAL,
            name=name,
            body=client.V1DeleteOptions(),
        )
    except ApiException as exc:
        LOG.error("Kubernetes API error: %s", exc, exc_info=False)
        if exc.status == 404:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from exc
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.reason) from exc
    return {"status": "success", "message": f"Deletion of '{namespace}/{name}' initiated."}


@app.get("/healthz", response_model=HealthCheckResponse)
async def health_check():
    """Kubernetes livenessProbe target."""
    return {"status": "ok"}
