"""
registry.py
-----------
Tag Source: list the tags of an image and copy one tag between registries.

``TagSource`` is the seam the mirror engine depends on; ``RegistryTagSource`` is the
production implementation speaking the OCI distribution API (Docker Registry HTTP
API v2) over ``httpx`` with a bearer token per side.

Copying is idempotent. Blobs already present at the destination are skipped and
the manifest is PUT by tag, so re-running a half-finished copy converges on the
same destination state.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Protocol

import httpx

from slipway.config import REGISTRY_TIMEOUT_S
from slipway.deadline import Deadline, bounded_timeout
from slipway.errors import (
    CopyError,
    RegistryAuthError,
    RegistryError,
    RegistryNetworkError,
    RegistryNotFoundError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Media types ----------------------------------------------------------------
# ---------------------------------------------------------------------------
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_V1 = "application/vnd.oci.image.index.v1+json"

MANIFEST_ACCEPT = ", ".join(
    [OCI_INDEX_V1, DOCKER_MANIFEST_LIST_V2, OCI_MANIFEST_V1, DOCKER_MANIFEST_V2, DOCKER_MANIFEST_V1_SIGNED]
)
INDEX_MEDIA_TYPES = frozenset({OCI_INDEX_V1, DOCKER_MANIFEST_LIST_V2})

DOCKER_HUB_HOSTS = frozenset({"docker.io", "index.docker.io", "registry-1.docker.io"})
DOCKER_HUB_REGISTRY = "registry-1.docker.io"

TAGS_PAGE_SIZE = 1000
BLOB_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class RepositoryRef:
    """Where an image lives: ``<scheme>://<host>/v2/<path>``."""

    scheme: str
    host: str
    path: str

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def url(self, suffix: str) -> str:
        return f"{self.base_url}/v2/{self.path}/{suffix}"

    def __str__(self) -> str:
        return f"{self.host}/{self.path}"


def parse_repository(repository: str, image_name: str) -> RepositoryRef:
    """
    Split ``[scheme://]host[/organization]/`` plus an image name into a ``RepositoryRef``.

    >>> parse_repository("docker.io/lib/", "app")
    RepositoryRef(scheme='https', host='registry-1.docker.io', path='lib/app')
    """
    scheme = "https"
    rest = repository.strip()
    if "://" in rest:
        scheme, rest = rest.split("://", 1)
    host, _, organization = rest.strip("/").partition("/")
    if not host:
        raise RegistryError(f"repository '{repository}' has no registry host")
    organization = organization.strip("/")
    if host in DOCKER_HUB_HOSTS:
        host = DOCKER_HUB_REGISTRY
        if not organization:
            organization = "library"
    path = "/".join(part for part in (organization, image_name.strip("/")) if part)
    return RepositoryRef(scheme=scheme.lower(), host=host, path=path)


class TagSource(Protocol):
    """Registry operations the mirror engine needs."""

    def list_tags(
        self, repository: str, image_name: str, token: str, deadline: Optional[Deadline] = None
    ) -> List[str]:
        ...

    def copy_tag(
        self,
        source_repository: str,
        dest_repository: str,
        image_name: str,
        tag: str,
        source_token: str,
        dest_token: str,
        deadline: Optional[Deadline] = None,
    ) -> None:
        ...


def _auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _blob_digests(manifest: dict) -> List[str]:
    """Config and layer digests of a single-image manifest (schema 2, OCI or schema 1)."""
    digests: List[str] = []
    entries = [(manifest.get("config") or {}, "digest")]
    entries += [(layer, "digest") for layer in manifest.get("layers") or []]
    entries += [(fs_layer, "blobSum") for fs_layer in manifest.get("fsLayers") or []]
    for entry, key in entries:
        if not isinstance(entry, dict):
            raise CopyError(f"malformed manifest entry {entry!r}")
        if entry.get(key):
            digests.append(entry[key])
    # Schema 1 repeats blobSums for empty layers.
    return list(dict.fromkeys(digests))


class RegistryTagSource:
    """``TagSource`` backed by the registry HTTP API v2."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        timeout_s: float = REGISTRY_TIMEOUT_S,
        page_size: int = TAGS_PAGE_SIZE,
    ) -> None:
        self._client = client or httpx.Client(follow_redirects=True, headers={"User-Agent": "slipway-operator"})
        self._timeout_s = timeout_s
        self._page_size = page_size

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # HTTP plumbing -----------------------------------------------------
    # ------------------------------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        token: str,
        deadline: Optional[Deadline],
        what: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        content=None,
    ) -> httpx.Response:
        timeout = bounded_timeout(deadline, self._timeout_s, what)
        request_headers = {**_auth_headers(token), **(headers or {})}
        logger.debug("%s %s (%s)", method, url, what)
        try:
            return self._client.request(
                method, url, headers=request_headers, params=params, content=content, timeout=timeout
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RegistryNetworkError(f"{what}: {exc.__class__.__name__}: {exc}") from exc

    @staticmethod
    def _check(response: httpx.Response, what: str, *, ok=(200,), failure=CopyError) -> None:
        """Translate a non-success response into the registry error taxonomy."""
        status = response.status_code
        if status in ok:
            return
        detail = f"{what}: HTTP {status} {response.text[:200]}".rstrip()
        if status in (401, 403):
            raise RegistryAuthError(detail, status_code=status)
        if status == 429 or status >= 500:
            raise RegistryNetworkError(detail, status_code=status)
        raise failure(detail, status_code=status)

    # ------------------------------------------------------------------
    # Listing -----------------------------------------------------------
    # ------------------------------------------------------------------

    def list_tags(
        self, repository: str, image_name: str, token: str, deadline: Optional[Deadline] = None
    ) -> List[str]:
        ref = parse_repository(repository, image_name)
        what = f"list tags of {ref}"
        url: Optional[str] = ref.url("tags/list")
        params: Optional[Dict[str, str]] = {"n": str(self._page_size)}
        tags: List[str] = []

        while url:
            response = self._send("GET", url, token, deadline, what, params=params)
            if response.status_code == 404:
                raise RegistryNotFoundError(f"{what}: repository not found", status_code=404)
            self._check(response, what, failure=RegistryError)
            try:
                page = response.json()
            except ValueError as exc:
                raise RegistryError(f"{what}: malformed tags response") from exc
            if not isinstance(page, dict):
                raise RegistryError(f"{what}: malformed tags response")
            page_tags = page.get("tags") or []
            if not isinstance(page_tags, list):
                raise RegistryError(f"{what}: malformed tags response")
            tags.extend(page_tags)

            next_link = response.links.get("next", {}).get("url")
            # The next link already carries n/last.
            try:
                url = str(httpx.URL(ref.base_url).join(next_link)) if next_link else None
            except httpx.InvalidURL as exc:
                raise RegistryError(f"{what}: bad pagination link {next_link!r}") from exc
            params = None

        logger.debug("Listed %d tags for %s", len(tags), ref)
        return tags

    # ------------------------------------------------------------------
    # Copying -----------------------------------------------------------
    # ------------------------------------------------------------------

    def copy_tag(
        self,
        source_repository: str,
        dest_repository: str,
        image_name: str,
        tag: str,
        source_token: str,
        dest_token: str,
        deadline: Optional[Deadline] = None,
    ) -> None:
        src = parse_repository(source_repository, image_name)
        dst = parse_repository(dest_repository, image_name)
        logger.info("Copying %s:%s -> %s:%s", src, tag, dst, tag)
        self._copy_manifest(src, dst, tag, source_token, dest_token, deadline)

    def _copy_manifest(
        self,
        src: RepositoryRef,
        dst: RepositoryRef,
        reference: str,
        source_token: str,
        dest_token: str,
        deadline: Optional[Deadline],
    ) -> None:
        what = f"fetch manifest {src}:{reference}"
        response = self._send(
            "GET", src.url(f"manifests/{reference}"), source_token, deadline, what, headers={"Accept": MANIFEST_ACCEPT}
        )
        self._check(response, what)
        raw = response.content
        try:
            manifest = json.loads(raw)
        except ValueError as exc:
            raise CopyError(f"{what}: manifest is not JSON") from exc
        if not isinstance(manifest, dict):
            raise CopyError(f"{what}: manifest is not a JSON object")
        media_type = (
            response.headers.get("Content-Type", "").split(";")[0].strip()
            or manifest.get("mediaType")
            or DOCKER_MANIFEST_V2
        )

        if media_type in INDEX_MEDIA_TYPES or "manifests" in manifest:
            # Children must exist at the destination before the index referencing them.
            for child in manifest.get("manifests") or []:
                if not isinstance(child, dict) or not child.get("digest"):
                    raise CopyError(f"{what}: index entry without digest")
                self._copy_manifest(src, dst, child["digest"], source_token, dest_token, deadline)
        else:
            for digest in _blob_digests(manifest):
                self._copy_blob(src, dst, digest, source_token, dest_token, deadline)

        what = f"push manifest {dst}:{reference}"
        response = self._send(
            "PUT",
            dst.url(f"manifests/{reference}"),
            dest_token,
            deadline,
            what,
            headers={"Content-Type": media_type},
            content=raw,
        )
        self._check(response, what, ok=(200, 201, 202))

    def _copy_blob(
        self,
        src: RepositoryRef,
        dst: RepositoryRef,
        digest: str,
        source_token: str,
        dest_token: str,
        deadline: Optional[Deadline],
    ) -> None:
        head = self._send("HEAD", dst.url(f"blobs/{digest}"), dest_token, deadline, f"check blob {dst}@{digest}")
        if head.status_code == 200:
            logger.debug("Blob %s already present in %s", digest, dst)
            return
        if head.status_code != 404:
            self._check(head, f"check blob {dst}@{digest}")

        what = f"start upload of {digest} to {dst}"
        params = {"mount": digest, "from": src.path} if src.host == dst.host else None
        start = self._send("POST", dst.url("blobs/uploads/"), dest_token, deadline, what, params=params)
        if start.status_code == 201:
            logger.debug("Mounted blob %s from %s into %s", digest, src, dst)
            return
        self._check(start, what, ok=(202,))
        location = start.headers.get("Location")
        if not location:
            raise CopyError(f"{what}: registry returned no upload location")
        try:
            upload_url = httpx.URL(dst.base_url).join(location).copy_merge_params({"digest": digest})
        except httpx.InvalidURL as exc:
            raise CopyError(f"{what}: bad upload location {location!r}") from exc

        what = f"copy blob {digest} from {src} to {dst}"
        timeout = bounded_timeout(deadline, self._timeout_s, what)
        try:
            with self._client.stream(
                "GET", src.url(f"blobs/{digest}"), headers=_auth_headers(source_token), timeout=timeout
            ) as blob:
                if blob.status_code != 200:
                    blob.read()
                    self._check(blob, what)
                headers = {"Content-Type": "application/octet-stream"}
                if blob.headers.get("Content-Length"):
                    headers["Content-Length"] = blob.headers["Content-Length"]
                done = self._send(
                    "PUT", str(upload_url), dest_token, deadline, what, headers=headers, content=self._chunks(blob)
                )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RegistryNetworkError(f"{what}: {exc.__class__.__name__}: {exc}") from exc
        self._check(done, what, ok=(201, 204))

    @staticmethod
    def _chunks(response: httpx.Response) -> Iterator[bytes]:
        yield from response.iter_bytes(BLOB_CHUNK_SIZE)
