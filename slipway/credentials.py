"""Resolve registry bearer tokens from Kubernetes Secrets."""
from __future__ import annotations

import base64
import binascii
import logging

from kubernetes.client import ApiException, CoreV1Api

from slipway.config import SECRET_TOKEN_KEY
from slipway.errors import CredentialDecodeError, CredentialError, SecretNotFoundError

logger = logging.getLogger(__name__)


def decode_token(payload: str) -> str:
    """Decode a base64 token payload, raising ``CredentialDecodeError`` on garbage."""
    try:
        return base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        # UnicodeDecodeError is a ValueError too.
        raise CredentialDecodeError(f"token payload is not valid base64 text: {exc}") from exc


class CredentialResolver:
    """
    Read-only lookup of the ``token`` key of a namespaced Secret.

    The API server transports Secret data base64 encoded, and the stored token is
    itself base64 text, so two decodes happen here. Nothing is cached: every
    reconcile resolves fresh so rotated secrets are picked up immediately.
    """

    def __init__(self, core_v1: CoreV1Api, token_key: str = SECRET_TOKEN_KEY) -> None:
        self._core_v1 = core_v1
        self._token_key = token_key

    def resolve(self, namespace: str, secret_name: str) -> str:
        stored = self._read_stored_token(namespace, secret_name)
        try:
            return decode_token(stored)
        except CredentialDecodeError as exc:
            raise CredentialDecodeError(f"Secret {namespace}/{secret_name}: {exc}") from exc

    def _read_stored_token(self, namespace: str, secret_name: str) -> str:
        try:
            secret = self._core_v1.read_namespaced_secret(name=secret_name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise SecretNotFoundError(f"Secret {namespace}/{secret_name} not found") from exc
            logger.error("Error reading Secret %s/%s: %s %s", namespace, secret_name, exc.status, exc.reason)
            raise CredentialError(f"Failed to read Secret {namespace}/{secret_name}: {exc.status} {exc.reason}") from exc

        data = secret.data or {}
        transported = data.get(self._token_key)
        if transported is None:
            raise CredentialDecodeError(f"Secret {namespace}/{secret_name} has no '{self._token_key}' key")
        try:
            return decode_token(transported)
        except CredentialDecodeError as exc:
            raise CredentialDecodeError(f"Secret {namespace}/{secret_name}: {exc}") from exc
