import logging

import pytest

from slipway.errors import ResourceNotFoundError, SecretNotFoundError
from slipway.resources import (
    CredentialRef,
    MirrorPolicy,
    MirrorResource,
    MirrorStatus,
    ResourceIdentity,
)

logging.basicConfig(level=logging.INFO)

NAMESPACE = "mirrors"
SCENARIO_PATTERN = r"^v[0-9]+\.[0-9]+$"
SCENARIO_TAGS = ["v1.0", "v1.1", "latest", "v2.0-rc1"]


class FakeTagSource:
    """In-memory TagSource recording every call."""

    def __init__(self, tags=(), fail_on=None, list_error=None):
        self.tags = list(tags)
        self.fail_on = dict(fail_on or {})
        self.list_error = list_error
        self.list_calls = []
        self.copy_calls = []

    def list_tags(self, repository, image_name, token, deadline=None):
        self.list_calls.append((repository, image_name, token))
        if self.list_error is not None:
            raise self.list_error
        return list(self.tags)

    def copy_tag(self, source_repository, dest_repository, image_name, tag, source_token, dest_token, deadline=None):
        self.copy_calls.append((tag, source_token, dest_token))
        if tag in self.fail_on:
            raise self.fail_on[tag]

    @property
    def copied_tags(self):
        return [call[0] for call in self.copy_calls]


class FakeStore:
    """ResourceStore keeping ImageMirrors in a dict."""

    def __init__(self, resources=(), load_error=None, persist_error=None):
        self.resources = {resource.identity: resource for resource in resources}
        self.load_error = load_error
        self.persist_error = persist_error
        self.writes = []

    def get(self, identity):
        if self.load_error is not None:
            raise self.load_error
        if identity not in self.resources:
            raise ResourceNotFoundError(f"ImageMirror {identity} not found")
        return self.resources[identity]

    def update_status(self, identity, status):
        self.writes.append((identity, status))
        if self.persist_error is not None:
            raise self.persist_error
        current = self.resources[identity]
        self.resources[identity] = MirrorResource(identity, current.policy, status)

    def tags(self, identity):
        return set(self.resources[identity].status.mirrored_tags)


class FakeResolver:
    """CredentialResolver returning canned tokens, or raising for listed secrets."""

    def __init__(self, tokens=None, errors=None):
        self.tokens = dict(tokens or {})
        self.errors = dict(errors or {})
        self.calls = []

    def resolve(self, namespace, secret_name):
        self.calls.append((namespace, secret_name))
        if secret_name in self.errors:
            raise self.errors[secret_name]
        if secret_name not in self.tokens:
            raise SecretNotFoundError(f"Secret {namespace}/{secret_name} not found")
        return self.tokens[secret_name]


def make_policy(pattern=SCENARIO_PATTERN, namespace=NAMESPACE):
    return MirrorPolicy(
        source_repository="docker.io/lib/",
        dest_repository="mirror.example/lib/",
        image_name="app",
        tag_regex=pattern,
        source_credential_ref=CredentialRef(namespace=namespace, name="source-token"),
        dest_credential_ref=CredentialRef(namespace=namespace, name="dest-token"),
    )


@pytest.fixture
def identity():
    return ResourceIdentity(namespace=NAMESPACE, name="app-mirror")


@pytest.fixture
def policy():
    return make_policy()


@pytest.fixture
def policy_factory():
    return make_policy


@pytest.fixture
def tag_source_factory():
    return FakeTagSource


@pytest.fixture
def scenario_tag_source():
    return FakeTagSource(tags=SCENARIO_TAGS)


@pytest.fixture
def resolver():
    return FakeResolver(tokens={"source-token": "src-tok", "dest-token": "dst-tok"})


@pytest.fixture
def resolver_factory():
    return FakeResolver


@pytest.fixture
def store_factory(identity):
    def build(mirrored=(), pattern=SCENARIO_PATTERN, **kwargs):
        resource = MirrorResource(identity, make_policy(pattern), MirrorStatus(mirrored_tags=frozenset(mirrored)))
        return FakeStore([resource], **kwargs)

    return build
