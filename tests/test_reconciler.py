import threading
import time
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException, CustomObjectsApi

from slipway.errors import (
    CredentialDecodeError,
    PersistError,
    RegistryNetworkError,
    ResourceLoadError,
    ResourceNotFoundError,
    SecretNotFoundError,
)
from slipway.reconciler import KubernetesResourceStore, ReconcilePhase, Reconciler
from slipway.resources import MirrorStatus, ResourceIdentity

RETRY_DELAY = 60


def _reconciler(store, resolver, tag_source):
    return Reconciler(store=store, resolver=resolver, tag_source=tag_source, retry_delay=RETRY_DELAY)


def test_successful_cycle_persists_status_without_requeue(identity, store_factory, resolver, scenario_tag_source):
    store = store_factory()

    result = _reconciler(store, resolver, scenario_tag_source).reconcile(identity)

    assert result.error is None
    assert result.requeue_after is None
    assert result.phase is ReconcilePhase.IDLE
    assert store.tags(identity) == {"v1.0", "v1.1"}
    assert resolver.calls == [("mirrors", "source-token"), ("mirrors", "dest-token")]
    assert all(call[1:] == ("src-tok", "dst-tok") for call in scenario_tag_source.copy_calls)


def test_failed_copy_persists_partial_progress_and_requeues(identity, store_factory, resolver, tag_source_factory):
    store = store_factory(mirrored=["v1.0"])
    tag_source = tag_source_factory(
        tags=["v1.0", "v1.1", "latest", "v2.0-rc1"],
        fail_on={"v1.1": RegistryNetworkError("timeout")},
    )

    result = _reconciler(store, resolver, tag_source).reconcile(identity)

    assert isinstance(result.error, RegistryNetworkError)
    assert result.requeue_after == RETRY_DELAY
    assert store.tags(identity) == {"v1.0"}
    assert len(store.writes) == 1


def test_partial_progress_is_written_before_retry(identity, store_factory, resolver, tag_source_factory):
    store = store_factory()
    tag_source = tag_source_factory(tags=["v1.0", "v1.1"], fail_on={"v1.1": RegistryNetworkError("reset")})

    result = _reconciler(store, resolver, tag_source).reconcile(identity)

    assert result.requeue_after == RETRY_DELAY
    assert store.tags(identity) == {"v1.0"}


def test_deleted_resource_is_silent_noop(identity, resolver, scenario_tag_source, store_factory):
    store = store_factory(load_error=ResourceNotFoundError("gone"))

    result = _reconciler(store, resolver, scenario_tag_source).reconcile(identity)

    assert result.found is False
    assert result.error is None
    assert result.requeue_after is None
    assert resolver.calls == []
    assert store.writes == []


def test_load_failure_requeues(identity, resolver, scenario_tag_source, store_factory):
    store = store_factory(load_error=ResourceLoadError("apiserver down"))

    result = _reconciler(store, resolver, scenario_tag_source).reconcile(identity)

    assert isinstance(result.error, ResourceLoadError)
    assert result.requeue_after == RETRY_DELAY
    assert result.phase is ReconcilePhase.LOADING


def test_source_credential_failure_skips_dest_lookup_and_copies(
    identity, store_factory, resolver_factory, scenario_tag_source
):
    store = store_factory(mirrored=["v1.0"])
    resolver = resolver_factory(
        tokens={"dest-token": "d"}, errors={"source-token": SecretNotFoundError("missing")}
    )

    result = _reconciler(store, resolver, scenario_tag_source).reconcile(identity)

    assert isinstance(result.error, SecretNotFoundError)
    assert result.requeue_after == RETRY_DELAY
    assert result.phase is ReconcilePhase.RESOLVING_CREDENTIALS
    assert resolver.calls == [("mirrors", "source-token")]
    assert scenario_tag_source.list_calls == []
    assert scenario_tag_source.copy_calls == []
    assert store.writes == []
    assert result.mirrored_tags == {"v1.0"}


def test_dest_credential_failure_aborts_before_mirroring(identity, store_factory, resolver_factory, scenario_tag_source):
    store = store_factory()
    resolver = resolver_factory(
        tokens={"source-token": "s"}, errors={"dest-token": CredentialDecodeError("bad base64")}
    )

    result = _reconciler(store, resolver, scenario_tag_source).reconcile(identity)

    assert isinstance(result.error, CredentialDecodeError)
    assert scenario_tag_source.list_calls == []
    assert store.writes == []


def test_invalid_pattern_requeues(identity, store_factory, resolver, scenario_tag_source):
    store = store_factory(pattern="v[")

    result = _reconciler(store, resolver, scenario_tag_source).reconcile(identity)

    assert result.error is not None
    assert result.requeue_after == RETRY_DELAY
    assert scenario_tag_source.list_calls == []


def test_persist_failure_is_raised(identity, store_factory, resolver, scenario_tag_source):
    store = store_factory(persist_error=PersistError("conflict"))

    with pytest.raises(PersistError):
        _reconciler(store, resolver, scenario_tag_source).reconcile(identity)


def test_status_is_monotonic_across_cycles(identity, store_factory, resolver, tag_source_factory):
    store = store_factory()
    tag_source = tag_source_factory(tags=["v1.0"])
    reconciler = _reconciler(store, resolver, tag_source)
    history = []

    reconciler.reconcile(identity)
    history.append(store.tags(identity))

    tag_source.tags = ["v1.0", "v1.1", "v1.2"]
    tag_source.fail_on = {"v1.2": RegistryNetworkError("flaky")}
    reconciler.reconcile(identity)
    history.append(store.tags(identity))

    # Source temporarily drops a tag and listing fails outright.
    tag_source.list_error = RegistryNetworkError("down")
    reconciler.reconcile(identity)
    history.append(store.tags(identity))

    tag_source.list_error = None
    tag_source.fail_on = {}
    tag_source.tags = ["v1.2"]
    reconciler.reconcile(identity)
    history.append(store.tags(identity))

    for before, after in zip(history, history[1:]):
        assert before <= after
    assert history[-1] == {"v1.0", "v1.1", "v1.2"}


def test_cycles_of_same_resource_do_not_overlap(identity, store_factory, resolver, tag_source_factory):
    store = store_factory()
    tag_source = tag_source_factory(tags=["v1.0"])
    active = []
    overlap = []
    list_tags = tag_source.list_tags

    def slow_list(*args, **kwargs):
        active.append(1)
        overlap.append(len(active))
        time.sleep(0.05)
        active.pop()
        return list_tags(*args, **kwargs)

    tag_source.list_tags = slow_list
    reconciler = _reconciler(store, resolver, tag_source)

    threads = [threading.Thread(target=reconciler.reconcile, args=(identity,)) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert max(overlap) == 1
    assert tag_source.copied_tags == ["v1.0"]


def test_forget_keeps_lock_held_by_running_cycle(identity, store_factory, resolver, scenario_tag_source):
    reconciler = _reconciler(store_factory(), resolver, scenario_tag_source)
    lock = reconciler._lock_for(identity)

    with lock:
        reconciler.forget(identity)
        assert reconciler._lock_for(identity) is lock

    reconciler.forget(identity)
    assert identity not in reconciler._locks
    assert not lock.locked()


# ---------------------------------------------------------------------------
# KubernetesResourceStore -----------------------------------------------------
# ---------------------------------------------------------------------------

BODY = {
    "metadata": {"name": "app-mirror", "namespace": "mirrors"},
    "spec": {
        "source_repository": "docker.io/lib/",
        "dest_repository": "mirror.example/lib/",
        "image_name": "app",
        "tag_regex": "^v.*$",
        "source_secret_name": "source-token",
        "dest_secret_name": "dest-token",
    },
    "status": {"mirrored_tags": ["v1.0"]},
}


@pytest.fixture
def custom_objects():
    return Mock(spec=CustomObjectsApi)


def test_store_get_parses_resource(custom_objects):
    custom_objects.get_namespaced_custom_object.return_value = BODY

    resource = KubernetesResourceStore(custom_objects).get(ResourceIdentity("mirrors", "app-mirror"))

    assert resource.status.mirrored_tags == {"v1.0"}
    custom_objects.get_namespaced_custom_object.assert_called_once_with(
        group="slipway.k8s.facebook.com",
        version="v1",
        namespace="mirrors",
        plural="imagemirrors",
        name="app-mirror",
    )


@pytest.mark.parametrize("status, error", [(404, ResourceNotFoundError), (500, ResourceLoadError)])
def test_store_get_errors(custom_objects, status, error):
    custom_objects.get_namespaced_custom_object.side_effect = ApiException(status=status, reason="x")

    with pytest.raises(error):
        KubernetesResourceStore(custom_objects).get(ResourceIdentity("mirrors", "app-mirror"))


def test_store_update_status_patches_status_subresource(custom_objects):
    KubernetesResourceStore(custom_objects).update_status(
        ResourceIdentity("mirrors", "app-mirror"), MirrorStatus(mirrored_tags={"v1.1", "v1.0"})
    )

    kwargs = custom_objects.patch_namespaced_custom_object_status.call_args.kwargs
    assert kwargs["body"] == {"status": {"mirrored_tags": ["v1.0", "v1.1"]}}
    assert kwargs["name"] == "app-mirror"


def test_store_update_failure_is_persist_error(custom_objects):
    custom_objects.patch_namespaced_custom_object_status.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(PersistError):
        KubernetesResourceStore(custom_objects).update_status(
            ResourceIdentity("mirrors", "app-mirror"), MirrorStatus()
        )
