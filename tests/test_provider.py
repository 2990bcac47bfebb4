import threading

import pytest

from conftest import CONTROLLER_ID, POOL_ID, make_bootstrap, make_instance
from garm_provider_incus.errors import (
    ArchitectureNotFoundError,
    AsyncOperationError,
    EndpointError,
    MissingRemoteError,
    NotFoundError,
    OperationCancelledError,
    TransportError,
    ValidationError,
)


def _methods(server):
    return [call[0] for call in server.calls]


# ============================================================
# Create
# ============================================================

def test_create_instance(provider, server):
    instance = provider.create_instance(make_bootstrap())

    assert instance.name == "test-instance"
    assert instance.provider_id == "test-instance"
    assert instance.status == "running"
    assert instance.os_type == "linux"
    assert instance.os_name == "ubuntu"
    assert instance.os_version == "jammy"
    assert instance.os_arch == "amd64"

    assert _methods(server)[-4:] == [
        "get_profile_names",
        "create_instance",
        "update_instance_state",
        "get_instance_full",
    ]
    start = [c for c in server.calls if c[0] == "update_instance_state"][0]
    assert start[2] == {"action": "start", "timeout": -1, "force": False, "stateful": False}


def test_create_sends_resolved_source(provider, server):
    provider.create_instance(make_bootstrap(arch="arm64"))
    body = [c for c in server.calls if c[0] == "create_instance"][0][1]
    assert body["source"]["fingerprint"] == "c0ffee02"
    assert body["architecture"] == "aarch64"


def test_create_validates_before_network(provider, server):
    with pytest.raises(ValidationError):
        provider.create_instance(make_bootstrap(name=""))
    assert server.calls == []


def test_create_missing_remote(provider, server):
    with pytest.raises(MissingRemoteError):
        provider.create_instance(make_bootstrap(image="22.04"))
    assert "create_instance" not in _methods(server)


def test_create_unresolvable_architecture(provider, server):
    with pytest.raises(ArchitectureNotFoundError):
        provider.create_instance(make_bootstrap(arch="i386"))
    assert "create_instance" not in _methods(server)


def test_create_failure_propagates_with_operation(provider, server):
    server.fail_next("create_instance", EndpointError("Storage pool is full", status_code=500))
    with pytest.raises(EndpointError) as exc:
        provider.create_instance(make_bootstrap())
    assert str(exc.value) == "create_instance: Storage pool is full"


def test_failed_start_leaves_instance(provider, server):
    error = AsyncOperationError("Failed to start device", status_code=400)
    server.fail_operation("update_instance_state", error)

    with pytest.raises(AsyncOperationError) as exc:
        provider.create_instance(make_bootstrap())

    assert exc.value is error
    assert "test-instance" in server.instances
    assert "delete_instance" not in _methods(server)


def test_create_transport_error_unmodified(provider, server):
    error = TransportError("connection refused")
    server.fail_next("create_instance", error)
    with pytest.raises(TransportError) as exc:
        provider.create_instance(make_bootstrap())
    assert exc.value is error


def test_create_cancelled(provider, server):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelledError):
        provider.create_instance(make_bootstrap(), cancel=cancel)


# ============================================================
# Get / List
# ============================================================

def test_get_instance(provider, server):
    server.add_instance(make_instance("runner-1", addresses=["10.0.0.10"]))
    instance = provider.get_instance("runner-1")
    assert instance.status == "running"
    assert [a.to_dict() for a in instance.addresses] == [{"address": "10.0.0.10", "type": "public"}]


def test_get_absent_instance(provider):
    with pytest.raises(NotFoundError):
        provider.get_instance("missing")


def test_get_not_found_message_becomes_not_found(provider, server):
    server.fail_next("get_instance_full", EndpointError("Instance not found", status_code=500))
    with pytest.raises(NotFoundError):
        provider.get_instance("runner-1")


def test_list_filters_on_controller(provider, server):
    server.add_instance(make_instance("mine-1"))
    server.add_instance(make_instance("mine-2"))
    server.add_instance(make_instance("other", controller_id="another-controller"))
    server.add_instance(make_instance("untagged", controller_id=None))
    server.add_instance(make_instance("prefix", controller_id=CONTROLLER_ID + "-x"))

    names = [i.name for i in provider.list_instances()]

    assert names == ["mine-1", "mine-2"]
    assert ("get_instances_full", "") in server.calls


def test_list_filters_on_pool(provider, server):
    server.add_instance(make_instance("pool-a"))
    server.add_instance(make_instance("pool-b", pool_id="other-pool"))

    assert [i.name for i in provider.list_instances(pool_id=POOL_ID)] == ["pool-a"]
    assert [i.name for i in provider.list_instances()] == ["pool-a", "pool-b"]


def test_list_empty(provider):
    assert provider.list_instances() == []


# ============================================================
# Start / Stop
# ============================================================

def test_stop_running_instance(provider, server):
    server.add_instance(make_instance("runner-1"))
    provider.stop("runner-1", force=True)

    assert server.instances["runner-1"].status == "Stopped"
    assert server.calls[-1] == (
        "update_instance_state",
        "runner-1",
        {"action": "stop", "timeout": -1, "force": True, "stateful": False},
    )


def test_stop_is_idempotent(provider, server):
    server.add_instance(make_instance("runner-1", status="Stopped"))
    provider.stop("runner-1")
    provider.stop("runner-1")


def test_stop_absent_instance(provider):
    provider.stop("missing")


def test_stop_unclassified_error(provider, server):
    server.add_instance(make_instance("runner-1"))
    server.fail_next("update_instance_state", EndpointError("Instance is busy", status_code=400))
    with pytest.raises(EndpointError) as exc:
        provider.stop("runner-1")
    assert exc.value.operation == "stop_instance"


def test_start(provider, server):
    server.add_instance(make_instance("runner-1", status="Stopped"))
    provider.start("runner-1")
    assert server.instances["runner-1"].status == "Running"
    assert server.calls[-1][2]["force"] is False


def test_start_absent_instance(provider):
    with pytest.raises(NotFoundError):
        provider.start("missing")


# ============================================================
# Delete
# ============================================================

def test_delete_running_instance(provider, server):
    server.add_instance(make_instance("runner-1"))
    provider.delete_instance("runner-1")

    assert "runner-1" not in server.instances
    assert _methods(server) == ["update_instance_state", "delete_instance"]
    assert server.calls[0][2]["force"] is True


def test_delete_stopped_instance(provider, server):
    server.add_instance(make_instance("runner-1", status="Stopped"))
    provider.delete_instance("runner-1")
    assert "runner-1" not in server.instances


def test_delete_absent_instance(provider, server):
    provider.delete_instance("missing")
    provider.delete_instance("missing")
    assert _methods(server) == ["update_instance_state", "delete_instance"] * 2


def test_delete_tolerates_stop_failure(provider, server, caplog):
    server.add_instance(make_instance("runner-1", status="Stopped"))
    server.fail_next("update_instance_state", TransportError("connection reset"))

    provider.delete_instance("runner-1")

    assert "runner-1" not in server.instances
    assert "Failed to stop instance runner-1" in caplog.text


def test_delete_failure_propagates(provider, server):
    server.add_instance(make_instance("runner-1"))
    server.fail_operation("delete_instance", AsyncOperationError("Failed to delete storage volume", status_code=400))
    with pytest.raises(AsyncOperationError):
        provider.delete_instance("runner-1")


def test_delete_failure_mentioning_other_missing_resource(provider, server):
    server.add_instance(make_instance("runner-1"))
    server.fail_operation(
        "delete_instance",
        AsyncOperationError("Failed deleting instance: storage volume not found", status_code=400),
    )

    with pytest.raises(AsyncOperationError):
        provider.delete_instance("runner-1")
    assert "runner-1" in server.instances


def test_delete_cancelled(provider, server):
    server.add_instance(make_instance("runner-1"))
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelledError):
        provider.delete_instance("runner-1", cancel=cancel)
    assert "delete_instance" not in _methods(server)


# ============================================================
# RemoveAll
# ============================================================

def test_remove_all_instances(provider, server):
    server.add_instance(make_instance("mine-1"))
    server.add_instance(make_instance("mine-2", status="Stopped"))
    server.add_instance(make_instance("other", controller_id="another-controller"))

    provider.remove_all_instances()

    assert list(server.instances) == ["other"]


def test_remove_all_aborts_on_first_failure(provider, server):
    server.add_instance(make_instance("mine-1"))
    server.add_instance(make_instance("mine-2"))
    server.add_instance(make_instance("mine-3"))
    server.fail_next("delete_instance", EndpointError("Instance is locked", status_code=400))

    with pytest.raises(EndpointError) as exc:
        provider.remove_all_instances()

    assert str(exc.value) == "delete_instance: Instance is locked"
    deleted = [c[1] for c in server.calls if c[0] == "delete_instance"]
    assert deleted == ["mine-1"]
    assert set(server.instances) == {"mine-1", "mine-2", "mine-3"}
