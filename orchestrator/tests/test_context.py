from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from orchestrator.src.config import (
    ClusterFlavor,
    ConfigObjectRef,
    OrchestratorConfig,
)
from orchestrator.src.context import (
    ContextHolder,
    OrchestratorContext,
    bootstrap,
    read_feature_table,
)
from orchestrator.src.errors import BootstrapError, FatalErrorSink
from orchestrator.src.events import ResourceKind
from orchestrator.src.kube import KubeClients
from orchestrator.src.watcher import ResourceWatcher

INTERNAL_REF = ConfigObjectRef("internal-feature-states", "vmware-system-csi")
SUPERVISOR_REF = ConfigObjectRef("csi-feature-states", "vmware-system-csi")


def make_config(flavor: ClusterFlavor, **overrides: Any) -> OrchestratorConfig:
    values: dict[str, Any] = {
        "flavor": flavor,
        "internal_fss": INTERNAL_REF,
        "supervisor_fss": SUPERVISOR_REF,
    }
    values.update(overrides)
    return OrchestratorConfig(**values)


def make_clients(tables: dict[str, dict[str, str] | None]) -> KubeClients:
    def _read(name: str, namespace: str) -> SimpleNamespace:
        data = tables.get(name)
        if data is None:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(metadata=SimpleNamespace(name=name, namespace=namespace), data=data)

    core = MagicMock()
    core.read_namespaced_config_map.side_effect = _read
    return KubeClients(core=core, storage=MagicMock(), custom=MagicMock(), apiextensions=MagicMock())


@pytest.fixture(autouse=True)
def no_watch_threads() -> Iterator[None]:
    with patch.object(ResourceWatcher, "start") as start:
        start.return_value = None
        yield


def _kinds(context: OrchestratorContext) -> list[str]:
    return sorted(s.watcher.kind.value for s in context.subscriptions())


class TestBootstrap:
    def test_vanilla_controller_watches_volume_maps(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {"featX": "true"}})
        context = bootstrap(make_config(ClusterFlavor.VANILLA), clients, FatalErrorSink())
        try:
            assert _kinds(context) == [
                "configmap",
                "persistentvolume",
                "persistentvolumeclaim",
                "volumeattachment",
            ]
            assert context.is_feature_enabled("featX") is True
            assert context.capability_client is None
            assert context.build_capability_poller() is None
        finally:
            context.stop(timeout=1)

    def test_vanilla_node_mode_only_watches_feature_tables(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {}})
        context = bootstrap(
            make_config(ClusterFlavor.VANILLA, service_mode="node"), clients, FatalErrorSink()
        )
        try:
            assert _kinds(context) == ["configmap"]
        finally:
            context.stop(timeout=1)

    @pytest.mark.parametrize(
        ("fake_attach", "expected"),
        [
            ("false", ["configmap", "node", "volumeattachment"]),
            (
                "true",
                [
                    "configmap",
                    "node",
                    "persistentvolume",
                    "persistentvolumeclaim",
                    "volumeattachment",
                ],
            ),
        ],
    )
    def test_workload_maps_follow_fake_attach(self, fake_attach: str, expected: list[str]) -> None:
        clients = make_clients({SUPERVISOR_REF.name: {"fake-attach": fake_attach}})
        context = bootstrap(make_config(ClusterFlavor.WORKLOAD), clients, FatalErrorSink())
        try:
            assert _kinds(context) == expected
            assert context.build_capability_poller() is not None
        finally:
            context.stop(timeout=1)

    def test_webhook_server_only_watches_feature_tables(self) -> None:
        clients = make_clients({SUPERVISOR_REF.name: {"fake-attach": "true"}})
        context = bootstrap(
            make_config(ClusterFlavor.WORKLOAD, operation_mode="WEBHOOK_SERVER"),
            clients,
            FatalErrorSink(),
        )
        try:
            assert _kinds(context) == ["configmap"]
            assert context.get_claim("ns", "c1") is None
        finally:
            context.stop(timeout=1)

    def test_missing_feature_table_fails(self) -> None:
        clients = make_clients({})

        with pytest.raises(BootstrapError):
            bootstrap(make_config(ClusterFlavor.VANILLA), clients, FatalErrorSink())

    def test_missing_values_load_as_empty_strings(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {"featX": None, "featY": "true"}})  # type: ignore[dict-item]

        table = read_feature_table(clients, "internal", INTERNAL_REF)

        assert table.snapshot() == {"featX": "", "featY": "true"}

    def test_registration_failure_stops_started_consumers(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {}})
        with (
            patch.object(
                OrchestratorContext,
                "subscribe",
                autospec=True,
                side_effect=[MagicMock(), RuntimeError("boom")],
            ),
            patch.object(OrchestratorContext, "stop", autospec=True) as stop,
        ):
            with pytest.raises(BootstrapError):
                bootstrap(make_config(ClusterFlavor.VANILLA), clients, FatalErrorSink())

        stop.assert_called_once()

    def test_get_claim_reads_watch_store(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {}})
        context = bootstrap(make_config(ClusterFlavor.VANILLA), clients, FatalErrorSink())
        try:
            assert context.claims is not None
            claim = SimpleNamespace(metadata=SimpleNamespace(name="c1", namespace="ns1"))
            context.claims.handle_watch_event("ADDED", claim)

            found = context.get_claim("ns1", "c1")
            assert found == claim
            found.metadata.name = "mutated"
            assert context.get_claim("ns1", "c1").metadata.name == "c1"
            assert context.get_claim("ns1", "c2") is None
            clients.core.read_namespaced_persistent_volume_claim.assert_not_called()
        finally:
            context.stop(timeout=1)

    def test_pending_kinds_until_synced(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {}})
        context = bootstrap(
            make_config(ClusterFlavor.VANILLA, service_mode="node"), clients, FatalErrorSink()
        )
        try:
            assert context.pending_kinds() == ["configmap"]
            context.subscriptions()[0].watcher.synced.set()
            assert context.is_ready() is True
        finally:
            context.stop(timeout=1)


class TestGuestBootstrap:
    def _remote(self) -> KubeClients:
        return KubeClients(
            core=MagicMock(), storage=MagicMock(), custom=MagicMock(), apiextensions=MagicMock()
        )

    def test_replication_switch_must_be_present(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {}, SUPERVISOR_REF.name: {}})

        with pytest.raises(BootstrapError):
            bootstrap(
                make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
                clients,
                FatalErrorSink(),
                remote_clients=self._remote(),
                supervisor_namespace="tenant-ns",
            )

    def test_replication_switch_must_be_boolean(self) -> None:
        clients = make_clients(
            {
                INTERNAL_REF.name: {"csi-sv-feature-states-replication": "maybe"},
                SUPERVISOR_REF.name: {},
            }
        )

        with pytest.raises(BootstrapError):
            bootstrap(
                make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
                clients,
                FatalErrorSink(),
                remote_clients=self._remote(),
                supervisor_namespace="tenant-ns",
            )

    def test_feature_state_resource_becomes_authoritative(self) -> None:
        clients = make_clients(
            {
                INTERNAL_REF.name: {"csi-sv-feature-states-replication": "true", "featB": "true"},
                SUPERVISOR_REF.name: {"featB": "false"},
            }
        )
        remote = self._remote()
        remote.custom.get_namespaced_custom_object.return_value = {
            "metadata": {"name": "svfeaturestates", "namespace": "tenant-ns"},
            "spec": {"featureStates": [{"name": "featB", "enabled": True}]},
        }
        context = bootstrap(
            make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
            clients,
            FatalErrorSink(),
            remote_clients=remote,
            supervisor_namespace="tenant-ns",
        )
        try:
            assert context.is_feature_enabled("featB") is True
            assert ResourceKind.FEATURE_STATE.value in _kinds(context)
            kwargs = remote.custom.get_namespaced_custom_object.call_args.kwargs
            assert kwargs["namespace"] == "tenant-ns"
            assert kwargs["plural"] == "cnscsisvfeaturestates"
        finally:
            context.stop(timeout=1)

    def test_feature_state_resource_needs_no_replicated_config_object(self) -> None:
        clients = make_clients(
            {INTERNAL_REF.name: {"csi-sv-feature-states-replication": "true", "featB": "true"}}
        )
        remote = self._remote()
        remote.custom.get_namespaced_custom_object.return_value = {
            "metadata": {"name": "svfeaturestates", "namespace": "tenant-ns"},
            "spec": {"featureStates": [{"name": "featB", "enabled": True}]},
        }
        context = bootstrap(
            make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
            clients,
            FatalErrorSink(),
            remote_clients=remote,
            supervisor_namespace="tenant-ns",
        )
        try:
            assert context.is_feature_enabled("featB") is True
            read_names = [
                c.kwargs["name"] for c in clients.core.read_namespaced_config_map.call_args_list
            ]
            assert read_names == [INTERNAL_REF.name]
        finally:
            context.stop(timeout=1)

    def test_fallback_without_config_object_fails(self) -> None:
        clients = make_clients({INTERNAL_REF.name: {"csi-sv-feature-states-replication": "true"}})
        remote = self._remote()
        remote.custom.get_namespaced_custom_object.side_effect = ApiException(status=404)

        with patch(
            "orchestrator.src.context._FeatureStateSubscriber.start_retry"
        ) as start_retry:
            with pytest.raises(BootstrapError):
                bootstrap(
                    make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
                    clients,
                    FatalErrorSink(),
                    remote_clients=remote,
                    supervisor_namespace="tenant-ns",
                )

        start_retry.assert_not_called()

    def test_unregistered_feature_state_falls_back_and_retries(self) -> None:
        clients = make_clients(
            {
                INTERNAL_REF.name: {"csi-sv-feature-states-replication": "true", "featB": "true"},
                SUPERVISOR_REF.name: {"featB": "true"},
            }
        )
        remote = self._remote()
        remote.custom.get_namespaced_custom_object.side_effect = ApiException(status=404)

        with patch(
            "orchestrator.src.context._FeatureStateSubscriber.start_retry"
        ) as start_retry:
            context = bootstrap(
                make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
                clients,
                FatalErrorSink(),
                remote_clients=remote,
                supervisor_namespace="tenant-ns",
            )
        try:
            start_retry.assert_called_once()
            assert context.is_feature_enabled("featB") is True
            assert ResourceKind.FEATURE_STATE.value not in _kinds(context)
        finally:
            context.stop(timeout=1)

    def test_other_feature_state_errors_fail_bootstrap(self) -> None:
        clients = make_clients(
            {
                INTERNAL_REF.name: {"csi-sv-feature-states-replication": "true"},
                SUPERVISOR_REF.name: {},
            }
        )
        remote = self._remote()
        remote.custom.get_namespaced_custom_object.side_effect = ApiException(status=500)

        with pytest.raises(BootstrapError):
            bootstrap(
                make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
                clients,
                FatalErrorSink(),
                remote_clients=remote,
                supervisor_namespace="tenant-ns",
            )

    def test_replication_disabled_uses_config_object(self) -> None:
        clients = make_clients(
            {
                INTERNAL_REF.name: {"csi-sv-feature-states-replication": "false", "featB": "true"},
                SUPERVISOR_REF.name: {"featB": "false"},
            }
        )
        remote = self._remote()
        context = bootstrap(
            make_config(ClusterFlavor.GUEST, supervisor_endpoint="sv"),
            clients,
            FatalErrorSink(),
            remote_clients=remote,
            supervisor_namespace="tenant-ns",
        )
        try:
            remote.custom.get_namespaced_custom_object.assert_not_called()
            assert context.is_feature_enabled("featB") is False
            assert _kinds(context) == ["configmap"]
        finally:
            context.stop(timeout=1)


class TestContextHolder:
    def test_failure_publishes_nothing_and_is_retryable(self) -> None:
        built = MagicMock(spec=OrchestratorContext)
        factory = MagicMock(side_effect=[BootstrapError("first"), built])
        holder = ContextHolder(factory)

        with pytest.raises(BootstrapError):
            holder.get()
        assert holder.current is None

        assert holder.get() is built
        assert holder.get() is built
        assert factory.call_count == 2

    def test_unexpected_errors_become_bootstrap_errors(self) -> None:
        holder = ContextHolder(MagicMock(side_effect=ValueError("bad client")))

        with pytest.raises(BootstrapError):
            holder.get()

    def test_concurrent_callers_share_one_build(self) -> None:
        built = MagicMock(spec=OrchestratorContext)
        calls = 0

        def _factory() -> OrchestratorContext:
            nonlocal calls
            calls += 1
            time.sleep(0.05)
            return built

        holder = ContextHolder(_factory)
        results: list[OrchestratorContext] = []
        results_lock = threading.Lock()

        def _get() -> None:
            context = holder.get()
            with results_lock:
                results.append(context)

        threads = [threading.Thread(target=_get) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=2)

        assert calls == 1
        assert len(results) == 8
        assert all(result is built for result in results)

    def test_fast_path_skips_the_lock(self) -> None:
        built = MagicMock(spec=OrchestratorContext)
        holder = ContextHolder(lambda: built)
        holder.get()
        holder._lock = MagicMock()

        assert holder.get() is built
        holder._lock.__enter__.assert_not_called()
