from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from kubernetes.client import CustomObjectsApi

from orchestrator.src.capabilities import (
    WORKLOAD_DOMAIN_ISOLATION,
    CapabilityClient,
    CapabilityTable,
    refresh_capabilities,
)
from orchestrator.src.config import ClusterFlavor, ConfigObjectRef
from orchestrator.src.errors import RequiredResourceDeleted
from orchestrator.src.metrics import METRICS
from orchestrator.src.objects import object_name, object_namespace
from orchestrator.src.store import IndexedStore

LINKED_CLONE_CAPABILITY = "supports_FCD_linked_clone"

# GA'ed in the single-cluster flavor; no longer read from the config object.
RELEASED_VANILLA_FEATURES = frozenset(
    {
        "csi-migration",
        "online-volume-extend",
        "block-volume-snapshot",
        "csi-windows-support",
        "list-volumes",
        "cnsmgr-suspend-create-volume",
        "topology-preferential-datastores",
        "multi-vcenter-csi-topology",
        "csi-internal-generated-cluster-id",
        "topology-aware-file-volume",
    }
)

# Management-plane feature names answered by the capabilities object.
CAPABILITY_BACKED_FEATURES = frozenset(
    {
        WORKLOAD_DOMAIN_ISOLATION,
        "PodVM_On_Stretched_Supervisor_Supported",
        "CSI_Detach_Supported",
        LINKED_CLONE_CAPABILITY,
    }
)

# Capabilities the management plane may activate after this process started.
LATE_ENABLEMENT_CAPABILITIES = frozenset({WORKLOAD_DOMAIN_ISOLATION, LINKED_CLONE_CAPABILITY})

# Tenant features with no management-plane counterpart.
TENANT_LOCAL_ONLY_FEATURES = frozenset({"csi-windows-support"})

# Tenant feature -> management-plane capability it depends on.
TENANT_CAPABILITY_FEATURES: Mapping[str, str] = {
    "workload-domain-isolation": WORKLOAD_DOMAIN_ISOLATION,
    "linked-clone-support": LINKED_CLONE_CAPABILITY,
}

FEATURE_STATE_REPLICATION = "csi-sv-feature-states-replication"
FAKE_ATTACH = "fake-attach"
LIST_VOLUMES = "list-volumes"

FEATURE_STATE_GROUP = "cns.vmware.com"
FEATURE_STATE_VERSION = "v1alpha1"
FEATURE_STATE_PLURAL = "cnscsisvfeaturestates"
FEATURE_STATE_OBJECT_NAME = "svfeaturestates"

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def parse_feature_value(value: str) -> bool:
    """Parse a feature table value; anything but a recognised boolean raises ValueError."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{value!r} is not a boolean feature state")


def normalize_feature_data(raw_data: Any) -> dict[str, str]:
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def feature_states_from_resource(obj: Any) -> dict[str, str]:
    """Flatten ``spec.featureStates[{name, enabled}]`` into a feature table."""
    spec = obj.get("spec") if isinstance(obj, dict) else None
    states = spec.get("featureStates") if isinstance(spec, dict) else None
    result: dict[str, str] = {}
    for state in states or []:
        if not isinstance(state, dict) or not isinstance(state.get("name"), str):
            continue
        result[state["name"]] = "true" if state.get("enabled") is True else "false"
    return result


class FeatureTable(IndexedStore[str, str]):
    """Feature name -> ``"true"``/``"false"`` string, replaced wholesale on reload."""

    def __init__(self, name: str, source: ConfigObjectRef) -> None:
        super().__init__(name)
        self.source = source

    def load(self, data: Mapping[str, str], origin: str) -> None:
        self.replace(data)
        METRICS.feature_table_reloads_total.labels(table=self.name, source=origin).inc()


class FeatureStateSource:
    """Tracks whether the feature-state resource, not the config object, feeds the upstream table.

    The flag check and the table replace happen under one lock, so a config
    object reload can never land after the resource has taken over.
    """

    def __init__(self) -> None:
        self._authoritative = False
        self._lock = threading.Lock()

    @property
    def authoritative(self) -> bool:
        with self._lock:
            return self._authoritative

    def set_authoritative(self, value: bool) -> None:
        with self._lock:
            self._authoritative = value

    def load_from_resource(self, table: FeatureTable, data: Mapping[str, str]) -> None:
        with self._lock:
            self._authoritative = True
            table.load(data, origin="featurestate")

    def load_from_config(self, table: FeatureTable, data: Mapping[str, str]) -> bool:
        """Replace *table* unless the resource is authoritative; False when skipped."""
        with self._lock:
            if self._authoritative:
                return False
            table.load(data, origin="configmap")
            return True


class FeatureGateResolver:
    """Answers "is feature X enabled" from up to three sources.

    * VANILLA: graduated features are always on, everything else comes from
      the local (internal) table.
    * WORKLOAD: capability-backed names come from the capability table,
      fetched lazily on first use; everything else from the upstream
      (supervisor) table.
    * GUEST: the local table must enable the feature first.  Tenant-only
      features stop there; capability-mapped features then defer to the
      capability table; all others also need the upstream table to agree.

    Missing keys and unparseable values resolve to disabled and are never
    raised to the caller.  No table lock is held while capabilities are
    fetched.
    """

    def __init__(
        self,
        flavor: ClusterFlavor,
        *,
        internal: FeatureTable | None = None,
        supervisor: FeatureTable | None = None,
        capabilities: CapabilityTable | None = None,
        capability_client: CapabilityClient | None = None,
        released_features: frozenset[str] = RELEASED_VANILLA_FEATURES,
        capability_features: frozenset[str] = CAPABILITY_BACKED_FEATURES,
        late_enablement: frozenset[str] = LATE_ENABLEMENT_CAPABILITIES,
        tenant_local_only: frozenset[str] = TENANT_LOCAL_ONLY_FEATURES,
        tenant_capability_features: Mapping[str, str] = TENANT_CAPABILITY_FEATURES,
        logger: logging.Logger | None = None,
    ) -> None:
        self.flavor = flavor
        self.internal = internal
        self.supervisor = supervisor
        self.capabilities = capabilities if capabilities is not None else CapabilityTable()
        self.capability_client = capability_client
        self.released_features = released_features
        self.capability_features = capability_features
        self.late_enablement = late_enablement
        self.tenant_local_only = tenant_local_only
        self.tenant_capability_features = dict(tenant_capability_features)
        self.logger = logger or logging.getLogger(__name__)

    def is_enabled(self, feature: str) -> bool:
        if self.flavor is ClusterFlavor.VANILLA:
            result = self._resolve_vanilla(feature)
        elif self.flavor is ClusterFlavor.WORKLOAD:
            result = self._resolve_workload(feature)
        elif self.flavor is ClusterFlavor.GUEST:
            result = self._resolve_guest(feature)
        else:
            self.logger.debug("Cluster flavor %r not recognised; %s is disabled", self.flavor, feature)
            result = False
        METRICS.feature_gate_checks_total.labels(result="enabled" if result else "disabled").inc()
        return result

    def _table_state(self, table: FeatureTable | None, feature: str) -> bool:
        if table is None:
            return False
        value, found = table.get(feature)
        if not found or value is None:
            self.logger.info(
                "Could not find the %s feature state in %s; setting the feature state to false",
                feature,
                table.source.name,
            )
            return False
        try:
            return parse_feature_value(value)
        except ValueError:
            self.logger.error(
                "Error converting %s feature state value %r to boolean; "
                "setting the feature state to false",
                feature,
                value,
            )
            return False

    def _refresh_capabilities(self) -> bool:
        if self.capability_client is None:
            return False
        return refresh_capabilities(self.capability_client, self.capabilities, self.logger)

    def _capability_state(self, capability: str) -> bool:
        if not len(self.capabilities) and not self._refresh_capabilities():
            return False

        value, found = self.capabilities.get(capability)
        if not found:
            return False
        self.logger.debug("Capability %s is set to %s", capability, value)
        if value or capability not in self.late_enablement:
            return bool(value)

        # The management plane may activate this one after we started.
        if not self._refresh_capabilities():
            return False
        value, _ = self.capabilities.get(capability)
        if value:
            self.logger.info("Capability %s was disabled, but now it has been enabled", capability)
        return bool(value)

    def _resolve_vanilla(self, feature: str) -> bool:
        if feature in self.released_features:
            return True
        return self._table_state(self.internal, feature)

    def _resolve_workload(self, feature: str) -> bool:
        if feature in self.capability_features:
            self.logger.debug("Feature %s is capability-backed", feature)
            return self._capability_state(feature)
        return self._table_state(self.supervisor, feature)

    def _resolve_guest(self, feature: str) -> bool:
        if not self._table_state(self.internal, feature):
            return False
        if feature in self.tenant_local_only:
            return True
        capability = self.tenant_capability_features.get(feature)
        if capability is not None:
            return self._capability_state(capability)
        return self._table_state(self.supervisor, feature)


class FeatureConfigMapHandler:
    """Reloads feature tables from their backing config objects.

    Upstream config-object events are ignored in node mode and while the
    feature-state resource is authoritative.  Deleting a backing config
    object is fatal.
    """

    def __init__(
        self,
        *,
        internal: FeatureTable | None,
        supervisor: FeatureTable | None,
        source: FeatureStateSource,
        node_mode: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.internal = internal
        self.supervisor = supervisor
        self.source = source
        self.node_mode = node_mode
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _matches(table: FeatureTable | None, config_map: Any) -> bool:
        return (
            table is not None
            and object_name(config_map) == table.source.name
            and object_namespace(config_map) == table.source.namespace
        )

    def _target(self, config_map: Any, action: str) -> FeatureTable | None:
        if self._matches(self.supervisor, config_map):
            if self.node_mode:
                self.logger.debug("Ignoring supervisor feature states %s event in node mode", action)
                return None
            if self.source.authoritative:
                self.logger.debug(
                    "Ignoring supervisor feature states %s event as %s resource is present",
                    action,
                    FEATURE_STATE_OBJECT_NAME,
                )
                return None
            return self.supervisor
        if self._matches(self.internal, config_map):
            return self.internal
        return None

    def _load(self, table: FeatureTable, config_map: Any) -> None:
        data = normalize_feature_data(getattr(config_map, "data", None))
        if table is self.supervisor:
            if not self.source.load_from_config(table, data):
                self.logger.debug(
                    "Dropping supervisor feature states reload as %s resource took over",
                    FEATURE_STATE_OBJECT_NAME,
                )
                return
        else:
            table.load(data, origin="configmap")
        self.logger.info(
            "Feature state values from %s stored in %s table: %s",
            table.source.name,
            table.name,
            data,
        )

    def on_added(self, config_map: Any) -> None:
        if object_name(config_map) is None:
            self.logger.warning("ConfigMap handler: unrecognized object %r", config_map)
            return
        table = self._target(config_map, "add")
        if table is not None:
            self._load(table, config_map)

    def on_updated(self, old: Any, new: Any) -> None:
        if object_name(new) is None:
            self.logger.warning("ConfigMap handler: unrecognized object %r", new)
            return
        if normalize_feature_data(getattr(old, "data", None)) == normalize_feature_data(
            getattr(new, "data", None)
        ):
            return
        table = self._target(new, "update")
        if table is not None:
            self._load(table, new)

    def on_deleted(self, config_map: Any) -> None:
        table = self._target(config_map, "delete")
        if table is None:
            return
        raise RequiredResourceDeleted(
            "ConfigMap", object_namespace(config_map) or "", object_name(config_map) or ""
        )


class FeatureStateHandler:
    """Reloads the upstream table from the feature-state custom resource."""

    def __init__(
        self,
        supervisor: FeatureTable,
        source: FeatureStateSource,
        resource_name: str = FEATURE_STATE_OBJECT_NAME,
        logger: logging.Logger | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.source = source
        self.resource_name = resource_name
        self.logger = logger or logging.getLogger(__name__)

    def _ours(self, obj: Any) -> bool:
        name = object_name(obj)
        if name != self.resource_name:
            self.logger.warning("Ignoring %s resource with name %r", FEATURE_STATE_PLURAL, name)
            return False
        return True

    def load(self, obj: Any) -> None:
        states = feature_states_from_resource(obj)
        self.source.load_from_resource(self.supervisor, states)
        self.logger.info(
            "Supervisor feature state values stored from %s resource: %s",
            self.resource_name,
            states,
        )

    def on_added(self, obj: Any) -> None:
        if self._ours(obj):
            self.load(obj)

    def on_updated(self, old: Any, new: Any) -> None:
        if feature_states_from_resource(old) == feature_states_from_resource(new):
            return
        if self._ours(new):
            self.load(new)

    def on_deleted(self, obj: Any) -> None:
        if not self._ours(obj):
            return
        self.source.set_authoritative(False)
        raise RequiredResourceDeleted(
            FEATURE_STATE_PLURAL, object_namespace(obj) or "", object_name(obj) or ""
        )


class FeatureStateClient:
    """Reads and lists the feature-state resource in the remote plane namespace."""

    def __init__(self, custom_api: CustomObjectsApi, namespace: str) -> None:
        self.custom_api = custom_api
        self.namespace = namespace

    @property
    def list_kwargs(self) -> dict[str, str]:
        return {
            "group": FEATURE_STATE_GROUP,
            "version": FEATURE_STATE_VERSION,
            "namespace": self.namespace,
            "plural": FEATURE_STATE_PLURAL,
        }

    def fetch(self) -> Any:
        return self.custom_api.get_namespaced_custom_object(
            name=FEATURE_STATE_OBJECT_NAME, **self.list_kwargs
        )
