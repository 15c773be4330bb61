from __future__ import annotations

import logging
import threading
from typing import Any

from kubernetes.client import ApiextensionsV1Api, ApiException, CustomObjectsApi

from orchestrator.src.errors import CapabilityActivated, FatalErrorSink
from orchestrator.src.metrics import METRICS
from orchestrator.src.store import IndexedStore

CAPABILITY_GROUP = "iaas.vmware.com"
CAPABILITY_VERSION = "v1alpha1"
CAPABILITY_PLURAL = "capabilities"
CAPABILITY_CRD_NAME = f"{CAPABILITY_PLURAL}.{CAPABILITY_GROUP}"
CAPABILITY_OBJECT_NAME = "supervisor-capabilities"

WORKLOAD_DOMAIN_ISOLATION = "Workload_Domain_Isolation_Supported"


class CapabilityTable(IndexedStore[str, bool]):
    """Capability name -> activated, replaced wholesale on every successful fetch."""

    def __init__(self) -> None:
        super().__init__("capabilities")


def parse_capabilities(obj: Any) -> dict[str, bool]:
    """Extract ``status.supervisor.<name>.activated`` from a capabilities object."""
    status = obj.get("status") if isinstance(obj, dict) else None
    supervisor = status.get("supervisor") if isinstance(status, dict) else None
    if not isinstance(supervisor, dict):
        return {}
    result: dict[str, bool] = {}
    for name, capability in supervisor.items():
        if not isinstance(name, str):
            continue
        activated = capability.get("activated") if isinstance(capability, dict) else None
        result[name] = activated is True
    return result


class CapabilityClient:
    """Reads the cluster-scoped capabilities object from the management plane."""

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        apiextensions_api: ApiextensionsV1Api,
        object_name: str = CAPABILITY_OBJECT_NAME,
    ) -> None:
        self.custom_api = custom_api
        self.apiextensions_api = apiextensions_api
        self.object_name = object_name

    def fetch(self) -> dict[str, bool]:
        obj = self.custom_api.get_cluster_custom_object(
            group=CAPABILITY_GROUP,
            version=CAPABILITY_VERSION,
            plural=CAPABILITY_PLURAL,
            name=self.object_name,
        )
        return parse_capabilities(obj)

    def is_registered(self) -> bool:
        """Return False while the capabilities CRD is not installed; other errors propagate."""
        try:
            self.apiextensions_api.read_custom_resource_definition(name=CAPABILITY_CRD_NAME)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True


def refresh_capabilities(
    client: CapabilityClient,
    table: CapabilityTable,
    logger: logging.Logger | None = None,
) -> bool:
    """Fetch capabilities and replace *table*; on failure the table is left stale.

    The network call happens before any table lock is taken.
    """
    log = logger or logging.getLogger(__name__)
    try:
        capabilities = client.fetch()
    except Exception:
        METRICS.capability_polls_total.labels(outcome="error").inc()
        log.exception(
            "Failed to fetch capabilities object %s; keeping previous values", client.object_name
        )
        return False
    table.replace(capabilities)
    METRICS.capability_polls_total.labels(outcome="success").inc()
    log.debug("Capabilities map: %s", capabilities)
    return True


class CapabilityPoller:
    """Restarts the process when a watched capability becomes activated.

    Capabilities are read at startup and are not expected to change under a
    running process.  The poller refreshes the table on a fixed interval and
    reports :class:`CapabilityActivated` to the fatal sink when the watched
    capability moves from absent/disabled to enabled.  Until the capability
    CRD is registered in the remote plane it only re-checks registration,
    on a longer interval.
    """

    def __init__(
        self,
        client: CapabilityClient,
        table: CapabilityTable,
        fatal: FatalErrorSink,
        *,
        watched_capability: str = WORKLOAD_DOMAIN_ISOLATION,
        poll_interval_seconds: float = 120,
        registration_retry_seconds: float = 600,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.table = table
        self.fatal = fatal
        self.watched_capability = watched_capability
        self.poll_interval_seconds = poll_interval_seconds
        self.registration_retry_seconds = registration_retry_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._thread: threading.Thread | None = None

    def _watched_enabled(self) -> bool:
        value, _ = self.table.get(self.watched_capability)
        return value is True

    def wait_for_registration(self, stop: threading.Event) -> bool:
        """Block until the capability CRD exists; False if stopped first."""
        while not stop.is_set():
            try:
                if self.client.is_registered():
                    return True
                self.logger.info(
                    "CRD %s is not registered in the management plane; checking again in %ss",
                    CAPABILITY_CRD_NAME,
                    self.registration_retry_seconds,
                )
            except Exception:
                self.logger.exception("Failed to check whether %s is registered", CAPABILITY_CRD_NAME)
            stop.wait(timeout=self.registration_retry_seconds)
        return False

    def poll_once(self, previously_enabled: bool) -> bool:
        """Refresh the table and return the watched capability's current state."""
        if not refresh_capabilities(self.client, self.table, self.logger):
            return previously_enabled
        enabled = self._watched_enabled()
        if enabled and not previously_enabled:
            self.fatal.report(CapabilityActivated(self.watched_capability))
        return enabled

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        if not self.wait_for_registration(stop):
            return

        # The baseline is what this process started with; fetch it only if
        # no gate query has populated the table yet.
        if not len(self.table):
            refresh_capabilities(self.client, self.table, self.logger)
        enabled = self._watched_enabled()
        self.logger.info(
            "Polling %s every %ss (%s currently %s)",
            CAPABILITY_OBJECT_NAME,
            self.poll_interval_seconds,
            self.watched_capability,
            "enabled" if enabled else "disabled",
        )
        while not stop.wait(timeout=self.poll_interval_seconds):
            enabled = self.poll_once(enabled)
            if self.fatal.triggered.is_set():
                return

    def start(self, shutdown_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run_forever,
            kwargs={"shutdown_event": shutdown_event},
            name="capability-poller",
            daemon=True,
        )
        self._thread.start()
        return self._thread
