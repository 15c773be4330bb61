from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from orchestrator.src.cache import IdentityCache
from orchestrator.src.capabilities import CapabilityClient, CapabilityPoller, CapabilityTable
from orchestrator.src.config import ClusterFlavor, ConfigObjectRef, OrchestratorConfig
from orchestrator.src.errors import BootstrapError, FatalErrorSink
from orchestrator.src.events import ChannelConsumer, EventChannel, EventHandler, ResourceKind
from orchestrator.src.features import (
    FAKE_ATTACH,
    FEATURE_STATE_REPLICATION,
    LIST_VOLUMES,
    FeatureConfigMapHandler,
    FeatureGateResolver,
    FeatureStateClient,
    FeatureStateHandler,
    FeatureStateSource,
    FeatureTable,
    normalize_feature_data,
    parse_feature_value,
)
from orchestrator.src.handlers import (
    NodeHandler,
    PersistentVolumeClaimHandler,
    PersistentVolumeHandler,
    VolumeAttachmentHandler,
)
from orchestrator.src.kube import KubeClients
from orchestrator.src.watcher import ResourceWatcher

LOGGER = logging.getLogger(__name__)


@dataclass
class Subscription:
    watcher: ResourceWatcher
    consumer: ChannelConsumer


class OrchestratorContext:
    """Everything the request-serving side of the plugin shares.

    Built once by :func:`bootstrap` and handed to every component that needs
    identity lookups or feature gates.  Owns the watch feeds and their
    consumer threads and tears them down in :meth:`stop`.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        cache: IdentityCache,
        resolver: FeatureGateResolver,
        fatal: FatalErrorSink,
        *,
        capability_client: CapabilityClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.cache = cache
        self.resolver = resolver
        self.fatal = fatal
        self.capability_client = capability_client
        self.logger = logger or LOGGER
        self.shutdown = threading.Event()
        self.claims: ResourceWatcher | None = None
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    @property
    def capabilities(self) -> CapabilityTable:
        return self.resolver.capabilities

    def is_feature_enabled(self, feature: str) -> bool:
        return self.resolver.is_enabled(feature)

    def get_claim(self, namespace: str, name: str) -> Any | None:
        """Return the last-seen claim object from the local watch store, never the API."""
        if self.claims is None:
            return None
        return self.claims.get(f"{namespace}/{name}")

    def subscribe(self, watcher: ResourceWatcher, handler: EventHandler) -> Subscription:
        """Start a consumer for *watcher*'s channel, then the watch feed itself."""
        consumer = ChannelConsumer(watcher.channel, handler, self.fatal, logger=self.logger)
        subscription = Subscription(watcher=watcher, consumer=consumer)
        with self._lock:
            if self.shutdown.is_set():
                raise RuntimeError("context is stopped")
            self._subscriptions.append(subscription)
        consumer.start()
        watcher.start(self.shutdown)
        self.logger.info("Subscribed to %s events", watcher.kind.value)
        return subscription

    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions)

    def pending_kinds(self) -> list[str]:
        """Kinds whose initial listing has not been replayed yet."""
        return [s.watcher.kind.value for s in self.subscriptions() if not s.watcher.synced.is_set()]

    def is_ready(self) -> bool:
        return not self.pending_kinds()

    def build_capability_poller(self) -> CapabilityPoller | None:
        if self.capability_client is None:
            return None
        return CapabilityPoller(
            self.capability_client,
            self.capabilities,
            self.fatal,
            poll_interval_seconds=self.config.capability_poll_seconds,
            registration_retry_seconds=self.config.capability_registration_retry_seconds,
            logger=self.logger,
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self.shutdown.set()
        subscriptions = self.subscriptions()
        for subscription in subscriptions:
            subscription.watcher.request_stop()
        for subscription in subscriptions:
            subscription.watcher.stop(timeout=timeout)
            subscription.consumer.stop(timeout=timeout)


class ContextHolder:
    """One-time, thread-safe construction of the shared :class:`OrchestratorContext`.

    Callers after a successful build read the published instance without
    taking the lock.  Concurrent first callers wait on the same build.  A
    failed build publishes nothing, so the next call retries.
    """

    def __init__(self, factory: Callable[[], OrchestratorContext]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._context: OrchestratorContext | None = None

    @property
    def current(self) -> OrchestratorContext | None:
        """The published context, or None; never triggers a build."""
        return self._context

    def get(self) -> OrchestratorContext:
        context = self._context
        if context is not None:
            return context
        with self._lock:
            if self._context is None:
                try:
                    built = self._factory()
                except BootstrapError:
                    raise
                except Exception as exc:
                    raise BootstrapError(f"orchestrator initialisation failed: {exc}") from exc
                self._context = built
            return self._context


def read_feature_data(clients: KubeClients, name: str, ref: ConfigObjectRef) -> dict[str, str]:
    """Read a feature-states config object once and return its normalised data."""
    if not ref.configured:
        raise BootstrapError(f"{name} feature states config object name/namespace is not set")
    try:
        config_map = clients.core.read_namespaced_config_map(name=ref.name, namespace=ref.namespace)
    except ApiException as exc:
        raise BootstrapError(
            f"failed to read config object {ref.name!r} in namespace {ref.namespace!r}: "
            f"status={exc.status}"
        ) from exc
    data = normalize_feature_data(getattr(config_map, "data", None))
    LOGGER.info("Loaded %s feature states from %s/%s: %s", name, ref.namespace, ref.name, data)
    return data


def read_feature_table(clients: KubeClients, name: str, ref: ConfigObjectRef) -> FeatureTable:
    table = FeatureTable(name, ref)
    table.load(read_feature_data(clients, name, ref), origin="bootstrap")
    return table


def _replication_enabled(internal: FeatureTable) -> bool:
    value, found = internal.get(FEATURE_STATE_REPLICATION)
    if not found or value is None:
        raise BootstrapError(
            f"{FEATURE_STATE_REPLICATION} feature state is missing from {internal.source.name}"
        )
    try:
        return parse_feature_value(value)
    except ValueError as exc:
        raise BootstrapError(
            f"{FEATURE_STATE_REPLICATION} feature state {value!r} is not a boolean"
        ) from exc


class _FeatureStateSubscriber:
    """Loads the feature-state resource and watches it, retrying while it is not registered."""

    def __init__(
        self,
        context: OrchestratorContext,
        client: FeatureStateClient,
        handler: FeatureStateHandler,
        retry_seconds: float,
    ) -> None:
        self.context = context
        self.client = client
        self.handler = handler
        self.retry_seconds = retry_seconds
        self.logger = context.logger

    def try_load(self) -> bool:
        """Fetch the resource once; False on 404, other API errors propagate."""
        try:
            obj = self.client.fetch()
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        self.handler.load(obj)
        return True

    def watch(self) -> None:
        watcher = ResourceWatcher(
            ResourceKind.FEATURE_STATE,
            self.client.custom_api.list_namespaced_custom_object,
            EventChannel(ResourceKind.FEATURE_STATE),
            list_kwargs=self.client.list_kwargs,
            logger=self.logger,
        )
        self.context.subscribe(watcher, self.handler)

    def retry_until_registered(self) -> None:
        stop = self.context.shutdown
        while not stop.wait(timeout=self.retry_seconds):
            try:
                if self.try_load():
                    self.logger.info("Feature-state resource is now available; watching it")
                    self.watch()
                    return
                self.logger.info(
                    "Feature-state resource still not registered; retrying in %ss",
                    self.retry_seconds,
                )
            except Exception:
                self.logger.exception("Failed to load the feature-state resource; will retry")

    def start_retry(self) -> threading.Thread:
        thread = threading.Thread(
            target=self.retry_until_registered, name="feature-state-retry", daemon=True
        )
        thread.start()
        return thread


def _config_map_watchers(
    context: OrchestratorContext,
    clients: KubeClients,
    tables: list[FeatureTable],
) -> list[ResourceWatcher]:
    namespaces = sorted({table.source.namespace for table in tables})
    return [
        ResourceWatcher(
            ResourceKind.CONFIG_MAP,
            clients.core.list_namespaced_config_map,
            EventChannel(ResourceKind.CONFIG_MAP),
            list_kwargs={"namespace": namespace},
            logger=context.logger,
        )
        for namespace in namespaces
    ]


def _register_watchers(
    context: OrchestratorContext,
    clients: KubeClients,
    internal: FeatureTable | None,
    supervisor: FeatureTable | None,
    source: FeatureStateSource,
) -> None:
    config = context.config
    resolver = context.resolver
    logger = context.logger

    tables = [t for t in (internal, supervisor) if t is not None]
    config_map_handler = FeatureConfigMapHandler(
        internal=internal,
        supervisor=supervisor,
        source=source,
        node_mode=config.is_node_mode,
        logger=logger,
    )
    for watcher in _config_map_watchers(context, clients, tables):
        context.subscribe(watcher, config_map_handler)

    if config.is_webhook_server:
        logger.info("Running as webhook server; identity cache listeners are not registered")
        return

    flavor = config.flavor
    list_volumes = (
        flavor is ClusterFlavor.VANILLA
        and not config.is_node_mode
        and resolver.is_enabled(LIST_VOLUMES)
    )
    volume_maps = list_volumes or (
        flavor is ClusterFlavor.WORKLOAD and resolver.is_enabled(FAKE_ATTACH)
    )
    attachment_map = list_volumes or flavor is ClusterFlavor.WORKLOAD

    if volume_maps:
        context.subscribe(
            ResourceWatcher(
                ResourceKind.PERSISTENT_VOLUME,
                clients.core.list_persistent_volume,
                EventChannel(ResourceKind.PERSISTENT_VOLUME),
                logger=logger,
            ),
            PersistentVolumeHandler(context.cache, resolver.is_enabled, logger=logger),
        )
        claims = ResourceWatcher(
            ResourceKind.PERSISTENT_VOLUME_CLAIM,
            clients.core.list_persistent_volume_claim_for_all_namespaces,
            EventChannel(ResourceKind.PERSISTENT_VOLUME_CLAIM),
            logger=logger,
        )
        context.subscribe(claims, PersistentVolumeClaimHandler(logger=logger))
        context.claims = claims

    if attachment_map:
        context.subscribe(
            ResourceWatcher(
                ResourceKind.VOLUME_ATTACHMENT,
                clients.storage.list_volume_attachment,
                EventChannel(ResourceKind.VOLUME_ATTACHMENT),
                logger=logger,
            ),
            VolumeAttachmentHandler(context.cache, logger=logger),
        )

    if flavor is ClusterFlavor.WORKLOAD:
        context.subscribe(
            ResourceWatcher(
                ResourceKind.NODE,
                clients.core.list_node,
                EventChannel(ResourceKind.NODE),
                logger=logger,
            ),
            NodeHandler(context.cache, logger=logger),
        )


def bootstrap(
    config: OrchestratorConfig,
    clients: KubeClients,
    fatal: FatalErrorSink,
    *,
    remote_clients: KubeClients | None = None,
    supervisor_namespace: str | None = None,
    logger: logging.Logger | None = None,
) -> OrchestratorContext:
    """Build and start the shared context for *config*.

    Reads the feature tables, decides where the upstream table comes from,
    and registers the watch feeds the flavor and service mode need.  Any
    failure stops whatever was already started and raises
    :class:`BootstrapError`.
    """
    log = logger or LOGGER
    flavor = config.flavor

    internal = (
        read_feature_table(clients, "internal", config.internal_fss)
        if flavor in (ClusterFlavor.VANILLA, ClusterFlavor.GUEST)
        else None
    )
    replicated = (
        flavor is ClusterFlavor.GUEST
        and not config.is_node_mode
        and internal is not None
        and _replication_enabled(internal)
    )
    supervisor: FeatureTable | None = None
    if replicated:
        # Filled from the feature-state resource, or from the config object as a fallback.
        supervisor = FeatureTable("supervisor", config.supervisor_fss)
    elif flavor in (ClusterFlavor.WORKLOAD, ClusterFlavor.GUEST):
        supervisor = read_feature_table(clients, "supervisor", config.supervisor_fss)

    capability_client: CapabilityClient | None = None
    if flavor is ClusterFlavor.WORKLOAD:
        capability_client = CapabilityClient(clients.custom, clients.apiextensions)
    elif flavor is ClusterFlavor.GUEST:
        if remote_clients is None:
            raise BootstrapError("management plane clients are required for the tenant flavor")
        capability_client = CapabilityClient(remote_clients.custom, remote_clients.apiextensions)

    resolver = FeatureGateResolver(
        flavor,
        internal=internal,
        supervisor=supervisor,
        capability_client=capability_client,
        logger=log,
    )
    context = OrchestratorContext(
        config,
        IdentityCache(logger=log),
        resolver,
        fatal,
        capability_client=capability_client,
        logger=log,
    )

    source = FeatureStateSource()
    try:
        if replicated and supervisor is not None:
            if remote_clients is None or not supervisor_namespace:
                raise BootstrapError("feature-state replication needs the management plane namespace")
            subscriber = _FeatureStateSubscriber(
                context,
                FeatureStateClient(remote_clients.custom, supervisor_namespace),
                FeatureStateHandler(supervisor, source, logger=log),
                config.feature_state_retry_seconds,
            )
            if subscriber.try_load():
                subscriber.watch()
            else:
                log.info(
                    "Feature-state resource is not registered yet; using %s until it is",
                    config.supervisor_fss.name,
                )
                source.load_from_config(
                    supervisor, read_feature_data(clients, "supervisor", config.supervisor_fss)
                )
                subscriber.start_retry()

        _register_watchers(context, clients, internal, supervisor, source)
    except BootstrapError:
        context.stop(timeout=1.0)
        raise
    except Exception as exc:
        context.stop(timeout=1.0)
        raise BootstrapError(f"failed to register watch subscriptions: {exc}") from exc

    log.info("Orchestrator context initialised for flavor %s", flavor.value)
    return context
