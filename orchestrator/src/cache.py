from __future__ import annotations

import logging
from collections.abc import Iterable

from orchestrator.src.metrics import METRICS
from orchestrator.src.store import IndexedStore, ReadWriteLock


def namespaced_name(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class IdentityCache:
    """In-memory identity and attachment maps fed exclusively by watch events.

    Maps:
        ``volume_to_claim``   volume handle -> ``namespace/claim``
        ``claim_to_volume``   ``namespace/claim`` -> volume handle
        ``volume_to_name``    volume handle (or legacy volume path) -> PV name
        ``name_to_nodes``     PV name -> tuple of node names, insertion ordered
        ``node_to_name``      backend node id -> node name

    The two claim maps share one lock and are always written together, so a
    reader can never observe one without its inverse.  Mutators never raise:
    removing something that is not there is a no-op.  Lookups return
    immutable values or fresh copies.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        claim_lock = ReadWriteLock()
        self.volume_to_claim: IndexedStore[str, str] = IndexedStore(
            "volume_to_claim", lock=claim_lock
        )
        self.claim_to_volume: IndexedStore[str, str] = IndexedStore(
            "claim_to_volume", lock=claim_lock
        )
        self.volume_to_name: IndexedStore[str, str] = IndexedStore("volume_to_name")
        self.name_to_nodes: IndexedStore[str, tuple[str, ...]] = IndexedStore("name_to_nodes")
        self.node_to_name: IndexedStore[str, str] = IndexedStore("node_to_name")
        self._claim_lock = claim_lock

        for store in (
            self.volume_to_claim,
            self.claim_to_volume,
            self.volume_to_name,
            self.name_to_nodes,
            self.node_to_name,
        ):
            METRICS.cache_entries.labels(map=store.name).set_function(store.__len__)

    # Volume <-> claim

    def record_volume_bound(
        self,
        volume_handle: str,
        claim_namespace: str,
        claim_name: str,
        object_name: str,
    ) -> None:
        """Record a bound block volume in all three volume maps.  Idempotent."""
        claim = namespaced_name(claim_namespace, claim_name)
        with self._claim_lock.writing():
            previous_claim, found = self.volume_to_claim.get(volume_handle)
            if found and previous_claim != claim:
                self.claim_to_volume.pop_if(previous_claim, volume_handle)
            previous_volume, found = self.claim_to_volume.get(claim)
            if found and previous_volume != volume_handle:
                self.volume_to_claim.pop_if(previous_volume, claim)
            self.volume_to_claim.put(volume_handle, claim)
            self.claim_to_volume.put(claim, volume_handle)
        self.volume_to_name.put(volume_handle, object_name)
        self.logger.debug(
            "Recorded volume %s bound to %s (object %s)", volume_handle, claim, object_name
        )

    def forget_claim_binding(self, volume_handle: str) -> None:
        """Drop the claim pair for *volume_handle* but keep its object name."""
        with self._claim_lock.writing():
            claim = self.volume_to_claim.pop(volume_handle)
            if claim is not None:
                self.claim_to_volume.pop_if(claim, volume_handle)
        if claim is not None:
            self.logger.debug("Forgot claim binding %s -> %s", volume_handle, claim)

    def forget_volume(
        self,
        volume_handle: str,
        claim_namespace: str | None = None,
        claim_name: str | None = None,
    ) -> None:
        """Remove *volume_handle* from all volume maps; tolerant of missing entries."""
        with self._claim_lock.writing():
            stored_claim = self.volume_to_claim.pop(volume_handle)
            if stored_claim is not None:
                self.claim_to_volume.pop_if(stored_claim, volume_handle)
            if claim_namespace and claim_name:
                self.claim_to_volume.pop_if(
                    namespaced_name(claim_namespace, claim_name), volume_handle
                )
        self.volume_to_name.pop(volume_handle)
        self.logger.debug("Forgot volume %s", volume_handle)

    def record_volume_name(self, volume_handle: str, object_name: str) -> None:
        """Record a handle (or legacy volume path) that never enters the claim maps."""
        self.volume_to_name.put(volume_handle, object_name)

    def forget_volume_name(self, volume_handle: str) -> None:
        self.volume_to_name.pop(volume_handle)

    def lookup_claim_for_volume(self, volume_handle: str) -> tuple[str, str, bool]:
        """Return ``(namespace, claim_name, found)``."""
        claim, found = self.volume_to_claim.get(volume_handle)
        if not found or claim is None:
            return "", "", False
        namespace, _, name = claim.partition("/")
        return namespace, name, True

    def lookup_volume_for_claim(self, claim: str) -> tuple[str, bool]:
        """Return ``(volume_handle, found)`` for a ``namespace/name`` claim key."""
        volume_handle, found = self.claim_to_volume.get(claim)
        return (volume_handle or "", found)

    def lookup_name_for_volume(self, volume_handle: str) -> tuple[str, bool]:
        name, found = self.volume_to_name.get(volume_handle)
        return (name or "", found)

    def all_volume_handles(self) -> list[str]:
        """Every handle known to the name map, legacy volume paths included."""
        return self.volume_to_name.keys()

    def bound_volume_handles(self) -> list[str]:
        return self.volume_to_claim.keys()

    # Attachments

    def record_attachment(self, object_name: str, node_name: str) -> None:
        def _add(nodes: tuple[str, ...] | None) -> tuple[str, ...]:
            nodes = nodes or ()
            if node_name in nodes:
                return nodes
            return nodes + (node_name,)

        nodes = self.name_to_nodes.update(object_name, _add)
        self.logger.debug("Volume %s attached on nodes %s", object_name, nodes)

    def forget_attachment(self, object_name: str, node_name: str) -> None:
        def _remove(nodes: tuple[str, ...] | None) -> tuple[str, ...] | None:
            remaining = tuple(n for n in (nodes or ()) if n != node_name)
            return remaining or None

        nodes = self.name_to_nodes.update(object_name, _remove)
        self.logger.debug("Volume %s now attached on nodes %s", object_name, nodes or ())

    def lookup_nodes_for_volumes(self, volume_handles: Iterable[str]) -> dict[str, list[str]]:
        """Translate handles to PV names and return their attached nodes.

        Handles with no known PV name are left out of the result.
        """
        result: dict[str, list[str]] = {}
        for volume_handle in volume_handles:
            name, found = self.volume_to_name.get(volume_handle)
            if not found or name is None:
                continue
            nodes, _ = self.name_to_nodes.get(name)
            result[volume_handle] = list(nodes or ())
        return result

    # Nodes

    def record_node(self, backend_id: str, node_name: str) -> None:
        self.node_to_name.put(backend_id, node_name)
        self.logger.debug("Recorded node id %s -> %s", backend_id, node_name)

    def forget_node(self, backend_id: str) -> None:
        self.node_to_name.pop(backend_id)

    def lookup_node_name(self, backend_id: str) -> tuple[str, bool]:
        name, found = self.node_to_name.get(backend_id)
        return (name or "", found)

    def node_identifier_snapshot(self) -> dict[str, str]:
        return self.node_to_name.snapshot()
