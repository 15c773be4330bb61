from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from orchestrator.src.cache import IdentityCache
from orchestrator.src.config import DRIVER_NAME
from orchestrator.src.objects import annotations, object_name

PHASE_BOUND = "Bound"
FILE_ACCESS_MODES = frozenset({"ReadWriteMany", "ReadOnlyMany"})
FILE_VOLUME_PREFIX = "file:"
NODE_ID_ANNOTATION = "vmware-system-esxi-node-moid"
ANN_MIGRATED_TO = "pv.kubernetes.io/migrated-to"
ANN_PROVISIONED_BY = "pv.kubernetes.io/provisioned-by"
IN_TREE_PROVISIONER = "kubernetes.io/vsphere-volume"
CSI_MIGRATION_FEATURE = "csi-migration"


def _spec(obj: Any) -> Any:
    return getattr(obj, "spec", None)


def _phase(pv: Any) -> str | None:
    return getattr(getattr(pv, "status", None), "phase", None)


def _is_bound(pv: Any) -> bool:
    return _phase(pv) == PHASE_BOUND


def csi_source(pv: Any) -> Any:
    """Return the CSI source of *pv* when it is provisioned by this driver."""
    csi = getattr(_spec(pv), "csi", None)
    if csi is None or getattr(csi, "driver", None) != DRIVER_NAME:
        return None
    return csi


def claim_ref(pv: Any) -> tuple[str, str] | None:
    ref = getattr(_spec(pv), "claim_ref", None)
    namespace = getattr(ref, "namespace", None)
    name = getattr(ref, "name", None)
    if not namespace or not name:
        return None
    return namespace, name


def is_file_volume(pv: Any) -> bool:
    access_modes = getattr(_spec(pv), "access_modes", None) or []
    if FILE_ACCESS_MODES.intersection(access_modes):
        return True
    handle = getattr(csi_source(pv), "volume_handle", None) or ""
    return handle.startswith(FILE_VOLUME_PREFIX)


def legacy_volume_path(pv: Any) -> str | None:
    source = getattr(_spec(pv), "vsphere_volume", None)
    return getattr(source, "volume_path", None) or None


def is_migrated_legacy_volume(pv: Any) -> bool:
    """True for an in-tree volume that the migration shim hands to this driver."""
    if legacy_volume_path(pv) is None:
        return False
    ann = annotations(pv)
    return (
        ann.get(ANN_MIGRATED_TO) == DRIVER_NAME
        or ann.get(ANN_PROVISIONED_BY) == IN_TREE_PROVISIONER
    )


class PersistentVolumeHandler:
    """Keeps the volume maps in step with PersistentVolume events.

    Insertions happen only when a volume is seen entering the ``Bound``
    phase (including the initial listing, where every already-bound volume
    is new to us).  Updates that keep a volume bound are no-ops.  File
    volumes and migrated legacy volumes only go into the name map.
    """

    def __init__(
        self,
        cache: IdentityCache,
        is_feature_enabled: Callable[[str], bool],
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.is_feature_enabled = is_feature_enabled
        self.logger = logger or logging.getLogger(__name__)

    def _migration_enabled(self, pv: Any) -> bool:
        return is_migrated_legacy_volume(pv) and self.is_feature_enabled(CSI_MIGRATION_FEATURE)

    def _record_bound(self, pv: Any) -> None:
        name = object_name(pv)
        csi = csi_source(pv)
        if csi is not None and name:
            handle = getattr(csi, "volume_handle", None)
            if not handle:
                self.logger.warning("Ignoring PV %s without a volume handle", name)
                return
            claim = claim_ref(pv)
            if claim is not None and not is_file_volume(pv):
                self.cache.record_volume_bound(handle, claim[0], claim[1], name)
            else:
                self.cache.record_volume_name(handle, name)
            return

        if name and self._migration_enabled(pv):
            path = legacy_volume_path(pv)
            if path:
                self.cache.record_volume_name(path, name)
                self.logger.debug("Recorded migrated volume %s -> %s", path, name)

    def on_added(self, pv: Any) -> None:
        if object_name(pv) is None:
            self.logger.warning("PersistentVolume handler: unrecognized object %r", pv)
            return
        if _is_bound(pv):
            self._record_bound(pv)

    def on_updated(self, old: Any, new: Any) -> None:
        if object_name(new) is None:
            self.logger.warning("PersistentVolume handler: unrecognized object %r", new)
            return
        was_bound = _is_bound(old)
        now_bound = _is_bound(new)
        if not was_bound and now_bound:
            self.logger.debug("PV %s went to Bound phase", object_name(new))
            self._record_bound(new)
        elif was_bound and not now_bound:
            csi = csi_source(new)
            handle = getattr(csi, "volume_handle", None)
            if handle:
                self.logger.debug(
                    "PV %s left Bound phase (%s); dropping claim binding",
                    object_name(new),
                    _phase(new),
                )
                self.cache.forget_claim_binding(handle)

    def on_deleted(self, pv: Any) -> None:
        if object_name(pv) is None:
            self.logger.warning("PersistentVolume handler: unrecognized object %r", pv)
            return
        csi = csi_source(pv)
        handle = getattr(csi, "volume_handle", None)
        if handle:
            claim = claim_ref(pv) or (None, None)
            self.cache.forget_volume(handle, claim[0], claim[1])
        path = legacy_volume_path(pv)
        if path and self.is_feature_enabled(CSI_MIGRATION_FEATURE):
            self.cache.forget_volume_name(path)


class PersistentVolumeClaimHandler:
    """Claim events need no cache writes; the watcher's store serves claim reads."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def on_added(self, claim: Any) -> None:
        pass

    def on_updated(self, old: Any, new: Any) -> None:
        pass

    def on_deleted(self, claim: Any) -> None:
        pass


def _attachment_target(attachment: Any) -> tuple[str, str] | None:
    """Return ``(pv_name, node_name)`` for a PV-backed attachment of this driver."""
    spec = _spec(attachment)
    if getattr(spec, "attacher", None) != DRIVER_NAME:
        return None
    pv_name = getattr(getattr(spec, "source", None), "persistent_volume_name", None)
    node_name = getattr(spec, "node_name", None)
    if not pv_name or not node_name:
        # Inline volumes carry no PV name.
        return None
    return pv_name, node_name


def _is_attached(attachment: Any) -> bool:
    return bool(getattr(getattr(attachment, "status", None), "attached", False))


class VolumeAttachmentHandler:
    """Tracks which nodes each PV is attached to.

    The node list for a PV contains a node iff the latest event for that
    ``(pv, node)`` pair says ``attached``.
    """

    def __init__(self, cache: IdentityCache, logger: logging.Logger | None = None) -> None:
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)

    def on_added(self, attachment: Any) -> None:
        target = _attachment_target(attachment)
        if target is None:
            return
        if _is_attached(attachment):
            self.cache.record_attachment(*target)

    def on_updated(self, old: Any, new: Any) -> None:
        target = _attachment_target(new)
        if target is None:
            return
        was_attached = _is_attached(old)
        now_attached = _is_attached(new)
        if not was_attached and now_attached:
            self.cache.record_attachment(*target)
        elif was_attached and not now_attached:
            self.cache.forget_attachment(*target)

    def on_deleted(self, attachment: Any) -> None:
        target = _attachment_target(attachment)
        if target is None:
            return
        self.logger.debug("Volume attachment %s deleted", object_name(attachment))
        self.cache.forget_attachment(*target)


def node_backend_id(node: Any) -> str | None:
    return annotations(node).get(NODE_ID_ANNOTATION) or None


class NodeHandler:
    """Maintains backend node id -> node name from the node-id annotation.

    The annotation is written asynchronously by another component, so nodes
    without it are skipped quietly and picked up when an update adds it.
    """

    def __init__(self, cache: IdentityCache, logger: logging.Logger | None = None) -> None:
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)

    def on_added(self, node: Any) -> None:
        name = object_name(node)
        if name is None:
            self.logger.warning("Node handler: unrecognized object %r", node)
            return
        backend_id = node_backend_id(node)
        if backend_id is None:
            self.logger.debug("%s annotation not found on node %s", NODE_ID_ANNOTATION, name)
            return
        self.cache.record_node(backend_id, name)

    def on_updated(self, old: Any, new: Any) -> None:
        name = object_name(new)
        if name is None:
            self.logger.warning("Node handler: unrecognized object %r", new)
            return
        old_id = node_backend_id(old)
        new_id = node_backend_id(new)
        if old_id == new_id:
            return
        if old_id is not None:
            self.cache.forget_node(old_id)
        if new_id is not None:
            self.logger.debug("Adding node id %s for node %s", new_id, name)
            self.cache.record_node(new_id, name)

    def on_deleted(self, node: Any) -> None:
        backend_id = node_backend_id(node)
        if backend_id is not None:
            self.cache.forget_node(backend_id)
