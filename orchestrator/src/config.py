from __future__ import annotations

import enum
import os
from collections.abc import Mapping
from dataclasses import dataclass

DRIVER_NAME = "csi.vsphere.vmware.com"
DEFAULT_CSI_NAMESPACE = "vmware-system-csi"
DEFAULT_INTERNAL_FSS_NAME = "internal-feature-states.csi.vsphere.vmware.com"
DEFAULT_SUPERVISOR_FSS_NAME = "csi-feature-states"
DEFAULT_PROVIDER_PATH = "/etc/cloud/pvcsi-provider"
DEFAULT_SUPERVISOR_PORT = 6443

SERVICE_MODE_CONTROLLER = "controller"
SERVICE_MODE_NODE = "node"
OPERATION_MODE_WEBHOOK_SERVER = "WEBHOOK_SERVER"


class ConfigError(RuntimeError):
    """Raised when the orchestrator configuration is invalid."""


class ClusterFlavor(str, enum.Enum):
    """Deployment flavor, fixed for the lifetime of the process."""

    VANILLA = "VANILLA"
    WORKLOAD = "WORKLOAD"
    GUEST = "GUEST_CLUSTER"


@dataclass(frozen=True)
class ConfigObjectRef:
    name: str
    namespace: str

    @property
    def configured(self) -> bool:
        return bool(self.name) and bool(self.namespace)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Immutable bootstrap configuration loaded once at startup.

    Attributes:
        flavor:              Deployment flavor selecting gate rules and watched maps.
        internal_fss:        Local feature-states config object (VANILLA and GUEST).
        supervisor_fss:      Upstream feature-states config object (WORKLOAD and GUEST).
        service_mode:        ``controller`` or ``node``.
        operation_mode:      ``WEBHOOK_SERVER`` disables every cache listener.
        supervisor_endpoint: Remote management plane host (GUEST only).
        supervisor_port:     Remote management plane port (GUEST only).
        provider_path:       Directory holding the remote plane namespace, token and CA.
    """

    flavor: ClusterFlavor
    internal_fss: ConfigObjectRef
    supervisor_fss: ConfigObjectRef
    service_mode: str = SERVICE_MODE_CONTROLLER
    operation_mode: str = ""
    supervisor_endpoint: str = ""
    supervisor_port: int = DEFAULT_SUPERVISOR_PORT
    provider_path: str = DEFAULT_PROVIDER_PATH
    capability_poll_seconds: int = 120
    capability_registration_retry_seconds: int = 600
    feature_state_retry_seconds: int = 300

    @property
    def is_node_mode(self) -> bool:
        return self.service_mode == SERVICE_MODE_NODE

    @property
    def is_webhook_server(self) -> bool:
        return self.operation_mode == OPERATION_MODE_WEBHOOK_SERVER


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_flavor(raw: str | None) -> ClusterFlavor:
    """Map ``CLUSTER_FLAVOR`` to a :class:`ClusterFlavor`.

    ``CLUSTER_FLAVOR`` is only set by the management and tenant deployments,
    so an empty value means a single self-managed cluster.
    """
    if raw is None or not raw.strip():
        return ClusterFlavor.VANILLA
    try:
        return ClusterFlavor(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"CLUSTER_FLAVOR {raw!r} is not recognised") from exc


def load_config(env: Mapping[str, str] | None = None) -> OrchestratorConfig:
    """Load orchestrator config from the environment.

    Feature-states config objects default to the CSI namespace
    (``CSI_NAMESPACE`` or ``vmware-system-csi``).  The tenant flavor
    additionally requires ``SUPERVISOR_ENDPOINT`` to reach the management
    plane.
    """
    values = env if env is not None else os.environ

    flavor = parse_flavor(values.get("CLUSTER_FLAVOR"))
    csi_namespace = values.get("CSI_NAMESPACE", "").strip() or DEFAULT_CSI_NAMESPACE

    internal_fss = ConfigObjectRef(
        name=values.get("INTERNAL_FSS_NAME", DEFAULT_INTERNAL_FSS_NAME).strip(),
        namespace=values.get("INTERNAL_FSS_NAMESPACE", csi_namespace).strip(),
    )
    supervisor_fss = ConfigObjectRef(
        name=values.get("SUPERVISOR_FSS_NAME", DEFAULT_SUPERVISOR_FSS_NAME).strip(),
        namespace=values.get("SUPERVISOR_FSS_NAMESPACE", csi_namespace).strip(),
    )

    service_mode = values.get("X_CSI_MODE", SERVICE_MODE_CONTROLLER).strip().lower()
    if service_mode not in {SERVICE_MODE_CONTROLLER, SERVICE_MODE_NODE}:
        raise ConfigError(f"X_CSI_MODE must be 'controller' or 'node', got: {service_mode!r}")

    supervisor_endpoint = values.get("SUPERVISOR_ENDPOINT", "").strip()
    if flavor is ClusterFlavor.GUEST and not supervisor_endpoint:
        raise ConfigError("SUPERVISOR_ENDPOINT is required for the GUEST_CLUSTER flavor")

    return OrchestratorConfig(
        flavor=flavor,
        internal_fss=internal_fss,
        supervisor_fss=supervisor_fss,
        service_mode=service_mode,
        operation_mode=values.get("OPERATION_MODE", "").strip(),
        supervisor_endpoint=supervisor_endpoint,
        supervisor_port=env_int(
            "SUPERVISOR_PORT", DEFAULT_SUPERVISOR_PORT, minimum=1, maximum=65535, env=values
        ),
        provider_path=values.get("PVCSI_PROVIDER_PATH", DEFAULT_PROVIDER_PATH).strip()
        or DEFAULT_PROVIDER_PATH,
        capability_poll_seconds=env_int("CAPABILITY_POLL_SECONDS", 120, minimum=1, env=values),
        capability_registration_retry_seconds=env_int(
            "CAPABILITY_REGISTRATION_RETRY_SECONDS", 600, minimum=1, env=values
        ),
        feature_state_retry_seconds=env_int(
            "FEATURE_STATE_RETRY_SECONDS", 300, minimum=1, env=values
        ),
    )
