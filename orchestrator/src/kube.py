from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client import (
    ApiClient,
    ApiextensionsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    StorageV1Api,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

PROVIDER_NAMESPACE_FILE = "namespace"
PROVIDER_TOKEN_FILE = "token"
PROVIDER_CA_FILE = "ca.crt"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    """API groups used against one cluster."""

    core: CoreV1Api
    storage: StorageV1Api
    custom: CustomObjectsApi
    apiextensions: ApiextensionsV1Api


def build_clients(api_client: ApiClient | None = None) -> KubeClients:
    """Return the API groups bound to *api_client* (default: the active kube configuration)."""
    return KubeClients(
        core=client.CoreV1Api(api_client),
        storage=client.StorageV1Api(api_client),
        custom=client.CustomObjectsApi(api_client),
        apiextensions=client.ApiextensionsV1Api(api_client),
    )


def _read_provider_file(provider_path: str, file_name: str) -> str:
    path = os.path.join(provider_path, file_name)
    with open(path, encoding="utf-8") as handle:
        return handle.read().strip()


def read_supervisor_namespace(provider_path: str) -> str:
    """Return the management plane namespace this tenant cluster lives in."""
    namespace = _read_provider_file(provider_path, PROVIDER_NAMESPACE_FILE)
    if not namespace:
        raise ValueError(f"{os.path.join(provider_path, PROVIDER_NAMESPACE_FILE)} is empty")
    return namespace


def build_remote_api_client(endpoint: str, port: int, provider_path: str) -> ApiClient:
    """Build an API client for the management plane from the tenant's provider files.

    The bearer token and CA bundle are mounted under *provider_path*.
    """
    token = _read_provider_file(provider_path, PROVIDER_TOKEN_FILE)
    configuration = client.Configuration()
    configuration.host = f"https://{endpoint}:{port}"
    configuration.api_key = {"authorization": token}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    configuration.ssl_ca_cert = os.path.join(provider_path, PROVIDER_CA_FILE)
    configuration.verify_ssl = True
    LOGGER.info("Built management plane client for %s", configuration.host)
    return client.ApiClient(configuration)
