from __future__ import annotations

import json
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiextensionsV1Api, ApiException, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from foo_controller.src.errors import StartupPrerequisiteMissing
from foo_controller.src.resource import CRD_NAME, GROUP, PLURAL, VERSION, FooSpec

LOGGER = logging.getLogger(__name__)


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


def build_clients() -> tuple[CustomObjectsApi, ApiextensionsV1Api]:
    """Return CustomObjects and ApiextensionsV1 API clients using the active kube configuration."""
    return client.CustomObjectsApi(), client.ApiextensionsV1Api()


def ensure_crd_installed(extensions_api: ApiextensionsV1Api, crd_name: str = CRD_NAME) -> None:
    """Fail fast when the ``Foo`` CustomResourceDefinition is not registered.

    Without the CRD every list and watch would 404 forever, so a missing
    definition is treated as a fatal startup error instead of a retryable one.
    Other API errors propagate unchanged.
    """
    try:
        extensions_api.read_custom_resource_definition(name=crd_name)
    except ApiException as exc:
        if exc.status == 404:
            raise StartupPrerequisiteMissing(
                f"CustomResourceDefinition {crd_name} is not installed; install the Foo CRD first"
            ) from exc
        raise
    LOGGER.info("Found CustomResourceDefinition %s", crd_name)


class FooStore:
    """Read access to ``Foo`` objects and status-subresource patches.

    API errors are raised as :class:`kubernetes.client.ApiException`; the
    reconcile engine decides what they mean.
    """

    def __init__(self, custom_api: CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def get(self, namespace: str, name: str) -> FooSpec:
        obj: Any = self.custom_api.get_namespaced_custom_object(
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=PLURAL,
            name=name,
        )
        return FooSpec.from_object(obj)

    def patch_status(self, namespace: str, name: str, status_body: bytes) -> None:
        """Merge-patch the ``status`` subresource; ``spec`` is never sent.

        The client re-encodes the body itself, so the wire bytes are decoded
        back into a dict first.  A dict body is sent as
        ``application/merge-patch+json``.
        """
        self.custom_api.patch_namespaced_custom_object_status(
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=PLURAL,
            name=name,
            body=json.loads(status_body),
        )
