import base64
import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import config, client
from kubernetes.client.rest import ApiException
from typing_extensions import Protocol, override

from exc import RegistrationError

LOG = logging.getLogger(__name__)


class Registrar(Protocol):
    def register(self, configuration: dict[str, Any]) -> None: ...


def build_webhook_configuration(
    name: str,
    service_name: str,
    service_namespace: str,
    service_path: str,
    ca_bundle: bytes,
) -> dict[str, Any]:
    """Build a MutatingWebhookConfiguration that sends pod creation requests
    to our service.

    The failure policy is Ignore because the webhook never denies a request;
    if it is unreachable, pods are admitted without a toleration.
    """

    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": "MutatingWebhookConfiguration",
        "metadata": {"name": name},
        "webhooks": [
            {
                "name": name,
                "clientConfig": {
                    "service": {
                        "name": service_name,
                        "namespace": service_namespace,
                        "path": service_path,
                    },
                    "caBundle": base64.b64encode(ca_bundle).decode(),
                },
                "rules": [
                    {
                        "operations": ["CREATE"],
                        "apiGroups": [""],
                        "apiVersions": ["v1"],
                        "resources": ["pods"],
                    }
                ],
                "failurePolicy": "Ignore",
                "sideEffects": "None",
                "admissionReviewVersions": ["v1", "v1beta1"],
            }
        ],
    }


class KubernetesRegistrar(Registrar):
    def __init__(self, api=None):
        """Allocate an admissionregistration API client unless one is provided"""

        super().__init__()

        if api is None:
            try:
                config.load_config()
            except config.ConfigException as err:
                LOG.warning("unable to configure Kubernetes client: %s", err)
                raise RegistrationError("unable to configure Kubernetes client")

            api = client.AdmissionregistrationV1Api()

        self._api = api

    @override
    def register(self, configuration):
        name = configuration["metadata"]["name"]

        try:
            self._api.create_mutating_webhook_configuration(body=configuration)
        except ApiException as err:
            if err.status != 409:
                raise RegistrationError(
                    f"failed to create webhook configuration {name}: {err.reason}"
                ) from err
        else:
            LOG.info("created webhook configuration %s", name)
            return

        # It already exists, so replace it with the current settings.
        try:
            existing = self._api.read_mutating_webhook_configuration(name)
            body = dict(configuration)
            body["metadata"] = dict(
                configuration["metadata"],
                resourceVersion=existing.metadata.resource_version,
            )
            self._api.replace_mutating_webhook_configuration(name, body)
        except ApiException as err:
            raise RegistrationError(
                f"failed to replace webhook configuration {name}: {err.reason}"
            ) from err

        LOG.info("replaced webhook configuration %s", name)


def register_webhook(registrar: Registrar, app_config: Mapping) -> dict[str, Any]:
    ca_file = app_config.get("CA_BUNDLE_FILE")
    if not ca_file:
        raise RegistrationError("CA_BUNDLE_FILE is required to register the webhook")

    try:
        with open(ca_file, "rb") as fd:
            ca_bundle = fd.read()
    except OSError as err:
        raise RegistrationError(f"unable to read CA bundle {ca_file}: {err}") from err

    configuration = build_webhook_configuration(
        app_config["WEBHOOK_NAME"],
        app_config["SERVICE_NAME"],
        app_config["SERVICE_NAMESPACE"],
        app_config["SERVICE_PATH"],
        ca_bundle,
    )
    registrar.register(configuration)

    return configuration
