"""Secret storage and token signing on top of the Kubernetes API.

Failures coming back from the API server are turned into ``StoreError``
(Secret storage) or ``TokenServiceError`` (token signing), both carrying a
``FailureKind``, so callers can branch on the kind of failure instead
of on the wording of the server's message.
"""

import base64
import enum
import json
import logging

from kubernetes import client, config
from kubernetes.client.rest import ApiException


class FailureKind(enum.Enum):
    ALREADY_EXISTS = "AlreadyExists"
    CONFLICT = "Conflict"
    NOT_FOUND = "NotFound"
    OTHER = "Other"


class ApiError(Exception):
    """Raised when a call to the API server fails."""

    def __init__(self, kind, operation, name, cause=None):
        self.kind = kind
        self.operation = operation
        self.name = name
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"unable to {operation} {name} ({kind.value}){detail}")


class StoreError(ApiError):
    """Raised when reading or writing a Secret fails."""


class TokenServiceError(ApiError):
    """Raised when the API server refuses to issue a token."""


def classify(exc, conflict_default=FailureKind.CONFLICT):
    """Map an ``ApiException`` to a ``FailureKind``.

    409 responses are told apart by the ``reason`` of the Status body.
    ``conflict_default`` is used when the body does not say.
    """
    if exc.status == 404:
        return FailureKind.NOT_FOUND
    if exc.status != 409:
        return FailureKind.OTHER

    reason = None
    if exc.body:
        try:
            reason = json.loads(exc.body).get("reason")
        except (ValueError, AttributeError):
            reason = None

    if reason == FailureKind.ALREADY_EXISTS.value:
        return FailureKind.ALREADY_EXISTS
    if reason == FailureKind.CONFLICT.value:
        return FailureKind.CONFLICT
    return conflict_default


def load_api_client():
    """Return an API client for the in-cluster context, or the local kubeconfig."""
    try:
        config.load_incluster_config()
        logging.info("Using in-cluster configuration")
    except config.ConfigException:
        logging.info("Not running in a cluster, loading kubeconfig")
        try:
            config.load_kube_config()
        except config.ConfigException as e:
            raise config.ConfigException(f"unable to load kubeconfig: {e}") from e
    return client.ApiClient()


def encode_value(value):
    """Encode raw bytes into the base64 text a Secret's ``data`` holds."""
    return base64.b64encode(value).decode("ascii")


def decode_value(value):
    if not value:
        return b""
    return base64.b64decode(value)


def payload(secret):
    """Return the secret's data as a ``{key: bytes}`` mapping."""
    return {key: decode_value(value) for key, value in (secret.data or {}).items()}


class SecretStore:
    """Create, read and update Secrets in a single namespace."""

    def __init__(self, api, namespace):
        self.api = api
        self.namespace = namespace

    def _ref(self, name):
        return f"Secret {self.namespace}/{name}"

    def create(self, secret):
        name = secret.metadata.name
        try:
            return self.api.create_namespaced_secret(self.namespace, secret)
        except ApiException as e:
            kind = classify(e, conflict_default=FailureKind.ALREADY_EXISTS)
            raise StoreError(kind, "create", self._ref(name), e) from e

    def get(self, name):
        try:
            return self.api.read_namespaced_secret(name, self.namespace)
        except ApiException as e:
            raise StoreError(classify(e), "get", self._ref(name), e) from e

    def update(self, secret):
        # PUT carries metadata.resource_version; a stale one is rejected with 409.
        name = secret.metadata.name
        try:
            return self.api.replace_namespaced_secret(name, self.namespace, secret)
        except ApiException as e:
            kind = classify(e, conflict_default=FailureKind.CONFLICT)
            raise StoreError(kind, "update", self._ref(name), e) from e


class TokenService:
    """Request signed tokens for service accounts."""

    def __init__(self, api):
        self.api = api

    def create_token(self, service_account, namespace, request):
        try:
            response = self.api.create_namespaced_service_account_token(
                service_account, namespace, request
            )
        except ApiException as e:
            ref = f"ServiceAccount {namespace}/{service_account}"
            raise TokenServiceError(
                classify(e, FailureKind.OTHER), "create token for", ref, e
            ) from e
        status = response.status
        return status.token if status is not None else None
