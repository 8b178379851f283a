import os
import sys
import enum
import logging
from dataclasses import dataclass
from datetime import timedelta

from kubernetes import client

from duration import parse_duration
from kube_store import (
    FailureKind,
    SecretStore,
    StoreError,
    TokenService,
    encode_value,
    load_api_client,
)

DEFAULT_SECRET_NAME = "gateway-sa-secret"
DEFAULT_SERVICE_ACCOUNT_NAME = "higress-gateway"
DEFAULT_NAMESPACE = "higress-system"
DEFAULT_AUDIENCE = "istio-ca"
DEFAULT_TTL = timedelta(days=365)

SERVICE_ACCOUNT_ANNOTATION = "kubernetes.io/service-account.name"
SERVICE_ACCOUNT_TOKEN_TYPE = "kubernetes.io/service-account-token"
TOKEN_KEY = "token"


class TokenIssueError(Exception):
    """Raised when the API server returns no token."""


@dataclass(frozen=True)
class Config:
    secret_name: str = DEFAULT_SECRET_NAME
    service_account_name: str = DEFAULT_SERVICE_ACCOUNT_NAME
    namespace: str = DEFAULT_NAMESPACE
    audience: str = DEFAULT_AUDIENCE
    ttl: timedelta = DEFAULT_TTL


def _read_env(environ, name, default):
    value = environ.get(name)
    if not value:
        logging.info(f"{name} env variable not set, using default value: {default}")
        return default
    logging.info(f"{name}: {value}")
    return value


def _read_ttl(environ, name, default):
    value = environ.get(name)
    if not value:
        logging.info(f"{name} env variable not set, using default value: {default}")
        return default
    try:
        ttl = parse_duration(value)
    except ValueError as e:
        logging.warning(f"{name} parse error ({e}), using default value: {default}")
        return default
    if ttl <= timedelta(0):
        logging.warning(f"{name} must be positive, using default value: {default}")
        return default
    logging.info(f"{name}: {ttl}")
    return ttl


def load_config(environ=None):
    """Resolve the run's configuration from the environment."""
    if environ is None:
        environ = os.environ
    return Config(
        secret_name=_read_env(environ, "SECRET_NAME_FOR_GW_TOKEN", DEFAULT_SECRET_NAME),
        service_account_name=_read_env(
            environ, "SERVICE_ACCOUNT_NAME", DEFAULT_SERVICE_ACCOUNT_NAME
        ),
        namespace=_read_env(environ, "NAMESPACE", DEFAULT_NAMESPACE),
        audience=_read_env(environ, "TOKEN_AUDIENCE", DEFAULT_AUDIENCE),
        ttl=_read_ttl(environ, "TOKEN_EXPIRATION_SECONDS", DEFAULT_TTL),
    )


def build_secret(config):
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=config.secret_name,
            namespace=config.namespace,
            annotations={SERVICE_ACCOUNT_ANNOTATION: config.service_account_name},
        ),
        type=SERVICE_ACCOUNT_TOKEN_TYPE,
        data={TOKEN_KEY: encode_value(b"")},
    )


def ensure_secret(store, config):
    """Create the token secret, or adopt it if it already exists."""
    try:
        secret = store.create(build_secret(config))
        logging.info(f"Created secret {config.namespace}/{config.secret_name}")
        return secret
    except StoreError as e:
        if e.kind is not FailureKind.ALREADY_EXISTS:
            raise
    logging.info("Secret already exists, getting the current secret")
    return store.get(config.secret_name)


def build_token_request(config, secret_name, uid=None):
    return client.AuthenticationV1TokenRequest(
        api_version="authentication.k8s.io/v1",
        kind="TokenRequest",
        spec=client.V1TokenRequestSpec(
            audiences=[config.audience],
            expiration_seconds=int(config.ttl.total_seconds()),
            bound_object_ref=client.V1BoundObjectReference(
                kind="Secret",
                api_version="v1",
                name=secret_name,
                uid=uid,
            ),
        ),
    )


def issue_token(tokens, config, secret_name, uid=None):
    """Request a token for the service account, bound to ``secret_name``."""
    request = build_token_request(config, secret_name, uid)
    token = tokens.create_token(
        config.service_account_name, config.namespace, request
    )
    token = (token or "").strip()
    if not token:
        raise TokenIssueError(
            f"empty token returned for ServiceAccount "
            f"{config.namespace}/{config.service_account_name}"
        )
    logging.info("Token created")
    return token


class UpdateState(enum.Enum):
    INITIAL = "initial"
    REFETCHING = "refetching"
    DONE = "done"


def apply_token(store, secret, token):
    """Write ``token`` into the secret, refetching once on a version conflict.

    Only ``data["token"]`` is changed. A conflict on the second write is not
    retried.
    """
    data = dict(secret.data or {})
    data[TOKEN_KEY] = encode_value(token.encode("utf-8"))
    secret.data = data

    name = secret.metadata.name
    updated = None
    state = UpdateState.INITIAL
    while state is not UpdateState.DONE:
        try:
            updated = store.update(secret)
        except StoreError as e:
            if state is not UpdateState.INITIAL or e.kind is not FailureKind.CONFLICT:
                raise
            logging.info("Secret has been modified, getting the current secret")
            state = UpdateState.REFETCHING
            latest = store.get(name)
            secret.metadata.resource_version = latest.metadata.resource_version
            logging.info("Retrying updating secret")
            continue
        state = UpdateState.DONE

    logging.info("Secret updated")
    return updated


def run(config, store, tokens):
    secret = ensure_secret(store, config)
    token = issue_token(tokens, config, config.secret_name, uid=secret.metadata.uid)
    return apply_token(store, secret, token)


def configure_logging(environ=None):
    if environ is None:
        environ = os.environ
    level_name = environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level)


def main():
    configure_logging()
    config = load_config()

    try:
        api = client.CoreV1Api(load_api_client())
        store = SecretStore(api, config.namespace)
        tokens = TokenService(api)
        run(config, store, tokens)
    except Exception:
        logging.exception(
            f"Failed to provision token secret {config.namespace}/{config.secret_name}"
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
