"""Kubeconfig documents and the secrets that carry them.

A managed control plane publishes two kubeconfigs for its cluster:

- ``<cluster>-kubeconfig`` authenticates with the credentials secret key as a
  bearer token and is kept in sync when that key changes.
- ``<cluster>-user-kubeconfig`` delegates authentication to the ``scw`` CLI
  and is written once.

Both are stored under the ``value`` key of a ``cluster.x-k8s.io/secret``
secret owned by the control plane object.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any

import yaml

from .models import CLUSTER_NAME_LABEL, ObjectMeta, OwnerReference, Secret

KUBECONFIG_DATA_KEY = "value"
KUBECONFIG_SECRET_TYPE = "cluster.x-k8s.io/secret"

EXEC_API_VERSION = "client.authentication.k8s.io/v1"
EXEC_COMMAND = "scw"
EXEC_ARGS = ["k8s", "exec-credential"]
EXEC_INSTALL_HINT = (
    "Install scaleway CLI for use with kubectl by following\n"
    "\t\thttps://cli.scaleway.com/#installation"
)


def kubeconfig_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-kubeconfig"


def user_kubeconfig_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-user-kubeconfig"


def base_kubeconfig(context_name: str, server: str, ca_data: str) -> dict[str, Any]:
    """Kubeconfig with one cluster and context named context_name, and no user.

    Raises:
        ValueError: If ca_data is not valid base64.
    """
    try:
        base64.b64decode(ca_data, validate=True)
    except binascii.Error as e:
        raise ValueError(f"decoding cluster CA cert: {e}") from e

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": context_name,
                "cluster": {"server": server, "certificate-authority-data": ca_data},
            }
        ],
        "contexts": [
            {"name": context_name, "context": {"cluster": context_name, "user": context_name}}
        ],
        "current-context": context_name,
        "users": [],
        "preferences": {},
    }


def with_token_user(config: dict[str, Any], user_name: str, token: str) -> dict[str, Any]:
    config["users"] = [{"name": user_name, "user": {"token": token}}]
    return config


def with_exec_user(config: dict[str, Any], user_name: str) -> dict[str, Any]:
    config["users"] = [
        {
            "name": user_name,
            "user": {
                "exec": {
                    "apiVersion": EXEC_API_VERSION,
                    "command": EXEC_COMMAND,
                    "args": list(EXEC_ARGS),
                    "interactiveMode": "Never",
                    "installHint": EXEC_INSTALL_HINT,
                    "provideClusterInfo": False,
                }
            },
        }
    ]
    return config


def find_user(config: dict[str, Any], user_name: str) -> dict[str, Any] | None:
    """The auth info of user_name, None if the kubeconfig has no such user."""
    for user in config.get("users") or []:
        if user.get("name") == user_name:
            auth = user.get("user")
            return auth if isinstance(auth, dict) else {}
    return None


def dump_kubeconfig(config: dict[str, Any]) -> bytes:
    return yaml.safe_dump(config, sort_keys=False).encode()


def load_kubeconfig(data: bytes) -> dict[str, Any]:
    """Parse a kubeconfig document.

    Raises:
        ValueError: If data is not a YAML mapping.
    """
    try:
        config = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ValueError(f"invalid kubeconfig: {e}") from e
    if not isinstance(config, dict):
        raise ValueError("invalid kubeconfig: not a mapping")
    return config


def set_kubeconfig_data(secret: Secret, data: bytes) -> None:
    secret.data[KUBECONFIG_DATA_KEY] = base64.b64encode(data).decode()


def kubeconfig_secret(
    name: str,
    namespace: str,
    cluster_name: str,
    owner: OwnerReference,
    data: bytes,
) -> Secret:
    """Secret holding a kubeconfig, labeled with its cluster and owned by owner."""
    secret = Secret(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            labels={CLUSTER_NAME_LABEL: cluster_name},
            owner_references=[owner],
        ),
        type=KUBECONFIG_SECRET_TYPE,
    )
    set_kubeconfig_data(secret, data)
    return secret
