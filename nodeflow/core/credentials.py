"""Credential resolvers.

A resolver maps ``(credential_type, node_id)`` to a dict of secrets. The
runner calls it only for nodes that declare ``data.credentials_type`` and
stores the result on the RunContext for that node alone.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Any, Protocol


class CredentialResolver(Protocol):
    def get_credentials(self, credential_type: str, node_id: str) -> dict[str, Any]: ...


class CredentialsNotFound(LookupError):
    """No credentials are configured for the requested type."""

    pass


class StaticCredentialResolver:
    """In-memory resolver, mainly for tests and embedding.

    ``mapping`` is keyed by credential type. A per-node override can be given
    as ``"<type>:<node_id>"``.
    """

    def __init__(self, mapping: Mapping[str, dict[str, Any]]):
        self._mapping = dict(mapping)

    def get_credentials(self, credential_type: str, node_id: str) -> dict[str, Any]:
        for key in (f"{credential_type}:{node_id}", credential_type):
            if key in self._mapping:
                return dict(self._mapping[key])
        raise CredentialsNotFound(f"No credentials of type '{credential_type}' for node {node_id}")


class EnvCredentialResolver:
    """Read credentials from ``<PREFIX>_<TYPE>_<KEY>`` environment variables.

    With the default prefix, type ``slack-api`` and variable
    ``NODEFLOW_CRED_SLACK_API_TOKEN=...`` resolves to ``{"token": "..."}``.
    """

    def __init__(self, prefix: str = "NODEFLOW_CRED", environ: Mapping[str, str] | None = None):
        self.prefix = prefix.rstrip("_")
        self._environ = environ if environ is not None else os.environ

    def _type_prefix(self, credential_type: str) -> str:
        normalized = re.sub(r"[^A-Za-z0-9]+", "_", credential_type).strip("_").upper()
        return f"{self.prefix}_{normalized}_"

    def get_credentials(self, credential_type: str, node_id: str) -> dict[str, Any]:
        type_prefix = self._type_prefix(credential_type)
        found = {
            name[len(type_prefix):].lower(): value
            for name, value in self._environ.items()
            if name.startswith(type_prefix) and len(name) > len(type_prefix)
        }
        if not found:
            raise CredentialsNotFound(
                f"No credentials of type '{credential_type}' for node {node_id} "
                f"(expected {type_prefix}* environment variables)"
            )
        return found
