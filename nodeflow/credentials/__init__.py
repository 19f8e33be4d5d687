"""
Credential providers.

Nodes reference credentials by slot (``node.credentials = {"api": "crm_prod"}``)
and read them through ``ctx.get_credential("api")``. The engine only maps the
slot to a credential id and asks the provider; storage and encryption are the
provider's business.

Quick Start:
    provider = InMemoryCredentialProvider({"crm_prod": {"api_key": "xxx"}})
    executor = WorkflowExecutor(registry, credentials=provider)

    # or from the environment: NODEFLOW_CRED_CRM_PROD_API_KEY=xxx
    executor = WorkflowExecutor(registry, credentials=EnvVarCredentialProvider())
"""

import logging
import os
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field, SecretStr

from nodeflow.errors import CredentialNotFoundError

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    """A named set of secret keys."""

    id: str
    type: str = "generic"
    keys: dict[str, SecretStr] = Field(default_factory=dict)

    def get_key(self, name: str) -> str:
        if name not in self.keys:
            raise CredentialNotFoundError(f"Credential '{self.id}' has no key '{name}'")
        return self.keys[name].get_secret_value()

    def as_dict(self) -> dict[str, str]:
        """Plain values, for handing to node code."""
        return {name: value.get_secret_value() for name, value in self.keys.items()}


@runtime_checkable
class CredentialProvider(Protocol):
    def get(self, credential_id: str) -> Credential | None: ...


class InMemoryCredentialProvider:
    """Credentials held in process memory. For tests and embedding."""

    def __init__(self, credentials: dict[str, dict[str, str]] | None = None):
        self._credentials: dict[str, Credential] = {}
        for credential_id, keys in (credentials or {}).items():
            self.add(credential_id, keys)

    def add(self, credential_id: str, keys: dict[str, str], type: str = "generic") -> None:
        self._credentials[credential_id] = Credential(
            id=credential_id,
            type=type,
            keys={k: SecretStr(v) for k, v in keys.items()},
        )

    def get(self, credential_id: str) -> Credential | None:
        return self._credentials.get(credential_id)


class EnvVarCredentialProvider:
    """
    Credentials read from environment variables.

    ``{prefix}{CREDENTIAL_ID}_{KEY}`` becomes key ``key`` of credential
    ``credential_id``. Ids are upper-cased and ``-`` becomes ``_``.
    """

    def __init__(self, prefix: str = "NODEFLOW_CRED_"):
        self.prefix = prefix

    def get(self, credential_id: str) -> Credential | None:
        env_prefix = f"{self.prefix}{credential_id.upper().replace('-', '_')}_"
        keys = {
            name[len(env_prefix) :].lower(): SecretStr(value)
            for name, value in os.environ.items()
            if name.startswith(env_prefix) and len(name) > len(env_prefix)
        }
        if not keys:
            logger.debug(f"No environment variables found for credential '{credential_id}'")
            return None
        return Credential(id=credential_id, keys=keys)


__all__ = [
    "Credential",
    "CredentialNotFoundError",
    "CredentialProvider",
    "EnvVarCredentialProvider",
    "InMemoryCredentialProvider",
]
