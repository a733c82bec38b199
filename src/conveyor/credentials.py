"""Opaque credential lookup; only credential ids are ever stored."""
from __future__ import annotations

import abc
import os
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from pydantic import SecretStr

from .errors import CredentialNotFound


@dataclass(frozen=True)
class Credential:
    credential_id: str
    secret: SecretStr
    username: Optional[str] = None


class CredentialStore(abc.ABC):
    @abc.abstractmethod
    def lookup(self, credential_id: str) -> Credential:
        """Return the credential or raise :class:`CredentialNotFound`."""


class EnvCredentialStore(CredentialStore):
    """
    Resolve credentials from environment variables.

    ``registry-auth`` maps to ``CONVEYOR_CREDENTIAL_REGISTRY_AUTH`` (secret) and
    the optional ``CONVEYOR_CREDENTIAL_REGISTRY_AUTH_USER``.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, prefix: str = "CONVEYOR_CREDENTIAL_") -> None:
        self._environ = environ if environ is not None else os.environ
        self._prefix = prefix

    def lookup(self, credential_id: str) -> Credential:
        name = self._prefix + re.sub(r"[^A-Za-z0-9]", "_", credential_id).upper()
        secret = self._environ.get(name)
        if not secret:
            raise CredentialNotFound(f"Credential {credential_id!r} is not configured ({name})")
        return Credential(
            credential_id=credential_id,
            secret=SecretStr(secret),
            username=self._environ.get(f"{name}_USER"),
        )


class StaticCredentialStore(CredentialStore):
    """In-process store, handy for embedding and tests."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None) -> None:
        self._secrets = dict(secrets or {})

    def lookup(self, credential_id: str) -> Credential:
        if credential_id not in self._secrets:
            raise CredentialNotFound(f"Credential {credential_id!r} is not configured")
        return Credential(credential_id=credential_id, secret=SecretStr(self._secrets[credential_id]))


__all__ = ["Credential", "CredentialStore", "EnvCredentialStore", "StaticCredentialStore"]
