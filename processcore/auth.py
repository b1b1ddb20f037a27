"""API key authorization for the HTTP surface."""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import timezone
from typing import List, Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from .config import ApiKeyConfig, AuthConfig
from .constants import (
    PERMISSION_INSTANCES_READ,
    PERMISSION_INSTANCES_WRITE,
    PERMISSION_WEBHOOKS_CALLBACK,
    PERMISSION_WEBHOOKS_EVENTS,
    PERMISSION_WEBHOOKS_TRIGGER,
)
from .models import utc_now

logger = logging.getLogger(__name__)

DEV_KEY_PREFIX = "pk_dev_"
DEV_PERMISSIONS = [
    PERMISSION_WEBHOOKS_TRIGGER,
    PERMISSION_WEBHOOKS_CALLBACK,
    PERMISSION_WEBHOOKS_EVENTS,
    PERMISSION_INSTANCES_READ,
    PERMISSION_INSTANCES_WRITE,
]


class AuthResult(BaseModel):
    valid: bool
    principal_id: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    status_code: int = 200


class Authorizer(Protocol):
    async def authorize(
        self, headers: Mapping[str, str], permission: Optional[str] = None
    ) -> AuthResult:
        """Validate the caller's credentials for ``permission``."""


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    """Read ``X-API-Key`` first, then an ``Authorization: Bearer`` token."""
    lowered = {k.lower(): v for k, v in headers.items()}
    if lowered.get("x-api-key"):
        return lowered["x-api-key"]
    authorization = lowered.get("authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer ") :]
    return None


def has_permission(permissions: List[str], required: str) -> bool:
    return required in permissions or "*" in permissions


class ApiKeyAuthorizer:
    """Check API keys against the hashed keys provisioned in configuration."""

    def __init__(self, config: Optional[AuthConfig] = None) -> None:
        config = config or AuthConfig()
        self._keys = {k.key_hash: k for k in config.api_keys}
        self._allow_dev_keys = config.allow_dev_keys

    def _lookup(self, key: str) -> Optional[ApiKeyConfig]:
        key_hash = hash_api_key(key)
        for stored_hash, entry in self._keys.items():
            if hmac.compare_digest(stored_hash, key_hash):
                return entry
        return None

    async def authorize(
        self, headers: Mapping[str, str], permission: Optional[str] = None
    ) -> AuthResult:
        key = extract_api_key(headers)
        if not key:
            return AuthResult(
                valid=False,
                error="Missing API key. Include X-API-Key header or Bearer token.",
                status_code=401,
            )

        entry = self._lookup(key)
        if entry is not None:
            if not entry.is_active:
                return AuthResult(valid=False, error="API key is inactive", status_code=401)
            expires_at = entry.expires_at
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at is not None and expires_at < utc_now():
                return AuthResult(valid=False, error="API key has expired", status_code=401)
            principal_id, permissions = entry.principal_id, list(entry.permissions)
        elif self._allow_dev_keys and key.startswith(DEV_KEY_PREFIX):
            principal_id, permissions = "dev", list(DEV_PERMISSIONS)
        else:
            logger.info("Rejected request with unknown API key")
            return AuthResult(valid=False, error="Invalid API key", status_code=401)

        if permission and not has_permission(permissions, permission):
            return AuthResult(
                valid=False,
                error=f"Missing required permission: {permission}",
                status_code=403,
            )
        return AuthResult(valid=True, principal_id=principal_id, permissions=permissions)
