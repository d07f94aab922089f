"""Durable per-instance metadata."""
from __future__ import annotations

from .store import (
    DEFAULT_BIND,
    SECURITY_DISABLED,
    SECURITY_ENABLED,
    CredentialRecord,
    ForwardMapping,
    InstanceRecord,
    MetadataStore,
    MetadataStoreError,
    ProxyIndex,
    SecurityMarker,
    utc_now,
    validate_bind_address,
    validate_instance_name,
    validate_port,
)

__all__ = [
    "CredentialRecord",
    "DEFAULT_BIND",
    "ForwardMapping",
    "InstanceRecord",
    "MetadataStore",
    "MetadataStoreError",
    "ProxyIndex",
    "SECURITY_DISABLED",
    "SECURITY_ENABLED",
    "SecurityMarker",
    "utc_now",
    "validate_bind_address",
    "validate_instance_name",
    "validate_port",
]
