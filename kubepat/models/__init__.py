"""Core data structures for kube-pat."""

from kubepat.models.config import KubePATConfig
from kubepat.models.resources import (
    AddressTranslationSpec,
    ForwardingEntry,
    ObjectRef,
    Protocol,
    ServicePort,
    ServiceSnapshot,
    ServiceType,
)

__all__ = [
    "AddressTranslationSpec",
    "ForwardingEntry",
    "KubePATConfig",
    "ObjectRef",
    "Protocol",
    "ServicePort",
    "ServiceSnapshot",
    "ServiceType",
]
