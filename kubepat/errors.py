"""Error taxonomy for the reconciliation core.

Entry-scoped failures (EntryFailure) skip one spec and never abort a pass.
Pass-scoped failures (ApplyFailure) abort the current pass and surface to
the caller of ``ReconciliationController.reconcile()``.
ConfigurationFailure skips load-balancer synchronization for one protocol.
"""

from __future__ import annotations


class KubePATError(Exception):
    """Base class for every kube-pat error."""


class EntryFailure(KubePATError):
    """A failure confined to a single translation spec."""

    reason = "entry"

    def __init__(self, translation: str, message: str, service: str = "") -> None:
        super().__init__(message)
        self.translation = translation
        self.service = service


class LookupFailure(EntryFailure):
    """The service referenced by a spec does not exist."""

    reason = "lookup"


class ValidationFailure(EntryFailure):
    """The referenced service (or the spec itself) is unsuitable for translation."""

    reason = "validation"


class PortConflict(EntryFailure):
    """Two entries claim the same (protocol, external port) within one pass."""

    reason = "port_conflict"

    def __init__(self, translation: str, protocol: str, port: int, service: str = "") -> None:
        super().__init__(translation, f"port {protocol}:{port} is already taken", service=service)
        self.protocol = protocol
        self.port = port


class ApplyFailure(KubePATError):
    """An external call failed; the current pass is aborted."""


class PacketFilterError(ApplyFailure):
    """An iptables command exited non-zero or could not be run."""

    def __init__(self, command: list[str], stderr: str, returncode: int | None = None) -> None:
        super().__init__(f"{' '.join(command)} failed: {stderr.strip() or 'no output'}")
        self.command = command
        self.stderr = stderr
        self.returncode = returncode


class LoadBalancerError(ApplyFailure):
    """Fetching or updating the load-balancer service failed."""


class CacheNotSynced(ApplyFailure):
    """The watched collections have not completed their initial list."""


class ConfigurationFailure(KubePATError):
    """The load-balancer target for a protocol cannot be resolved."""
