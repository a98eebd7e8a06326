"""Check-if-exists, create-if-absent, reconcile-properties, verify.

Every provisioning step in the package goes through :func:`ensure`, which keeps
reruns against an already converged tenant free of writes.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Collection, Dict, Mapping, Optional

from .audit import JsonAuditLogger
from .errors import ResourceConflictError, VerificationError

logger = logging.getLogger(__name__)

Resource = Dict[str, Any]


class Action(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    WOULD_CREATE = "would_create"
    WOULD_UPDATE = "would_update"
    FAILED = "failed"


@dataclass
class ProvisionOutcome:
    kind: str
    name: str
    action: Action
    resource_id: Optional[str] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "action": self.action.value,
            "resource_id": self.resource_id,
            "changes": self.changes,
            "error": self.error,
        }


@dataclass
class ReconcileSettings:
    verify_attempts: int = 5
    verify_delay: float = 2.0


def _normalise(value: Any, unordered: bool) -> Any:
    if unordered and isinstance(value, (list, tuple, set)):
        return sorted(value, key=str)
    return value


def diff_properties(
    current: Mapping[str, Any],
    desired: Mapping[str, Any],
    unordered: Collection[str] = (),
) -> Dict[str, Any]:
    """Return the desired properties whose value differs from ``current``.

    ``None`` in ``desired`` means "not managed" and is never reported. Keys named in
    ``unordered`` compare as sets.
    """
    changes: Dict[str, Any] = {}
    for key, wanted in desired.items():
        if wanted is None:
            continue
        is_unordered = key in unordered
        if _normalise(current.get(key), is_unordered) != _normalise(wanted, is_unordered):
            changes[key] = wanted
    return changes


def _managed(desired: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in desired.items() if value is not None}


def ensure(
    kind: str,
    name: str,
    find: Callable[[], Optional[Resource]],
    create: Callable[[], Optional[Resource]],
    desired: Optional[Mapping[str, Any]] = None,
    update: Optional[Callable[[Resource, Dict[str, Any]], None]] = None,
    resource_id: Callable[[Resource], Optional[str]] = lambda item: item.get("id"),
    dry_run: bool = False,
    audit: Optional[JsonAuditLogger] = None,
    settings: Optional[ReconcileSettings] = None,
    unordered: Collection[str] = (),
    **context: Any,
) -> ProvisionOutcome:
    settings = settings or ReconcileSettings()
    desired = desired or {}

    existing = find()
    if existing is None:
        if dry_run:
            outcome = ProvisionOutcome(kind, name, Action.WOULD_CREATE, changes=_managed(desired))
            _record(audit, "resource_planned", outcome, context)
            return outcome
        created = create()
        verified = _verify(kind, name, find, desired, settings, unordered)
        ident = resource_id(verified) or (resource_id(created) if created else None)
        outcome = ProvisionOutcome(kind, name, Action.CREATED, resource_id=ident, changes=_managed(desired))
        _record(audit, "resource_created", outcome, context)
        return outcome

    ident = resource_id(existing)
    changes = diff_properties(existing, desired, unordered)
    if not changes:
        outcome = ProvisionOutcome(kind, name, Action.UNCHANGED, resource_id=ident)
        _record(audit, "resource_unchanged", outcome, context)
        return outcome

    if update is None:
        raise ResourceConflictError(
            f"{kind} {name!r} differs in {sorted(changes)} and cannot be updated in place",
            kind=kind,
            name=name,
        )

    if dry_run:
        outcome = ProvisionOutcome(kind, name, Action.WOULD_UPDATE, resource_id=ident, changes=changes)
        _record(audit, "resource_planned", outcome, context)
        return outcome

    update(existing, changes)
    _verify(kind, name, find, desired, settings, unordered)
    outcome = ProvisionOutcome(kind, name, Action.UPDATED, resource_id=ident, changes=changes)
    _record(audit, "resource_updated", outcome, context)
    return outcome


def _verify(
    kind: str,
    name: str,
    find: Callable[[], Optional[Resource]],
    desired: Mapping[str, Any],
    settings: ReconcileSettings,
    unordered: Collection[str],
) -> Resource:
    pending: Dict[str, Any] = {}
    for attempt in range(1, settings.verify_attempts + 1):
        current = find()
        if current is not None:
            pending = diff_properties(current, desired, unordered)
            if not pending:
                return current
        logger.debug("verification of %s %r pending (attempt %s)", kind, name, attempt)
        if attempt < settings.verify_attempts:
            time.sleep(settings.verify_delay)

    detail = f"properties {sorted(pending)} still differ" if pending else "not found"
    raise VerificationError(f"{kind} {name!r} failed verification: {detail}", kind=kind, name=name)


def await_convergence(
    kind: str,
    name: str,
    outstanding: Callable[[], Collection[Any]],
    settings: ReconcileSettings,
) -> None:
    """Re-read after additive writes until ``outstanding`` reports nothing left.

    Used for memberships, links and bindings, which are added one by one rather
    than through :func:`ensure`.
    """
    remaining: Collection[Any] = ()
    for attempt in range(1, settings.verify_attempts + 1):
        remaining = outstanding()
        if not remaining:
            return
        logger.debug("%s %r still missing %s (attempt %s)", kind, name, list(remaining), attempt)
        if attempt < settings.verify_attempts:
            time.sleep(settings.verify_delay)

    raise VerificationError(
        f"{kind} {name!r} failed verification: {sorted(map(str, remaining))} still missing",
        kind=kind,
        name=name,
    )


def _record(
    audit: Optional[JsonAuditLogger],
    message: str,
    outcome: ProvisionOutcome,
    context: Mapping[str, Any],
) -> None:
    if audit is None:
        return
    audit.info(
        message,
        kind=outcome.kind,
        name=outcome.name,
        action=outcome.action.value,
        resource_id=outcome.resource_id,
        changes=outcome.changes,
        **context,
    )
