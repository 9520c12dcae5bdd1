"""Declarative permission rules.

Authorization is data: each :class:`PermissionRule` names a
``(resource, action)`` pair, the roles allowed to perform it, and an
optional predicate over the caller's :class:`SecurityContext`.  A request
is denied when no rule matches, when the caller's role is not listed, or
when the predicate returns ``False``.

Operations exposed by the service facade are mapped onto rules through
:data:`OPERATIONS`::

    guard = PermissionGuard(DEFAULT_RULES)
    refusal = guard.check("execute_delete", ctx)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, tzinfo
from zoneinfo import ZoneInfo

from cascade_api.security.context import Refusal, RefusalCode, Role, SecurityContext

logger = logging.getLogger(__name__)

Predicate = Callable[[SecurityContext], bool]


@dataclass(frozen=True)
class PermissionRule:
    resource: str
    action: str
    roles: frozenset[Role]
    predicate: Predicate | None = None
    # Human readable explanation used when the predicate fails.
    predicate_reason: str = "condition not met"


@dataclass(frozen=True)
class OperationSpec:
    resource: str
    action: str
    bulk: bool = False


# Facade operation name -> (resource, action).
OPERATIONS: dict[str, OperationSpec] = {
    "preview_deletion": OperationSpec("cascade_deletion", "preview"),
    "execute_delete": OperationSpec("cascade_deletion", "execute"),
    "cancel_operation": OperationSpec("cascade_deletion", "cancel"),
    "get_active_operations": OperationSpec("cascade_deletion", "read"),
    "scan_orphans": OperationSpec("orphan_cleanup", "scan"),
    "cleanup_orphaned": OperationSpec("bulk_deletion", "cleanup", bulk=True),
    "validate_integrity": OperationSpec("data_integrity", "read"),
    "repair_integrity": OperationSpec("bulk_deletion", "repair", bulk=True),
    "rollback_deletion": OperationSpec("deletion_rollback", "execute"),
    "list_snapshots": OperationSpec("deletion_rollback", "read"),
    "get_audit_log": OperationSpec("audit_log", "read"),
    "export_audit_log": OperationSpec("audit_log", "export"),
    "security_summary": OperationSpec("security_analytics", "read"),
    "unblock_origin": OperationSpec("security", "manage"),
}

BULK_OPERATIONS: frozenset[str] = frozenset(name for name, spec in OPERATIONS.items() if spec.bulk)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def within_hours(start: int, end: int, tz: tzinfo = UTC) -> Predicate:
    """Allow only when the context timestamp falls in ``[start, end)`` local hours."""

    def _check(ctx: SecurityContext) -> bool:
        return start <= ctx.timestamp.astimezone(tz).hour < end

    return _check


def recently_authenticated(max_age_seconds: float) -> Predicate:
    """Allow only when the caller re-authenticated within *max_age_seconds*."""

    def _check(ctx: SecurityContext) -> bool:
        if ctx.last_authenticated_at is None:
            return False
        age = (ctx.timestamp - ctx.last_authenticated_at).total_seconds()
        return 0 <= age <= max_age_seconds

    return _check


_ADMIN = frozenset({Role.ADMIN})
_STAFF = frozenset({Role.ADMIN, Role.TEACHER})


def default_rules(
    *,
    business_hours: tuple[int, int] | None = (9, 17),
    reauth_window_seconds: float = 300.0,
    timezone: str = "UTC",
) -> list[PermissionRule]:
    """Build the default rule table.

    ``business_hours=None`` removes the time-of-day window from deletion
    execution.
    """
    tz = ZoneInfo(timezone)
    execute_predicate: Predicate | None = None
    execute_reason = "condition not met"
    if business_hours is not None:
        start, end = business_hours
        execute_predicate = within_hours(start, end, tz)
        execute_reason = f"deletions are only allowed between {start:02d}:00 and {end:02d}:00"

    reauth = recently_authenticated(reauth_window_seconds)
    reauth_reason = f"bulk operations require re-authentication within {int(reauth_window_seconds)}s"

    return [
        PermissionRule("cascade_deletion", "preview", _ADMIN),
        PermissionRule("cascade_deletion", "execute", _ADMIN, execute_predicate, execute_reason),
        PermissionRule("cascade_deletion", "cancel", _ADMIN),
        PermissionRule("cascade_deletion", "read", _ADMIN),
        PermissionRule("orphan_cleanup", "scan", _ADMIN),
        PermissionRule("bulk_deletion", "cleanup", _ADMIN, reauth, reauth_reason),
        PermissionRule("bulk_deletion", "repair", _ADMIN, reauth, reauth_reason),
        PermissionRule("data_integrity", "read", _ADMIN),
        PermissionRule("deletion_rollback", "execute", _ADMIN),
        PermissionRule("deletion_rollback", "read", _ADMIN),
        PermissionRule("audit_log", "read", _ADMIN),
        PermissionRule("audit_log", "export", _ADMIN),
        PermissionRule("security_analytics", "read", _STAFF),
        PermissionRule("security", "manage", _ADMIN),
    ]


DEFAULT_RULES: list[PermissionRule] = default_rules()


class PermissionGuard:
    """Evaluates operations against a rule table."""

    def __init__(self, rules: Iterable[PermissionRule] = DEFAULT_RULES) -> None:
        self._rules: dict[tuple[str, str], PermissionRule] = {(r.resource, r.action): r for r in rules}

    def rule_for(self, resource: str, action: str) -> PermissionRule | None:
        return self._rules.get((resource, action))

    def check(self, operation: str, ctx: SecurityContext) -> Refusal | None:
        spec = OPERATIONS.get(operation)
        if spec is None:
            return self._deny(operation, ctx, f"unknown operation '{operation}'")
        return self.check_resource(spec.resource, spec.action, ctx, operation=operation)

    def check_resource(
        self,
        resource: str,
        action: str,
        ctx: SecurityContext,
        *,
        operation: str | None = None,
    ) -> Refusal | None:
        operation = operation or f"{resource}:{action}"
        rule = self._rules.get((resource, action))
        if rule is None:
            return self._deny(operation, ctx, f"no permission rule for {resource}:{action}")
        if ctx.actor_role not in rule.roles:
            return self._deny(
                operation,
                ctx,
                f"role '{ctx.actor_role.value}' may not {action} {resource}",
                required_roles=sorted(r.value for r in rule.roles),
            )
        if rule.predicate is not None and not rule.predicate(ctx):
            return self._deny(operation, ctx, rule.predicate_reason)
        return None

    @staticmethod
    def _deny(operation: str, ctx: SecurityContext, reason: str, **details: object) -> Refusal:
        logger.warning(
            "Permission denied: actor=%s role=%s operation=%s reason=%s",
            ctx.actor_id,
            ctx.actor_role.value,
            operation,
            reason,
        )
        return Refusal(
            code=RefusalCode.PERMISSION_DENIED,
            reason=reason,
            operation=operation,
            details=dict(details),
        )
