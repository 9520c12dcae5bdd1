"""Abstract base class for integrity checks.

Every check in the validator subclasses :class:`BaseIntegrityCheck`,
implementing :meth:`execute` to find issues and :meth:`repair` to apply
the narrowest fix for one of them.  Checks are stateless; the session
and settings arrive through the :class:`CheckContext`.
"""

from __future__ import annotations

import abc

from cascade_engine.checks.models import CheckContext, CheckName
from cascade_engine.models.issues import IntegrityIssue


class BaseIntegrityCheck(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> CheckName:
        """Registry key of this check."""

    @abc.abstractmethod
    async def execute(self, context: CheckContext) -> list[IntegrityIssue]:
        """Return the issues found, without mutating anything."""

    @abc.abstractmethod
    async def repair(self, context: CheckContext, issue: IntegrityIssue) -> int:
        """Fix *issue* inside the context's transaction.

        The condition is re-evaluated at repair time, so records fixed
        since validation are not touched twice.  Returns the number of
        records affected.
        """

    def affected_tables(self, issue: IntegrityIssue) -> list[str]:
        """Tables whose rows :meth:`repair` may change, for pre-repair backups."""
        return [issue.table]
