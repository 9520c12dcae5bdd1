"""Registry of integrity check implementations, keyed by :class:`CheckName`."""

from __future__ import annotations

import logging

from cascade_engine.checks.base import BaseIntegrityCheck
from cascade_engine.checks.models import CheckName

logger = logging.getLogger(__name__)


class CheckRegistry:
    def __init__(self) -> None:
        self._checks: dict[CheckName, BaseIntegrityCheck] = {}

    def register(self, check: BaseIntegrityCheck) -> None:
        """Register *check*.

        Raises
        ------
        ValueError
            If a check with the same name is already registered.
        """
        if check.name in self._checks:
            raise ValueError(f"Check {check.name.value} is already registered. Unregister the existing check first.")
        self._checks[check.name] = check
        logger.debug("Registered integrity check: %s", check.name.value)

    def unregister(self, name: CheckName) -> None:
        if name not in self._checks:
            raise KeyError(f"Check {name.value} is not registered.")
        del self._checks[name]

    def get(self, name: CheckName) -> BaseIntegrityCheck | None:
        return self._checks.get(name)

    def get_all(self) -> list[BaseIntegrityCheck]:
        """All registered checks, sorted by name."""
        return [self._checks[n] for n in sorted(self._checks, key=lambda n: n.value)]

    def __len__(self) -> int:
        return len(self._checks)

    def __contains__(self, name: CheckName) -> bool:
        return name in self._checks
