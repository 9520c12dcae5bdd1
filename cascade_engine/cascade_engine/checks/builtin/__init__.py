"""Built-in integrity checks."""

from cascade_engine.checks.builtin.fields import EnumDomainCheck, RequiredFieldsCheck
from cascade_engine.checks.builtin.reconciliation import DuplicateMembershipCheck, MemberCountCheck
from cascade_engine.checks.builtin.referential import ReferentialCheck

__all__ = [
    "DuplicateMembershipCheck",
    "EnumDomainCheck",
    "MemberCountCheck",
    "ReferentialCheck",
    "RequiredFieldsCheck",
]
