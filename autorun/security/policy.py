"""Runtime authorization policy for run mutations."""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from ..config import SecurityConfig
from ..models import Run

PrivilegeCheck = Callable[[str], bool]


class PolicyEngine:
    """Decides who may act on a run.

    The owner of a run may always act on it; anyone else needs
    ``is_privileged(identity)`` to hold.
    """

    def __init__(self, is_privileged: Optional[PrivilegeCheck] = None) -> None:
        self._is_privileged = is_privileged or (lambda identity: False)

    @classmethod
    def from_identities(cls, privileged_ids: Iterable[str]) -> "PolicyEngine":
        allowed = frozenset(privileged_ids)
        return cls(lambda identity: identity in allowed)

    @classmethod
    def from_config(cls, config: SecurityConfig) -> "PolicyEngine":
        return cls.from_identities(config.privileged_ids)

    def is_privileged(self, identity: str) -> bool:
        return bool(self._is_privileged(identity))

    def can_stop(self, requester_id: str, run: Run) -> bool:
        """Return ``True`` if ``requester_id`` may stop ``run``."""
        return requester_id == run.owner_id or self.is_privileged(requester_id)
