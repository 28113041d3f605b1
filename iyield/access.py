"""Administrative capability shared by the oracle, compliance and vault components."""

from __future__ import annotations

import threading
from typing import FrozenSet, Iterable, Optional

from iyield.hardening import Unauthorized, Validators
from iyield.observability import AuditLogger


class AccessControl:
    """
    Set of callers holding the administrative capability.

    Components never inspect the set directly; they call `require_admin`
    before any privileged mutation.
    """

    def __init__(self, admins: Iterable[str], audit: Optional[AuditLogger] = None):
        self._admins = set()
        for admin in admins:
            Validators.validate_identifier(admin, "admin").raise_if_invalid()
            self._admins.add(admin)
        if not self._admins:
            raise ValueError("at least one administrator is required")
        self._audit = audit
        self._lock = threading.Lock()

    def is_admin(self, caller: str) -> bool:
        with self._lock:
            return caller in self._admins

    def require_admin(self, caller: str, action: str = "") -> None:
        if not self.is_admin(caller):
            if self._audit:
                self._audit.log(caller, action or "admin", "access", caller, outcome="denied")
            raise Unauthorized("caller lacks the administrative capability", caller=caller, action=action)

    def grant(self, caller: str, account: str) -> None:
        self.require_admin(caller, "grant_admin")
        Validators.validate_identifier(account, "account").raise_if_invalid()
        with self._lock:
            self._admins.add(account)
        if self._audit:
            self._audit.log(caller, "grant_admin", "access", account)

    def revoke(self, caller: str, account: str) -> None:
        self.require_admin(caller, "revoke_admin")
        with self._lock:
            if account in self._admins and len(self._admins) == 1:
                raise ValueError("cannot revoke the last administrator")
            self._admins.discard(account)
        if self._audit:
            self._audit.log(caller, "revoke_admin", "access", account)

    @property
    def admins(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._admins)
