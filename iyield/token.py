"""Minimal in-memory token ledger whose transfers pass through the compliance gate.

Minting and burning are reserved to accounts holding the minter role (the vault);
every holder-to-holder movement asks the gate first and leaves balances and
allowances untouched when denied. An administrator can pause holder-to-holder
movements; minting and burning stay available so the vault can still settle.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Set, Tuple

from iyield.access import AccessControl
from iyield.compliance import TransferComplianceGate, TransferDecision
from iyield.events import EmergencyPauseToggled, EventBus, TransferBlocked, TransferExecuted
from iyield.hardening import (
    Clock,
    EmergencyPaused,
    InsufficientBalance,
    InvariantChecker,
    SystemClock,
    Unauthorized,
    Validators,
)
from iyield.observability import AuditLogger, Layer, get_logger


class CompliantToken:
    """Balances, allowances and total supply of the pool token."""

    def __init__(
        self,
        gate: TransferComplianceGate,
        access: AccessControl,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
        name: str = "iYield CSV Pool Token",
        symbol: str = "iYLD",
    ):
        self.name = name
        self.symbol = symbol
        self._gate = gate
        self._access = access
        self._clock = clock or SystemClock()
        self._bus = bus or EventBus()
        self._audit = audit
        self._log = get_logger("ledger", Layer.TOKEN)
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self._minters: Set[str] = set()
        self._total_supply = 0
        self._paused = False
        self._lock = threading.RLock()

    # roles

    def grant_minter(self, caller: str, minter: str) -> None:
        self._access.require_admin(caller, "grant_minter")
        Validators.validate_identifier(minter, "minter").raise_if_invalid()
        with self._lock:
            self._minters.add(minter)
        if self._audit:
            self._audit.log(caller, "grant_minter", "token", minter)

    def is_minter(self, account: str) -> bool:
        with self._lock:
            return account in self._minters

    def _require_minter(self, caller: str, action: str) -> None:
        if not self.is_minter(caller):
            raise Unauthorized("caller lacks the minter role", caller=caller, action=action)

    # pause

    def pause(self, caller: str) -> None:
        self._set_paused(caller, True)

    def unpause(self, caller: str) -> None:
        self._set_paused(caller, False)

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def _set_paused(self, caller: str, paused: bool) -> None:
        action = "pause" if paused else "unpause"
        self._access.require_admin(caller, f"token_{action}")
        with self._lock:
            changed = self._paused != paused
            self._paused = paused
            now = self._clock.now()
        if not changed:
            return
        self._log.warning("Token pause toggled", operation=action, paused=paused)
        if self._audit:
            self._audit.log(caller, f"token_{action}", "token", self.symbol, paused=paused)
        self._bus.publish(EmergencyPauseToggled(occurred_at=now, paused=paused, actor=caller, component="token"))

    def _require_unpaused(self, operation: str, sender: str, recipient: str, amount: int) -> None:
        if self._paused:
            error = EmergencyPaused("token transfers are paused", operation=operation)
            self._log.rejected(operation, error, sender=sender, recipient=recipient, amount=amount)
            raise error

    # queries

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._allowances.get((owner, spender), 0)

    @property
    def total_supply(self) -> int:
        with self._lock:
            return self._total_supply

    # supply

    def mint(self, caller: str, account: str, amount: int) -> None:
        self._require_minter(caller, "mint")
        Validators.validate_identifier(account, "account").raise_if_invalid()
        Validators.validate_amount(amount, "amount").raise_if_invalid()
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount
            self._total_supply += amount
            self._check_supply()

    def burn(self, caller: str, account: str, amount: int) -> None:
        self._require_minter(caller, "burn")
        Validators.validate_amount(amount, "amount").raise_if_invalid()
        with self._lock:
            balance = self._balances.get(account, 0)
            if balance < amount:
                raise InsufficientBalance(
                    "balance too low to burn", account=account, balance=balance, amount=amount
                )
            self._balances[account] = balance - amount
            self._total_supply -= amount
            self._check_supply()

    def _check_supply(self) -> None:
        InvariantChecker.check_non_negative("total_supply", self._total_supply)
        InvariantChecker.check_sum_matches(
            "token balances", dict(self._balances), self._total_supply, tolerance=0
        )

    # gated movements

    def approve(self, owner: str, spender: str, amount: int) -> None:
        Validators.validate_identifier(spender, "spender").raise_if_invalid()
        Validators.validate_amount(amount, "amount").raise_if_invalid()
        with self._lock:
            self._allowances[(owner, spender)] = amount

    def _gate_or_raise(self, sender: str, recipient: str, amount: int) -> TransferDecision:
        decision = self._gate.can_transfer(sender, recipient, amount)
        if not decision.allowed:
            error = decision.to_error()
            self._log.rejected(
                "transfer", error, sender=sender, recipient=recipient, amount=amount, flags=int(decision.flags)
            )
            self._bus.publish(TransferBlocked(
                occurred_at=self._clock.now(),
                sender=sender,
                recipient=recipient,
                amount=amount,
                reason=decision.reason.value,
                flags=int(decision.flags),
            ))
            raise error
        return decision

    def transfer(self, sender: str, recipient: str, amount: int) -> TransferDecision:
        """
        Move `amount` from sender to recipient.

        Raises:
            EmergencyPaused: transfers are paused
            TransferRestricted: the gate denied the transfer (decision attached)
            InsufficientBalance: sender balance too low
        """
        Validators.validate_identifier(recipient, "recipient").raise_if_invalid()
        Validators.validate_amount(amount, "amount").raise_if_invalid()
        with self._lock:
            self._require_unpaused("transfer", sender, recipient, amount)
            decision = self._gate_or_raise(sender, recipient, amount)
            self._move(sender, recipient, amount)
        self._executed(sender, recipient, amount)
        return decision

    def transfer_from(self, spender: str, sender: str, recipient: str, amount: int) -> TransferDecision:
        Validators.validate_identifier(recipient, "recipient").raise_if_invalid()
        Validators.validate_amount(amount, "amount").raise_if_invalid()
        with self._lock:
            self._require_unpaused("transfer_from", sender, recipient, amount)
            decision = self._gate_or_raise(sender, recipient, amount)
            allowance = self._allowances.get((sender, spender), 0)
            if allowance < amount:
                raise InsufficientBalance(
                    "allowance too low", owner=sender, spender=spender, allowance=allowance, amount=amount
                )
            self._move(sender, recipient, amount)
            self._allowances[(sender, spender)] = allowance - amount
        self._executed(sender, recipient, amount)
        return decision

    def _move(self, sender: str, recipient: str, amount: int) -> None:
        balance = self._balances.get(sender, 0)
        if balance < amount:
            raise InsufficientBalance("balance too low", account=sender, balance=balance, amount=amount)
        self._balances[sender] = balance - amount
        self._balances[recipient] = self._balances.get(recipient, 0) + amount

    def _executed(self, sender: str, recipient: str, amount: int) -> None:
        self._log.debug("Transfer executed", operation="transfer", sender=sender, recipient=recipient, amount=amount)
        if self._audit:
            self._audit.log(sender, "transfer", "token", recipient, amount=amount)
        self._bus.publish(TransferExecuted(
            occurred_at=self._clock.now(), sender=sender, recipient=recipient, amount=amount,
        ))

