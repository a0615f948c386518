"""
Capability Registry and Pause Switch

Administrative access control for the vault.

Capabilities are held in an explicit relation Account x Capability; guard
functions at the top of each mutating operation consult it. There is no role
hierarchy: ADMINISTER does not imply the other capabilities, it only allows
changing the relation and toggling the pause switch.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Set

from custody.hardening import PausedState, Unauthorized, require_account
from custody.observability import VaultLayer, get_logger

logger = get_logger("access", VaultLayer.ACCESS)


class Capability(Enum):
    """Administrative capabilities an account may hold."""
    ADMINISTER = "administer"
    AUTHORIZE_WITHDRAWAL = "authorize_withdrawal"
    MANAGE_TREASURY = "manage_treasury"

    @classmethod
    def parse(cls, value: "Capability | str") -> "Capability":
        if isinstance(value, Capability):
            return value
        text = str(value).strip()
        try:
            return cls(text.lower())
        except ValueError:
            try:
                return cls[text.upper()]
            except KeyError:
                raise ValueError(f"Unknown capability: {value!r}") from None


class CapabilityRegistry:
    """
    Account -> capability-set table.

    Mutations require the caller to hold ADMINISTER. Granting a capability
    already held, or revoking one not held, changes nothing and returns False.
    """

    def __init__(self, initial: Dict[str, Iterable[Capability]] | None = None):
        self._assignments: Dict[str, Set[Capability]] = {}
        self._lock = threading.RLock()
        for account, capabilities in (initial or {}).items():
            account = require_account(account)
            for capability in capabilities:
                self._assignments.setdefault(account, set()).add(Capability.parse(capability))

    def has_capability(self, account: str, capability: Capability) -> bool:
        capability = Capability.parse(capability)
        with self._lock:
            return capability in self._assignments.get(str(account).lower(), ())

    def require(self, account: str, capability: Capability, operation: str = "") -> None:
        """Raise Unauthorized unless ``account`` holds ``capability``."""
        capability = Capability.parse(capability)
        if not self.has_capability(account, capability):
            raise Unauthorized(
                f"{account} lacks {capability.value}" + (f" for {operation}" if operation else ""),
                account=account,
                capability=capability.value,
            )

    def grant(self, caller: str, account: str, capability: Capability) -> bool:
        self.require(caller, Capability.ADMINISTER, "grant")
        account = require_account(account)
        capability = Capability.parse(capability)
        with self._lock:
            held = self._assignments.setdefault(account, set())
            if capability in held:
                return False
            held.add(capability)
        logger.info("capability granted", account=account, capability=capability.value, sender=caller)
        return True

    def revoke(self, caller: str, account: str, capability: Capability) -> bool:
        self.require(caller, Capability.ADMINISTER, "revoke")
        account = require_account(account)
        capability = Capability.parse(capability)
        with self._lock:
            held = self._assignments.get(account)
            if not held or capability not in held:
                return False
            held.discard(capability)
            if not held:
                del self._assignments[account]
        logger.info("capability revoked", account=account, capability=capability.value, sender=caller)
        return True

    def capabilities_of(self, account: str) -> FrozenSet[Capability]:
        with self._lock:
            return frozenset(self._assignments.get(str(account).lower(), ()))

    def holders(self, capability: Capability) -> List[str]:
        capability = Capability.parse(capability)
        with self._lock:
            return sorted(a for a, caps in self._assignments.items() if capability in caps)


class PauseState(Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class PauseSwitch:
    """
    Global activity gate.

    Both transitions require ADMINISTER. Pausing an already paused switch
    (or unpausing an active one) is a no-op that returns False.
    """

    def __init__(self, registry: CapabilityRegistry, state: PauseState = PauseState.ACTIVE):
        self._registry = registry
        self._state = state
        self._lock = threading.Lock()

    @property
    def state(self) -> PauseState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._state is PauseState.PAUSED

    def pause(self, caller: str) -> bool:
        return self._transition(caller, PauseState.PAUSED, "pause")

    def unpause(self, caller: str) -> bool:
        return self._transition(caller, PauseState.ACTIVE, "unpause")

    def _transition(self, caller: str, target: PauseState, operation: str) -> bool:
        self._registry.require(caller, Capability.ADMINISTER, operation)
        with self._lock:
            if self._state is target:
                return False
            self._state = target
        logger.info(f"vault {target.value}", account=caller)
        return True

    def require_active(self, operation: str = "") -> None:
        if self._state is PauseState.PAUSED:
            raise PausedState(
                "vault is paused" + (f"; {operation} rejected" if operation else ""),
                operation=operation,
            )
