"""Ledger collaborators.

The vault moves value through two external ledgers:

* a fungible-asset ledger (token-style: ``transfer``, ``transfer_from``,
  ``balance_of``), consumed through the `AssetLedger` protocol. The calling
  account is passed explicitly as ``sender`` / ``spender``. A ledger that
  also offers ``checkpoint()`` (`CheckpointingLedger`) lets a multi-pull
  deposit fail without leaving any trace.
* the environment's native-asset ledger, `NativeLedger`, which also offers a
  ``checkpoint()`` scope so an aborted operation leaves native balances as
  they were.

`call_transfer` / `call_transfer_from` are the only way the vault talks to an
`AssetLedger`: anything but a literal ``True`` return is a failure, and so is
any exception raised by the ledger.

`InMemoryAssetLedger` is a reference implementation for embedding and
tests. It supports per-account receive hooks so
reentrancy can be exercised.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, ContextManager, Dict, Iterator, Optional, Protocol, Tuple, runtime_checkable

from custody.hardening import TransferFailure, require_account
from custody.observability import VaultLayer, get_logger

logger = get_logger("ledger", VaultLayer.LEDGER)


class LedgerError(Exception):
    """Base class for ledger-level failures."""
    pass


class InsufficientFunds(LedgerError):
    pass


class InsufficientAllowance(LedgerError):
    pass


class TransferRejected(LedgerError):
    """The recipient refused an incoming payment."""
    pass


class AssetLedger(Protocol):
    """Narrow interface the vault requires from the fungible-asset ledger."""

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        ...

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        ...

    def balance_of(self, account: str) -> int:
        ...


@runtime_checkable
class CheckpointingLedger(AssetLedger, Protocol):
    """
    An `AssetLedger` that can undo a group of moves.

    Any exception escaping ``checkpoint()`` restores balances and allowances
    to their values on entry.
    """

    def checkpoint(self) -> ContextManager[None]:
        ...


def _checked(result: object, what: str) -> None:
    if result is not True:
        raise TransferFailure(f"{what} did not report success (returned {result!r})")


def call_transfer(ledger: AssetLedger, sender: str, to: str, amount: int) -> None:
    """Invoke ``ledger.transfer`` and raise TransferFailure unless it returned True."""
    what = f"transfer {amount} {sender} -> {to}"
    try:
        result = ledger.transfer(sender, to, amount)
    except TransferFailure:
        raise
    except Exception as ex:
        raise TransferFailure(f"{what} raised {type(ex).__name__}: {ex}") from ex
    _checked(result, what)


def call_transfer_from(ledger: AssetLedger, spender: str, owner: str, to: str, amount: int) -> None:
    """Invoke ``ledger.transfer_from`` and raise TransferFailure unless it returned True."""
    what = f"transfer_from {amount} {owner} -> {to}"
    try:
        result = ledger.transfer_from(spender, owner, to, amount)
    except TransferFailure:
        raise
    except Exception as ex:
        raise TransferFailure(f"{what} raised {type(ex).__name__}: {ex}") from ex
    _checked(result, what)


# Hook signature: (sender, recipient, amount) -> None; raising rejects the payment.
ReceiveHook = Callable[[str, str, int], Optional[bool]]


class InMemoryAssetLedger:
    """
    Token-style ledger held in memory.

    A transfer whose recipient hook raises, or returns False, is undone before
    the error propagates, so the ledger itself never keeps a partial move.
    """

    def __init__(self, symbol: str = "TKN"):
        self.symbol = symbol
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self._hooks: Dict[str, ReceiveHook] = {}
        self._lock = threading.RLock()

    def mint(self, account: str, amount: int) -> None:
        account = require_account(account)
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        with self._lock:
            self._allowances[(require_account(owner), require_account(spender))] = amount
        return True

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._allowances.get((owner.lower(), spender.lower()), 0)

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account.lower(), 0)

    def set_receive_hook(self, account: str, hook: Optional[ReceiveHook]) -> None:
        account = require_account(account)
        if hook is None:
            self._hooks.pop(account, None)
        else:
            self._hooks[account] = hook

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        self._move(require_account(sender), require_account(to), amount)
        return True

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        spender, owner, to = require_account(spender), require_account(owner), require_account(to)
        with self._lock:
            allowed = self._allowances.get((owner, spender), 0)
            if allowed < amount:
                raise InsufficientAllowance(f"{spender} may spend {allowed} of {owner}, needs {amount}")
            self._allowances[(owner, spender)] = allowed - amount
        try:
            self._move(owner, to, amount)
        except Exception:
            with self._lock:
                self._allowances[(owner, spender)] = self._allowances.get((owner, spender), 0) + amount
            raise
        return True

    @contextmanager
    def checkpoint(self) -> Iterator[None]:
        with self._lock:
            balances, allowances = dict(self._balances), dict(self._allowances)
            try:
                yield
            except BaseException:
                self._balances, self._allowances = balances, allowances
                logger.debug("asset balances and allowances restored to checkpoint", symbol=self.symbol)
                raise

    def _move(self, sender: str, to: str, amount: int) -> None:
        if amount < 0:
            raise LedgerError("negative transfer")
        with self._lock:
            have = self._balances.get(sender, 0)
            if have < amount:
                raise InsufficientFunds(f"{sender} holds {have} {self.symbol}, needs {amount}")
            self._balances[sender] = have - amount
            self._balances[to] = self._balances.get(to, 0) + amount

        hook = self._hooks.get(to)
        if hook is None:
            return
        try:
            accepted = hook(sender, to, amount)
            if accepted is False:
                raise TransferRejected(f"{to} rejected {amount} {self.symbol}")
        except Exception:
            with self._lock:
                self._balances[to] -= amount
                self._balances[sender] = self._balances.get(sender, 0) + amount
            raise


class NativeLedger:
    """
    Native-asset balances of the execution environment.

    ``transfer`` raises InsufficientFunds or TransferRejected. Wrap a
    multi-step operation in ``checkpoint()`` to get all-or-nothing semantics:
    any exception escaping the scope restores every balance to its value on
    entry.
    """

    def __init__(self):
        self._balances: Dict[str, int] = {}
        self._hooks: Dict[str, ReceiveHook] = {}
        self._lock = threading.RLock()

    def credit(self, account: str, amount: int) -> None:
        account = require_account(account)
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account.lower(), 0)

    def set_receive_hook(self, account: str, hook: Optional[ReceiveHook]) -> None:
        account = require_account(account)
        if hook is None:
            self._hooks.pop(account, None)
        else:
            self._hooks[account] = hook

    def transfer(self, sender: str, to: str, amount: int) -> None:
        sender, to = require_account(sender), require_account(to)
        with self._lock:
            have = self._balances.get(sender, 0)
            if have < amount:
                raise InsufficientFunds(f"{sender} holds {have} native, needs {amount}")
            self._balances[sender] = have - amount
            self._balances[to] = self._balances.get(to, 0) + amount

        hook = self._hooks.get(to)
        if hook is not None and hook(sender, to, amount) is False:
            raise TransferRejected(f"{to} rejected {amount} native")

    @contextmanager
    def checkpoint(self) -> Iterator[None]:
        # Held for the whole scope so no other thread's transfer is lost on restore.
        with self._lock:
            snapshot = dict(self._balances)
            try:
                yield
            except BaseException:
                self._balances = snapshot
                logger.debug("native balances restored to checkpoint")
                raise
