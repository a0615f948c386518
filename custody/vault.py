"""
Custody Vault

Pooled custody for two asset classes with fee skimming on deposit and
signature-authorized release.

Operations
──────────

    deposit_native(caller, amount)              native in, fee to treasury
    deposit_asset(caller, amount)               fungible in via transfer_from
    withdraw(caller, amount, deadline, sig)     fungible out, authorized by signature
    treasury_withdraw(caller, amount)           native sweep to treasury
    pause / unpause / grant / revoke            administration

Execution discipline
────────────────────

    Serialized: one re-entrant lock orders every mutating call on an instance.

    Non-reentrant: deposits, withdrawals and sweeps hold a busy flag for their
    whole duration. A nested call arriving through a ledger hook is rejected
    with ReentrantCall before it touches any state.

    All-or-nothing: every check runs before any commit. Native movements run
    inside the native ledger checkpoint. The withdrawal nonce is reserved,
    not consumed, until the asset transfer has succeeded. Both pulls of a
    fungible deposit run inside the asset ledger checkpoint when it offers
    one; otherwise a failed fee pull refunds the net pull. Events and audit
    entries are recorded only after commit.

Trust boundary
──────────────

    There is no per-depositor ledger. Release amounts are dictated entirely by
    the off-chain authorizer holding AUTHORIZE_WITHDRAWAL; the vault checks the
    signature, the deadline and the nonce, never an entitlement.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional

from custody.access import Capability, CapabilityRegistry, PauseSwitch
from custody.config import VaultSettings
from custody.events import (
    CapabilityGranted,
    CapabilityRevoked,
    Deposited,
    Event,
    EventBus,
    Paused,
    TreasuryWithdrawn,
    Unpaused,
    Withdrawn,
)
from custody.fees import FeeSchedule, FeeSplit
from custody.hardening import (
    DeadlineExpired,
    InvalidSignature,
    ReentrancyGuard,
    TransferFailure,
    Validators,
    VaultError,
    require_account,
    require_amount,
)
from custody.ledger import (
    AssetLedger,
    CheckpointingLedger,
    NativeLedger,
    call_transfer,
    call_transfer_from,
)
from custody.nonce import NonceSequencer
from custody.observability import (
    AuditTrail,
    VaultLayer,
    correlation_id_var,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)
from custody.signing import (
    SignatureLike,
    SigningContext,
    WithdrawalAuthorization,
    recover_signer,
    withdrawal_digest,
)

logger = get_logger("vault", VaultLayer.DEPOSIT)
withdrawal_logger = get_logger("vault", VaultLayer.WITHDRAWAL)
treasury_logger = get_logger("vault", VaultLayer.TREASURY)

NATIVE = "native"
ASSET = "asset"

Clock = Callable[[], int]


def _wall_clock() -> int:
    return int(time.time())


@dataclass(frozen=True)
class DepositReceipt:
    account: str
    asset: str
    net: int
    fee: int


@dataclass(frozen=True)
class WithdrawalReceipt:
    account: str
    amount: int
    nonce: int
    signer: str


class CustodyVault:
    """
    Pooled custody vault.

    Example:
        vault = CustodyVault(
            address=VAULT, admin=ADMIN,
            asset_ledger=token, native_ledger=native,
            settings=VaultSettings(fee_rate_bps=250, treasury=TREASURY),
            authorizers=[signer.account],
        )
        vault.deposit_asset(alice, 100)
        sig = signer.sign(vault.signing_context(),
                          WithdrawalAuthorization(alice, 50, deadline, vault.current_nonce()))
        vault.withdraw(alice, 50, deadline, sig)
    """

    def __init__(
        self,
        address: str,
        admin: str,
        asset_ledger: AssetLedger,
        native_ledger: NativeLedger,
        settings: Optional[VaultSettings] = None,
        authorizers: Iterable[str] = (),
        admin_capabilities: Iterable[Capability] = tuple(Capability),
        clock: Optional[Clock] = None,
        event_bus: Optional[EventBus] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.address = require_account(address, "address")
        admin = require_account(admin, "admin")
        self.settings = settings or VaultSettings()

        self._asset = asset_ledger
        self._native = native_ledger
        self._fees = FeeSchedule(self.settings.fee_rate_bps, self.settings.treasury)
        self._context = SigningContext(
            name=self.settings.name,
            version=self.settings.version,
            chain_id=self.settings.chain_id,
            verifying_contract=self.address,
        )

        initial = {admin: set(admin_capabilities) | {Capability.ADMINISTER}}
        for account in authorizers:
            initial.setdefault(require_account(account, "authorizer"), set()).add(
                Capability.AUTHORIZE_WITHDRAWAL
            )
        self._registry = CapabilityRegistry(initial)
        self._pause = PauseSwitch(self._registry)
        self._nonces = NonceSequencer()

        self._clock = clock or _wall_clock
        self._lock = threading.RLock()
        self._guard = ReentrancyGuard(f"vault {self.address}")
        self._events: List[Event] = []
        self._bus = event_bus or EventBus()
        self._audit = audit or AuditTrail()

        logger.info(
            "vault deployed",
            address=self.address,
            admin=admin,
            fee_rate_bps=self._fees.fee_rate_bps,
            treasury=self._fees.treasury or "",
            chain_id=self._context.chain_id,
        )

    @classmethod
    def from_config(cls, address: str, admin: str, asset_ledger: AssetLedger,
                    native_ledger: NativeLedger, **kwargs) -> "CustodyVault":
        """Deploy with construction parameters taken from the active configuration."""
        return cls(address, admin, asset_ledger, native_ledger,
                   settings=VaultSettings.from_config(), **kwargs)

    # ------------------------------------------------------------------
    # Execution scaffolding
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str, caller: str, guarded: bool = True) -> Iterator[None]:
        """Serialize, optionally guard against re-entry, and log failures."""
        token = None
        if not correlation_id_var.get():
            token = set_correlation_id(generate_correlation_id())
        try:
            with self._lock:
                if guarded:
                    with self._guard.enter(name):
                        yield
                else:
                    yield
        except VaultError as ex:
            logger.warning(
                f"{name} rejected: {ex}",
                error_code=ex.error_code,
                operation=name,
                caller=str(caller),
            )
            raise
        finally:
            if token is not None:
                correlation_id_var.reset(token)

    def _commit(self, actor: str, action: str, *events: Event, **details) -> None:
        correlation_id = get_correlation_id()
        for event in events:
            event.correlation_id = correlation_id
            self._events.append(event)
        self._audit.log(actor, action, self.address, **details)
        for event in events:
            self._bus.publish(event)

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    def deposit_native(self, caller: str, amount: int) -> DepositReceipt:
        """
        Accept ``amount`` of the native asset from ``caller``.

        The whole amount enters custody with the call and the fee is
        forwarded to the treasury at once. If any movement fails, every
        native balance is restored and TransferFailure is raised.
        """
        with self._operation("deposit_native", caller):
            caller = require_account(caller, "caller")
            split = self._fees.split(amount)
            self._pause.require_active("deposit_native")

            try:
                with self._native.checkpoint():
                    self._native.transfer(caller, self.address, split.amount)
                    if split.fee:
                        self._native.transfer(self.address, self._fees.treasury, split.fee)
            except Exception as ex:
                raise TransferFailure(
                    f"native deposit of {split.amount} from {caller} failed: {ex}",
                    account=caller,
                    amount=split.amount,
                ) from ex

            receipt = DepositReceipt(caller, NATIVE, split.net, split.fee)
            self._commit(
                caller, "deposit_native",
                Deposited(account=caller, asset=NATIVE, net=split.net, fee=split.fee),
                net=split.net, fee=split.fee,
            )
            logger.info("native deposit", account=caller, net=split.net, fee=split.fee)
            return receipt

    def deposit_asset(self, caller: str, amount: int) -> DepositReceipt:
        """
        Pull ``amount`` of the fungible asset from ``caller`` (prior approval
        to the vault required): ``net`` into custody, ``fee`` straight to the
        treasury.
        """
        with self._operation("deposit_asset", caller):
            caller = require_account(caller, "caller")
            split = self._fees.split(amount)
            self._pause.require_active("deposit_asset")

            if isinstance(self._asset, CheckpointingLedger):
                with self._asset.checkpoint():
                    self._pull_net(caller, split)
                    self._pull_fee(caller, split)
            else:
                self._pull_net(caller, split)
                try:
                    self._pull_fee(caller, split)
                except TransferFailure:
                    if split.net:
                        self._refund_asset(caller, split.net)
                    raise

            receipt = DepositReceipt(caller, ASSET, split.net, split.fee)
            self._commit(
                caller, "deposit_asset",
                Deposited(account=caller, asset=ASSET, net=split.net, fee=split.fee),
                net=split.net, fee=split.fee,
            )
            logger.info("asset deposit", account=caller, net=split.net, fee=split.fee)
            return receipt

    def _pull_net(self, caller: str, split: FeeSplit) -> None:
        if split.net:
            call_transfer_from(self._asset, self.address, caller, self.address, split.net)

    def _pull_fee(self, caller: str, split: FeeSplit) -> None:
        if split.fee:
            call_transfer_from(self._asset, self.address, caller, self._fees.treasury, split.fee)

    def _refund_asset(self, caller: str, amount: int) -> None:
        """
        Return a net pull made earlier in a deposit that is now failing.

        Only used for ledgers without ``checkpoint()``. The caller's allowance
        to the vault stays spent, since such a ledger cannot restore it.
        """
        try:
            call_transfer(self._asset, self.address, caller, amount)
        except TransferFailure as ex:
            logger.critical(
                "deposit compensation failed; funds remain in custody",
                error_code="COMPENSATION_FAILED",
                account=caller,
                amount=amount,
            )
            raise TransferFailure(
                f"deposit failed and refund of {amount} to {caller} also failed",
                account=caller,
                stranded=amount,
            ) from ex
        logger.warning("deposit compensated", account=caller, amount=amount)

    # ------------------------------------------------------------------
    # Withdrawal
    # ------------------------------------------------------------------

    def withdraw(self, caller: str, amount: int, deadline: int, signature: SignatureLike) -> WithdrawalReceipt:
        """
        Release ``amount`` of the fungible asset to ``caller``.

        ``signature`` must be an authorization over (caller, amount, deadline,
        current nonce) in this vault's signing context, made by an account
        holding AUTHORIZE_WITHDRAWAL. Check order: amount, deadline, pause,
        nonce reservation, signer recovery, signer capability, transfer.
        Nothing (the nonce included) changes unless every step succeeds.
        """
        with self._operation("withdraw", caller):
            caller = require_account(caller, "caller")
            amount = require_amount(amount)
            Validators.validate_uint(deadline, "deadline").raise_if_invalid()
            now = self._now()
            if now > deadline:
                raise DeadlineExpired(
                    f"authorization expired at {deadline} (now {now})",
                    deadline=deadline,
                    now=now,
                )
            self._pause.require_active("withdraw")

            with self._nonces.consume_next() as nonce:
                authorization = WithdrawalAuthorization(caller, amount, deadline, nonce)
                signer = recover_signer(withdrawal_digest(self._context, authorization), signature)
                if not self._registry.has_capability(signer, Capability.AUTHORIZE_WITHDRAWAL):
                    raise InvalidSignature(
                        f"signer {signer} is not a withdrawal authorizer",
                        signer=signer,
                    )
                call_transfer(self._asset, self.address, caller, amount)

            receipt = WithdrawalReceipt(caller, amount, nonce, signer)
            self._commit(
                caller, "withdraw",
                Withdrawn(account=caller, amount=amount, nonce=nonce),
                amount=amount, nonce=nonce, signer=signer,
            )
            withdrawal_logger.info("withdrawal", account=caller, amount=amount, nonce=nonce, signer=signer)
            return receipt

    # ------------------------------------------------------------------
    # Treasury
    # ------------------------------------------------------------------

    def treasury_withdraw(self, caller: str, amount: int) -> int:
        """Sweep ``amount`` of native custody to the treasury. Requires MANAGE_TREASURY."""
        with self._operation("treasury_withdraw", caller):
            self._registry.require(caller, Capability.MANAGE_TREASURY, "treasury_withdraw")
            amount = require_amount(amount)
            treasury = self._fees.treasury
            if treasury is None:
                raise TransferFailure("no treasury account configured")

            try:
                with self._native.checkpoint():
                    self._native.transfer(self.address, treasury, amount)
            except Exception as ex:
                raise TransferFailure(f"treasury sweep of {amount} failed: {ex}", amount=amount) from ex

            caller = caller.lower()
            self._commit(
                caller, "treasury_withdraw",
                TreasuryWithdrawn(account=caller, treasury=treasury, amount=amount),
                amount=amount, treasury=treasury,
            )
            treasury_logger.info("treasury sweep", account=caller, treasury=treasury, amount=amount)
            return amount

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self, caller: str) -> bool:
        with self._operation("pause", caller, guarded=False):
            changed = self._pause.pause(caller)
            if changed:
                self._commit(caller.lower(), "pause", Paused(account=caller.lower()))
            return changed

    def unpause(self, caller: str) -> bool:
        with self._operation("unpause", caller, guarded=False):
            changed = self._pause.unpause(caller)
            if changed:
                self._commit(caller.lower(), "unpause", Unpaused(account=caller.lower()))
            return changed

    def grant(self, caller: str, account: str, capability: Capability) -> bool:
        with self._operation("grant", caller, guarded=False):
            capability = Capability.parse(capability)
            changed = self._registry.grant(caller, account, capability)
            if changed:
                account = account.lower()
                self._commit(
                    caller.lower(), "grant",
                    CapabilityGranted(account=account, capability=capability.value, sender=caller.lower()),
                    account=account, capability=capability.value,
                )
            return changed

    def revoke(self, caller: str, account: str, capability: Capability) -> bool:
        with self._operation("revoke", caller, guarded=False):
            capability = Capability.parse(capability)
            changed = self._registry.revoke(caller, account, capability)
            if changed:
                account = account.lower()
                self._commit(
                    caller.lower(), "revoke",
                    CapabilityRevoked(account=account, capability=capability.value, sender=caller.lower()),
                    account=account, capability=capability.value,
                )
            return changed

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def current_nonce(self) -> int:
        return self._nonces.peek()

    def signing_context(self) -> SigningContext:
        return self._context

    def is_paused(self) -> bool:
        return self._pause.paused

    def has_capability(self, account: str, capability: Capability) -> bool:
        return self._registry.has_capability(account, capability)

    @property
    def capabilities(self) -> CapabilityRegistry:
        return self._registry

    @property
    def fee_rate_bps(self) -> int:
        return self._fees.fee_rate_bps

    @property
    def treasury(self) -> Optional[str]:
        return self._fees.treasury

    def preview_fee(self, amount: int) -> FeeSplit:
        return self._fees.split(amount)

    def native_custody_balance(self) -> int:
        return self._native.balance_of(self.address)

    def asset_custody_balance(self) -> int:
        return self._asset.balance_of(self.address)

    def withdrawal_digest(self, requester: str, amount: int, deadline: int, nonce: Optional[int] = None) -> bytes:
        """Digest an authorizer must sign; ``nonce`` defaults to the current one."""
        authorization = WithdrawalAuthorization(
            requester, amount, deadline, self.current_nonce() if nonce is None else nonce
        )
        return withdrawal_digest(self._context, authorization)

    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def audit(self) -> AuditTrail:
        return self._audit
