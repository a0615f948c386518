"""
Reentrancy and serialization tests.

Ledger receive hooks stand in for code that runs during an outbound
transfer and tries to call back into the vault.

Run with: pytest tests/test_reentrancy.py -v
"""

import threading

import pytest

from custody.hardening import ReentrancyGuard, ReentrantCall, TransferFailure

UNIT = 10 ** 18
NOW = 1_700_000_000


class TestReentrancyGuard:
    """Busy flag semantics."""

    def test_enter_and_release(self):
        guard = ReentrancyGuard("test")
        assert not guard.busy
        with guard.enter("op"):
            assert guard.busy
        assert not guard.busy

    def test_nested_entry_rejected(self):
        guard = ReentrancyGuard("test")
        with guard.enter("outer"):
            with pytest.raises(ReentrantCall) as exc:
                with guard.enter("inner"):
                    pass
            assert exc.value.details["active"] == "outer"
            assert guard.busy
        assert not guard.busy

    def test_released_on_exception(self):
        guard = ReentrancyGuard("test")
        with pytest.raises(RuntimeError):
            with guard.enter("op"):
                raise RuntimeError("boom")
        assert not guard.busy
        with guard.enter("op"):
            pass


class TestVaultReentrancy:
    """Nested calls arriving through transfer side effects are rejected."""

    def test_withdraw_reentered_from_recipient_hook(self, vault, token, accounts, authorize):
        vault.deposit_asset(accounts.alice, 100 * UNIT)
        custody = token.balance_of(accounts.vault)
        first = authorize(vault, accounts.alice, UNIT)
        seen = []

        def reenter(sender, to, amount):
            try:
                vault.withdraw(accounts.alice, UNIT, NOW + 3600, first)
            except ReentrantCall as ex:
                seen.append(ex)
                raise

        token.set_receive_hook(accounts.alice, reenter)
        with pytest.raises(TransferFailure):
            vault.withdraw(accounts.alice, UNIT, NOW + 3600, first)

        assert len(seen) == 1
        assert vault.current_nonce() == 0
        assert token.balance_of(accounts.vault) == custody

        token.set_receive_hook(accounts.alice, None)
        assert vault.withdraw(accounts.alice, UNIT, NOW + 3600, first).nonce == 0

    def test_deposit_reentered_during_withdrawal(self, vault, token, accounts, authorize):
        vault.deposit_asset(accounts.alice, 100 * UNIT)
        signature = authorize(vault, accounts.alice, UNIT)

        def reenter(sender, to, amount):
            vault.deposit_asset(accounts.alice, UNIT)

        token.set_receive_hook(accounts.alice, reenter)
        with pytest.raises(TransferFailure) as exc:
            vault.withdraw(accounts.alice, UNIT, NOW + 3600, signature)
        assert isinstance(exc.value.__cause__, ReentrantCall)
        assert vault.current_nonce() == 0

    def test_native_deposit_reentered_from_treasury_hook(self, vault, native, accounts):
        def reenter(sender, to, amount):
            vault.deposit_native(accounts.alice, UNIT)

        native.set_receive_hook(accounts.treasury, reenter)
        with pytest.raises(TransferFailure) as exc:
            vault.deposit_native(accounts.alice, 100 * UNIT)
        assert isinstance(exc.value.__cause__, ReentrantCall)
        assert native.balance_of(accounts.alice) == 1_000 * UNIT
        assert native.balance_of(accounts.vault) == 0
        assert vault.events() == []

    def test_sweep_reentered_from_treasury_hook(self, vault, native, accounts):
        vault.grant(accounts.admin, accounts.admin, "manage_treasury")
        vault.deposit_native(accounts.alice, 100 * UNIT)
        custody = native.balance_of(accounts.vault)

        def reenter(sender, to, amount):
            vault.treasury_withdraw(accounts.admin, 1)

        native.set_receive_hook(accounts.treasury, reenter)
        with pytest.raises(TransferFailure):
            vault.treasury_withdraw(accounts.admin, UNIT)
        assert native.balance_of(accounts.vault) == custody

    def test_views_allowed_during_operation(self, vault, token, accounts, authorize):
        vault.deposit_asset(accounts.alice, 100 * UNIT)
        signature = authorize(vault, accounts.alice, UNIT)
        observed = []

        def observe(sender, to, amount):
            observed.append((vault.current_nonce(), vault.is_paused()))

        token.set_receive_hook(accounts.alice, observe)
        vault.withdraw(accounts.alice, UNIT, NOW + 3600, signature)
        # The reserved nonce is not yet committed while the transfer runs.
        assert observed == [(0, False)]
        assert vault.current_nonce() == 1


class TestSerialization:
    """Concurrent callers are totally ordered."""

    def test_concurrent_deposits(self, vault, native, accounts):
        errors = []

        def worker():
            try:
                for _ in range(20):
                    vault.deposit_native(accounts.alice, 10_000)
            except Exception as ex:  # pragma: no cover
                errors.append(ex)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert native.balance_of(accounts.vault) == 80 * 9_750
        assert native.balance_of(accounts.treasury) == 80 * 250
        assert len(vault.audit) == 80
        assert vault.audit.verify_chain() == (True, None)
