"""
Treasury sweep, administration and read-only view tests.

Run with: pytest tests/test_vault_admin.py -v
"""

import pytest

from custody.access import Capability
from custody.config import ConfigError, VaultSettings
from custody.events import CapabilityGranted, CapabilityRevoked, Paused, TreasuryWithdrawn, Unpaused
from custody.hardening import InvalidAccount, InvalidAmount, TransferFailure, Unauthorized
from custody.ledger import InMemoryAssetLedger, NativeLedger
from custody.signing import WithdrawalAuthorization, withdrawal_digest
from custody.vault import CustodyVault

UNIT = 10 ** 18


class TestConstruction:
    """Deployment parameters."""

    def test_admin_holds_all_capabilities_by_default(self, vault, accounts):
        for capability in Capability:
            assert vault.has_capability(accounts.admin, capability)

    def test_admin_capabilities_can_be_narrowed(self, accounts):
        vault = CustodyVault(accounts.vault, accounts.admin, InMemoryAssetLedger(), NativeLedger(),
                             admin_capabilities=[])
        assert vault.has_capability(accounts.admin, Capability.ADMINISTER)
        assert not vault.has_capability(accounts.admin, Capability.MANAGE_TREASURY)

    def test_authorizers_registered(self, vault, signer):
        assert vault.has_capability(signer.account, Capability.AUTHORIZE_WITHDRAWAL)
        assert signer.account in vault.capabilities.holders(Capability.AUTHORIZE_WITHDRAWAL)

    def test_fee_without_treasury_rejected(self):
        with pytest.raises(ConfigError):
            VaultSettings(fee_rate_bps=250)

    def test_malformed_address_rejected(self, accounts):
        with pytest.raises(InvalidAccount):
            CustodyVault("vault", accounts.admin, InMemoryAssetLedger(), NativeLedger())

    def test_initial_state(self, vault, accounts):
        assert vault.current_nonce() == 0
        assert not vault.is_paused()
        assert vault.fee_rate_bps == 250
        assert vault.treasury == accounts.treasury
        assert vault.events() == []

    def test_signing_context_exposed(self, vault, accounts):
        ctx = vault.signing_context()
        assert ctx.to_dict() == {
            "name": "CustodyVault",
            "version": "1",
            "chainId": 1,
            "verifyingContract": accounts.vault,
        }

    def test_withdrawal_digest_view(self, vault, accounts, signer):
        digest = vault.withdrawal_digest(accounts.alice, 5, 100)
        expected = withdrawal_digest(vault.signing_context(), WithdrawalAuthorization(accounts.alice, 5, 100, 0))
        assert digest == expected
        assert vault.withdrawal_digest(accounts.alice, 5, 100, nonce=3) != digest

    def test_preview_fee(self, vault):
        assert vault.preview_fee(100 * UNIT).fee == 25 * UNIT // 10


class TestTreasurySweep:
    """Native custody swept to the treasury by a MANAGE_TREASURY holder."""

    def test_sweep(self, vault, native, accounts):
        vault.deposit_native(accounts.alice, 100 * UNIT)
        assert vault.treasury_withdraw(accounts.admin, 50 * UNIT) == 50 * UNIT
        assert native.balance_of(accounts.vault) == 475 * UNIT // 10
        assert native.balance_of(accounts.treasury) == 525 * UNIT // 10
        events = [e for e in vault.events() if isinstance(e, TreasuryWithdrawn)]
        assert [(e.account, e.treasury, e.amount) for e in events] == [
            (accounts.admin, accounts.treasury, 50 * UNIT)
        ]

    def test_requires_manage_treasury(self, vault, native, accounts):
        vault.deposit_native(accounts.alice, 100 * UNIT)
        with pytest.raises(Unauthorized):
            vault.treasury_withdraw(accounts.alice, 1)
        assert native.balance_of(accounts.vault) == 975 * UNIT // 10

    def test_delegated_treasurer(self, vault, native, accounts):
        vault.deposit_native(accounts.alice, 100)
        vault.grant(accounts.admin, accounts.bob, Capability.MANAGE_TREASURY)
        vault.treasury_withdraw(accounts.bob, 10)
        assert native.balance_of(accounts.treasury) == 12

    def test_capability_checked_before_amount(self, vault, accounts):
        with pytest.raises(Unauthorized):
            vault.treasury_withdraw(accounts.bob, 0)

    def test_zero_amount(self, vault, accounts):
        with pytest.raises(InvalidAmount):
            vault.treasury_withdraw(accounts.admin, 0)

    def test_exceeding_custody(self, vault, native, accounts):
        vault.deposit_native(accounts.alice, 100)
        with pytest.raises(TransferFailure):
            vault.treasury_withdraw(accounts.admin, 99)
        assert native.balance_of(accounts.vault) == 98

    def test_no_treasury_configured(self, fee_free_vault, native, accounts):
        fee_free_vault.deposit_native(accounts.alice, 100)
        with pytest.raises(TransferFailure):
            fee_free_vault.treasury_withdraw(accounts.admin, 10)
        assert native.balance_of(accounts.vault) == 100

    def test_sweep_allowed_while_paused(self, vault, native, accounts):
        vault.deposit_native(accounts.alice, 100)
        vault.pause(accounts.admin)
        vault.treasury_withdraw(accounts.admin, 98)
        assert native.balance_of(accounts.vault) == 0


class TestAdministration:
    """Pause and capability changes emit events only when state changes."""

    def test_pause_unpause_events(self, vault, accounts):
        assert vault.pause(accounts.admin) is True
        assert vault.pause(accounts.admin) is False
        assert vault.is_paused()
        assert vault.unpause(accounts.admin) is True
        kinds = [type(e) for e in vault.events()]
        assert kinds == [Paused, Unpaused]

    def test_pause_requires_administer(self, vault, accounts):
        with pytest.raises(Unauthorized):
            vault.pause(accounts.alice)
        assert not vault.is_paused()
        assert vault.events() == []

    def test_grant_revoke_events(self, vault, accounts):
        assert vault.grant(accounts.admin, accounts.bob, "authorize_withdrawal") is True
        assert vault.grant(accounts.admin, accounts.bob, Capability.AUTHORIZE_WITHDRAWAL) is False
        assert vault.revoke(accounts.admin, accounts.bob, Capability.AUTHORIZE_WITHDRAWAL) is True
        granted, revoked = vault.events()
        assert isinstance(granted, CapabilityGranted)
        assert (granted.account, granted.capability, granted.sender) == (
            accounts.bob, "authorize_withdrawal", accounts.admin,
        )
        assert isinstance(revoked, CapabilityRevoked)

    def test_non_admin_cannot_grant(self, vault, accounts):
        with pytest.raises(Unauthorized):
            vault.grant(accounts.alice, accounts.alice, Capability.AUTHORIZE_WITHDRAWAL)
        assert not vault.has_capability(accounts.alice, Capability.AUTHORIZE_WITHDRAWAL)

    def test_audit_trail_chain(self, vault, accounts):
        vault.pause(accounts.admin)
        vault.unpause(accounts.admin)
        vault.deposit_asset(accounts.alice, 100)
        assert [e.action for e in vault.audit.get_entries()] == ["pause", "unpause", "deposit_asset"]
        assert vault.audit.verify_chain() == (True, None)
