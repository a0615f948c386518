"""
Capability registry and pause switch tests.

Run with: pytest tests/test_access.py -v
"""

import pytest

from custody.access import Capability, CapabilityRegistry, PauseState, PauseSwitch
from custody.hardening import InvalidAccount, PausedState, Unauthorized

ADMIN = "0x" + "ad" * 20
BOB = "0x" + "b0" * 20
CAROL = "0x" + "c0" * 20


@pytest.fixture
def registry():
    return CapabilityRegistry({ADMIN: [Capability.ADMINISTER]})


class TestCapability:
    """Capability parsing."""

    @pytest.mark.parametrize("value", [
        Capability.MANAGE_TREASURY, "manage_treasury", "MANAGE_TREASURY", " Manage_Treasury ",
    ])
    def test_parse(self, value):
        assert Capability.parse(value) is Capability.MANAGE_TREASURY

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            Capability.parse("superuser")


class TestCapabilityRegistry:
    """Account x capability relation guarded by ADMINISTER."""

    def test_initial_assignment(self, registry):
        assert registry.has_capability(ADMIN, Capability.ADMINISTER)
        assert not registry.has_capability(ADMIN, Capability.AUTHORIZE_WITHDRAWAL)

    def test_lookup_is_case_insensitive(self, registry):
        assert registry.has_capability(ADMIN.upper().replace("0X", "0x"), Capability.ADMINISTER)

    def test_grant_and_revoke(self, registry):
        assert registry.grant(ADMIN, BOB, Capability.AUTHORIZE_WITHDRAWAL) is True
        assert registry.has_capability(BOB, Capability.AUTHORIZE_WITHDRAWAL)
        assert registry.revoke(ADMIN, BOB, Capability.AUTHORIZE_WITHDRAWAL) is True
        assert not registry.has_capability(BOB, Capability.AUTHORIZE_WITHDRAWAL)

    def test_repeat_grant_is_noop(self, registry):
        registry.grant(ADMIN, BOB, Capability.MANAGE_TREASURY)
        assert registry.grant(ADMIN, BOB, Capability.MANAGE_TREASURY) is False
        assert registry.capabilities_of(BOB) == frozenset({Capability.MANAGE_TREASURY})

    def test_revoke_unheld_is_noop(self, registry):
        assert registry.revoke(ADMIN, BOB, Capability.MANAGE_TREASURY) is False

    def test_non_admin_cannot_grant(self, registry):
        with pytest.raises(Unauthorized) as exc:
            registry.grant(BOB, BOB, Capability.ADMINISTER)
        assert exc.value.error_code == "UNAUTHORIZED"
        assert not registry.has_capability(BOB, Capability.ADMINISTER)

    def test_non_admin_cannot_revoke(self, registry):
        registry.grant(ADMIN, CAROL, Capability.MANAGE_TREASURY)
        with pytest.raises(Unauthorized):
            registry.revoke(BOB, CAROL, Capability.MANAGE_TREASURY)
        assert registry.has_capability(CAROL, Capability.MANAGE_TREASURY)

    def test_admin_can_revoke_own_administer(self, registry):
        assert registry.revoke(ADMIN, ADMIN, Capability.ADMINISTER) is True
        with pytest.raises(Unauthorized):
            registry.grant(ADMIN, BOB, Capability.ADMINISTER)

    def test_administer_does_not_imply_other_capabilities(self, registry):
        with pytest.raises(Unauthorized):
            registry.require(ADMIN, Capability.MANAGE_TREASURY, "treasury_withdraw")

    def test_grant_rejects_malformed_account(self, registry):
        with pytest.raises(InvalidAccount):
            registry.grant(ADMIN, "alice", Capability.ADMINISTER)

    def test_holders(self, registry):
        registry.grant(ADMIN, CAROL, Capability.AUTHORIZE_WITHDRAWAL)
        registry.grant(ADMIN, BOB, Capability.AUTHORIZE_WITHDRAWAL)
        assert registry.holders(Capability.AUTHORIZE_WITHDRAWAL) == [BOB, CAROL]


class TestPauseSwitch:
    """Global activity gate."""

    def test_starts_active(self, registry):
        switch = PauseSwitch(registry)
        assert switch.state is PauseState.ACTIVE
        switch.require_active("deposit")

    def test_pause_and_unpause(self, registry):
        switch = PauseSwitch(registry)
        assert switch.pause(ADMIN) is True
        assert switch.paused
        with pytest.raises(PausedState) as exc:
            switch.require_active("deposit_asset")
        assert exc.value.error_code == "PAUSED"
        assert switch.unpause(ADMIN) is True
        switch.require_active("deposit_asset")

    def test_idempotent_transitions(self, registry):
        switch = PauseSwitch(registry)
        assert switch.unpause(ADMIN) is False
        switch.pause(ADMIN)
        assert switch.pause(ADMIN) is False
        assert switch.paused

    def test_requires_administer(self, registry):
        switch = PauseSwitch(registry)
        with pytest.raises(Unauthorized):
            switch.pause(BOB)
        assert not switch.paused
