import pathlib
import sys
from types import SimpleNamespace

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import custody`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from custody.config import VaultSettings, get_config_manager  # noqa: E402
from custody.ledger import InMemoryAssetLedger, NativeLedger  # noqa: E402
from custody.observability import correlation_id_var  # noqa: E402
from custody.signing import WithdrawalAuthorization, WithdrawalSigner  # noqa: E402
from custody.vault import CustodyVault  # noqa: E402


UNIT = 10 ** 18
NOW = 1_700_000_000

_CONFIG_ENV_VARS = (
    "CUSTODY_VAULT_NAME",
    "CUSTODY_VAULT_VERSION",
    "CUSTODY_CHAIN_ID",
    "CUSTODY_FEE_RATE_BPS",
    "CUSTODY_TREASURY",
    "CUSTODY_LOG_LEVEL",
    "CUSTODY_LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """The configuration manager is a process-wide singleton; give every test a clean one."""
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_config_manager().reset()
    yield
    get_config_manager().reset()


@pytest.fixture(autouse=True)
def _fresh_correlation_id():
    token = correlation_id_var.set("")
    yield
    correlation_id_var.reset(token)


@pytest.fixture
def accounts():
    return SimpleNamespace(
        vault="0x" + "0a" * 20,
        admin="0x" + "ad" * 20,
        treasury="0x" + "7e" * 20,
        alice="0x" + "a1" * 20,
        bob="0x" + "b0" * 20,
    )


@pytest.fixture
def signer():
    return WithdrawalSigner.from_seed(bytes(range(32)))


@pytest.fixture
def other_signer():
    return WithdrawalSigner.from_seed(b"\x42" * 32)


@pytest.fixture
def token(accounts):
    ledger = InMemoryAssetLedger("TKN")
    ledger.mint(accounts.alice, 1_000 * UNIT)
    ledger.approve(accounts.alice, accounts.vault, 1_000 * UNIT)
    return ledger


@pytest.fixture
def native(accounts):
    ledger = NativeLedger()
    ledger.credit(accounts.alice, 1_000 * UNIT)
    return ledger


@pytest.fixture
def clock():
    """Mutable clock: set ``clock.now`` to move time."""
    return SimpleNamespace(now=NOW)


@pytest.fixture
def vault(accounts, token, native, signer, clock):
    """Vault with a 250 bps fee, a treasury and one withdrawal authorizer."""
    return CustodyVault(
        address=accounts.vault,
        admin=accounts.admin,
        asset_ledger=token,
        native_ledger=native,
        settings=VaultSettings(fee_rate_bps=250, treasury=accounts.treasury),
        authorizers=[signer.account],
        clock=lambda: clock.now,
    )


@pytest.fixture
def fee_free_vault(accounts, token, native, signer, clock):
    return CustodyVault(
        address=accounts.vault,
        admin=accounts.admin,
        asset_ledger=token,
        native_ledger=native,
        authorizers=[signer.account],
        clock=lambda: clock.now,
    )


@pytest.fixture
def authorize(signer):
    """Sign a withdrawal for ``vault`` bound to its current nonce unless one is given."""
    def _authorize(vault, requester, amount, deadline=NOW + 3600, nonce=None, by=None):
        authorization = WithdrawalAuthorization(
            requester,
            amount,
            deadline,
            vault.current_nonce() if nonce is None else nonce,
        )
        return (by or signer).sign(vault.signing_context(), authorization)
    return _authorize
