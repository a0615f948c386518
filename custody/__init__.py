"""
Custody: pooled funds intake and authorized release

A custody vault accepting deposits of a native and a fungible asset into a
shared pool, skimming a configurable fee to a treasury, and releasing funds
only against a domain-bound signed authorization from an off-chain
authorizer.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                             CUSTODY VAULT                                │
    │                                                                          │
    │  OPERATIONS                                                              │
    │    vault.py        Deposits, signature-authorized withdrawal, sweep      │
    │                                                                          │
    │  AUTHORIZATION                                                           │
    │    signing.py      Structured-message digest, Ed25519 signer recovery    │
    │    nonce.py        Replay counter, advanced only on commit               │
    │    access.py       Capability table and pause switch                     │
    │    fees.py         Basis-point fee split                                 │
    │                                                                          │
    │  COLLABORATORS                                                           │
    │    ledger.py       Fungible ledger protocol, native ledger               │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    hardening.py    Error taxonomy, validators, reentrancy guard          │
    │    config.py       YAML + environment configuration                      │
    │    observability.py  Structured logging, hash-chained audit trail        │
    │    events.py       Domain events, event bus                              │
    │    cli.py          Operator and authorizer command line                  │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Fail Closed: an authorization is honoured only when its signer holds
    AUTHORIZE_WITHDRAWAL, its deadline has not passed and it is bound to the
    current nonce and this vault's signing context.

    Atomic Operations: an operation commits every effect or none. A rejected
    withdrawal does not consume its nonce.

    Pooled Custody: no per-depositor entitlements are tracked. The authorizer
    decides release amounts.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from custody.access import Capability, CapabilityRegistry, PauseState, PauseSwitch
from custody.config import ConfigError, VaultSettings
from custody.fees import FeeSchedule, FeeSplit
from custody.hardening import (
    DeadlineExpired,
    InvalidAmount,
    InvalidSignature,
    PausedState,
    ReentrantCall,
    TransferFailure,
    Unauthorized,
    VaultError,
)
from custody.ledger import AssetLedger, InMemoryAssetLedger, NativeLedger
from custody.nonce import NonceSequencer
from custody.signing import (
    SigningContext,
    WithdrawalAuthorization,
    WithdrawalSigner,
    recover_signer,
    withdrawal_digest,
)
from custody.vault import CustodyVault, DepositReceipt, WithdrawalReceipt

__version__ = "0.1.0"

__all__ = [
    "AssetLedger",
    "Capability",
    "CapabilityRegistry",
    "ConfigError",
    "CustodyVault",
    "DeadlineExpired",
    "DepositReceipt",
    "FeeSchedule",
    "FeeSplit",
    "InMemoryAssetLedger",
    "InvalidAmount",
    "InvalidSignature",
    "NativeLedger",
    "NonceSequencer",
    "PauseState",
    "PauseSwitch",
    "PausedState",
    "ReentrantCall",
    "SigningContext",
    "TransferFailure",
    "Unauthorized",
    "VaultError",
    "VaultSettings",
    "WithdrawalAuthorization",
    "WithdrawalReceipt",
    "WithdrawalSigner",
    "recover_signer",
    "withdrawal_digest",
]
