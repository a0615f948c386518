"""
Nonce Sequencer

A single replay-protection counter per vault instance. Withdrawals reserve
the current value, verify a signature bound to it, and only then advance it.
A reservation that ends in an exception is discarded, so a rejected
withdrawal never burns a nonce.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from custody.hardening import AtomicCounter, InvariantChecker, InvariantViolation
from custody.observability import VaultLayer, get_logger

logger = get_logger("nonce", VaultLayer.NONCE)


class NonceSequencer:
    """Strictly increasing counter, starting at zero, advanced only on commit."""

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError("nonce counter cannot start below zero")
        self._counter = AtomicCounter(start)

    def peek(self) -> int:
        """Current (next unused) nonce value."""
        return self._counter.get()

    @contextmanager
    def consume_next(self) -> Iterator[int]:
        """
        Reserve the current nonce for the body of the ``with`` block.

        On clean exit the counter advances by exactly one. If the body raises,
        the counter is left untouched and the exception propagates.
        """
        reserved = self._counter.get()
        yield reserved
        if not self._counter.compare_and_set(reserved, reserved + 1):
            # Callers serialize withdrawals; a moved counter means they did not.
            raise InvariantViolation(
                f"nonce {reserved} was consumed concurrently (counter now {self._counter.get()})"
            )
        InvariantChecker.check_monotonic_increase("nonce", reserved, self._counter.get())
        logger.debug("nonce consumed", nonce=reserved)
