"""
Nonce sequencer tests.

Run with: pytest tests/test_nonce.py -v
"""

import pytest

from custody.hardening import InvariantViolation
from custody.nonce import NonceSequencer


class TestNonceSequencer:
    """Reserve, then advance only on clean exit."""

    def test_starts_at_zero(self):
        assert NonceSequencer().peek() == 0

    def test_consume_advances_by_one(self):
        seq = NonceSequencer()
        with seq.consume_next() as nonce:
            assert nonce == 0
            assert seq.peek() == 0
        assert seq.peek() == 1

    def test_sequential_values(self):
        seq = NonceSequencer()
        seen = []
        for _ in range(5):
            with seq.consume_next() as nonce:
                seen.append(nonce)
        assert seen == [0, 1, 2, 3, 4]
        assert seq.peek() == 5

    def test_failed_body_does_not_burn_nonce(self):
        seq = NonceSequencer()
        with pytest.raises(RuntimeError):
            with seq.consume_next():
                raise RuntimeError("signature check failed")
        assert seq.peek() == 0
        with seq.consume_next() as nonce:
            assert nonce == 0

    def test_nested_consume_detected(self):
        """A second reservation committing first invalidates the outer one."""
        seq = NonceSequencer()
        with pytest.raises(InvariantViolation):
            with seq.consume_next():
                with seq.consume_next():
                    pass
        assert seq.peek() == 1

    def test_negative_start_rejected(self):
        with pytest.raises(ValueError):
            NonceSequencer(-1)
