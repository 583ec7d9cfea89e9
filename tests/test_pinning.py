from __future__ import annotations

import logging

import pytest

from chatstream.errors import PinningConfigError
from chatstream.pinning import (
    TrustDecision,
    TrustValidator,
    load_resource_pins,
)

CERT_A = b"\x30\x82certificate-A"
CERT_B = b"\x30\x82certificate-B"
CERT_C = b"\x30\x82certificate-C"
CERT_D = b"\x30\x82certificate-D"


class TestEvaluate:
    def test_disjoint_chain_is_rejected(self):
        validator = TrustValidator([CERT_A, CERT_B])
        decision = validator.evaluate([CERT_C, CERT_D])
        assert decision == TrustDecision.reject()
        assert not decision

    def test_overlapping_chain_is_trusted(self):
        validator = TrustValidator([CERT_A, CERT_B])
        decision = validator.evaluate([CERT_B, CERT_D])
        assert decision.trusted
        assert decision.identity == frozenset({CERT_B})

    def test_any_position_in_chain_matches(self):
        validator = TrustValidator([CERT_A])
        assert validator([CERT_C, CERT_D, CERT_A])
        assert validator([CERT_A, CERT_C])

    def test_chain_order_is_irrelevant(self):
        validator = TrustValidator([CERT_A, CERT_B])
        assert validator([CERT_D, CERT_B]) == validator([CERT_B, CERT_D])

    def test_empty_chain_is_rejected(self):
        validator = TrustValidator([CERT_A])
        assert not validator([])

    def test_accepts_bytearray_and_memoryview(self):
        validator = TrustValidator([bytearray(CERT_A)])
        assert validator([memoryview(CERT_A)])


class TestConstruction:
    def test_empty_pin_set_is_a_config_error(self):
        with pytest.raises(PinningConfigError):
            TrustValidator([])

    def test_pinned_set_is_frozen(self):
        validator = TrustValidator([CERT_A, CERT_A, CERT_B])
        assert validator.pinned == frozenset({CERT_A, CERT_B})
        assert isinstance(validator.pinned, frozenset)

    def test_default_resource_is_bundled(self):
        validator = TrustValidator.from_resources()
        assert len(validator.pinned) == 1
        (pin,) = validator.pinned
        # DER certificates open with a SEQUENCE tag
        assert pin[:1] == b"\x30"

    def test_missing_resource_is_skipped_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="chatstream.pinning"):
            pins = load_resource_pins(["g1sr", "no-such-pin"])
        assert len(pins) == 1
        assert "no-such-pin" in caplog.text

    def test_all_resources_missing_is_a_config_error(self):
        with pytest.raises(PinningConfigError):
            TrustValidator.from_resources(["no-such-pin"])

    def test_from_paths(self, tmp_path):
        pin = tmp_path / "pin.der"
        pin.write_bytes(CERT_A)
        validator = TrustValidator.from_paths([pin, tmp_path / "missing.der"])
        assert validator.pinned == frozenset({CERT_A})

    def test_from_paths_all_missing(self, tmp_path):
        with pytest.raises(PinningConfigError):
            TrustValidator.from_paths([tmp_path / "missing.der"])
