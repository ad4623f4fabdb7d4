"""
Tests for Money Arithmetic and Error Rendering
"""

from decimal import Decimal

import pytest

from core.errors import InsufficientCreditError, OperationTimeoutError, ExternalOperationFailure
from core.money import to_usd, usd_to_micros, micros_to_usd, format_usd


class TestMoney:
    """Test USD quantization and micro-dollar conversion."""

    def test_float_goes_through_str(self):
        """0.1 as a float should not pick up binary noise."""
        assert to_usd(0.1) == Decimal("0.100000")

    def test_rounds_half_up_to_micro_dollars(self):
        """Amounts are quantized to six places, half up."""
        assert to_usd("0.0000005") == Decimal("0.000001")
        assert to_usd("0.0000004") == Decimal("0.000000")

    def test_micros_conversion(self):
        """USD and micro-USD convert exactly."""
        assert usd_to_micros("1.234567") == 1234567
        assert micros_to_usd(1234567) == Decimal("1.234567")
        assert usd_to_micros(micros_to_usd(-42)) == -42

    def test_format(self):
        """Formatted amounts always carry six decimals."""
        assert format_usd(10) == "10.000000"

    def test_non_finite_rejected(self):
        """NaN and infinity are not money."""
        with pytest.raises(ValueError):
            to_usd("NaN")
        with pytest.raises(ValueError):
            to_usd(float("inf"))


class TestErrors:
    """Test the error taxonomy's wire format."""

    def test_insufficient_credit_details(self):
        """402 body carries balance, cost and shortfall."""
        error = InsufficientCreditError(Decimal("0.50"), Decimal("2.00"))
        body = error.to_dict()

        assert error.status_code == 402
        assert body["error"] == "insufficient_credit"
        assert body["balance"] == "0.500000"
        assert body["estimated_cost"] == "2.000000"
        assert body["shortfall"] == "1.500000"

    def test_timeout_is_an_operation_failure(self):
        """Timeouts map to the same 500 as other executor failures."""
        error = OperationTimeoutError(120)

        assert isinstance(error, ExternalOperationFailure)
        assert error.status_code == 500
        assert error.to_dict()["error"] == "operation_failed"
        assert "120s" in error.message
