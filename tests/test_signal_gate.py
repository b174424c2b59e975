"""Tests for signal gating and trading preferences."""

import pytest

from perptrader.base_store import StoreError
from perptrader.models import Signal, LONG
from perptrader.parser import parse_signal
from perptrader.preferences import Preferences, MAX_LEVERAGE
from perptrader.signal_gate import (
    SignalGate,
    validate_signal,
    PARSE_MISS,
    DUPLICATE,
    NOT_WHITELISTED,
    ALREADY_CLOSED,
    UNKNOWN_INSTRUMENT,
    PRICE_DEVIATION,
    WHITELIST_UNAVAILABLE,
)


INSTRUMENTS = ["BTC-USDT", "FOGO-USDT"]


def make_signal(**overrides) -> Signal:
    fields = dict(
        signal_id="sig-1",
        ticker="FOGO",
        inst_id="FOGO-USDT",
        side=LONG,
        entry_price=0.03,
        leverage=25,
        trader_name="alice",
    )
    fields.update(overrides)
    return Signal(**fields)


def make_gate(whitelist=()):
    return SignalGate(whitelist_provider=lambda: list(whitelist), instruments=INSTRUMENTS)


class TestSignalGate:
    """Checks run in order and stop at the first failure."""

    def test_parse_miss_is_silent(self):
        decision = make_gate().evaluate(None, "m-1")
        assert decision.code == PARSE_MISS
        assert decision.silent

    def test_accepts_and_marks_processed(self):
        gate = make_gate()
        decision = gate.evaluate(make_signal(), "m-1")
        assert decision.accepted
        assert gate.is_processed("m-1")

    def test_duplicate_is_silent(self):
        gate = make_gate()
        gate.evaluate(make_signal(), "m-1")

        decision = gate.evaluate(make_signal(), "m-1")

        assert decision.code == DUPLICATE
        assert decision.silent

    def test_dedup_falls_back_to_signal_id(self):
        gate = make_gate()
        assert gate.evaluate(make_signal(), None).accepted
        assert gate.evaluate(make_signal(), None).code == DUPLICATE

    def test_whitelist_rejection_names_trader(self):
        decision = make_gate(["alice"]).evaluate(make_signal(trader_name="bob"), "m-1")
        assert decision.code == NOT_WHITELISTED
        assert "bob" in decision.reason
        assert not decision.silent

    def test_whitelist_is_case_insensitive(self):
        decision = make_gate(["alice"]).evaluate(make_signal(trader_name="ALICE"), "m-1")
        assert decision.accepted

    def test_whitelist_rejects_unknown_trader(self):
        decision = make_gate(["alice"]).evaluate(make_signal(trader_name=None), "m-1")
        assert decision.code == NOT_WHITELISTED
        assert "unknown" in decision.reason

    def test_empty_whitelist_allows_everyone(self):
        assert make_gate().evaluate(make_signal(trader_name=None), "m-1").accepted

    def test_closed_signal_rejected(self):
        text = "LONG SIGNAL - FOGO/USDT\nEntry: 0.03\nTRADE CLOSED"
        decision = make_gate().evaluate(parse_signal(text, message_id="m-1"), "m-1")
        assert decision.code == ALREADY_CLOSED
        assert decision.reason == "Already closed"

    def test_unknown_instrument(self):
        decision = make_gate().evaluate(make_signal(inst_id="NOPE-USDT"), "m-1")
        assert decision.code == UNKNOWN_INSTRUMENT
        assert "NOPE-USDT" in decision.reason

    def test_whitelist_checked_before_instrument(self):
        decision = make_gate(["alice"]).evaluate(
            make_signal(trader_name="bob", inst_id="NOPE-USDT"), "m-1"
        )
        assert decision.code == NOT_WHITELISTED

    def test_price_deviation(self):
        decision = make_gate().evaluate(make_signal(entry_price=0.03), "m-1", current_price=0.05)
        assert decision.code == PRICE_DEVIATION

    def test_rejection_does_not_mark_processed(self):
        gate = make_gate()
        gate.evaluate(make_signal(inst_id="NOPE-USDT"), "m-1")

        assert not gate.is_processed("m-1")

        # Redelivery after instruments reload is accepted
        gate.load_instruments(INSTRUMENTS + ["NOPE-USDT"])
        assert gate.evaluate(make_signal(inst_id="NOPE-USDT"), "m-1").accepted

    def test_unreadable_whitelist_rejects(self):
        def broken_whitelist():
            raise StoreError("Whitelist unavailable: database is locked")

        gate = SignalGate(whitelist_provider=broken_whitelist, instruments=INSTRUMENTS)

        decision = gate.evaluate(make_signal(trader_name="bob"), "m-1")

        assert not decision.accepted
        assert not decision.silent
        assert decision.code == WHITELIST_UNAVAILABLE
        assert decision.reason == "Whitelist unavailable"
        assert not gate.is_processed("m-1")


class TestValidateSignal:
    def test_valid(self):
        assert validate_signal(make_signal(), INSTRUMENTS) == (True, None)

    def test_within_deviation(self):
        valid, reason = validate_signal(make_signal(entry_price=0.03), INSTRUMENTS, current_price=0.031)
        assert valid
        assert reason is None

    def test_excessive_deviation(self):
        valid, reason = validate_signal(make_signal(entry_price=100), INSTRUMENTS, current_price=50)
        assert not valid
        assert "deviates" in reason

    def test_no_entry_skips_deviation(self):
        assert validate_signal(make_signal(entry_price=None), INSTRUMENTS, current_price=50)[0]


class TestPreferences:
    def test_defaults(self):
        prefs = Preferences()
        assert prefs.order_amount == 50.0
        assert prefs.order_type == "market"
        assert prefs.margin_mode == "cross"
        assert prefs.trailing_stop_type == "tpsl"
        assert prefs.auto_execute is True
        assert prefs.confirm_before_order is False

    def test_invalid_choice_falls_back(self):
        prefs = Preferences(order_type="stop", margin_mode="portfolio", dca_mode="sometimes")
        assert prefs.order_type == "market"
        assert prefs.margin_mode == "cross"
        assert prefs.dca_mode == "display"

    def test_numeric_ranges(self):
        prefs = Preferences(leverage=500, trailing_stop_variance=0, slippage_percent=-1, order_amount=-5)
        assert prefs.leverage == MAX_LEVERAGE
        assert prefs.trailing_stop_variance == 2.0
        assert prefs.slippage_percent == 0.0
        assert prefs.order_amount == 50.0

    @pytest.mark.parametrize("source,signal_leverage,expected", [
        ("saved", 50, 20),
        ("signal", 50, 50),
        ("signal", None, 20),
        ("max", 10, 20),
        ("max", 50, 50),
    ])
    def test_effective_leverage(self, source, signal_leverage, expected):
        prefs = Preferences(leverage=20, leverage_source=source)
        assert prefs.effective_leverage(signal_leverage) == expected

    def test_from_dict_ignores_unknown_keys(self):
        prefs = Preferences.from_dict({"order_amount": 75, "bogus": 1})
        assert prefs.order_amount == 75
