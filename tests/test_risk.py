import sys

sys.path.insert(0, '.')

import pytest

from risk.position_sizer import InsufficientMarginError, RiskManager

SETTINGS = {
    'auto_volume_enabled': True,
    'auto_volume_pct': 90,
    'auto_volume_max_usd': 3500,
    'min_balance_usd': 0.5,
}


def test_auto_volume_scales_with_balance_and_leverage():
    risk = RiskManager(SETTINGS, leverage=10)
    assert risk.calculate_auto_volume(100.0) == pytest.approx(900.0)
    assert risk.calculate_auto_volume(100.0, leverage=2) == pytest.approx(180.0)


def test_auto_volume_is_capped():
    risk = RiskManager(SETTINGS, leverage=10)
    assert risk.calculate_auto_volume(10_000.0) == 3500


def test_auto_volume_is_zero_below_minimum_balance():
    risk = RiskManager(SETTINGS, leverage=10)
    assert risk.calculate_auto_volume(0.4) == 0.0
    assert risk.calculate_auto_volume(None) == 0.0


def test_margin_check():
    risk = RiskManager(SETTINGS, leverage=10)
    assert risk.required_margin(1000.0) == 100.0
    risk.check_margin(1000.0, 100.0)
    with pytest.raises(InsufficientMarginError) as info:
        risk.check_margin(1000.0, 99.0)
    assert info.value.required == 100.0
