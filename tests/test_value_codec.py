"""测试声誉值定点编解码"""

import math
from decimal import Decimal

import pytest

from agent_discovery.exceptions import InvalidValueError
from agent_discovery.value_codec import (
    MAX_RAW_ABS,
    decode_reputation_value,
    encode_reputation_value,
    normalize_decimal_string,
)


def test_round_half_up_on_19th_digit():
    """第 19 位小数四舍五入"""
    enc = encode_reputation_value("1.0000000000000000005")
    assert enc.value == 1000000000000000001
    assert enc.decimals == 18


def test_round_down_below_half():
    """第 19 位小于 5 时舍去"""
    enc = encode_reputation_value("1.0000000000000000004")
    assert enc.value == 10 ** 18
    assert enc.decimals == 18


def test_negative_rounds_away_from_zero():
    """负数远离零进位"""
    enc = encode_reputation_value("-0.0000000000000000005")
    assert enc.value == -1
    assert enc.decimals == 18


def test_clamp_positive_and_negative():
    """超出上限时饱和"""
    assert encode_reputation_value("1e40").value == MAX_RAW_ABS
    assert encode_reputation_value("1e40").decimals == 0
    assert encode_reputation_value("-1e40").value == -MAX_RAW_ABS


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf"), "NaN", "Infinity", "-inf", "", "abc", "1.2.3"])
def test_malformed_input_raises(bad):
    """非法输入抛出校验异常"""
    with pytest.raises(InvalidValueError):
        encode_reputation_value(bad)


def test_unsupported_types_raise():
    """不支持的类型"""
    with pytest.raises(InvalidValueError):
        encode_reputation_value(True)
    with pytest.raises(InvalidValueError):
        encode_reputation_value(None)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("00012.5000", "12.5"),
        ("-0.000", "0"),
        ("+7", "7"),
        ("1.5e-3", "0.0015"),
        ("-2.5E2", "-250"),
        ("12e0", "12"),
    ],
)
def test_normalize(text, expected):
    """规范化去除冗余零"""
    assert normalize_decimal_string(text) == expected


def test_encode_types():
    """整数、浮点、Decimal 输入"""
    assert encode_reputation_value(85).value == 85
    assert encode_reputation_value(85).decimals == 0
    assert encode_reputation_value(0.25).value == 25
    assert encode_reputation_value(0.25).decimals == 2
    assert encode_reputation_value(Decimal("-3.10")).normalized == "-3.1"


@pytest.mark.parametrize("x", ["99.77", "-12.5", "1.5e-3", "0", "123456789.000000001"])
def test_decode_approximates_input(x):
    """解码近似还原"""
    enc = encode_reputation_value(x)
    assert math.isclose(decode_reputation_value(enc.value, enc.decimals), float(x), rel_tol=1e-15, abs_tol=1e-18)
