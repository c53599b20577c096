import pytest

from scalpbot.data.price_history import PriceObservation
from scalpbot.domain import DOWN, UP
from scalpbot.strategy import patterns as pt
from scalpbot.strategy import structure as st
from scalpbot.strategy.patterns import Candle, analyze_chart, build_candles, detect_trend_structure, linear_slope


def _series(prices: list[float], step: float = 1.0, volume: float = 1.0) -> list[PriceObservation]:
    return [PriceObservation(price=p, volume=volume, ts=1000.0 + i * step) for i, p in enumerate(prices)]


def test_regime_needs_sixty_samples() -> None:
    short = _series([100.0 + i for i in range(59)])
    assert st.detect_regime(short).type == "UNKNOWN"
    steady = _series([100.0 * (1.001 ** i) for i in range(120)])
    regime = st.detect_regime(steady)
    assert regime.type != "UNKNOWN"
    assert regime.direction == 1


def test_vwap_tracks_volume_weighted_mean() -> None:
    vwap = st.calculate_vwap(_series([100.0] * 40))
    assert abs(vwap.vwap - 100.0) < 1e-9


def test_swing_points_find_isolated_peak() -> None:
    prices = [100.0] * 10 + [105.0] + [100.0] * 10
    # flat neighbours are not strictly lower, so perturb them
    prices = [p - 0.01 * abs(10 - i) for i, p in enumerate(prices)]
    swings = st.detect_swing_points(_series(prices))
    assert [s.price for s in swings.highs] == [105.0]


def test_chart_reports_insufficient_data() -> None:
    read = analyze_chart(_series([100.0] * 59), UP)
    assert read.reason == "insufficient-data"
    assert read.patterns == ()
    # 60 ticks one second apart fit in two 30s candles
    assert analyze_chart(_series([100.0] * 60), UP).reason == "insufficient-data"


def test_build_candles_groups_by_interval() -> None:
    hist = _series([1.0, 2.0, 3.0, 4.0, 5.0, 6.0], step=10.0)
    candles = build_candles(hist, 30.0)
    assert len(candles) == 2
    assert candles[0].open == 1.0
    assert candles[0].close == 3.0
    assert candles[0].high == 3.0
    assert candles[1].low == 4.0
    assert candles[0].volume == 3.0


def test_linear_slope() -> None:
    assert linear_slope([1.0, 2.0, 3.0, 4.0]) == 1.0
    assert linear_slope([1.0, 2.0]) == 0.0


def test_trend_structure_detects_higher_highs() -> None:
    up = [Candle(open=i, high=i + 1, low=i - 1, close=i + 0.5, volume=1, ts=i * 30) for i in range(12)]
    pattern = detect_trend_structure(up)
    assert pattern is not None
    assert pattern.name == "uptrend-hh-hl"
    assert pattern.direction == 1
    down = list(reversed([Candle(open=i, high=i + 1, low=i - 1, close=i, volume=1, ts=0) for i in range(12)]))
    assert detect_trend_structure(down).direction == -1
    assert detect_trend_structure(up[:5]) is None


def test_chart_on_steady_trend_supports_trend_side() -> None:
    hist = _series([100.0 + i * 0.05 for i in range(600)])
    up = analyze_chart(hist, UP)
    down = analyze_chart(hist, DOWN)
    assert up.bias > 0
    assert up.bias == down.bias
    assert not up.exit_signal


def _bars(highs: list[float], *, last_close: float, volume: float = 1.0) -> list[Candle]:
    bars = [Candle(open=h - 0.5, high=h, low=h - 1.0, close=h - 0.5, volume=volume, ts=i * 30.0) for i, h in enumerate(highs)]
    last = bars[-1]
    bars[-1] = Candle(open=last.open, high=last.high, low=last.low, close=last_close, volume=volume, ts=last.ts)
    return bars


def test_trap_flags_failed_breakout_and_reversal() -> None:
    prices = [100.0] * 5 + [100.5, 101.0] + [100.0] * 22 + [99.5]
    levels = [st.KeyLevel(100.5, "resistance", "swing", 0.8)]
    trap = st.detect_trap(UP, _series(prices), levels)
    assert trap.is_trap
    assert trap.reasons == ("false-breakout-above", "v-reversal-down")
    assert trap.confidence == pytest.approx(0.58)
    assert st.detect_trap(DOWN, _series(prices), levels) == st.Trap()
    assert st.detect_trap(UP, _series(prices[:29]), levels) == st.Trap()


def test_exhaustion_on_unbroken_run() -> None:
    prices = [100.0 + 0.1 * i for i in range(60)]
    ex = st.measure_exhaustion(_series(prices))
    assert ex.direction == 1
    assert ex.reasons == ("54s-no-pullback",)
    assert ex.level == pytest.approx(0.3)
    climax = _series(prices[:40]) + [
        PriceObservation(price=p, volume=5.0, ts=1040.0 + i) for i, p in enumerate(prices[40:])
    ]
    heavy = st.measure_exhaustion(climax)
    assert "volume-climax" in heavy.reasons
    assert heavy.level >= 0.55
    assert st.measure_exhaustion(_series(prices[:39])) == st.Exhaustion()


def _delta_series(up_step: float, down_step: float, up_vol: float, down_vol: float) -> list[PriceObservation]:
    out = [PriceObservation(price=100.0, volume=1.0, ts=1000.0)]
    price = 100.0
    for k in range(1, 30):
        if k % 2:
            price += up_step
            out.append(PriceObservation(price=price, volume=up_vol, ts=1000.0 + k))
        else:
            price -= down_step
            out.append(PriceObservation(price=price, volume=down_vol, ts=1000.0 + k))
    return out


def test_smart_money_reads_volume_delta_divergence() -> None:
    # price grinds up on light buying while heavier volume trades on the down ticks
    bearish = st.detect_smart_money(_delta_series(0.2, 0.1, 1.0, 3.0))
    assert bearish.reasons == ("bearish-delta-div",)
    assert bearish.signal == pytest.approx(-0.3)
    bullish = st.detect_smart_money(_delta_series(-0.2, -0.1, 1.0, 3.0))
    assert bullish.reasons == ("bullish-delta-div",)
    assert bullish.signal == pytest.approx(0.3)
    assert st.detect_smart_money(_series([100.0] * 30)).signal == 0.0


def test_volume_profile_marks_heavy_node() -> None:
    hist = _series([100.0] * 25, volume=5.0) + [
        PriceObservation(price=101.0, volume=1.0, ts=2000.0 + i) for i in range(10)
    ]
    assert st.volume_profile(hist, 100.0).at_node
    assert not st.volume_profile(hist, 101.0).at_node
    assert st.volume_profile(hist[:29], 100.0) == st.VolumeNode()


def test_price_action_engulfing_candles() -> None:
    flat = [100.0] * 20
    bull = flat + [100.0 - 0.05 * j for j in range(10)] + [99.5 + 0.1 * j for j in range(10)]
    assert st.detect_price_action(_series(bull)) == st.PriceAction(0.6, "bullish-engulf")
    bear = flat + [100.0 + 0.05 * j for j in range(10)] + [100.5 - 0.1 * j for j in range(10)]
    assert st.detect_price_action(_series(bear)) == st.PriceAction(-0.6, "bearish-engulf")
    assert st.detect_price_action(_series(bull[:39])) == st.PriceAction()


def test_head_and_shoulders_below_neckline() -> None:
    highs = [100, 100.5, 101, 100.5, 100, 101, 102, 101, 100, 100.5, 101, 100.5, 100, 99.5, 99, 98.5, 98]
    pattern = pt.detect_head_and_shoulders(_bars(highs, last_close=97.5))
    assert pattern == pt.ChartPattern("head-shoulders", -1, 0.75, 1.5)
    assert pt.detect_head_and_shoulders(_bars(highs[:14], last_close=98.5)) is None


def test_inverse_head_and_shoulders_above_neckline() -> None:
    lows = [100, 99.5, 99, 99.5, 100, 99, 98, 99, 100, 99.5, 99, 99.5, 100, 100.5, 101, 101.5, 102]
    pattern = pt.detect_head_and_shoulders(_bars([lo + 1.0 for lo in lows], last_close=102.5))
    assert pattern is not None
    assert pattern.name == "inv-head-shoulders"
    assert pattern.direction == 1
    assert pattern.confidence == 0.75


def test_double_top_and_bottom() -> None:
    tops = [100, 101, 102, 101, 100, 101, 102, 101, 100, 99.5, 99, 98.5]
    assert pt.detect_double_top_bottom(_bars(tops, last_close=97.6)) == pt.ChartPattern("double-top", -1, 0.7, 1.3)
    lows = [100, 99, 98, 99, 100, 99, 98, 99, 100, 100.5, 101, 101.5]
    bottom = pt.detect_double_top_bottom(_bars([lo + 1.0 for lo in lows], last_close=102.4))
    assert bottom == pt.ChartPattern("double-bottom", 1, 0.7, 1.3)
    assert pt.detect_double_top_bottom(_bars(tops[:9], last_close=99.5)) is None


def test_triple_top_and_bottom() -> None:
    tops = [100, 101, 102, 101, 100, 101, 102, 101, 100, 101, 102, 101, 100, 99.5, 99]
    assert pt.detect_triple_top_bottom(_bars(tops, last_close=98.6)) == pt.ChartPattern("triple-top", -1, 0.8, 1.5)
    lows = [100, 99, 98, 99, 100, 99, 98, 99, 100, 99, 98, 99, 100, 100.5, 101]
    bottom = pt.detect_triple_top_bottom(_bars([lo + 1.0 for lo in lows], last_close=101.9))
    assert bottom == pt.ChartPattern("triple-bottom", 1, 0.8, 1.5)


def _sloped(high_step: float, low_step: float, n: int = 12) -> list[Candle]:
    out = []
    for i in range(n):
        high, low = 101.0 + high_step * i, 99.0 + low_step * i
        mid = (high + low) / 2
        out.append(Candle(open=mid, high=high, low=low, close=mid, volume=1.0, ts=i * 30.0))
    return out


def test_channels_follow_parallel_slopes() -> None:
    assert pt.detect_channel(_sloped(0.1, 0.1)).name == "ascending-channel"
    assert pt.detect_channel(_sloped(-0.1, -0.1)).direction == -1
    flat = pt.detect_channel(_sloped(0.0, 0.0))
    assert flat == pt.ChartPattern("range-channel", 0, 0.4, 0.3)
    assert pt.detect_channel(_sloped(0.1, 0.1, n=11)) is None


def test_triangles_need_a_narrowing_range() -> None:
    assert pt.detect_triangle(_sloped(0.0, 0.15)) == pt.ChartPattern("ascending-triangle", 1, 0.6, 1.2)
    assert pt.detect_triangle(_sloped(-0.15, 0.0)) == pt.ChartPattern("descending-triangle", -1, 0.6, 1.2)
    assert pt.detect_triangle(_sloped(0.1, 0.1)) is None


def test_bull_flag_after_pole() -> None:
    pole = [Candle(open=100.0 + i, high=101.2 + i, low=99.8 + i, close=101.0 + i, volume=1.0, ts=i * 30.0) for i in range(4)]
    flag = []
    for k in range(8):
        o, c = 104.0 - 0.1 * k, 104.0 - 0.1 * (k + 1)
        flag.append(Candle(open=o, high=o + 0.05, low=c - 0.05, close=c, volume=1.0, ts=(4 + k) * 30.0))
    assert pt.detect_flag(pole + flag) == pt.ChartPattern("bull-flag", 1, 0.6, 1.1)
    assert pt.detect_flag(pole + flag[:7]) is None


def test_breakout_confidence_follows_volume() -> None:
    base = [Candle(open=100.0, high=101.0, low=99.0, close=100.0, volume=1.0, ts=i * 30.0) for i in range(9)]
    up = [Candle(open=100.0, high=103.5, low=100.0, close=103.0, volume=3.0, ts=(9 + i) * 30.0) for i in range(3)]
    assert pt.detect_breakout(base + up) == pt.ChartPattern("breakout-up", 1, 0.7, 1.3)
    down = [Candle(open=100.0, high=100.0, low=96.5, close=97.0, volume=1.0, ts=(9 + i) * 30.0) for i in range(3)]
    assert pt.detect_breakout(base + down) == pt.ChartPattern("breakout-down", -1, 0.5, 0.9)
    assert pt.detect_breakout(base + base[:3]) is None
