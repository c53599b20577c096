from scalpbot.config.trading import TradingConfig
from scalpbot.domain import DOWN, UP, Position, Signal
from scalpbot.strategy.probability import BinaryProbabilityModel, estimate_probability, kelly_fraction

SIGMA = 0.6


def _position(side: str = UP, *, entry: float = 0.5, crypto: float | None = 100.0, end: float = 3600.0) -> Position:
    return Position(
        market_id="m1",
        asset="BTC",
        timeframe="1h",
        side=side,
        token_id="tok",
        entry_price=entry,
        size=2.0,
        cost_basis=1.0,
        target_profit=0.1,
        crypto_price_at_entry=crypto,
        opened_at=0.0,
        end_time=end,
        current_price=entry,
    )


def test_probability_above_is_monotonic_in_price() -> None:
    f = BinaryProbabilityModel.probability_above
    low = f(99.0, 100.0, 600, SIGMA)
    mid = f(100.0, 100.0, 600, SIGMA)
    high = f(101.0, 100.0, 600, SIGMA)
    assert low < mid < high
    assert abs(mid - 0.5) < 0.01


def test_probability_above_limits() -> None:
    f = BinaryProbabilityModel.probability_above
    assert f(101.0, 100.0, 0, SIGMA) == 0.99
    assert f(99.0, 100.0, 0, SIGMA) == 0.01
    assert f(101.0, 100.0, 1, SIGMA) > 0.99
    assert f(99.0, 100.0, 1, SIGMA) < 0.01
    assert f(0.0, 100.0, 60, SIGMA) == 0.5
    assert f(100.0, 0.0, 60, SIGMA) == 0.5


def test_longer_horizon_pulls_toward_half() -> None:
    f = BinaryProbabilityModel.probability_above
    short = f(101.0, 100.0, 60, SIGMA)
    long = f(101.0, 100.0, 86400, SIGMA)
    assert 0.5 < long < short


def test_price_support_blends_token_and_model() -> None:
    model = BinaryProbabilityModel(TradingConfig())
    pos = _position(UP, entry=0.5, crypto=100.0)
    support = model.price_support(pos, 102.0, now=0.0)
    assert support.direction_match
    assert support.bs_prob > 0.5
    expected = 0.5 * 0.6 + support.bs_prob * 0.4
    assert abs(support.probability - expected) < 1e-9
    assert model.sigmas_needed(pos, support, 3600) == 0.0

    down = _position(DOWN, entry=0.5, crypto=100.0)
    against = model.price_support(down, 102.0, now=0.0)
    assert not against.direction_match
    assert against.bs_prob < 0.5
    assert model.sigmas_needed(down, against, 3600) > 0


def test_price_support_without_crypto_uses_token_price() -> None:
    model = BinaryProbabilityModel()
    pos = _position(UP, entry=0.4, crypto=None)
    support = model.price_support(pos, 100.0, now=0.0)
    assert support.probability == 0.4
    assert support.bs_prob == 0.5
    assert not support.supports


def test_entry_viability_rejects_dead_money() -> None:
    model = BinaryProbabilityModel()
    assert model.entry_viability("BTC", 0.5, 900, None).reason == "no-crypto-data"
    dead = model.entry_viability("BTC", 0.10, 1800, 60000.0)
    assert not dead.viable
    assert "dead-money" in dead.reason
    assert not model.entry_viability("BTC", 0.05, 86400 * 2, 60000.0).viable
    cheap = model.entry_viability("BTC", 0.20, 1800, 60000.0)
    assert not cheap.viable
    assert "no-exit" in cheap.reason
    ok = model.entry_viability("BTC", 0.5, 900, 60000.0)
    assert ok.viable
    assert ok.one_sigma > 0


def test_estimate_probability_follows_signal() -> None:
    bull = Signal(direction=1, strength=1.0, reason="bull-strong")
    assert estimate_probability(bull, UP, 0.5, 600, 900) == 0.65
    assert estimate_probability(bull, DOWN, 0.5, 600, 900) == 0.4
    assert estimate_probability(Signal(), UP, 0.5, 600, 900) == 0.5
    assert estimate_probability(bull, UP, 0.9, 600, 900) == 0.95
    late = estimate_probability(Signal(), UP, 0.8, 90, 900)
    assert late > 0.8


def test_kelly_fraction() -> None:
    assert kelly_fraction(0.5, 0.5) == 0.0
    assert kelly_fraction(0.4, 0.5) == 0.0
    assert kelly_fraction(1.0, 0.5) == 0.0
    k = kelly_fraction(0.7, 0.5)
    assert 0 < k < 0.25
