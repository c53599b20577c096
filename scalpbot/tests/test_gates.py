from scalpbot.domain import Market
from scalpbot.strategy.gates import pass_account_gates, pass_market_gates

NOW = 1_700_000_000.0


def _account(**kw) -> tuple[bool, str]:
    base = dict(
        open_positions=0,
        max_positions=3,
        bankroll=10.0,
        min_stake=1.0,
        daily_pnl=0.0,
        daily_loss_limit=6.0,
        healthy=True,
        since_last_entry=None,
        entry_cooldown=2.0,
    )
    base.update(kw)
    return pass_account_gates(**base)


def _market(secs_left: float = 600, up: float = 0.5) -> Market:
    return Market(id="m", asset="BTC", timeframe="15m", end_time=NOW + secs_left, up_token="u", down_token="d", up_price=up)


def _market_gates(market: Market, **kw) -> tuple[bool, str]:
    base = dict(now=NOW, min_entry_secs=60, entry_buffer_secs=420, market_taken=False, slot_taken=False, can_reenter=True)
    base.update(kw)
    return pass_market_gates(market, **base)


def test_account_gates() -> None:
    assert _account() == (True, "ok")
    assert _account(open_positions=3) == (False, "max_positions")
    assert _account(bankroll=0.5) == (False, "bankroll_below_min")
    assert _account(daily_pnl=-6.0) == (False, "daily_loss_limit")
    assert _account(healthy=False) == (False, "model_unhealthy")
    assert _account(since_last_entry=1.0) == (False, "entry_cooldown")
    assert _account(since_last_entry=3.0) == (True, "ok")


def test_market_gates() -> None:
    assert _market_gates(_market()) == (True, "ok")
    assert _market_gates(_market(secs_left=30)) == (False, "too_close_to_expiry")
    assert _market_gates(_market(secs_left=300)) == (False, "inside_entry_buffer")
    assert _market_gates(_market(), market_taken=True) == (False, "market_taken")
    assert _market_gates(_market(), slot_taken=True) == (False, "slot_taken")
    assert _market_gates(_market(up=0.0)) == (False, "no_price")
    assert _market_gates(_market(), can_reenter=False) == (False, "reentry_cooldown")
