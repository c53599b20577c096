from __future__ import annotations

from scalpbot.domain import Market


def pass_account_gates(
    *,
    open_positions: int,
    max_positions: int,
    bankroll: float,
    min_stake: float,
    daily_pnl: float,
    daily_loss_limit: float,
    healthy: bool,
    since_last_entry: float | None,
    entry_cooldown: float,
) -> tuple[bool, str]:
    if open_positions >= max_positions:
        return False, "max_positions"
    if bankroll < min_stake:
        return False, "bankroll_below_min"
    if daily_pnl <= -daily_loss_limit:
        return False, "daily_loss_limit"
    if not healthy:
        return False, "model_unhealthy"
    if since_last_entry is not None and since_last_entry < entry_cooldown:
        return False, "entry_cooldown"
    return True, "ok"


def pass_market_gates(
    market: Market,
    *,
    now: float,
    min_entry_secs: float,
    entry_buffer_secs: float,
    market_taken: bool,
    slot_taken: bool,
    can_reenter: bool,
) -> tuple[bool, str]:
    secs_left = market.secs_left(now)
    if secs_left < min_entry_secs:
        return False, "too_close_to_expiry"
    if secs_left < entry_buffer_secs:
        return False, "inside_entry_buffer"
    if market_taken:
        return False, "market_taken"
    if slot_taken:
        return False, "slot_taken"
    if market.up_price <= 0:
        return False, "no_price"
    if not can_reenter:
        return False, "reentry_cooldown"
    return True, "ok"
