from __future__ import annotations

from dataclasses import dataclass

from scalpbot.config.trading import TradingConfig
from scalpbot.data.price_history import PriceHistoryStore
from scalpbot.domain import DOWN, UP, EntryIntent, Market, Signal
from scalpbot.infra import get_logger
from scalpbot.strategy.conviction import ConvictionScorer, Evidence, ProbeBook, pattern_key
from scalpbot.strategy.intelligence import EntryVerdict, MarketStructureAnalyzer
from scalpbot.strategy.probability import BinaryProbabilityModel, estimate_probability, kelly_fraction
from scalpbot.strategy.signals import SignalEngine
from scalpbot.strategy.sizing import BetSizer

log = get_logger("scalpbot.strategy")

MREV_MAX_PRICE = 0.45
MREV_MIN_MOMENTUM = 0.001


@dataclass(frozen=True)
class Route:
    side: str
    price: float
    reason: str
    kind: str  # PRED | MREV | SIGNAL

    @property
    def predictive(self) -> bool:
        return self.kind == "PRED"


def route_predictive(market: Market, signal: Signal, cfg: TradingConfig) -> Route | None:
    rules = cfg.rules(market.timeframe)
    if signal.direction == 0 or signal.strength <= rules.pred_min_strength:
        return None
    side = UP if signal.direction > 0 else DOWN
    price = market.price_for(side)
    if not (price > 0 and cfg.entry_min_price <= price <= cfg.entry_max_price):
        return None
    edge = 0.5 + signal.strength * 0.25 - price
    if edge < rules.pred_min_edge:
        return None
    prefix = "5M-ARB-" if market.timeframe == "5m" else "PRED-"
    return Route(side, price, f"{prefix}{signal.reason}", "PRED")


def route_mean_reversion(market: Market, momentum_10m: float | None, cfg: TradingConfig) -> Route | None:
    if not cfg.is_long(market.timeframe) or momentum_10m is None:
        return None
    for side, agrees in ((UP, momentum_10m > MREV_MIN_MOMENTUM), (DOWN, momentum_10m < -MREV_MIN_MOMENTUM)):
        price = market.price_for(side)
        if agrees and cfg.entry_min_price <= price < MREV_MAX_PRICE:
            return Route(side, price, f"MREV-dip-buy+mom{abs(momentum_10m) * 10000:.0f}bp", "MREV")
    return None


def route_signal(market: Market, signal: Signal, cfg: TradingConfig) -> Route | None:
    if signal.direction == 0 or signal.strength < cfg.rules(market.timeframe).min_strength:
        return None
    side = UP if signal.direction > 0 else DOWN
    price = market.price_for(side)
    if cfg.entry_min_price <= price <= cfg.entry_max_price:
        return Route(side, price, signal.reason, "SIGNAL")
    return None


def target_pct(base: float, route: Route, strength: float, conviction: float) -> float:
    pct = base * 1.5 if strength > 0.7 else base if strength > 0.4 else base * 0.7
    if route.kind == "PRED":
        pct = min(pct, base * 1.2)
    if route.kind == "MREV":
        pct = base * 1.3
    if conviction > 0.85:
        pct = min(pct * 1.5, 0.40)
    return pct


class StrategyEngine:
    """Market-to-intent conversion. No order placement and no state mutation."""

    def __init__(
        self,
        cfg: TradingConfig,
        *,
        prices: PriceHistoryStore,
        signals: SignalEngine,
        analyzer: MarketStructureAnalyzer,
        probability: BinaryProbabilityModel,
        probes: ProbeBook,
        scorer: ConvictionScorer | None = None,
        sizer: BetSizer | None = None,
    ):
        self.cfg = cfg
        self.prices = prices
        self.signals = signals
        self.analyzer = analyzer
        self.probability = probability
        self.probes = probes
        self.scorer = scorer or ConvictionScorer()
        self.sizer = sizer or BetSizer(min_stake=cfg.min_stake, max_bankroll_fraction=cfg.max_bankroll_fraction)

    def route(self, market: Market, signal: Signal, now: float) -> Route | None:
        route = route_predictive(market, signal, self.cfg)
        if route is None and self.signals.crypto_price(market.asset, now):
            route = route_mean_reversion(market, self.prices.momentum(market.asset, 600, now), self.cfg)
        if route is None:
            route = route_signal(market, signal, self.cfg)
        return route

    def evidence(self, market: Market, side: str, signal: Signal, price: float, key, now: float) -> Evidence:
        asset = market.asset
        return Evidence(
            side=side,
            signal=signal,
            rsi=self.signals.rsi(asset, now),
            bollinger=self.signals.bollinger(asset, now),
            consensus=self.signals.consensus(now),
            volume=self.signals.volume_ratio(asset),
            edge=self.signals.predictive_edge(asset, side, price, now),
            probe=self.probes.get(key),
        )

    def decide(
        self,
        market: Market,
        *,
        bankroll: float,
        open_positions: int,
        now: float,
    ) -> tuple[EntryIntent | None, str]:
        signal = self.signals.signal(market.asset, now)
        route = self.route(market, signal, now)
        if route is None or route.price < self.cfg.entry_min_price:
            return None, "no_route"

        secs_left = market.secs_left(now)
        total = market.total_secs
        elapsed = 1.0 - secs_left / total if total > 0 else 0.0
        reason = route.reason
        if elapsed < 0.30:
            reason += "+EARLY"
        if elapsed > 0.70 and signal.strength < 0.6:
            return None, "late_weak_signal"
        if elapsed > 0.70 and route.price > 0.75:
            reason += "+DECAY"

        verdict: EntryVerdict = self.analyzer.analyze(market.asset, route.side, self.prices.history(market.asset))
        if verdict.veto:
            log.info("MI-VETO %s %s [%s]: %s", market.asset, route.side, market.timeframe, verdict.veto_reason)
            return None, f"veto:{verdict.veto_reason}"

        model_prob = estimate_probability(signal, route.side, route.price, secs_left, total)
        kelly = kelly_fraction(model_prob, route.price, self.cfg.kelly_fraction)
        if kelly <= 0:
            return None, "no_kelly_edge"

        key = pattern_key(market.asset, route.side, signal, predictive=route.predictive)
        conviction = self.scorer.score(
            self.evidence(market, route.side, signal, route.price, key, now),
            key,
            verdict.multiplier,
        )

        rules = self.cfg.rules(market.timeframe)
        high_vol = self.signals.volatility(market.asset, now).high
        bet = self.sizer.size(
            conviction.value,
            bankroll,
            timeframe_cap=rules.bet_cap,
            open_positions=open_positions,
            max_positions=self.cfg.max_positions,
            high_volatility=high_vol,
        )
        if high_vol:
            reason += "+LVOL"
        pct = target_pct(rules.profit_target, route, signal.strength, conviction.value)
        if verdict.boosts:
            reason += f"+MI[{verdict.boosts[0]}]"
        if verdict.penalties:
            reason += f"+MI[{verdict.penalties[0]}]"

        crypto = self.signals.crypto_price(market.asset, now)
        viability = self.probability.entry_viability(market.asset, route.price, secs_left, crypto)
        if not viability.viable:
            log.info("SKIP %s [%s] %s @%.3f: %s", market.asset, market.timeframe, route.side, route.price, viability.reason)
            return None, f"not_viable:{viability.reason}"

        intent = EntryIntent(
            market=market,
            side=route.side,
            token_id=market.token_for(route.side),
            price=route.price,
            stake=bet.stake,
            tier=bet.tier,
            conviction=conviction.value,
            pattern_key=key,
            reason=reason,
            target_pct=pct,
            model_prob=model_prob,
            kelly=kelly,
            signal_strength=signal.strength,
            crypto_price=crypto,
        )
        return intent, "ok"
