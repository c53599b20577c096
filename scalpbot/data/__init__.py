from .books import OrderBook, OrderBookCache, parse_book
from .feeds import (
    BinanceFeed,
    CoinbaseFeed,
    FeedChannel,
    FeedHealth,
    KrakenFeed,
    MultiExchangePredictor,
    OracleFeed,
    Tick,
)
from .http_service import HttpConfig, HttpService
from .markets import GammaMarketSource, parse_market, sort_markets
from .price_history import PriceHistoryStore, PriceObservation
from .snapshot_store import SnapshotStore

__all__ = [
    "BinanceFeed",
    "CoinbaseFeed",
    "FeedChannel",
    "FeedHealth",
    "GammaMarketSource",
    "HttpConfig",
    "HttpService",
    "KrakenFeed",
    "MultiExchangePredictor",
    "OracleFeed",
    "OrderBook",
    "OrderBookCache",
    "PriceHistoryStore",
    "PriceObservation",
    "SnapshotStore",
    "Tick",
    "parse_book",
    "parse_market",
    "sort_markets",
]
