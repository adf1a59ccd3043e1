"""
Market/account adapter interface.

Everything the engine knows about prices, the account and its positions
comes through this class. Implementations return a Result from every
method; the engine additionally wraps each call with safe_call so an
implementation that raises only costs the current cycle.

Live implementations (MT5, REST brokers, ...) subclass MarketAdapter.
PaperBroker in breakbot.broker.paper is the in-memory implementation
used for dry runs and tests.
"""
from typing import Any, Optional

from breakbot.domain.models import Result

# Order outcome codes (MT5 trade-server numbering)
RET_DONE = 10009
RET_REQUOTE = 10004
RET_REJECT = 10006
RET_INVALID_VOLUME = 10014
RET_INVALID_STOPS = 10016
RET_MARKET_CLOSED = 10018
RET_NO_MONEY = 10019
RET_PRICE_CHANGED = 10020
RET_NO_CONNECTION = 10031
RET_POSITION_NOT_FOUND = 10036

RET_DESCRIPTIONS = {
    RET_DONE: "done",
    RET_REQUOTE: "requote",
    RET_REJECT: "request rejected",
    RET_INVALID_VOLUME: "invalid volume",
    RET_INVALID_STOPS: "invalid stops",
    RET_MARKET_CLOSED: "market closed",
    RET_NO_MONEY: "not enough money",
    RET_PRICE_CHANGED: "price changed",
    RET_NO_CONNECTION: "no connection",
    RET_POSITION_NOT_FOUND: "position not found",
}


def describe_code(code: int) -> str:
    return RET_DESCRIPTIONS.get(int(code), "unknown")


class MarketAdapter:
    """Broker runtime as seen by the engine. All methods return Result."""

    def select_symbol(self, symbol: str) -> Result:
        raise NotImplementedError

    def quote(self, symbol: str) -> Result:
        """-> Quote"""
        raise NotImplementedError

    def bars(self, symbol: str, timeframe: str, count: int) -> Result:
        """-> List[Bar], most-recent-first, [0] is the forming bar"""
        raise NotImplementedError

    def create_indicator(self, symbol: str, timeframe: str, name: str, period: int) -> Result:
        """-> opaque handle for indicator()"""
        raise NotImplementedError

    def indicator(self, handle: Any, offset: int) -> Result:
        """-> float value at bar offset (0 = forming bar)"""
        raise NotImplementedError

    def constraints(self, symbol: str) -> Result:
        """-> InstrumentConstraints"""
        raise NotImplementedError

    def account(self) -> Result:
        """-> AccountFigures"""
        raise NotImplementedError

    def estimate_margin(self, symbol: str, direction: str, volume: float, price: float) -> Result:
        """-> margin money for the given order"""
        raise NotImplementedError

    def place_order(
        self,
        symbol: str,
        direction: str,
        volume: float,
        stop: Optional[float],
        target: Optional[float],
        owner_tag: int,
    ) -> Result:
        """-> ticket on success; failure carries the broker code"""
        raise NotImplementedError

    def modify_position(self, ticket: str, stop: Optional[float], target: Optional[float]) -> Result:
        raise NotImplementedError

    def close_position(self, ticket: str) -> Result:
        raise NotImplementedError

    def owned_positions(self, symbol: str, owner_tag: int) -> Result:
        """-> List[Position] matching symbol AND owner tag"""
        raise NotImplementedError
