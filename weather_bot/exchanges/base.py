from __future__ import annotations

from abc import ABC, abstractmethod

from weather_bot.models import BookQuote, Instrument, OrderRequest, OrderResult, Side


class QuoteSource(ABC):
    @abstractmethod
    async def fetch_book(self, token_id: str) -> BookQuote:
        """Top of book for one outcome token. Transport errors propagate."""
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class OrderVenue(ABC):
    name: str

    @abstractmethod
    async def submit(self, order: OrderRequest) -> OrderResult:
        raise NotImplementedError

    @abstractmethod
    async def get_available_cash(self) -> float | None:
        raise NotImplementedError

    def record_payout(self, amount: float) -> None:
        """Settlement credit for a resolved position. Live venues settle on chain."""
        return None

    async def aclose(self) -> None:
        return None


class MarketDiscovery(ABC):
    @abstractmethod
    async def discover(self) -> list[Instrument]:
        raise NotImplementedError

    async def resolution(self, instrument_id: str) -> Side | None:
        """Winning side of a settled instrument, None while unsettled."""
        return None

    async def aclose(self) -> None:
        return None
