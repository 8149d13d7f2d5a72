from .base import MarketDiscovery, OrderVenue, QuoteSource
from .paper import PaperVenue
from .polymarket import PolymarketAdapter

__all__ = ["MarketDiscovery", "OrderVenue", "PaperVenue", "PolymarketAdapter", "QuoteSource"]
