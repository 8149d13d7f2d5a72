from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import logging
import random
from datetime import date
from typing import Any, Callable, Iterable

import httpx

from weather_bot.config import PolymarketSettings
from weather_bot.models import BookQuote, Instrument, OrderRequest, OrderResult, Side
from weather_bot.question_parser import parse_question

from .base import MarketDiscovery, OrderVenue, QuoteSource

LOGGER = logging.getLogger(__name__)

_COLLATERAL_DECIMALS = 1_000_000


class PolymarketAdapter(QuoteSource, MarketDiscovery, OrderVenue):
    """Gamma discovery, CLOB order books and (optionally) live order posting.

    Live orders go through ``py_clob_client``. It is imported lazily so the
    read-only paths work without it; when it is missing or no key is
    configured, ``submit`` answers with a failed ``OrderResult``.
    """

    name = "polymarket"

    def __init__(
        self,
        settings: PolymarketSettings,
        *,
        locations: Iterable[str],
        timeout_seconds: float = 10.0,
        enable_trading: bool = False,
        today: Callable[[], date] = date.today,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._locations = list(locations)
        self._today = today
        self._gamma = httpx.AsyncClient(
            base_url=settings.gamma_base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._clob = httpx.AsyncClient(
            base_url=settings.clob_base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )

        self._live_client: Any = None
        self._order_args_cls: Any = None
        self._order_type_cls: Any = None
        self._balance_params_cls: Any = None
        self._asset_type_cls: Any = None
        self._buy_constant: Any = "BUY"
        self._live_error: str | None = "trading disabled"

        if enable_trading:
            self._initialize_live_client()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self) -> list[Instrument]:
        instruments: list[Instrument] = []
        seen: set[str] = set()
        today = self._today()
        page_size = max(1, self._settings.market_page_size)

        for page in range(max(1, self._settings.market_scan_pages)):
            params: dict[str, Any] = {
                "active": "true",
                "closed": "false",
                "limit": page_size,
                "offset": page * page_size,
            }
            if self._settings.search_tag:
                params["tag_slug"] = self._settings.search_tag

            response = await self._gamma.get("/markets", params=params)
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, list) or not payload:
                break

            for market in payload:
                if not isinstance(market, dict):
                    continue
                instrument = self._parse_market(market, today)
                if instrument is None or instrument.instrument_id in seen:
                    continue
                seen.add(instrument.instrument_id)
                instruments.append(instrument)

            if len(payload) < page_size:
                break

        LOGGER.info("polymarket discovery: %d weather instruments", len(instruments))
        return instruments

    async def resolution(self, instrument_id: str) -> Side | None:
        response = await self._gamma.get(f"/markets/{instrument_id}")
        response.raise_for_status()
        market = response.json()
        if not isinstance(market, dict) or not market.get("closed"):
            return None
        return self._winning_side(market)

    def _parse_market(self, market: dict[str, Any], today: date) -> Instrument | None:
        question = str(market.get("question") or "").strip()
        parsed = parse_question(question, self._locations, today)
        if parsed is None:
            return None

        outcomes = [str(value).strip().lower() for value in self._parse_json_array(market.get("outcomes"))]
        token_ids = [str(value).strip() for value in self._parse_json_array(market.get("clobTokenIds"))]
        if len(outcomes) != 2 or len(token_ids) != 2 or set(outcomes) != {"yes", "no"}:
            return None
        yes_idx = outcomes.index("yes")
        no_idx = outcomes.index("no")
        if not token_ids[yes_idx] or not token_ids[no_idx]:
            return None

        market_id = str(market.get("id") or market.get("conditionId") or "").strip()
        if not market_id:
            return None

        prices = self._parse_json_array(market.get("outcomePrices"))
        yes_price = self._to_price(prices[yes_idx]) if len(prices) == 2 else None
        no_price = self._to_price(prices[no_idx]) if len(prices) == 2 else None
        closed = bool(market.get("closed"))
        winner = self._winning_side(market) if closed else None

        return Instrument(
            instrument_id=market_id,
            question=question,
            location=parsed.location,
            threshold=parsed.threshold,
            settlement_date=parsed.settlement_date,
            resolution_source=str(market.get("resolutionSource") or ""),
            yes_token_id=token_ids[yes_idx],
            no_token_id=token_ids[no_idx],
            yes_price=yes_price,
            no_price=no_price,
            spread=self._to_price(market.get("spread")),
            depth=self._to_size(market.get("liquidityNum") or market.get("liquidity")),
            active=bool(market.get("active", True)) and not closed,
            resolved=winner is not None,
            outcome=winner,
        )

    def _winning_side(self, market: dict[str, Any]) -> Side | None:
        outcomes = [str(value).strip().lower() for value in self._parse_json_array(market.get("outcomes"))]
        prices = [self._to_price(value) for value in self._parse_json_array(market.get("outcomePrices"))]
        if len(outcomes) != 2 or len(prices) != 2:
            return None
        for label, price in zip(outcomes, prices):
            if price is not None and price >= 0.99 and label in {"yes", "no"}:
                return Side(label)
        return None

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def fetch_book(self, token_id: str) -> BookQuote:
        response = await self._clob.get("/book", params={"token_id": token_id})
        for attempt in range(2):
            if response.status_code != 429:
                break
            retry_after = response.headers.get("Retry-After")
            try:
                delay = float(retry_after) if retry_after else 0.2 * (2**attempt)
            except ValueError:
                delay = 0.2 * (2**attempt)
            await asyncio.sleep(delay + random.uniform(0.0, 0.1))
            response = await self._clob.get("/book", params={"token_id": token_id})
        response.raise_for_status()

        payload = response.json()
        if not isinstance(payload, dict):
            payload = {}
        ask_price, ask_size = self._best_level(payload.get("asks"), lowest=True)
        bid_price, bid_size = self._best_level(payload.get("bids"), lowest=False)
        return BookQuote(
            token_id=token_id,
            best_ask=ask_price,
            ask_size=ask_size,
            best_bid=bid_price,
            bid_size=bid_size,
            tick_size=self._to_optional_float(payload.get("tick_size")),
            min_order_size=self._to_optional_float(payload.get("min_order_size")),
        )

    async def health_check(self) -> bool:
        response = await self._clob.get("/")
        return response.status_code == 200

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit(self, order: OrderRequest) -> OrderResult:
        if self._live_client is None:
            return OrderResult(
                success=False,
                order_id=None,
                error=self._live_error or "polymarket live client unavailable",
            )

        try:
            result = await asyncio.to_thread(self._submit_buy_order, order.token_id, order.price, order.size)
        except Exception as exc:
            return OrderResult(success=False, order_id=None, error=str(exc), raw={"error": str(exc)})

        return self._to_order_result(result, order)

    async def get_available_cash(self) -> float | None:
        if self._live_client is None or self._balance_params_cls is None:
            return None
        try:
            params = self._balance_params_cls(asset_type=self._asset_type_cls.COLLATERAL)
            result = await asyncio.to_thread(self._live_client.get_balance_allowance, params)
        except Exception as exc:
            LOGGER.warning("polymarket balance lookup failed: %s", exc)
            return None
        try:
            return float(result.get("balance", 0)) / _COLLATERAL_DECIMALS
        except (AttributeError, TypeError, ValueError):
            return None

    def _submit_buy_order(self, token_id: str, price: float, size: float) -> Any:
        assert self._live_client is not None
        assert self._order_args_cls is not None

        args = self._order_args_cls(
            token_id=token_id,
            price=float(price),
            size=float(size),
            side=self._buy_constant,
        )
        signed = self._live_client.create_order(args)
        if self._order_type_cls is not None and hasattr(self._order_type_cls, "FOK"):
            return self._live_client.post_order(signed, self._order_type_cls.FOK)
        return self._live_client.post_order(signed)

    def _initialize_live_client(self) -> None:
        if not self._settings.private_key:
            self._live_error = "POLYMARKET_PRIVATE_KEY missing"
            return

        try:
            client_mod = importlib.import_module("py_clob_client.client")
            types_mod = importlib.import_module("py_clob_client.clob_types")
            constants_mod = importlib.import_module("py_clob_client.order_builder.constants")

            clob_client_cls = getattr(client_mod, "ClobClient")
            self._order_args_cls = getattr(types_mod, "OrderArgs")
            self._order_type_cls = getattr(types_mod, "OrderType", None)
            self._balance_params_cls = getattr(types_mod, "BalanceAllowanceParams", None)
            self._asset_type_cls = getattr(types_mod, "AssetType", None)
            self._buy_constant = getattr(constants_mod, "BUY", "BUY")

            kwargs: dict[str, Any] = {
                "key": self._settings.private_key,
                "chain_id": self._settings.chain_id,
            }
            if self._settings.funder:
                kwargs["funder"] = self._settings.funder
            if "host" in inspect.signature(clob_client_cls).parameters:
                kwargs["host"] = self._settings.clob_base_url

            self._live_client = clob_client_cls(**kwargs)

            if self._settings.api_key and self._settings.api_secret and self._settings.api_passphrase:
                creds_cls = getattr(types_mod, "ApiCreds")
                self._live_client.set_api_creds(
                    creds_cls(
                        api_key=self._settings.api_key,
                        api_secret=self._settings.api_secret,
                        api_passphrase=self._settings.api_passphrase,
                    )
                )
            else:
                self._live_client.set_api_creds(self._live_client.create_or_derive_api_creds())
            self._live_error = None
        except Exception as exc:
            LOGGER.error("polymarket live client unavailable: %s", exc)
            self._live_client = None
            self._live_error = str(exc)

    # ------------------------------------------------------------------
    # Parsing helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _best_level(levels: Any, *, lowest: bool) -> tuple[float | None, float]:
        if not isinstance(levels, list):
            return None, 0.0
        best_price: float | None = None
        best_size = 0.0
        for level in levels:
            if not isinstance(level, dict):
                continue
            price = PolymarketAdapter._to_optional_float(level.get("price"))
            if price is None or price <= 0:
                continue
            size = PolymarketAdapter._to_size(level.get("size"))
            if best_price is None or (price < best_price if lowest else price > best_price):
                best_price, best_size = price, size
        return best_price, best_size

    @staticmethod
    def _parse_json_array(value: Any) -> list[Any]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return []
            return parsed if isinstance(parsed, list) else []
        return []

    @staticmethod
    def _to_optional_float(value: Any) -> float | None:
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _to_price(value: Any) -> float | None:
        numeric = PolymarketAdapter._to_optional_float(value)
        if numeric is None or numeric < 0:
            return None
        return min(1.0, numeric)

    @staticmethod
    def _to_size(value: Any) -> float:
        try:
            return max(0.0, float(value))
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _to_order_result(result: Any, order: OrderRequest) -> OrderResult:
        raw = result if isinstance(result, dict) else {"data": str(result)}
        order_id = raw.get("orderID") or raw.get("order_id") or raw.get("id")
        error = raw.get("errorMsg") or raw.get("error") or None
        success = bool(order_id) and raw.get("success", True) is not False and not error

        filled = raw.get("takingAmount") or raw.get("size_matched") or (order.size if success else 0)
        try:
            filled_size = float(filled)
        except (TypeError, ValueError):
            filled_size = 0.0

        return OrderResult(
            success=success,
            order_id=str(order_id) if order_id else None,
            filled_size=filled_size,
            average_price=order.price if success else None,
            error=None if success else str(error or "order rejected"),
            raw=raw,
        )

    async def aclose(self) -> None:
        await self._gamma.aclose()
        await self._clob.aclose()
