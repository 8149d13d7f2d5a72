from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import replace

from weather_bot.alerts import build_dispatcher
from weather_bot.config import AppSettings, load_settings
from weather_bot.control_socket import ControlSocket
from weather_bot.engine import WeatherBotEngine
from weather_bot.exchanges import OrderVenue, PaperVenue, PolymarketAdapter
from weather_bot.logging_setup import configure_logging
from weather_bot.store import WeatherStore
from weather_bot.weather import OpenWeatherMapSource, WeatherSource

LOGGER = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Weather safe-bet detection and execution engine")
    parser.add_argument("--once", action="store_true", help="Run a single coordinator tick and exit")
    parser.add_argument("--live", action="store_true", help="Submit real orders (overrides WX_LIVE_MODE)")
    parser.add_argument("--db", default=None, help="SQLite path (overrides WX_DB_PATH)")
    parser.add_argument("--no-control-socket", action="store_true", help="Do not open the operator socket")
    parser.add_argument("--log-level", default=None, help="Logging level (overrides WX_LOG_LEVEL)")
    return parser.parse_args()


def build_engine(settings: AppSettings, store: WeatherStore) -> WeatherBotEngine:
    polymarket = PolymarketAdapter(
        settings.polymarket,
        locations=[location.name for location in settings.weather.locations],
        timeout_seconds=settings.http_timeout_seconds,
        enable_trading=settings.live_mode,
    )

    venue: OrderVenue
    if settings.live_mode:
        venue = polymarket
    else:
        venue = PaperVenue(settings.paper_bankroll_usd)

    weather: WeatherSource | None = None
    if settings.weather.api_key:
        weather = OpenWeatherMapSource(settings.weather, timeout_seconds=settings.http_timeout_seconds)
    else:
        LOGGER.warning("OPENWEATHER_API_KEY not set; the data_freshness breaker will stay active")

    return WeatherBotEngine(
        settings,
        store=store,
        discovery=polymarket,
        quotes=polymarket,
        venue=venue,
        weather=weather,
        alerts=build_dispatcher(settings.alerts, timeout_seconds=settings.http_timeout_seconds),
    )


async def _run(args: argparse.Namespace) -> None:
    settings = load_settings()
    if args.live:
        settings = replace(settings, live_mode=True)
    if args.db:
        settings = replace(settings, db_path=args.db)
    if args.log_level:
        settings = replace(settings, log_level=args.log_level)

    configure_logging(settings.log_level, debug=settings.debug)
    LOGGER.info(
        "starting weather bot: mode=%s db=%s locations=%s",
        "LIVE" if settings.live_mode else "PAPER",
        settings.db_path,
        ", ".join(location.name for location in settings.weather.locations),
    )

    store = WeatherStore(settings.db_path)
    engine = build_engine(settings, store)

    control: ControlSocket | None = None
    if not args.no_control_socket and not args.once:
        control = ControlSocket(port=settings.control_socket_port, on_command=engine.handle_command)
        await control.start()
        engine.set_state_publisher(control.push_state)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            pass

    run_task = asyncio.create_task(engine.run_forever(run_once=args.once))
    waiter = asyncio.create_task(shutdown.wait())
    try:
        await asyncio.wait({run_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if not run_task.done():
            LOGGER.info("shutdown requested")
            await engine.stop("process shutdown")
            run_task.cancel()
        await asyncio.gather(run_task, return_exceptions=True)
    finally:
        waiter.cancel()
        if control is not None:
            await control.stop()
        store.close()


def main() -> None:
    asyncio.run(_run(_parse_args()))


if __name__ == "__main__":
    main()
