"""Housekeeping: retire instruments whose settlement day has passed."""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable

from weather_bot.store import WeatherStore

LOGGER = logging.getLogger(__name__)


class DayRotationSweeper:
    def __init__(
        self,
        store: WeatherStore,
        local_today: Callable[[str], date] = lambda location: date.today(),
    ) -> None:
        self._store = store
        self._local_today = local_today

    def sweep(self) -> list[str]:
        """Retire every instrument settling before its location's local today.

        Returns the ids touched; a second sweep on the same day returns none.
        """
        expired: list[str] = []
        for instrument in self._store.active_instruments():
            if instrument.settlement_date < self._local_today(instrument.location):
                expired.append(instrument.instrument_id)

        retired = self._store.retire(expired)
        if retired:
            LOGGER.info("day rotation: retired %d instruments", len(retired))
            self._store.record_audit(
                "DAY_ROTATION",
                f"retired {len(retired)} instruments past their local settlement day",
                {"instrument_ids": retired},
            )
        else:
            LOGGER.debug("day rotation: nothing to retire")
        return retired
