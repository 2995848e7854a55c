"""
promo_engine/utils/clock.py
───────────────────────────
Injectable time sources. The engine never reads the wall clock directly:
routes take "now" from the app's clock, tests pin it with FixedClock.

    app.extensions['promo_clock'] = FixedClock(datetime(2026, 3, 6, 12, 0))
"""
from datetime import datetime, timedelta

CLOCK_KEY = 'promo_clock'


class SystemClock:
    """Local wall-clock time (restaurant time windows are local)."""

    def now(self) -> datetime:
        return datetime.now()


class FixedClock:
    """A clock frozen at a given instant; `advance` moves it forward."""

    def __init__(self, instant: datetime):
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def advance(self, **kwargs) -> None:
        self._instant = self._instant + timedelta(**kwargs)


def get_clock(app):
    """The clock registered on `app`, installing a SystemClock on first use."""
    return app.extensions.setdefault(CLOCK_KEY, SystemClock())
