from __future__ import annotations

import random
from datetime import datetime, timezone

# base value, max value swing, max absolute change, max absolute change percent
STOCKS = {
    "nifty50": (24500, 100, 1.0, 2.0),
    "sensex": (80500, 250, 1.5, 1.5),
    "bankNifty": (52000, 150, 1.25, 1.75),
}
COMMODITIES = {
    "gold": (75000, 500, 100.0, 1.0, "per 10g"),
    "silver": (95000, 1000, 250.0, 1.5, "per kg"),
}
CRYPTO = {
    "bitcoin": (4500000, 50000, 25000.0, 2.5),
    "ethereum": (280000, 10000, 5000.0, 3.0),
}


def _quote(rng: random.Random, base: int, swing: int, change: float, change_percent: float) -> dict:
    return {
        "value": base + rng.randint(-swing, swing),
        "change": f"{rng.uniform(-change, change):.2f}",
        "changePercent": f"{rng.uniform(-change_percent, change_percent):.2f}",
    }


def market_snapshot(rng: random.Random | None = None, now: datetime | None = None) -> dict:
    """Synthetic market data; values jitter around fixed baselines."""
    rng = rng or random.Random()
    now = now or datetime.now(timezone.utc)
    return {
        "stocks": {name: _quote(rng, *params) for name, params in STOCKS.items()},
        "commodities": {
            name: {**_quote(rng, base, swing, change, pct), "unit": unit}
            for name, (base, swing, change, pct, unit) in COMMODITIES.items()
        },
        "crypto": {name: _quote(rng, *params) for name, params in CRYPTO.items()},
        "lastUpdated": now.isoformat(),
    }
