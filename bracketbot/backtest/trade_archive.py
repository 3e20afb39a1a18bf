"""
Trade archive - Downloads Bybit public daily trade dumps in the replay format
"""
import io
import json
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import requests
from loguru import logger


ARCHIVE_URL = "https://public.bybit.com/trading/{symbol}/{symbol}{day}.csv.gz"


def archive_url(symbol: str, day: date) -> str:
    return ARCHIVE_URL.format(symbol=symbol, day=day.isoformat())


def frame_to_trades(frame: pd.DataFrame) -> List[Dict]:
    """
    Convert a Bybit dump (timestamp in seconds, size, price) to
    [{"p": price, "q": qty, "T": ms}] sorted by time.
    """
    if frame.empty:
        return []
    out = pd.DataFrame({
        "p": frame["price"].astype(float).astype(str),
        "q": frame["size"].astype(float).astype(str),
        "T": (frame["timestamp"].astype(float) * 1000).round().astype("int64"),
    })
    out = out.sort_values("T", kind="stable")
    return [
        {"p": p, "q": q, "T": int(t)}
        for p, q, t in zip(out["p"], out["q"], out["T"])
    ]


def download_day(session: requests.Session, symbol: str, day: date, timeout: float = 60.0) -> List[Dict]:
    url = archive_url(symbol, day)
    response = session.get(url, timeout=timeout)
    if response.status_code == 404:
        logger.warning(f"No archive for {symbol} on {day} ({url})")
        return []
    response.raise_for_status()
    frame = pd.read_csv(io.BytesIO(response.content), compression="gzip")
    trades = frame_to_trades(frame)
    logger.info(f"{day}: {len(trades)} trades")
    return trades


def download_range(symbol: str, days: int, end: Optional[date] = None) -> List[Dict]:
    """Trades for the `days` full days before `end` (yesterday's dump is the newest published)"""
    end = end or date.today()
    trades: List[Dict] = []
    with requests.Session() as session:
        for offset in range(days, 0, -1):
            trades.extend(download_day(session, symbol, end - timedelta(days=offset)))
    return trades


def save_trades(trades: List[Dict], path: Path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(trades, f)
    logger.success(f"Saved {len(trades)} trades to {path}")
