"""
Trade and capital history - JSON files rewritten after every mutation
"""
import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from bracketbot.core.models import CapitalEntry, Trade


def _read_json_list(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    content = path.read_text(encoding="utf-8")
    if not content.strip():
        return []
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt history file {path}: {e}")
        raise
    if not isinstance(data, list):
        raise ValueError(f"History file {path} does not contain a JSON list")
    return data


def _write_json_list(path: Path, rows: List[Dict[str, Any]]):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(rows, indent=2), encoding="utf-8")
    tmp.replace(path)


class TradeHistory:
    """Trade log keyed by id; file I/O runs off the event loop"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> List[Trade]:
        return [Trade.from_dict(row) for row in _read_json_list(self.path)]

    def _write(self, trades: List[Trade]):
        _write_json_list(self.path, [t.to_dict() for t in trades])

    async def read_all(self) -> List[Trade]:
        return await asyncio.to_thread(self._read)

    async def append_trade(self, trade: Trade):
        async with self._lock:
            history = await asyncio.to_thread(self._read)
            history.append(trade)
            await asyncio.to_thread(self._write, history)
        logger.debug(f"[HISTORY] Recorded trade {trade.id}")

    async def update_trade(self, trade: Trade) -> bool:
        """Replace the stored trade with the same id; False if it is unknown"""
        async with self._lock:
            history = await asyncio.to_thread(self._read)
            for index, existing in enumerate(history):
                if existing.id == trade.id:
                    history[index] = trade
                    await asyncio.to_thread(self._write, history)
                    logger.info(f"[HISTORY] Updated trade {trade.id}")
                    return True
        logger.warning(f"[HISTORY] Could not find trade with ID {trade.id} to update")
        return False

    async def get_todays_trades(self, now: Optional[datetime] = None) -> List[Trade]:
        """Trades whose timestamp falls on the current local calendar day"""
        now = now or datetime.now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        cutoff_ms = int(start_of_day.timestamp() * 1000)
        history = await self.read_all()
        return [t for t in history if t.timestamp >= cutoff_ms]


class CapitalHistory:
    """Equity snapshots for after-the-fact performance review"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, entry: CapitalEntry):
        rows = _read_json_list(self.path)
        rows.append(entry.to_dict())
        _write_json_list(self.path, rows)

    async def add_entry(self, entry: CapitalEntry):
        async with self._lock:
            await asyncio.to_thread(self._append, entry)
