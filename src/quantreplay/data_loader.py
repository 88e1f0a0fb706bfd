from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Union

import pandas as pd

from quantreplay.core.types import Candle

logger = logging.getLogger(__name__)


class CandleSource(Protocol):
    def fetch(self, symbol: str, timeframe: str, start: pd.Timestamp, end: pd.Timestamp) -> List[Candle]:
        """Candles ordered by timestamp, up to `end` inclusive.

        Candles before `start` are returned too; the replay uses them only to
        warm up indicators.
        """
        ...


def sanitize_ohlc(df: pd.DataFrame) -> pd.DataFrame:
    """Sanitize OHLC data.

    Rules
    -----
    - Convert O/H/L <= 0 to NaN (close <= 0 is treated as fatal and rows are dropped)
    - Drop rows with close NaN
    - Fill missing open/high/low with close
    - Enforce high >= max(open, close) and low <= min(open, close)
    - Drop duplicated timestamps (keep the last row) and sort
    """

    out = df.copy()
    for c in ["open", "high", "low", "close"]:
        out[c] = pd.to_numeric(out[c], errors="coerce").astype(float)

    # close must exist
    out.loc[out["close"] <= 0, "close"] = pd.NA
    out = out.dropna(subset=["close"]).copy()

    # treat non-positive O/H/L as missing
    for c in ["open", "high", "low"]:
        out.loc[out[c] <= 0, c] = pd.NA
        out[c] = out[c].fillna(out["close"])

    # enforce consistency
    out["high"] = out[["high", "open", "close"]].max(axis=1)
    out["low"] = out[["low", "open", "close"]].min(axis=1)

    if "volume" in out.columns:
        out["volume"] = pd.to_numeric(out["volume"], errors="coerce").fillna(0.0)

    dup = out.index.duplicated(keep="last")
    if dup.any():
        logger.warning("Dropping %d duplicated candle timestamps", int(dup.sum()))
        out = out[~dup]
    return out.sort_index()


@dataclass(frozen=True)
class CsvSchema:
    date_col: str
    open_col: str
    high_col: str
    low_col: str
    close_col: str
    volume_col: Optional[str] = None


def _detect_schema(df: pd.DataFrame) -> Optional[CsvSchema]:
    cols = set(df.columns)
    for date_col in ("timestamp", "date", "datetime", "time"):
        if {date_col, "open", "high", "low", "close"}.issubset(cols):
            return CsvSchema(date_col, "open", "high", "low", "close", "volume" if "volume" in cols else None)

    # single-letter exports: T,O,H,L,C,(V)
    if {"T", "O", "H", "L", "C"}.issubset(cols):
        return CsvSchema("T", "O", "H", "L", "C", "V" if "V" in cols else None)

    # capitalized names
    if {"Date", "Open", "High", "Low", "Close"}.issubset(cols):
        return CsvSchema("Date", "Open", "High", "Low", "Close", "Volume" if "Volume" in cols else None)

    return None


def _to_timestamps(values: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(values):
        # epoch seconds or milliseconds
        unit = "ms" if float(values.abs().max()) > 1e11 else "s"
        return pd.to_datetime(values, unit=unit)
    return pd.to_datetime(values)


def load_ohlc(csv_path: Union[str, Path], symbol: Optional[str] = None, symbol_col: str = "symbol") -> pd.DataFrame:
    """Load OHLC(V) CSV with schema auto-detection.

    Supports:
      - timestamp|date|datetime|time,open,high,low,close,(volume)
      - T,O,H,L,C,(V)
      - Date,Open,High,Low,Close,(Volume)

    A panel file with a `symbol` column is filtered to `symbol`.
    """
    df = pd.read_csv(Path(csv_path), low_memory=False)
    schema = _detect_schema(df)
    if schema is None:
        raise ValueError(f"Unrecognized CSV schema: {csv_path}. Columns={list(df.columns)}")

    if symbol is not None and symbol_col in df.columns:
        df = df[df[symbol_col].astype(str) == str(symbol)].copy()
        if df.empty:
            raise ValueError(f"No rows found for symbol={symbol} in panel CSV: {csv_path}")

    df = df.rename(
        columns={
            schema.date_col: "timestamp",
            schema.open_col: "open",
            schema.high_col: "high",
            schema.low_col: "low",
            schema.close_col: "close",
        }
    )

    keep = ["timestamp", "open", "high", "low", "close"]
    if schema.volume_col and schema.volume_col in df.columns:
        df = df.rename(columns={schema.volume_col: "volume"})
        keep.append("volume")

    df = df[keep].copy()
    df["timestamp"] = _to_timestamps(df["timestamp"])
    df = df.set_index("timestamp")
    return sanitize_ohlc(df)


def frame_to_candles(df: pd.DataFrame) -> List[Candle]:
    """OHLC(V) frame indexed by timestamp -> ordered Candle list."""
    has_volume = "volume" in df.columns
    out: List[Candle] = []
    for ts, r in df.sort_index().iterrows():
        out.append(
            Candle(
                timestamp=pd.Timestamp(ts),
                open=float(r["open"]),
                high=float(r["high"]),
                low=float(r["low"]),
                close=float(r["close"]),
                volume=float(r["volume"]) if has_volume else 0.0,
            )
        )
    return out


def _window(df: pd.DataFrame, end: Optional[pd.Timestamp]) -> pd.DataFrame:
    if end is None:
        return df
    return df[df.index <= pd.Timestamp(end)]


class DataFrameCandleSource:
    """In-memory candles, one frame per symbol (or a single frame for any symbol)."""

    def __init__(self, frames: Union[pd.DataFrame, Mapping[str, pd.DataFrame]], sanitize: bool = True):
        if isinstance(frames, pd.DataFrame):
            self._default: Optional[pd.DataFrame] = sanitize_ohlc(frames) if sanitize else frames.sort_index()
            self._frames: Dict[str, pd.DataFrame] = {}
        else:
            self._default = None
            self._frames = {str(k): (sanitize_ohlc(v) if sanitize else v.sort_index()) for k, v in frames.items()}

    def fetch(self, symbol: str, timeframe: str, start: pd.Timestamp, end: pd.Timestamp) -> List[Candle]:
        df = self._frames.get(str(symbol), self._default)
        if df is None:
            raise KeyError(f"No candles for symbol {symbol!r}")
        return frame_to_candles(_window(df, end))


class CsvCandleSource:
    """Reads `<root>/<symbol>_<timeframe>.csv` (or a single CSV file for every symbol)."""

    def __init__(self, path: Union[str, Path], pattern: str = "{symbol}_{timeframe}.csv"):
        self.path = Path(path)
        self.pattern = pattern

    def _resolve(self, symbol: str, timeframe: str) -> Path:
        if self.path.is_dir():
            return self.path / self.pattern.format(symbol=symbol, timeframe=timeframe)
        return self.path

    def fetch(self, symbol: str, timeframe: str, start: pd.Timestamp, end: pd.Timestamp) -> List[Candle]:
        p = self._resolve(symbol, timeframe)
        if not p.exists():
            raise FileNotFoundError(p)
        df = load_ohlc(p, symbol=symbol)
        logger.info("Loaded %d candles for %s %s from %s", len(df), symbol, timeframe, p)
        return frame_to_candles(_window(df, end))
