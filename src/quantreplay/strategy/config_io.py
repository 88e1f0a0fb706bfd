from __future__ import annotations

import json
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

import pandas as pd

from quantreplay.core.errors import InvalidConfig
from quantreplay.core.types import TrailingStopType, UnwindMode
from quantreplay.strategy.config import StrategyConfig
from quantreplay.strategy.evaluators import config_class_for

_ENUMS = {
    "UnwindMode": UnwindMode,
    "TrailingStopType": TrailingStopType,
}


def _read_table(path: str | Path, sheet: Optional[str] = None) -> pd.DataFrame:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)

    suffix = p.suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        df = pd.read_excel(p, sheet_name=sheet or 0)
    elif suffix == ".json":
        with p.open("r", encoding="utf-8") as f:
            payload = json.load(f)
        if isinstance(payload, dict):
            payload = [payload]
        df = pd.DataFrame(payload)
    else:
        df = pd.read_csv(p)
    return df


def _is_missing(v: Any) -> bool:
    if v is None:
        return True
    if isinstance(v, float) and pd.isna(v):
        return True
    return isinstance(v, str) and not v.strip()


def _as_enum(v: Any, enum_cls):
    s = str(v).strip()
    # allow name
    if s.upper() in enum_cls.__members__:
        return enum_cls[s.upper()]
    try:
        return enum_cls(s)
    except ValueError:
        raise InvalidConfig(f"Invalid {enum_cls.__name__}: {v!r}") from None


def _as_bool(v: Any) -> bool:
    if isinstance(v, str):
        s = v.strip().lower()
        if s in {"1", "true", "yes", "y", "on"}:
            return True
        if s in {"0", "false", "no", "n", "off"}:
            return False
        raise InvalidConfig(f"Invalid boolean: {v!r}")
    return bool(v)


def _coerce(type_name: str, v: Any) -> Any:
    base = type_name.replace("Optional[", "").rstrip("]").strip()
    if base in _ENUMS:
        return _as_enum(v, _ENUMS[base])
    if base == "bool":
        return _as_bool(v)
    try:
        if base == "int":
            f = float(v)
            if f != int(f):
                raise InvalidConfig(f"Expected an integer, got {v!r}")
            return int(f)
        if base == "float":
            return float(v)
    except (TypeError, ValueError):
        raise InvalidConfig(f"Expected {base}, got {v!r}") from None
    return v


def _optional_fields(strategy: Any) -> Set[str]:
    if _is_missing(strategy):
        return set()
    cls = config_class_for(str(strategy))
    return {f.name for f in fields(cls) if str(f.type).startswith("Optional[")}


def config_from_dict(row: Mapping[str, Any], strategy: Optional[str] = None) -> StrategyConfig:
    """Build and validate one strategy config from a flat mapping.

    The variant is selected by `strategy` (or the row's `strategy` key).
    Unknown keys are rejected so typos do not silently fall back to defaults.
    """

    name = strategy or row.get("strategy")
    if _is_missing(name):
        raise InvalidConfig("Strategy config requires a 'strategy' name")
    cls = config_class_for(str(name))

    known = {f.name: str(f.type) for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    for k, v in row.items():
        key = str(k).strip()
        if key in {"strategy", "enabled", "symbol", "name"}:
            continue
        if key not in known:
            raise InvalidConfig(f"Unknown field {key!r} for strategy {cls.STRATEGY!r}")
        if _is_missing(v):
            # blank Optional cells disable the feature, other blanks keep the default
            if known[key].startswith("Optional["):
                kwargs[key] = None
            continue
        kwargs[key] = _coerce(known[key], v)

    cfg = cls(**kwargs)
    cfg.validate()
    return cfg


def load_strategy_configs(path: str | Path, sheet: Optional[str] = None) -> List[StrategyConfig]:
    """Load validated StrategyConfig list from CSV/XLSX/JSON.

    Expected columns (minimal)
    --------------------------
    - strategy (registry name, e.g. ema_crossover)

    Optional columns map directly to the fields of that strategy's config.
    Enum fields accept either the enum value string or the enum name.
    A blank cell keeps the default, except for Optional fields where it
    disables the feature (e.g. a blank rsi_period turns RSI off).
    Columns that belong to other strategies are ignored when blank.
    """

    df = _read_table(path, sheet=sheet)
    if df.empty:
        return []

    # normalize column names
    df = df.rename(columns={c: str(c).strip() for c in df.columns})
    if "strategy" not in df.columns:
        raise InvalidConfig(f"Strategy config missing required column 'strategy'. Columns={list(df.columns)}")

    # Optional enable flag
    if "enabled" in df.columns:
        enabled = df["enabled"].map(lambda v: True if _is_missing(v) else _as_bool(v))
        df = df[enabled.astype(bool)].copy()

    out: List[StrategyConfig] = []
    for _, r in df.iterrows():
        optional = _optional_fields(r["strategy"])
        row = {k: v for k, v in r.items() if k == "strategy" or k in optional or not _is_missing(v)}
        out.append(config_from_dict(row))
    return out
