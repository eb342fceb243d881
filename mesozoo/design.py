"""Experimental design: pulse treatments per mesocosm and sampling timepoints."""

from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import Dict, Iterable, NamedTuple

import pandas as pd

from .errors import InvalidSampleError, InvalidTimepointError, MissingJoinKeyError

logger = logging.getLogger(__name__)

FLAG_COLUMNS = ["pesticide_p1", "nutrient_p1", "pesticide_p2", "nutrient_p2"]

_TRUE = {"1", "true", "t", "yes", "y"}
_FALSE = {"0", "false", "f", "no", "n"}


class Treatment(Enum):
    """Stressor combination received in one pulse."""
    CONTROL = "Control"
    NUTRIENT = "Nutrient"
    INSECTICIDE = "Insecticide"
    BOTH = "Both"

    @classmethod
    def from_flags(cls, pesticide: bool, nutrient: bool) -> "Treatment":
        if pesticide and nutrient:
            return cls.BOTH
        if pesticide:
            return cls.INSECTICIDE
        if nutrient:
            return cls.NUTRIENT
        return cls.CONTROL

    def __str__(self) -> str:
        return self.value


class PulseHistory(NamedTuple):
    first: Treatment
    second: Treatment

    @property
    def label(self) -> str:
        return f"{self.first.value}_{self.second.value}"


TREATMENT_LEVELS = [t.value for t in Treatment]
HISTORY_LEVELS = [PulseHistory(a, b).label for a in Treatment for b in Treatment]


def parse_flag(value, column: str, mesocosm) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise InvalidSampleError(f"Design flag {column}={value!r} for mesocosm {mesocosm} is not boolean")


def parse_mesocosm_id(value, where: str = "") -> int:
    s = str(value).strip()
    digits = s.lstrip("Mm")
    if not digits.isdigit():
        raise InvalidSampleError(f"Malformed mesocosm id {value!r}{' in ' + where if where else ''}")
    return int(digits)


def load_design(path: str) -> pd.DataFrame:
    """Read the design CSV keyed by mesocosm; returns one row per mesocosm with boolean flags."""
    df = pd.read_csv(path, dtype=str)
    df.columns = df.columns.str.strip().str.lower()
    required = ["mesocosm"] + FLAG_COLUMNS
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise InvalidSampleError(f"Design table {path} is missing columns: {missing}")
    df = df[required].copy()
    df["mesocosm"] = [parse_mesocosm_id(v, path) for v in df["mesocosm"]]
    dupes = df.loc[df["mesocosm"].duplicated(), "mesocosm"].tolist()
    if dupes:
        raise InvalidSampleError(f"Design table {path} lists mesocosm(s) more than once: {sorted(set(dupes))}")
    for col in FLAG_COLUMNS:
        df[col] = [parse_flag(v, col, m) for v, m in zip(df[col], df["mesocosm"])]
    logger.info(f"Design: {len(df)} mesocosms from {path}")
    return derive_treatments(df.sort_values("mesocosm").reset_index(drop=True))


def derive_treatments(design: pd.DataFrame) -> pd.DataFrame:
    """Collapse each pulse's two flags to a Treatment and build the combined history label."""
    out = design.copy()
    histories = [
        PulseHistory(Treatment.from_flags(r.pesticide_p1, r.nutrient_p1),
                     Treatment.from_flags(r.pesticide_p2, r.nutrient_p2))
        for r in out.itertuples(index=False)
    ]
    out["treatment_p1"] = pd.Categorical([h.first.value for h in histories], categories=TREATMENT_LEVELS)
    out["treatment_p2"] = pd.Categorical([h.second.value for h in histories], categories=TREATMENT_LEVELS)
    out["treatment"] = pd.Categorical([h.label for h in histories], categories=HISTORY_LEVELS)
    return out


def day_offset(sample_date: date, start: date) -> int:
    return (pd.Timestamp(sample_date) - pd.Timestamp(start)).days


def timepoint_for_day(day: int, day_map: Dict[int, int]) -> int:
    try:
        return day_map[int(day)]
    except KeyError:
        raise InvalidTimepointError(
            f"Day offset {day} is not a sampling day (expected one of {sorted(day_map)})"
        ) from None


def assign_timepoints(df: pd.DataFrame, start: date, day_map: Dict[int, int]) -> pd.DataFrame:
    """Add `day` and `timepoint` columns from the `date` column."""
    out = df.copy()
    dates = pd.to_datetime(out["date"])
    out["day"] = (dates - pd.Timestamp(start)).dt.days.astype(int)
    bad = sorted(set(out.loc[~out["day"].isin(list(day_map)), "day"]))
    if bad:
        rows = out.loc[out["day"].isin(bad), ["mesocosm", "date"]].drop_duplicates()
        raise InvalidTimepointError(
            f"Day offset(s) {bad} are not sampling days {sorted(day_map)}; samples: "
            + ", ".join(f"M{r.mesocosm}@{pd.Timestamp(r.date).date()}" for r in rows.itertuples(index=False))
        )
    out["timepoint"] = out["day"].map(day_map).astype(int)
    return out


def check_join_keys(observed: Iterable[int], design: pd.DataFrame) -> None:
    """Both directions must match: no unknown mesocosm, no mesocosm without any sample."""
    observed = set(observed)
    planned = set(design["mesocosm"])
    not_in_design = observed - planned
    never_seen = planned - observed
    if not_in_design or never_seen:
        err = MissingJoinKeyError(not_in_design, never_seen)
        logger.error(str(err))
        raise err
