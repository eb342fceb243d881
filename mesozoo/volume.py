"""
Volume normalization.

Raw counts come from a fixed analyzed fraction of each collected sample and are
expressed per litre with one protocol constant. Abundances are deliberately
not rescaled by each mesocosm's own water volume; the per-timepoint mean
volume is kept only as a reference column.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .config import SUBSAMPLE_VOLUME_ML
from .design import day_offset, parse_mesocosm_id
from .errors import ConfigError, InvalidSampleError
from .taxonomy import CANONICAL_TAXA

logger = logging.getLogger(__name__)


def per_litre_factor(subsample_volume_ml: float = SUBSAMPLE_VOLUME_ML) -> float:
    if subsample_volume_ml is None or subsample_volume_ml <= 0:
        raise ConfigError(f"Subsample volume must be positive, got {subsample_volume_ml}")
    return 1000.0 / float(subsample_volume_ml)


def normalize_per_litre(samples: pd.DataFrame,
                        subsample_volume_ml: float = SUBSAMPLE_VOLUME_ML,
                        taxa: Sequence[str] = CANONICAL_TAXA) -> pd.DataFrame:
    """Scale every taxon count to individuals per litre."""
    factor = per_litre_factor(subsample_volume_ml)
    out = samples.copy()
    out[list(taxa)] = out[list(taxa)].astype(float) * factor
    logger.info(f"Scaled counts to individuals/L (x{factor:g}, {subsample_volume_ml:g} mL analysed)")
    return out


def load_volumes(path: str) -> pd.DataFrame:
    df = pd.read_csv(path)
    df.columns = df.columns.str.strip().str.lower()
    missing = [c for c in ("date", "mesocosm", "volume_l") if c not in df.columns]
    if missing:
        raise InvalidSampleError(f"Volume table {path} is missing columns: {missing}")
    df["mesocosm"] = [parse_mesocosm_id(v, path) for v in df["mesocosm"]]
    try:
        df["date"] = pd.to_datetime(df["date"]).dt.normalize()
    except (ValueError, TypeError) as e:
        raise InvalidSampleError(f"Malformed date in volume table {path}: {e}")
    df["volume_l"] = pd.to_numeric(df["volume_l"], errors="coerce")
    n_bad = int(df["volume_l"].isna().sum())
    if n_bad:
        logger.warning(f"Ignoring {n_bad} volume rows without a numeric volume in {path}")
    return df.dropna(subset=["volume_l"])


def volume_reference(volumes: Optional[pd.DataFrame], start: date, day_map: Dict[int, int]) -> pd.Series:
    """Mean measured water volume (L) per timepoint.

    Measurements are sparse: a random subset of mesocosms, not always on a
    sampling day. Each measurement is placed at its day offset, averaged per
    day, and the four sampling days are linearly interpolated; days outside
    the measured range take the nearest measured value.
    """
    timepoints = sorted(day_map.values())
    if volumes is None or volumes.empty:
        return pd.Series(np.nan, index=pd.Index(timepoints, name="timepoint"), name="volume_ref_l")
    days = np.array([day_offset(d, start) for d in volumes["date"]], dtype=float)
    per_day = pd.Series(volumes["volume_l"].to_numpy(dtype=float), index=days).groupby(level=0).mean().sort_index()
    sampling_days = np.array(sorted(day_map), dtype=float)
    ref = np.interp(sampling_days, per_day.index.to_numpy(dtype=float), per_day.to_numpy(dtype=float))
    out = pd.Series(ref, index=pd.Index([day_map[int(d)] for d in sampling_days], name="timepoint"),
                    name="volume_ref_l")
    logger.info("Volume reference (L): " + ", ".join(f"t{tp}={v:.1f}" for tp, v in out.items()))
    return out


def attach_volume_reference(samples: pd.DataFrame, reference: pd.Series) -> pd.DataFrame:
    out = samples.copy()
    out["volume_ref_l"] = out["timepoint"].map(reference).astype(float)
    return out
