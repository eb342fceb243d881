"""
Read raw particle observations from the instrument exports and the microscope sheet.

Inputs
- Instrument exports: one CSV per sample and lens, one row per detected
  particle. Mesocosm id and sampling date come from the file name
  (default pattern: M53_20220624.csv).
- Microscope sheet: one CSV with columns mesocosm, date, taxon[, count],
  already restricted to large-bodied organisms.

Output
- A long observation table: mesocosm, date, lens, source, raw_label, taxon,
  count_only, count, length, width. Every label is resolved through the
  LabelTable before anything is aggregated; excluded artefacts are dropped.
- A sample-key table (mesocosm, date, lens, source, n_rows) listing every file
  that was read, including exports with zero detections.
"""

from __future__ import annotations

import glob
import logging
import os
import re
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from .config import InstrumentSource, PipelineConfig
from .design import parse_mesocosm_id
from .errors import InvalidSampleError, UnrecognizedTaxonError
from .taxonomy import LabelTable

logger = logging.getLogger(__name__)

MICROSCOPE_LENS = "microscope"

OBSERVATION_COLUMNS = ["mesocosm", "date", "lens", "source", "raw_label", "taxon",
                       "count_only", "count", "length", "width"]
SAMPLE_KEY_COLUMNS = ["mesocosm", "date", "lens", "source", "n_rows"]


def parse_sample_name(path: str, regex: str) -> Tuple[int, pd.Timestamp]:
    """Get (mesocosm, date) from a file name like M53_20220624.csv."""
    base = os.path.basename(path)
    m = re.search(regex, base)
    if not m:
        raise InvalidSampleError(f"Cannot parse mesocosm/date from file name {base!r} (pattern {regex!r})")
    mesocosm = parse_mesocosm_id(m.group("mesocosm"), base)
    try:
        when = pd.to_datetime(m.group("date"), format="%Y%m%d")
    except (ValueError, TypeError) as e:
        raise InvalidSampleError(f"Malformed date {m.group('date')!r} in file name {base!r}: {e}")
    return mesocosm, when


def _numeric_or_nan(df: pd.DataFrame, column: Optional[str]) -> pd.Series:
    if column and column in df.columns:
        return pd.to_numeric(df[column], errors="coerce")
    return pd.Series(np.nan, index=df.index, dtype=float)


def _reject_blank_labels(raw: pd.Series, source: str) -> None:
    """A row without a label cannot be assigned to a taxon; name its CSV line (header is line 1)."""
    blank = raw.isna() | raw.astype(str).str.strip().eq("")
    if blank.any():
        lines = [int(i) + 2 for i in raw.index[blank.to_numpy()]]
        logger.error(f"{source}: {len(lines)} row(s) without a taxon label at line(s) {lines}")
        raise UnrecognizedTaxonError([f"<blank label, line {n}>" for n in lines], source)


def _resolve_labels(raw: pd.Series, labels: LabelTable, source: str) -> pd.DataFrame:
    # check_totality raises with every unknown label of this file at once
    resolved = labels.check_totality(raw.astype(str).unique(), source)
    count_only = {lab: labels.split_count_only(lab)[1] for lab in resolved}
    raw = raw.astype(str)
    return pd.DataFrame({
        "raw_label": raw,
        "taxon": raw.map(resolved),
        "count_only": raw.map(count_only).astype(bool),
    }, index=raw.index)


def read_instrument_file(path: str, source: InstrumentSource, labels: LabelTable) -> Tuple[pd.DataFrame, int]:
    """Parse one per-sample export. Returns (observations, number of raw rows)."""
    mesocosm, when = parse_sample_name(path, source.filename_regex)
    base = os.path.basename(path)
    try:
        df = pd.read_csv(path, sep=source.sep)
    except pd.errors.EmptyDataError:
        df = pd.DataFrame(columns=[source.label_column])
    if source.label_column not in df.columns:
        raise InvalidSampleError(
            f"{base}: label column {source.label_column!r} not found. Available: {list(df.columns)}"
        )
    n_rows = len(df)
    _reject_blank_labels(df[source.label_column], f"{source.name}/{base}")
    res = _resolve_labels(df[source.label_column], labels, f"{source.name}/{base}")
    obs = pd.DataFrame({
        "mesocosm": mesocosm,
        "date": when,
        "lens": source.lens,
        "source": base,
        "raw_label": res["raw_label"],
        "taxon": res["taxon"],
        "count_only": res["count_only"],
        "count": 1.0,
        "length": _numeric_or_nan(df, source.length_column),
        "width": _numeric_or_nan(df, source.width_column),
    }, index=df.index, columns=OBSERVATION_COLUMNS)
    return obs, n_rows


def read_instrument_source(source: InstrumentSource, labels: LabelTable) -> Tuple[pd.DataFrame, pd.DataFrame]:
    files = sorted(glob.glob(os.path.join(source.directory, source.pattern)))
    if not files:
        logger.warning(f"No files matching {source.pattern} in {source.directory} ({source.name})")
    frames: List[pd.DataFrame] = []
    keys = []
    for path in tqdm(files, desc=f"Reading {source.name}", unit="file", leave=False):
        obs, n_rows = read_instrument_file(path, source, labels)
        frames.append(obs)
        mesocosm, when = parse_sample_name(path, source.filename_regex)
        keys.append({"mesocosm": mesocosm, "date": when, "lens": source.lens,
                     "source": os.path.basename(path), "n_rows": n_rows})
        if n_rows == 0:
            logger.info(f"{source.name}: {os.path.basename(path)} has zero detections")
    key_df = pd.DataFrame(keys, columns=SAMPLE_KEY_COLUMNS)
    dupes = key_df[key_df.duplicated(["mesocosm", "date"], keep=False)]
    if not dupes.empty:
        raise InvalidSampleError(
            f"{source.name}: more than one export for the same sample: {sorted(dupes['source'])}"
        )
    frames = [f for f in frames if not f.empty]
    obs = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=OBSERVATION_COLUMNS)
    logger.info(f"{source.name}: {len(files)} files, {len(obs)} rows")
    return obs, key_df


def read_microscope(path: str, labels: LabelTable) -> Tuple[pd.DataFrame, pd.DataFrame]:
    base = os.path.basename(path)
    df = pd.read_csv(path)
    df.columns = df.columns.str.strip().str.lower()
    missing = [c for c in ("mesocosm", "date", "taxon") if c not in df.columns]
    if missing:
        raise InvalidSampleError(f"Microscope file {base} is missing columns: {missing}")
    _reject_blank_labels(df["taxon"], base)
    df["mesocosm"] = [parse_mesocosm_id(v, base) for v in df["mesocosm"]]
    try:
        df["date"] = pd.to_datetime(df["date"]).dt.normalize()
    except (ValueError, TypeError) as e:
        raise InvalidSampleError(f"Malformed date in microscope file {base}: {e}")
    if "count" in df.columns:
        counts = pd.to_numeric(df["count"], errors="coerce")
        if counts.isna().any() or (counts < 0).any():
            raise InvalidSampleError(f"Microscope file {base} has missing or negative counts")
    else:
        counts = pd.Series(1.0, index=df.index)
    res = _resolve_labels(df["taxon"], labels, base)
    obs = pd.DataFrame({
        "mesocosm": df["mesocosm"],
        "date": df["date"],
        "lens": MICROSCOPE_LENS,
        "source": base,
        "raw_label": res["raw_label"],
        "taxon": res["taxon"],
        "count_only": res["count_only"],
        "count": counts.astype(float),
        "length": _numeric_or_nan(df, "length"),
        "width": _numeric_or_nan(df, "width"),
    }, index=df.index, columns=OBSERVATION_COLUMNS)
    keys = (obs.groupby(["mesocosm", "date"], as_index=False).size()
            .rename(columns={"size": "n_rows"}))
    keys["lens"] = MICROSCOPE_LENS
    keys["source"] = base
    logger.info(f"microscope: {len(obs)} rows for {len(keys)} samples from {base}")
    return obs, keys[SAMPLE_KEY_COLUMNS]


def drop_excluded(obs: pd.DataFrame) -> pd.DataFrame:
    """Remove rows whose label resolved to an excluded artefact."""
    excluded = obs["taxon"].isna()
    if excluded.any():
        counts = obs.loc[excluded, "raw_label"].str.lower().value_counts()
        logger.info(f"Dropped {int(excluded.sum())} excluded artefact rows: {counts.to_dict()}")
    return obs.loc[~excluded].reset_index(drop=True)


def read_observations(config: PipelineConfig, labels: LabelTable) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Read every configured source. Returns (observations, sample keys)."""
    obs_frames: List[pd.DataFrame] = []
    key_frames: List[pd.DataFrame] = []
    for source in config.instruments:
        obs, keys = read_instrument_source(source, labels)
        obs_frames.append(obs)
        key_frames.append(keys)
    if config.microscope:
        obs, keys = read_microscope(config.microscope, labels)
        obs_frames.append(obs)
        key_frames.append(keys)
    obs_frames = [f for f in obs_frames if not f.empty]
    key_frames = [f for f in key_frames if not f.empty]
    obs = pd.concat(obs_frames, ignore_index=True) if obs_frames else pd.DataFrame(columns=OBSERVATION_COLUMNS)
    keys = pd.concat(key_frames, ignore_index=True) if key_frames else pd.DataFrame(columns=SAMPLE_KEY_COLUMNS)
    obs = drop_excluded(obs)
    obs["mesocosm"] = obs["mesocosm"].astype(int)
    obs["date"] = pd.to_datetime(obs["date"])
    obs["count"] = obs["count"].astype(float)
    if len(keys):
        keys["mesocosm"] = keys["mesocosm"].astype(int)
        keys["date"] = pd.to_datetime(keys["date"])
    logger.info(f"Observations: {len(obs)} rows, {obs['taxon'].nunique()} taxa, {len(keys)} sample files")
    return obs, keys
