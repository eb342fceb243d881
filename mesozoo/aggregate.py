"""Collapse particle rows into one row per (mesocosm, timepoint) with a count per taxon."""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, Iterable, List, Sequence

import pandas as pd

from .design import FLAG_COLUMNS, assign_timepoints
from .errors import CompletenessError
from .taxonomy import CANONICAL_TAXA

logger = logging.getLogger(__name__)

SAMPLE_INDEX = ["mesocosm", "timepoint"]
IDENTITY_COLUMNS = ["mesocosm", "date", "day", "timepoint"] + FLAG_COLUMNS + [
    "treatment_p1", "treatment_p2", "treatment", "backfilled"]


def count_taxa(obs: pd.DataFrame, start: date, day_map: Dict[int, int]) -> pd.DataFrame:
    """Long counts per (mesocosm, timepoint, taxon); instrument rows count 1 each."""
    if obs.empty:
        return pd.DataFrame(columns=SAMPLE_INDEX + ["taxon", "count"])
    obs = assign_timepoints(obs, start, day_map)
    counts = obs.groupby(SAMPLE_INDEX + ["taxon"], as_index=False)["count"].sum()
    logger.info(f"Counted {int(counts['count'].sum())} organisms in "
                f"{counts[SAMPLE_INDEX].drop_duplicates().shape[0]} samples")
    return counts


def pivot_samples(counts: pd.DataFrame,
                  sample_keys: pd.DataFrame,
                  start: date,
                  day_map: Dict[int, int],
                  taxa: Sequence[str] = CANONICAL_TAXA) -> pd.DataFrame:
    """Wide sample x taxon matrix indexed by (mesocosm, timepoint).

    Every taxon gets a column; unobserved cells are 0. Samples whose export
    exists but holds zero detections are kept as explicit zero rows.
    """
    if counts.empty:
        mat = pd.DataFrame(columns=list(taxa), index=pd.MultiIndex.from_tuples([], names=SAMPLE_INDEX), dtype=float)
    else:
        mat = counts.pivot_table(index=SAMPLE_INDEX, columns="taxon", values="count",
                                 aggfunc="sum", fill_value=0.0)
    unknown = [c for c in mat.columns if c not in taxa]
    if unknown:
        raise CompletenessError(f"Counts contain taxa outside the canonical list: {unknown}")
    mat = mat.reindex(columns=list(taxa), fill_value=0.0)
    mat.columns.name = None

    if sample_keys is not None and len(sample_keys):
        keyed = assign_timepoints(sample_keys, start, day_map)
        seen = pd.MultiIndex.from_frame(keyed[SAMPLE_INDEX].drop_duplicates().astype(int))
        empty = seen.difference(mat.index)
        for m, tp in empty:
            logger.info(f"Sample M{m} timepoint {tp} was analysed with zero detections")
        mat = mat.reindex(mat.index.union(seen), fill_value=0.0)

    mat = mat.fillna(0.0).astype(float)
    mat["backfilled"] = False
    return mat.sort_index()


def backfill_missing_samples(mat: pd.DataFrame, mesocosms: Iterable[int], timepoints: Iterable[int]) -> pd.DataFrame:
    """Insert an all-zero row for every planned (mesocosm, timepoint) with no observations at all."""
    expected = pd.MultiIndex.from_product([sorted(set(mesocosms)), sorted(set(timepoints))], names=SAMPLE_INDEX)
    missing = expected.difference(mat.index)
    if len(missing) == 0:
        return mat
    for m, tp in missing:
        logger.warning(f"No observations for mesocosm {m} at timepoint {tp}; inserting an all-zero sample")
    out = mat.reindex(mat.index.union(expected), fill_value=0.0)
    out["backfilled"] = out["backfilled"].astype(bool)
    out.loc[missing, "backfilled"] = True
    logger.warning(f"Backfilled {len(missing)} sample(s) with zero abundances")
    return out.sort_index()


def assert_complete(samples: pd.DataFrame, n_mesocosms: int, n_timepoints: int) -> None:
    dupes = samples[samples.duplicated(SAMPLE_INDEX, keep=False)]
    if not dupes.empty:
        pairs = sorted(set(map(tuple, dupes[SAMPLE_INDEX].values.tolist())))
        raise CompletenessError(f"Duplicate (mesocosm, timepoint) samples: {pairs}")
    expected = n_mesocosms * n_timepoints
    if len(samples) != expected:
        raise CompletenessError(
            f"Expected {expected} samples ({n_mesocosms} mesocosms x {n_timepoints} timepoints), got {len(samples)}"
        )


def assemble_samples(mat: pd.DataFrame,
                     design: pd.DataFrame,
                     start: date,
                     day_map: Dict[int, int],
                     taxa: Sequence[str] = CANONICAL_TAXA) -> pd.DataFrame:
    """Join design treatments onto the sample matrix and add day/date columns."""
    timepoint_day = {tp: day for day, tp in day_map.items()}
    out = mat.reset_index()
    out["mesocosm"] = out["mesocosm"].astype(int)
    out["timepoint"] = out["timepoint"].astype(int)
    out["day"] = out["timepoint"].map(timepoint_day).astype(int)
    out["date"] = pd.Timestamp(start) + pd.to_timedelta(out["day"], unit="D")
    out = out.merge(design, on="mesocosm", how="left", validate="many_to_one")
    assert_complete(out, design["mesocosm"].nunique(), len(day_map))
    cols: List[str] = IDENTITY_COLUMNS + list(taxa)
    return out[cols].sort_values(SAMPLE_INDEX).reset_index(drop=True)
