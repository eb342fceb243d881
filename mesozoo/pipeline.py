"""
Build the analysis-ready community table.

Stages run in order on immutable inputs; each returns a new table:

    ingest -> label totality -> join keys -> count/pivot -> zero backfill
    -> design join -> per-litre scaling -> volume reference -> metrics

Any fatal data-quality problem raises before the output CSV is touched. The CSV
is written to a temporary file and moved into place, so a failed run never
leaves a partial table behind.
"""

from __future__ import annotations

import logging
import os
import tempfile
from typing import List, Optional

import pandas as pd

from .aggregate import IDENTITY_COLUMNS, assemble_samples, backfill_missing_samples, count_taxa, pivot_samples
from .config import PipelineConfig
from .design import TREATMENT_LEVELS, HISTORY_LEVELS, check_join_keys, load_design
from .errors import CompletenessError
from .ingest import read_observations
from .metrics import METRIC_COLUMNS, check_metric_invariants, community_metrics
from .taxonomy import CANONICAL_TAXA, LabelTable
from .volume import attach_volume_reference, load_volumes, normalize_per_litre, volume_reference

logger = logging.getLogger(__name__)

OUTPUT_COLUMNS: List[str] = IDENTITY_COLUMNS + ["volume_ref_l"] + list(CANONICAL_TAXA) + METRIC_COLUMNS


def setup_logging(output_dir: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Log to the console and, when an output directory is given, to mesozoo.log inside it."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(output_dir, "mesozoo.log")))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("mesozoo")


def build_community_table(config: PipelineConfig, labels: Optional[LabelTable] = None) -> pd.DataFrame:
    """Run every stage and return one row per (mesocosm, timepoint)."""
    labels = labels or LabelTable.from_yaml(config.label_table)
    start = config.start
    day_map = config.day_to_timepoint

    design = load_design(config.design)
    obs, sample_keys = read_observations(config, labels)

    seen = set(obs["mesocosm"]) | set(sample_keys["mesocosm"])
    check_join_keys(seen, design)

    counts = count_taxa(obs, start, day_map)
    mat = pivot_samples(counts, sample_keys, start, day_map)
    mat = backfill_missing_samples(mat, design["mesocosm"], config.timepoints)
    samples = assemble_samples(mat, design, start, day_map)

    samples = normalize_per_litre(samples, config.subsample_volume_ml)
    volumes = load_volumes(config.volumes) if config.volumes else None
    samples = attach_volume_reference(samples, volume_reference(volumes, start, day_map))

    table = community_metrics(samples)
    check_metric_invariants(table)
    table = table[OUTPUT_COLUMNS]
    logger.info(f"Community table: {len(table)} samples "
                f"({table['mesocosm'].nunique()} mesocosms x {table['timepoint'].nunique()} timepoints), "
                f"{int(table['backfilled'].sum())} backfilled")
    return table


def write_community_table(table: pd.DataFrame, path: str) -> str:
    """Write the table in one step: temporary file in the same directory, then replace."""
    out_dir = os.path.dirname(os.path.abspath(path))
    os.makedirs(out_dir, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".community_", suffix=".csv", dir=out_dir)
    try:
        with os.fdopen(fd, "w", newline="") as fh:
            out = table.copy()
            out["date"] = pd.to_datetime(out["date"]).dt.strftime("%Y-%m-%d")
            out.to_csv(fh, index=False, float_format="%.10g")
        os.replace(tmp, path)
    except Exception:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    logger.info(f"Wrote: {path} (rows={len(table)})")
    return path


def load_community_table(path: str) -> pd.DataFrame:
    """Read a community table back and check the column contract downstream code relies on."""
    df = pd.read_csv(path)
    missing = [c for c in OUTPUT_COLUMNS if c not in df.columns]
    if missing:
        raise CompletenessError(f"{path} is not a community table; missing columns: {missing}")
    try:
        df["date"] = pd.to_datetime(df["date"])
    except (ValueError, TypeError) as e:
        raise CompletenessError(f"{path} has malformed dates: {e}")
    if df.duplicated(["mesocosm", "timepoint"]).any():
        raise CompletenessError(f"{path} has duplicate (mesocosm, timepoint) rows")
    df["treatment_p1"] = pd.Categorical(df["treatment_p1"], categories=TREATMENT_LEVELS)
    df["treatment_p2"] = pd.Categorical(df["treatment_p2"], categories=TREATMENT_LEVELS)
    df["treatment"] = pd.Categorical(df["treatment"], categories=HISTORY_LEVELS)
    df["backfilled"] = df["backfilled"].astype(str).str.lower().isin(["true", "1"])
    return df[OUTPUT_COLUMNS]


def run_build(config: PipelineConfig) -> pd.DataFrame:
    table = build_community_table(config)
    write_community_table(table, config.output_path)
    return table
