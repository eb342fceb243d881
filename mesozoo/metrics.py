"""Community metrics per sample: abundance, richness, Hill diversity, functional groups."""

from __future__ import annotations

import logging
from typing import Dict, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import entropy

from .errors import InvariantError
from .taxonomy import CANONICAL_TAXA, FUNCTIONAL_GROUPS, RICHNESS_TAXA

logger = logging.getLogger(__name__)

METRIC_COLUMNS = ["total_abundance", "richness", "hill_shannon", "hill_simpson"] + list(FUNCTIONAL_GROUPS)


def hill_number(abundances, q: float) -> float:
    """Hill diversity of order q: (sum p_i^q)^(1/(1-q)), exp(Shannon entropy) at q=1.

    Returns 0 when nothing is present.
    """
    x = np.asarray(abundances, dtype=float)
    x = x[x > 0]
    if x.size == 0:
        return 0.0
    p = x / x.sum()
    if q == 1:
        return float(np.exp(entropy(p)))
    return float(np.sum(p ** q) ** (1.0 / (1.0 - q)))


def _hill_indices(eligible: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    totals = eligible.sum(axis=1, keepdims=True)
    with np.errstate(invalid="ignore", divide="ignore"):
        p = eligible / totals
        shannon = np.exp(entropy(eligible, axis=1))
        simpson = 1.0 / np.sum(p ** 2, axis=1)
    empty = totals[:, 0] <= 0
    shannon[empty] = 0.0
    simpson[empty] = 0.0
    return shannon, simpson


def community_metrics(samples: pd.DataFrame,
                      taxa: Sequence[str] = CANONICAL_TAXA,
                      richness_taxa: Sequence[str] = RICHNESS_TAXA,
                      groups: Dict[str, Sequence[str]] = FUNCTIONAL_GROUPS) -> pd.DataFrame:
    """Add total_abundance, richness, hill_shannon, hill_simpson and functional-group sums.

    The egg stage counts toward total abundance but not toward richness or
    diversity. Samples with nothing present get both Hill indices = 0.
    """
    out = samples.copy()
    abund = out[list(taxa)].astype(float)
    eligible = out[list(richness_taxa)].astype(float).to_numpy()

    out["total_abundance"] = abund.sum(axis=1)
    out["richness"] = (eligible > 0).sum(axis=1).astype(int)
    shannon, simpson = _hill_indices(eligible)
    out["hill_shannon"] = shannon
    out["hill_simpson"] = simpson
    zero = out["richness"] == 0
    out.loc[zero, ["hill_shannon", "hill_simpson"]] = 0.0

    for group, members in groups.items():
        out[group] = abund[list(members)].sum(axis=1)

    n_zero = int(zero.sum())
    if n_zero:
        logger.info(f"{n_zero} sample(s) with zero richness; diversity set to 0")
    return out


def check_metric_invariants(table: pd.DataFrame,
                            taxa: Sequence[str] = CANONICAL_TAXA,
                            groups: Dict[str, Sequence[str]] = FUNCTIONAL_GROUPS,
                            rtol: float = 1e-9) -> None:
    """Raise InvariantError if derived metrics disagree with the abundance columns."""
    problems = []
    members = [t for g in groups.values() for t in g]
    if len(members) != len(set(members)):
        problems.append("functional groups overlap")
    abund = table[list(taxa)].astype(float)
    if (abund < 0).to_numpy().any():
        problems.append("negative abundances")
    if not np.allclose(abund.sum(axis=1), table["total_abundance"], rtol=rtol, atol=1e-9):
        problems.append("taxon abundances do not sum to total_abundance")
    for group in groups:
        if (table[group] > table["total_abundance"] * (1 + rtol) + 1e-9).any():
            problems.append(f"{group} exceeds total_abundance")
    zero = table["richness"] == 0
    if (table.loc[zero, ["hill_shannon", "hill_simpson"]] != 0).to_numpy().any():
        problems.append("zero-richness samples with non-zero diversity")
    if table[["hill_shannon", "hill_simpson"]].isna().to_numpy().any():
        problems.append("undefined diversity values")
    if problems:
        raise InvariantError("Community metric check failed: " + "; ".join(problems))
