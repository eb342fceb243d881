"""
Hypothesis tests on the finished community table.

The model fitting itself is left to the libraries (statsmodels mixed models,
scikit-bio PERMANOVA/PERMDISP/RDA, pingouin correlation); this module only
builds well-formed matrices and factors for them and collects their numbers
into tidy tables.

Hypotheses
- recovery: pulse-1 treatment x timepoint over the pulse-1 timepoints
- memory:   pulse-1 x pulse-2 treatment over the pulse-2 timepoints
- co-tolerance: taxon responses to insecticide vs. nutrients (Spearman)
- composition: PERMANOVA / PERMDISP on Bray-Curtis, RDA on Hellinger
  abundances, SIMPER contributions of taxa to between-group dissimilarity
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import pingouin as pg
import statsmodels.formula.api as smf
from scipy.spatial.distance import pdist, squareform
from skbio import DistanceMatrix
from skbio.stats.distance import permanova, permdisp
from skbio.stats.ordination import rda
from statsmodels.stats.multitest import multipletests

from .config import AnalysisConfig
from .design import Treatment
from .taxonomy import RICHNESS_TAXA

logger = logging.getLogger(__name__)

CONTROL = Treatment.CONTROL.value
LOG_RESPONSES = {"total_abundance", "cladocerans", "copepods", "rotifers"}


def hellinger(matrix: pd.DataFrame) -> pd.DataFrame:
    """Square root of row proportions; empty rows stay zero."""
    m = matrix.astype(float)
    totals = m.sum(axis=1).replace(0.0, np.nan)
    return np.sqrt(m.div(totals, axis=0)).fillna(0.0)


def sample_ids(table: pd.DataFrame) -> List[str]:
    return [f"M{m}_t{t}" for m, t in zip(table["mesocosm"], table["timepoint"])]


def drop_empty_samples(table: pd.DataFrame, taxa: Sequence[str] = RICHNESS_TAXA) -> pd.DataFrame:
    """Remove samples with no organisms; Bray-Curtis between two empty samples is undefined."""
    empty = table[list(taxa)].sum(axis=1) <= 0
    if empty.any():
        dropped = ", ".join(sample_ids(table.loc[empty]))
        logger.warning(f"Excluding {int(empty.sum())} empty sample(s) from multivariate analyses: {dropped}")
    return table.loc[~empty]


def bray_curtis(table: pd.DataFrame, taxa: Sequence[str] = RICHNESS_TAXA) -> DistanceMatrix:
    """Bray-Curtis dissimilarity on log(x+1) abundances."""
    x = np.log1p(table[list(taxa)].to_numpy(dtype=float))
    d = squareform(pdist(x, metric="braycurtis"))
    return DistanceMatrix(d, ids=sample_ids(table))


def _subset(table: pd.DataFrame, timepoints: Optional[Sequence[int]]) -> pd.DataFrame:
    if timepoints is None:
        return table
    return table[table["timepoint"].isin(list(timepoints))]


def permanova_test(table: pd.DataFrame,
                   factor: str,
                   timepoint: Optional[int] = None,
                   permutations: int = 999,
                   seed: int = 42) -> Dict[str, float]:
    """PERMANOVA for a centroid shift between treatment groups, with PERMDISP for dispersion."""
    sub = _subset(table, [timepoint] if timepoint is not None else None)
    sub = drop_empty_samples(sub)
    dm = bray_curtis(sub)
    grouping = sub[factor].astype(str).to_numpy()
    perm = permanova(dm, grouping, permutations=permutations, seed=seed)
    disp = permdisp(dm, grouping, permutations=permutations, seed=seed)
    return {
        "factor": factor,
        "timepoint": timepoint,
        "n": int(perm["sample size"]),
        "groups": int(perm["number of groups"]),
        "pseudo_f": float(perm["test statistic"]),
        "p_value": float(perm["p-value"]),
        "permdisp_f": float(disp["test statistic"]),
        "permdisp_p": float(disp["p-value"]),
    }


def _constrained_r2(y: np.ndarray, x: np.ndarray) -> float:
    """Share of total inertia in the least-squares fit of centred Y on centred X.

    Equals the summed proportion explained by all constrained RDA axes.
    """
    yc = y - y.mean(axis=0)
    xc = x - x.mean(axis=0)
    total = float(np.sum(yc ** 2))
    if total <= 0:
        return float("nan")
    coef, *_ = np.linalg.lstsq(xc, yc, rcond=None)
    fitted = xc @ coef
    return float(np.sum(fitted ** 2) / total)


def rda_summary(table: pd.DataFrame,
                factor: str,
                timepoint: Optional[int] = None,
                permutations: int = 999,
                seed: int = 42) -> Tuple[Dict[str, float], pd.DataFrame]:
    """RDA of Hellinger abundances constrained by treatment dummies.

    Returns the variance share explained by all constraints together (R2,
    Ezekiel-adjusted R2, row-permutation p-value), the shares of the first
    two axes alone (`rda1_share`, `rda2_share`, from scikit-bio's
    `proportion_explained`), and the site scores on those axes. R2 is
    computed directly because the permutation null refits it many times;
    it is the sum of the constrained axes' shares, not the share of RDA1.
    """
    sub = drop_empty_samples(_subset(table, [timepoint] if timepoint is not None else None))
    ids = sample_ids(sub)
    y = hellinger(sub[list(RICHNESS_TAXA)])
    y.index = ids
    x = pd.get_dummies(sub[factor].astype(str), drop_first=True).astype(float)
    x.index = ids
    n, m = y.shape[0], int(np.linalg.matrix_rank(x.to_numpy())) if x.shape[1] else 0

    yv, xv = y.to_numpy(), x.to_numpy()
    r2 = _constrained_r2(yv, xv) if m else float("nan")
    adj = 1 - (1 - r2) * (n - 1) / (n - m - 1) if n - m - 1 > 0 else float("nan")
    rng = np.random.default_rng(seed)
    if m and np.isfinite(r2):
        null = np.array([_constrained_r2(yv[rng.permutation(n)], xv) for _ in range(permutations)])
        p = float((np.sum(null >= r2 - 1e-12) + 1) / (permutations + 1))
    else:
        p = float("nan")

    scores = pd.DataFrame(index=ids)
    shares = [float("nan"), float("nan")]
    if m:
        ordination = rda(y, x, scale_Y=False, scaling=1)
        explained = ordination.proportion_explained.to_numpy(dtype=float)
        for i in range(min(2, m, explained.size)):
            shares[i] = float(explained[i])
        samples = ordination.samples.iloc[:, :2]
        scores = samples.copy()
        scores.columns = ["RDA1", "RDA2"][: samples.shape[1]]
    scores["mesocosm"] = sub["mesocosm"].to_numpy()
    scores["timepoint"] = sub["timepoint"].to_numpy()
    scores[factor] = sub[factor].astype(str).to_numpy()
    summary = {"factor": factor, "timepoint": timepoint, "n": n, "rank": m,
               "r2": r2, "r2_adj": adj, "rda1_share": shares[0], "rda2_share": shares[1],
               "p_value": p}
    return summary, scores.reset_index(names="sample")


def _control_first(values: pd.Series) -> pd.Categorical:
    """Observed treatment levels as a categorical whose first level (the model reference) is Control."""
    values = values.astype(str)
    levels = sorted(set(values))
    if CONTROL in levels:
        levels.remove(CONTROL)
        levels.insert(0, CONTROL)
    return pd.Categorical(values, categories=levels)


def _model_frame(table: pd.DataFrame, response: str, timepoints: Optional[Sequence[int]]) -> Tuple[pd.DataFrame, str]:
    data = _subset(table, timepoints).copy()
    for col in ("treatment_p1", "treatment_p2", "treatment"):
        data[col] = _control_first(data[col])
    y = response
    if response in LOG_RESPONSES:
        y = f"log_{response}"
        data[y] = np.log1p(data[response].astype(float))
    return data, y


def mixed_model(table: pd.DataFrame,
                response: str,
                hypothesis: str = "recovery",
                timepoints: Optional[Sequence[int]] = None) -> pd.DataFrame:
    """Linear mixed model with a random intercept per mesocosm; tidy fixed-effect table."""
    data, y = _model_frame(table, response, timepoints)
    if hypothesis == "recovery":
        formula = f"{y} ~ C(treatment_p1) * C(timepoint)"
    elif hypothesis == "memory":
        formula = f"{y} ~ C(treatment_p1) * C(treatment_p2)"
        if data["timepoint"].nunique() > 1:
            formula += " + C(timepoint)"
    else:
        raise ValueError(f"Unknown hypothesis {hypothesis!r}; expected 'recovery' or 'memory'")

    model = smf.mixedlm(formula, data, groups=data["mesocosm"])
    result = model.fit(reml=True, method="lbfgs")
    fe = result.fe_params
    out = pd.DataFrame({
        "hypothesis": hypothesis,
        "response": response,
        "term": fe.index,
        "estimate": fe.to_numpy(),
        "std_err": result.bse_fe.reindex(fe.index).to_numpy(),
        "z": result.tvalues.reindex(fe.index).to_numpy(),
        "p_value": result.pvalues.reindex(fe.index).to_numpy(),
    })
    out["n_obs"] = int(result.nobs)
    out["converged"] = bool(result.converged)
    if not result.converged:
        logger.warning(f"Mixed model for {response} ({hypothesis}) did not converge")
    return out


def log_response_ratios(table: pd.DataFrame, timepoint: int, factor: str = "treatment_p1",
                        taxa: Sequence[str] = RICHNESS_TAXA) -> pd.DataFrame:
    """Per-taxon ln((mean_treated + 1) / (mean_control + 1)) for insecticide and nutrient."""
    sub = table[table["timepoint"] == timepoint]
    means = sub.groupby(sub[factor].astype(str))[list(taxa)].mean()
    needed = [CONTROL, Treatment.INSECTICIDE.value, Treatment.NUTRIENT.value]
    missing = [lvl for lvl in needed if lvl not in means.index]
    if missing:
        raise ValueError(f"Timepoint {timepoint} has no samples for {missing} in {factor}")
    present = means.loc[needed].sum(axis=0) > 0
    means = means.loc[:, present]
    ctrl = means.loc[CONTROL]
    return pd.DataFrame({
        "taxon": means.columns,
        "lrr_insecticide": np.log((means.loc[Treatment.INSECTICIDE.value] + 1) / (ctrl + 1)).to_numpy(),
        "lrr_nutrient": np.log((means.loc[Treatment.NUTRIENT.value] + 1) / (ctrl + 1)).to_numpy(),
        "timepoint": timepoint,
    })


def _pingouin_column(res: pd.DataFrame, *names: str) -> str:
    for name in names:
        if name in res.columns:
            return name
    raise KeyError(f"pingouin result has none of {list(names)}: {list(res.columns)}")


def cotolerance(table: pd.DataFrame, timepoint: int, factor: str = "treatment_p1") -> Tuple[Dict[str, float], pd.DataFrame]:
    """Spearman correlation between taxon responses to the two stressors."""
    lrr = log_response_ratios(table, timepoint, factor)
    if len(lrr) < 3:
        logger.warning(f"Co-tolerance at timepoint {timepoint}: only {len(lrr)} taxa present, not tested")
        return {"timepoint": timepoint, "n_taxa": len(lrr), "rho": float("nan"), "p_value": float("nan")}, lrr
    res = pg.corr(lrr["lrr_insecticide"], lrr["lrr_nutrient"], method="spearman")
    row = res.iloc[0]
    # pingouin renamed "CI95%" to "CI95" and "p-val" to "p_val"
    ci = row[_pingouin_column(res, "CI95%", "CI95")]
    p_col = _pingouin_column(res, "p-val", "p_val")
    return {
        "timepoint": timepoint,
        "n_taxa": int(row["n"]),
        "rho": float(row["r"]),
        "ci_low": float(ci[0]),
        "ci_high": float(ci[1]),
        "p_value": float(row[p_col]),
    }, lrr


def simper(table: pd.DataFrame, factor: str, group_a: str, group_b: str,
           taxa: Sequence[str] = RICHNESS_TAXA) -> pd.DataFrame:
    """Average contribution of each taxon to Bray-Curtis dissimilarity between two groups."""
    labels = table[factor].astype(str)
    a = table.loc[labels == group_a, list(taxa)].to_numpy(dtype=float)
    b = table.loc[labels == group_b, list(taxa)].to_numpy(dtype=float)
    if len(a) == 0 or len(b) == 0:
        raise ValueError(f"SIMPER needs samples in both groups: {group_a!r} ({len(a)}), {group_b!r} ({len(b)})")
    diff = np.abs(a[:, None, :] - b[None, :, :])
    denom = a.sum(axis=1)[:, None] + b.sum(axis=1)[None, :]
    valid = denom > 0
    if not valid.any():
        raise ValueError(f"SIMPER: every {group_a!r} / {group_b!r} pair is empty")
    contrib = diff[valid] / denom[valid][:, None]
    avg = contrib.mean(axis=0)
    sd = contrib.std(axis=0, ddof=1) if contrib.shape[0] > 1 else np.full(len(taxa), np.nan)
    ratio = np.full(len(taxa), np.nan)
    np.divide(avg, sd, out=ratio, where=np.nan_to_num(sd) > 0)
    total = avg.sum()
    out = pd.DataFrame({
        "taxon": list(taxa),
        "mean_a": a.mean(axis=0),
        "mean_b": b.mean(axis=0),
        "avg_contribution": avg,
        "sd": sd,
        "ratio": ratio,
        "pct_contribution": avg / total * 100.0 if total > 0 else 0.0,
    }).sort_values("avg_contribution", ascending=False, kind="mergesort")
    out["cumulative_pct"] = out["pct_contribution"].cumsum()
    out.insert(0, "group_b", group_b)
    out.insert(0, "group_a", group_a)
    out.insert(0, "factor", factor)
    return out.reset_index(drop=True)


def factor_for_timepoint(timepoint: int, cfg: AnalysisConfig) -> str:
    """Pulse-1 timepoints are compared by pulse-1 treatment, later ones by the full history."""
    return "treatment" if timepoint in cfg.pulse2_timepoints else "treatment_p1"


def adjust_pvalues(results: pd.DataFrame, method: str = "fdr_bh") -> pd.DataFrame:
    """Adjust fixed-effect p-values within each hypothesis; intercepts are excluded."""
    out = results.copy()
    out["p_adj"] = np.nan
    for _, idx in out.groupby("hypothesis").groups.items():
        block = out.loc[idx]
        mask = (block["term"] != "Intercept") & block["p_value"].notna()
        if mask.any():
            _, p_adj, _, _ = multipletests(block.loc[mask, "p_value"], method=method)
            out.loc[block.index[mask], "p_adj"] = p_adj
    return out


def run_analyses(table: pd.DataFrame, cfg: AnalysisConfig, out_dir: str) -> Dict[str, pd.DataFrame]:
    """Run every test and write one CSV per analysis into out_dir."""
    os.makedirs(out_dir, exist_ok=True)
    results: Dict[str, pd.DataFrame] = {}

    models = []
    for response in cfg.responses:
        for hypothesis, tps in (("recovery", cfg.pulse1_timepoints), ("memory", cfg.pulse2_timepoints)):
            try:
                models.append(mixed_model(table, response, hypothesis, tps))
            except Exception as e:
                logger.error(f"Mixed model for {response} ({hypothesis}) failed: {e}")
    if models:
        results["mixed_models"] = adjust_pvalues(pd.concat(models, ignore_index=True), cfg.fdr_method)

    perm_rows, rda_rows, scores, simper_tables = [], [], [], []
    for tp in cfg.ordination_timepoints:
        factor = factor_for_timepoint(tp, cfg)
        try:
            perm_rows.append(permanova_test(table, factor, tp, cfg.permutations, cfg.seed))
        except Exception as e:
            logger.error(f"PERMANOVA at timepoint {tp} failed: {e}")
        try:
            summary, sc = rda_summary(table, factor, tp, cfg.permutations, cfg.seed)
            rda_rows.append(summary)
            scores.append(sc)
        except Exception as e:
            logger.error(f"RDA at timepoint {tp} failed: {e}")
        sub = drop_empty_samples(table[table["timepoint"] == tp])
        levels = sorted(set(sub[cfg.simper_factor].astype(str)) - {CONTROL})
        for level in levels:
            try:
                s = simper(sub, cfg.simper_factor, CONTROL, level)
                s.insert(0, "timepoint", tp)
                simper_tables.append(s)
            except ValueError as e:
                logger.warning(f"SIMPER {CONTROL} vs {level} at timepoint {tp} skipped: {e}")
    if perm_rows:
        results["permanova"] = pd.DataFrame(perm_rows)
    if rda_rows:
        results["rda"] = pd.DataFrame(rda_rows)
        results["rda_scores"] = pd.concat(scores, ignore_index=True)
    if simper_tables:
        results["simper"] = pd.concat(simper_tables, ignore_index=True)

    try:
        summary, lrr = cotolerance(table, cfg.cotolerance_timepoint)
        results["cotolerance"] = pd.DataFrame([summary])
        results["cotolerance_taxa"] = lrr
    except Exception as e:
        logger.error(f"Co-tolerance test failed: {e}")

    for name, df in results.items():
        path = os.path.join(out_dir, f"{name}.csv")
        df.to_csv(path, index=False, float_format="%.6g")
        logger.info(f"Wrote: {path} (rows={len(df)})")
    return results
