"""Synthetic inputs shared by the tests: a tiny raw dataset on disk and a simulated community table."""

import itertools
import os

import numpy as np
import pandas as pd

from mesozoo.aggregate import IDENTITY_COLUMNS
from mesozoo.config import InstrumentSource, PipelineConfig
from mesozoo.design import derive_treatments
from mesozoo.metrics import community_metrics
from mesozoo.pipeline import OUTPUT_COLUMNS
from mesozoo.taxonomy import CANONICAL_TAXA
from mesozoo.volume import normalize_per_litre

START = "2022-06-20"
SAMPLING_DATES = {1: "20220624", 2: "20220629", 3: "20220708", 4: "20220721"}


def _write_export(directory, mesocosm, timepoint, labels):
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"M{mesocosm}_{SAMPLING_DATES[timepoint]}.csv")
    pd.DataFrame({
        "Class": labels,
        "Length": np.linspace(200, 900, len(labels)) if labels else [],
        "Width": np.linspace(50, 300, len(labels)) if labels else [],
    }).to_csv(path, index=False)
    return path


def write_small_dataset(root, extra_label=None, drop_design=None):
    """Three mesocosms x four timepoints; M53 has no sample at all at timepoint 4.

    M52 timepoint 2 has an export with zero detections. Every documented
    spelling variant appears somewhere.
    """
    design = pd.DataFrame({
        "mesocosm": ["M51", "M52", "M53"],
        "pesticide_p1": ["0", "1", "yes"],
        "nutrient_p1": ["0", "0", "yes"],
        "pesticide_p2": ["false", "0", "1"],
        "nutrient_p2": ["true", "0", "0"],
    })
    if drop_design is not None:
        design = design[design["mesocosm"] != f"M{drop_design}"]
    design.to_csv(os.path.join(root, "design.csv"), index=False)

    lens2x = os.path.join(root, "imager_2x")
    lens4x = os.path.join(root, "imager_4x")
    for m, tp in itertools.product([51, 52, 53], [1, 2, 3, 4]):
        if m == 53 and tp == 4:
            continue
        if m == 52 and tp == 2:
            _write_export(lens2x, m, tp, [])
            _write_export(lens4x, m, tp, [])
            continue
        big = ["Daphnia", "daphnia_count", "Cyclopoid", "ephippium", "Bubble"]
        small = ["Keratella quadrata", "keratela_quadrata", "Polyartha", "nauplius", "fibre count"]
        if extra_label and m == 51 and tp == 3:
            small = small + [extra_label]
        _write_export(lens2x, m, tp, big)
        _write_export(lens4x, m, tp, small)

    pd.DataFrame({
        "mesocosm": [51, 53, 53],
        "date": ["2022-06-24", "2022-07-08", "2022-07-08"],
        "taxon": ["Simocephalus", "chydorid", "Asplancha"],
        "count": [2, 1, 3],
    }).to_csv(os.path.join(root, "microscope.csv"), index=False)

    pd.DataFrame({
        "date": ["2022-06-24", "2022-06-24", "2022-07-08"],
        "mesocosm": [51, 53, 52],
        "volume_l": [100.0, 110.0, 95.0],
    }).to_csv(os.path.join(root, "volumes.csv"), index=False)

    return PipelineConfig(
        design=os.path.join(root, "design.csv"),
        instruments=[
            InstrumentSource(name="imager_2x", lens="2x", directory=lens2x,
                             length_column="Length", width_column="Width"),
            InstrumentSource(name="imager_4x", lens="4x", directory=lens4x,
                             length_column="Length", width_column="Width"),
        ],
        microscope=os.path.join(root, "microscope.csv"),
        volumes=os.path.join(root, "volumes.csv"),
        out_dir=os.path.join(root, "results"),
        start_date=START,
    )


def synthetic_table(replicates=2, seed=0):
    """Simulated community table: every pulse-1 x pulse-2 history, four timepoints.

    Insecticide suppresses cladocerans, nutrients boost rotifers, and the
    pulse-1 effect fades over time.
    """
    rng = np.random.default_rng(seed)
    flags = list(itertools.product([False, True], repeat=4))
    rows = []
    m = 1
    for _ in range(replicates):
        for p1, n1, p2, n2 in flags:
            rows.append({"mesocosm": m, "pesticide_p1": p1, "nutrient_p1": n1,
                         "pesticide_p2": p2, "nutrient_p2": n2})
            m += 1
    design = derive_treatments(pd.DataFrame(rows))

    base = np.array([8, 4, 2, 1, 3, 2, 10, 5, 12, 20, 15, 6, 9, 3, 4, 2, 1], dtype=float)
    cladoceran_idx = list(range(6))
    rotifer_idx = list(range(9, 15))
    samples = []
    for d in design.itertuples(index=False):
        for tp, day in zip([1, 2, 3, 4], [4, 9, 18, 31]):
            lam = base.copy()
            fade = 1.0 / tp
            if d.pesticide_p1:
                lam[cladoceran_idx] *= max(0.05, 1 - 0.9 * fade)
            if d.nutrient_p1:
                lam[rotifer_idx] *= 1 + 2 * fade
            if tp >= 3 and d.pesticide_p2:
                lam[cladoceran_idx] *= 0.3
            if tp >= 3 and d.nutrient_p2:
                lam[rotifer_idx] *= 2.5
            counts = rng.poisson(lam)
            row = d._asdict()
            row.update({"timepoint": tp, "day": day,
                        "date": pd.Timestamp(START) + pd.Timedelta(days=day),
                        "backfilled": False, "volume_ref_l": 100.0})
            row.update(dict(zip(CANONICAL_TAXA, counts.astype(float))))
            samples.append(row)
    table = pd.DataFrame(samples)[IDENTITY_COLUMNS + ["volume_ref_l"] + list(CANONICAL_TAXA)]
    table = normalize_per_litre(table)
    table = community_metrics(table)
    return table[OUTPUT_COLUMNS]
