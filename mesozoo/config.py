"""
Run configuration.

A single TOML file (see config.sample.toml) with sections [paths], [protocol],
[[instruments]] and [analysis]. CLI flags override TOML values. Protocol
constants live here rather than in the processing code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .errors import ConfigError

# Analyzed fraction of each collected sample (lab protocol), in millilitres
SUBSAMPLE_VOLUME_ML = 320.0

# Days after the experiment start on which the mesocosms were sampled;
# position i is timepoint i+1
SAMPLING_DAYS = (4, 9, 18, 31)

EXPERIMENT_START = "2022-06-20"

# <prefix><mesocosm>_<YYYYMMDD>[_anything].csv, e.g. M53_20220624.csv
DEFAULT_FILENAME_REGEX = r"^[A-Za-z]*(?P<mesocosm>\d+)[_\-](?P<date>\d{8})"

COMMUNITY_METRICS = ["total_abundance", "richness", "hill_shannon", "hill_simpson",
                     "cladocerans", "copepods", "rotifers"]


def _load_toml(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        import tomllib as _toml  # py311+
    except ModuleNotFoundError:
        import tomli as _toml  # type: ignore
    try:
        with open(path, "rb") as f:
            return _toml.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}")
    except _toml.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {path}: {e}")


@dataclass
class InstrumentSource:
    """One imaging-instrument lens: a directory of per-sample CSV exports."""
    name: str
    lens: str
    directory: str
    pattern: str = "*.csv"
    label_column: str = "Class"
    length_column: Optional[str] = None
    width_column: Optional[str] = None
    filename_regex: str = DEFAULT_FILENAME_REGEX
    sep: str = ","


@dataclass
class AnalysisConfig:
    permutations: int = 999
    seed: int = 42
    responses: List[str] = field(default_factory=lambda: list(COMMUNITY_METRICS))
    pulse1_timepoints: List[int] = field(default_factory=lambda: [1, 2])
    pulse2_timepoints: List[int] = field(default_factory=lambda: [3, 4])
    ordination_timepoints: List[int] = field(default_factory=lambda: [1, 2, 3, 4])
    cotolerance_timepoint: int = 1
    simper_factor: str = "treatment_p1"
    fdr_method: str = "fdr_bh"


@dataclass
class PipelineConfig:
    design: str
    instruments: List[InstrumentSource] = field(default_factory=list)
    microscope: Optional[str] = None
    volumes: Optional[str] = None
    label_table: Optional[str] = None
    out_dir: str = "results"
    output_name: str = "community_table.csv"
    start_date: str = EXPERIMENT_START
    sampling_days: List[int] = field(default_factory=lambda: list(SAMPLING_DAYS))
    subsample_volume_ml: float = SUBSAMPLE_VOLUME_ML
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)

    @property
    def day_to_timepoint(self) -> Dict[int, int]:
        return {int(d): i + 1 for i, d in enumerate(self.sampling_days)}

    @property
    def timepoints(self) -> List[int]:
        return sorted(self.day_to_timepoint.values())

    @property
    def start(self) -> date:
        return date.fromisoformat(str(self.start_date))

    @property
    def output_path(self) -> str:
        if os.path.isabs(self.output_name):
            return self.output_name
        return os.path.join(self.out_dir, self.output_name)

    def validate(self, check_paths: bool = True) -> None:
        if self.subsample_volume_ml is None or float(self.subsample_volume_ml) <= 0:
            raise ConfigError(f"subsample_volume_ml must be positive: {self.subsample_volume_ml}")
        days = [int(d) for d in self.sampling_days]
        if len(days) != 4 or len(set(days)) != 4:
            raise ConfigError(f"sampling_days must list exactly four distinct day offsets: {self.sampling_days}")
        if days != sorted(days):
            raise ConfigError(f"sampling_days must be in increasing order: {self.sampling_days}")
        try:
            self.start
        except ValueError as e:
            raise ConfigError(f"start_date is not an ISO date: {self.start_date!r} ({e})")
        if not self.instruments and not self.microscope:
            raise ConfigError("No observation sources: configure [[instruments]] and/or paths.microscope")
        names = [s.name for s in self.instruments]
        if len(names) != len(set(names)):
            raise ConfigError(f"Instrument names must be unique: {names}")
        tps = set(self.timepoints)
        for key in ("pulse1_timepoints", "pulse2_timepoints", "ordination_timepoints"):
            bad = [t for t in getattr(self.analysis, key) if t not in tps]
            if bad:
                raise ConfigError(f"analysis.{key} has unknown timepoints: {bad}")
        if self.analysis.cotolerance_timepoint not in tps:
            raise ConfigError(f"analysis.cotolerance_timepoint is not a timepoint: {self.analysis.cotolerance_timepoint}")
        if self.analysis.permutations < 1:
            raise ConfigError("analysis.permutations must be >= 1")
        if not check_paths:
            return
        if not os.path.isfile(self.design):
            raise ConfigError(f"Design table not found: {self.design}")
        for p in (self.microscope, self.volumes, self.label_table):
            if p and not os.path.isfile(p):
                raise ConfigError(f"Input file not found: {p}")
        for s in self.instruments:
            if not os.path.isdir(s.directory):
                raise ConfigError(f"Instrument directory not found for {s.name}: {s.directory}")


def config_from_dict(doc: Dict[str, Any], require_design: bool = True) -> PipelineConfig:
    paths = doc.get("paths") or {}
    protocol = doc.get("protocol") or {}
    analysis = doc.get("analysis") or {}
    if require_design and not paths.get("design"):
        raise ConfigError("paths.design is required")

    instruments = []
    for i, raw in enumerate(doc.get("instruments") or []):
        raw = dict(raw)
        for k in ("name", "directory"):
            if not raw.get(k):
                raise ConfigError(f"instruments[{i}] is missing '{k}'")
        raw.setdefault("lens", raw["name"])
        try:
            instruments.append(InstrumentSource(**raw))
        except TypeError as e:
            raise ConfigError(f"instruments[{i}]: {e}")

    try:
        analysis_cfg = AnalysisConfig(**analysis)
    except TypeError as e:
        raise ConfigError(f"[analysis]: {e}")

    kwargs: Dict[str, Any] = {
        "design": paths.get("design") or "",
        "instruments": instruments,
        "microscope": paths.get("microscope"),
        "volumes": paths.get("volumes"),
        "label_table": paths.get("label_table"),
        "analysis": analysis_cfg,
    }
    for k in ("out_dir", "output_name"):
        if paths.get(k):
            kwargs[k] = paths[k]
    for k in ("start_date", "sampling_days", "subsample_volume_ml"):
        if protocol.get(k) is not None:
            kwargs[k] = protocol[k]
    return PipelineConfig(**kwargs)


def load_config(path: Optional[str], overrides: Optional[Dict[str, Any]] = None,
                check_paths: bool = True) -> PipelineConfig:
    """Read the TOML file, apply CLI overrides (None values are ignored), validate."""
    doc = _load_toml(path)
    doc.setdefault("paths", {})
    doc.setdefault("protocol", {})
    for k, v in (overrides or {}).items():
        if v is None:
            continue
        if k in ("start_date", "sampling_days", "subsample_volume_ml"):
            doc["protocol"][k] = v
        else:
            doc["paths"][k] = v
    cfg = config_from_dict(doc)
    cfg.validate(check_paths=check_paths)
    return cfg
