#!/usr/bin/env python3
"""
mesozoo command line

Subcommands:
- build:    raw exports + design -> community table CSV
- analyze:  community table -> mixed models, PERMANOVA, RDA, SIMPER, co-tolerance
- all:      build then analyze

Config:
- A TOML file (see config.sample.toml) with [paths], [protocol],
  [[instruments]] and [analysis]. CLI flags override TOML.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Dict, Optional

from . import __version__
from .analysis import run_analyses
from .config import _load_toml, config_from_dict, load_config
from .errors import ConfigError, MesozooError
from .pipeline import load_community_table, run_build, setup_logging


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "design": getattr(args, "design", None),
        "microscope": getattr(args, "microscope", None),
        "volumes": getattr(args, "volumes", None),
        "label_table": getattr(args, "label_table", None),
        "out_dir": getattr(args, "out_dir", None),
        "output_name": getattr(args, "output_name", None),
        "start_date": getattr(args, "start_date", None),
        "subsample_volume_ml": getattr(args, "subsample_volume_ml", None),
    }


def sub_build(args: argparse.Namespace) -> int:
    cfg = load_config(args.config, _overrides(args))
    run_build(cfg)
    return 0


def sub_analyze(args: argparse.Namespace) -> int:
    # only [analysis] and out_dir are used; raw input paths need not exist
    doc = _load_toml(args.config)
    if args.out_dir:
        doc.setdefault("paths", {})["out_dir"] = args.out_dir
    cfg = config_from_dict(doc, require_design=False)
    table_path = args.table or cfg.output_path
    if not os.path.isfile(table_path):
        raise ConfigError(f"Community table not found: {table_path} (run 'mesozoo build' first)")
    table = load_community_table(table_path)
    run_analyses(table, cfg.analysis, os.path.join(cfg.out_dir, "analysis"))
    return 0


def sub_all(args: argparse.Namespace) -> int:
    cfg = load_config(args.config, _overrides(args))
    table = run_build(cfg)
    run_analyses(table, cfg.analysis, os.path.join(cfg.out_dir, "analysis"))
    return 0


def _add_build_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--design", help="Design CSV (mesocosm + four pulse flags)")
    p.add_argument("--microscope", help="Microscope counts CSV")
    p.add_argument("--volumes", help="Water-volume CSV (date, mesocosm, volume_l)")
    p.add_argument("--label-table", dest="label_table", help="YAML label table (defaults to the bundled one)")
    p.add_argument("--output-name", dest="output_name", help="Community table file name (under --out-dir)")
    p.add_argument("--start-date", dest="start_date", help="Experiment start date (YYYY-MM-DD)")
    p.add_argument("--subsample-volume-ml", dest="subsample_volume_ml", type=float,
                   help="Analysed subsample volume in mL (default 320)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Mesocosm zooplankton community pipeline")
    p.add_argument("--config", help="TOML with [paths], [protocol], [[instruments]], [analysis]")
    p.add_argument("--out-dir", dest="out_dir", help="Output directory (default: results)")
    p.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--version", action="version", version=f"mesozoo {__version__}")
    sp = p.add_subparsers(dest="cmd", required=True)

    pb = sp.add_parser("build", help="Build the community table from raw exports")
    _add_build_args(pb)

    pa = sp.add_parser("analyze", help="Run statistics on an existing community table")
    pa.add_argument("--table", help="Community table CSV (default: <out_dir>/community_table.csv)")

    pall = sp.add_parser("all", help="Run build -> analyze")
    _add_build_args(pall)
    return p


def main(argv: Optional[list] = None) -> None:
    args = build_parser().parse_args(argv)
    out_dir = args.out_dir
    if out_dir is None and args.config:
        try:
            out_dir = (_load_toml(args.config).get("paths") or {}).get("out_dir")
        except ConfigError:
            # reported by the handler below once logging is up
            out_dir = None
    logger = setup_logging(out_dir or "results", args.log_level)
    logger.info(f"mesozoo {__version__}: {args.cmd}")

    handlers = {"build": sub_build, "analyze": sub_analyze, "all": sub_all}
    try:
        rc = handlers[args.cmd](args)
    except ConfigError as e:
        logger.error(f"[{args.cmd}] configuration error: {e}")
        rc = 2
    except MesozooError as e:
        logger.error(f"[{args.cmd}] {e}")
        rc = 1
    raise SystemExit(rc)


if __name__ == "__main__":
    main(sys.argv[1:])
