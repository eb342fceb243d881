"""
Controlled zooplankton taxonomy and raw-label normalization.

The instruments and the microscope sheet spell the same organism in many ways
(casing, typos, plurals, lens suffixes, "count only" marker rows). All of them
resolve through one declarative table to the 17 canonical taxa below. Two
labels are known non-taxa artefacts and are excluded. Anything else is fatal.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import yaml

from .errors import ConfigError, UnrecognizedTaxonError

logger = logging.getLogger(__name__)

CLADOCERANS = ("daphnia", "ceriodaphnia", "simocephalus", "scapholeberis", "chydoridae", "bosmina")
COPEPODS = ("cyclopoida", "calanoida", "nauplii")
ROTIFERS = ("keratella_quadrata", "keratella_cochlearis", "brachionus", "polyarthra", "asplanchna", "lecane")
UNGROUPED = ("ostracoda",)
EGG_STAGE_TAXON = "ephippia"

CANONICAL_TAXA: Tuple[str, ...] = CLADOCERANS + COPEPODS + ROTIFERS + UNGROUPED + (EGG_STAGE_TAXON,)

# Disjoint; the egg stage and ostracods belong to no group
FUNCTIONAL_GROUPS: Dict[str, Tuple[str, ...]] = {
    "cladocerans": CLADOCERANS,
    "copepods": COPEPODS,
    "rotifers": ROTIFERS,
}

# Taxa that can indicate a distinct species being present
RICHNESS_TAXA: Tuple[str, ...] = tuple(t for t in CANONICAL_TAXA if t != EGG_STAGE_TAXON)

DEFAULT_LABEL_TABLE = os.path.join(os.path.dirname(__file__), "data", "taxon_labels.yaml")


def normalize_key(label: str) -> str:
    """Case-insensitive lookup key: lower case, '_'/'-' as spaces, single spaces."""
    if label is None:
        return ""
    s = str(label).strip().lower()
    s = re.sub(r"[_\-]+", " ", s)
    s = re.sub(r"\s+", " ", s)
    return s.strip()


class LabelTable:
    """Many-to-one map of raw label variants to canonical taxa."""

    def __init__(self,
                 variants: Dict[str, str],
                 excluded: Iterable[str] = (),
                 count_only_suffixes: Iterable[str] = ()):
        self.variants: Dict[str, str] = {}
        for raw, taxon in variants.items():
            key = normalize_key(raw)
            if taxon not in CANONICAL_TAXA:
                raise ConfigError(f"Label {raw!r} maps to unknown taxon {taxon!r}")
            previous = self.variants.get(key)
            if previous is not None and previous != taxon:
                raise ConfigError(f"Label {raw!r} maps to both {previous!r} and {taxon!r}")
            self.variants[key] = taxon
        # canonical names always resolve to themselves
        for taxon in CANONICAL_TAXA:
            self.variants.setdefault(normalize_key(taxon), taxon)

        self.excluded: FrozenSet[str] = frozenset(normalize_key(x) for x in excluded)
        clash = self.excluded & set(self.variants)
        if clash:
            raise ConfigError(f"Labels both mapped and excluded: {sorted(clash)}")
        # longest first so "count only" wins over "count"
        self.count_only_suffixes: List[str] = sorted(
            {normalize_key(s) for s in count_only_suffixes if normalize_key(s)},
            key=len, reverse=True,
        )

    @classmethod
    def from_yaml(cls, path: Optional[str] = None) -> "LabelTable":
        path = path or DEFAULT_LABEL_TABLE
        with open(path, "r", encoding="utf-8") as fh:
            doc = yaml.safe_load(fh) or {}
        taxa = doc.get("taxa") or {}
        if not isinstance(taxa, dict):
            raise ConfigError(f"'taxa' in {path} must be a mapping of taxon -> [variants]")
        missing = [t for t in CANONICAL_TAXA if t not in taxa]
        if missing:
            raise ConfigError(f"Label table {path} has no entry for taxa: {missing}")
        variants: Dict[str, str] = {}
        for taxon, raws in taxa.items():
            for raw in raws or []:
                key = normalize_key(raw)
                if variants.get(key, taxon) != taxon:
                    raise ConfigError(f"Label {raw!r} listed under both {variants[key]!r} and {taxon!r} in {path}")
                variants[key] = taxon
        table = cls(variants, doc.get("excluded") or [], doc.get("count_only_suffixes") or [])
        logger.debug(f"Loaded {len(table.variants)} label variants from {path}")
        return table

    def split_count_only(self, label: str) -> Tuple[str, bool]:
        """Return (key without count-only suffix, whether the suffix was present)."""
        key = normalize_key(label)
        for suffix in self.count_only_suffixes:
            if key.endswith(" " + suffix):
                return key[: -len(suffix) - 1].strip(), True
        return key, False

    def is_excluded(self, label: str) -> bool:
        return normalize_key(label) in self.excluded

    def resolve(self, label: str, source: Optional[str] = None) -> Optional[str]:
        """Canonical taxon for a raw label, or None if the label is an excluded artefact.

        Raises UnrecognizedTaxonError for anything not in the table.
        """
        key = normalize_key(label)
        if key in self.excluded:
            return None
        if key in self.variants:
            return self.variants[key]
        stem, count_only = self.split_count_only(label)
        if count_only:
            if stem in self.excluded:
                return None
            if stem in self.variants:
                return self.variants[stem]
        raise UnrecognizedTaxonError([str(label)], source)

    def check_totality(self, labels: Iterable[str], source: Optional[str] = None) -> Dict[str, Optional[str]]:
        """Resolve every distinct label; report all unknown ones of a source together."""
        resolved: Dict[str, Optional[str]] = {}
        unknown: List[str] = []
        for label in set(labels):
            try:
                resolved[label] = self.resolve(label, source)
            except UnrecognizedTaxonError:
                unknown.append(str(label))
        if unknown:
            raise UnrecognizedTaxonError(unknown, source)
        return resolved
