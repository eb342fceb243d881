"""Exceptions raised by the community-table pipeline.

Every fatal data-quality condition aborts the run before any output file is
written. Degenerate diversity (richness of zero) is not an error and never
raises.
"""

from __future__ import annotations

from typing import Iterable, Optional


class MesozooError(ValueError):
    """Base class for all pipeline errors."""


class ConfigError(MesozooError):
    pass


class UnrecognizedTaxonError(MesozooError):
    """A raw taxon label has no entry in the label table."""

    def __init__(self, labels: Iterable[str], source: Optional[str] = None):
        self.labels = sorted(set(labels))
        self.source = source
        where = f" in {source}" if source else ""
        shown = ", ".join(repr(l) for l in self.labels)
        super().__init__(f"Unrecognized taxon label(s){where}: {shown}")


class MissingJoinKeyError(MesozooError):
    """Observations and the design table disagree on mesocosm ids."""

    def __init__(self, missing_in_design: Iterable = (), missing_in_observations: Iterable = ()):
        self.missing_in_design = sorted(set(missing_in_design))
        self.missing_in_observations = sorted(set(missing_in_observations))
        parts = []
        if self.missing_in_design:
            parts.append(f"mesocosm(s) observed but absent from design: {self.missing_in_design}")
        if self.missing_in_observations:
            parts.append(f"mesocosm(s) in design but never observed: {self.missing_in_observations}")
        super().__init__("; ".join(parts) or "join key mismatch")


class InvalidSampleError(MesozooError):
    """A sample could not be identified (bad file name, mesocosm id or date)."""


class InvalidTimepointError(MesozooError):
    """A sample's day offset is not one of the fixed sampling days."""


class CompletenessError(MesozooError):
    """The sample table is not exactly one row per mesocosm and timepoint."""


class InvariantError(MesozooError):
    """Derived community metrics are inconsistent with the abundance columns."""
