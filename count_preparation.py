"""
Count matrix preparation.

Turns a raw genes × samples table into a validated integer ``CountMatrix``:
numeric coercion, negative-value checks, rounding, duplicate-gene collapsing
and low-count filtering.

Canonical shape: genes × samples (gene ids as index, sample ids as columns).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple
import logging
import numpy as np
import pandas as pd

from analysis_errors import InvalidMatrixError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountMatrix:
    """Validated integer count matrix (genes × samples)."""

    _frame: pd.DataFrame = field(repr=False)

    def __post_init__(self):
        frame = self._frame
        if not frame.index.is_unique:
            raise InvalidMatrixError("Gene ids must be unique")
        if not frame.columns.is_unique:
            raise InvalidMatrixError("Sample ids must be unique")
        try:
            values = frame.to_numpy(dtype=float)
        except (TypeError, ValueError) as e:
            raise InvalidMatrixError("Count matrix contains non-numeric values") from e
        if not np.isfinite(values).all():
            raise InvalidMatrixError(
                "Count matrix contains missing or infinite values",
                details={"n_cells": int((~np.isfinite(values)).sum())},
            )
        if (values < 0).any():
            raise InvalidMatrixError("Count matrix contains negative values")
        if (values != np.round(values)).any():
            raise InvalidMatrixError(
                "Count matrix contains non-integer values",
                details={"n_cells": int((values != np.round(values)).sum())},
            )
        # Own a private integer copy so callers cannot mutate us
        object.__setattr__(self, "_frame", frame.astype(np.int64).copy())

    @property
    def counts(self) -> pd.DataFrame:
        """Copy of the underlying genes × samples DataFrame."""
        return self._frame.copy()

    @property
    def values(self) -> np.ndarray:
        return self._frame.to_numpy(copy=True)

    @property
    def gene_ids(self) -> Tuple[str, ...]:
        return tuple(str(g) for g in self._frame.index)

    @property
    def sample_ids(self) -> Tuple[str, ...]:
        return tuple(str(s) for s in self._frame.columns)

    @property
    def n_genes(self) -> int:
        return self._frame.shape[0]

    @property
    def n_samples(self) -> int:
        return self._frame.shape[1]

    def subset_samples(self, sample_ids: List[str]) -> "CountMatrix":
        return CountMatrix(self._frame.loc[:, list(sample_ids)])

    def __len__(self) -> int:
        return self.n_genes


@dataclass(frozen=True)
class SampleGroupAssignment:
    """Mapping from sample id to study-group label."""

    assignments: Mapping[str, str]

    def __post_init__(self):
        object.__setattr__(
            self, "assignments", {str(k): str(v) for k, v in dict(self.assignments).items()}
        )

    @classmethod
    def from_metadata(
        cls,
        metadata_df: pd.DataFrame,
        sample_column: Optional[str] = None,
        group_column: str = "condition",
    ) -> "SampleGroupAssignment":
        """
        Build an assignment from a metadata table.

        Args:
            metadata_df: One row per sample
            sample_column: Column holding sample ids (default: use the index)
            group_column: Column holding the group label (default: "condition")

        Returns:
            SampleGroupAssignment
        """
        if group_column not in metadata_df.columns:
            raise InvalidMatrixError(
                f"Metadata has no '{group_column}' column",
                details={"columns": list(metadata_df.columns)},
            )
        if sample_column is None:
            samples = metadata_df.index
        else:
            if sample_column not in metadata_df.columns:
                raise InvalidMatrixError(
                    f"Metadata has no '{sample_column}' column",
                    details={"columns": list(metadata_df.columns)},
                )
            samples = metadata_df[sample_column]
        groups = metadata_df[group_column]
        if pd.Index(samples).duplicated().any():
            raise InvalidMatrixError("Metadata lists a sample more than once")
        return cls(dict(zip(samples.astype(str), groups.astype(str))))

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(sorted(set(self.assignments.values())))

    def samples_in(self, label: str) -> List[str]:
        return [s for s, g in self.assignments.items() if g == label]

    def get(self, sample_id: str) -> Optional[str]:
        return self.assignments.get(sample_id)

    def __contains__(self, sample_id: object) -> bool:
        return sample_id in self.assignments

    def __len__(self) -> int:
        return len(self.assignments)

    def as_dict(self) -> Dict[str, str]:
        return dict(self.assignments)


class CountMatrixPreparer:
    """Validate, round, collapse and filter a raw count table."""

    def prepare(
        self,
        raw: pd.DataFrame,
        min_mean_count: float,
        biotype_filter: Optional[str] = None,
        biotype_column: str = "gene_biotype",
    ) -> CountMatrix:
        """
        Prepare a raw genes × samples table for differential testing.

        Args:
            raw: genes × samples DataFrame (gene ids as index). May carry a
                biotype annotation column.
            min_mean_count: Genes whose mean count across samples is at or
                below this value are dropped.
            biotype_filter: Keep only genes with this biotype (e.g. "protein_coding")
            biotype_column: Name of the biotype annotation column

        Returns:
            CountMatrix with unique gene ids and non-negative integer counts

        Raises:
            InvalidMatrixError: non-numeric sample column, negative values,
                fewer than two samples, or no genes surviving the filter
        """
        if min_mean_count < 0:
            raise ValueError(f"min_mean_count must be >= 0, got {min_mean_count}")

        df = raw.copy()
        df.index = df.index.astype(str)

        if biotype_filter is not None:
            if biotype_column not in df.columns:
                raise InvalidMatrixError(
                    f"Biotype filter requested but column '{biotype_column}' is missing",
                    details={"columns": [str(c) for c in df.columns]},
                )
            before = len(df)
            df = df[df[biotype_column].astype(str) == biotype_filter]
            logger.info(
                f"Biotype filter '{biotype_filter}' kept {len(df)} of {before} genes"
            )
            if df.empty:
                raise InvalidMatrixError(
                    f"No genes have biotype '{biotype_filter}'",
                    details={"biotype_column": biotype_column, "n_genes": before},
                )
        if biotype_column in df.columns:
            df = df.drop(columns=[biotype_column])

        if df.shape[1] < 2:
            raise InvalidMatrixError(
                f"Need at least 2 samples, found {df.shape[1]}",
                details={"n_samples": df.shape[1]},
            )

        df = self._coerce_numeric(df)

        if (df < 0).any().any():
            negatives = df.columns[(df < 0).any()].tolist()
            raise InvalidMatrixError(
                "Count matrix contains negative values",
                details={"samples": [str(s) for s in negatives]},
            )

        # Round half away from zero (values are non-negative here)
        df = np.floor(df + 0.5).astype(np.int64)

        if df.index.duplicated().any():
            n_dup = int(df.index.duplicated().sum())
            logger.info(f"Summing {n_dup} duplicate gene rows")
            df = df.groupby(level=0, sort=False).sum()

        means = df.mean(axis=1)
        keep = means > min_mean_count
        n_dropped = int((~keep).sum())
        df = df.loc[keep]
        logger.info(
            f"Low-count filter (mean > {min_mean_count}): kept {len(df)} genes, "
            f"dropped {n_dropped}"
        )

        if df.empty:
            raise InvalidMatrixError(
                "No genes pass the minimum mean count filter",
                details={"min_mean_count": min_mean_count, "n_dropped": n_dropped},
            )

        df.columns = [str(c) for c in df.columns]
        return CountMatrix(df)

    @staticmethod
    def _coerce_numeric(df: pd.DataFrame) -> pd.DataFrame:
        coerced = {}
        n_bad_cells = 0
        for col in df.columns:
            series = pd.to_numeric(df[col], errors="coerce")
            if series.isna().all():
                raise InvalidMatrixError(
                    f"Sample column '{col}' contains no numeric values",
                    details={"column": str(col)},
                )
            n_bad_cells += int(series.isna().sum())
            coerced[col] = series.fillna(0.0).astype(float)
        if n_bad_cells:
            logger.warning(f"Treated {n_bad_cells} non-numeric or missing cells as 0")
        out = pd.DataFrame(coerced, index=df.index)
        if not np.isfinite(out.to_numpy()).all():
            raise InvalidMatrixError("Count matrix contains infinite values")
        return out
