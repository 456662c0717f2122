"""
Count table and sample sheet ingestion (CSV, TSV, Excel).

Produces raw genes × samples DataFrames for CountMatrixPreparer, plus
SampleGroupAssignments from sample sheets. Supports:
- a single count matrix (genes as rows, samples as columns)
- one two-column file per sample (htseq-count / featureCounts style)
- merging several count matrices on their shared genes
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
import logging
import re
import numpy as np
import pandas as pd

from analysis_errors import InvalidMatrixError
from count_preparation import SampleGroupAssignment

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

KNOWN_GENE_HEADERS = [
    "gene",
    "Gene",
    "GENE",
    "gene_id",
    "Geneid",
    "GeneID",
    "ensembl_gene_id",
    "GeneSymbol",
    "gene_symbol",
    "SYMBOL",
    "GeneName",
    "gene_name",
]

# Annotation columns that are never samples
ANNOTATION_COLUMNS = {
    "chr", "Chr", "chrom", "start", "Start", "end", "End", "strand", "Strand",
    "length", "Length", "description", "Description", "gene_name", "symbol",
    "SYMBOL", "gene_symbol", "GeneSymbol", "entrez_id", "EntrezID",
}

# htseq-count summary rows ("__no_feature", "__ambiguous", ...)
SPECIAL_ROW_PREFIX = "__"

EXCEL_SUFFIXES = (".xlsx", ".xls")


def read_table(file_path: PathLike, sheet_name: Optional[str] = None) -> pd.DataFrame:
    """
    Read a CSV, TSV or Excel file with delimiter fallback.

    Raises:
        InvalidMatrixError: missing, empty or unparseable file
    """
    path = Path(file_path)
    if not path.exists():
        raise InvalidMatrixError(
            f"File not found: {file_path}. "
            f"Suggestion: Check the file path is correct and the file exists.",
            details={"path": str(file_path)},
        )
    try:
        if path.suffix.lower() in EXCEL_SUFFIXES:
            df = pd.read_excel(path, sheet_name=sheet_name if sheet_name is not None else 0)
        else:
            sep = "\t" if path.suffix.lower() in (".tsv", ".tab", ".txt") else ","
            df = pd.read_csv(path, sep=sep)
            # Wrong delimiter gives a single column
            if len(df.columns) == 1:
                df = pd.read_csv(path, sep="\t" if sep == "," else ",")
    except pd.errors.EmptyDataError:
        raise InvalidMatrixError(
            f"File is empty: {path.name}. Ensure it contains a header and data rows."
        )
    except pd.errors.ParserError as e:
        raise InvalidMatrixError(
            f"Failed to parse {path.name}: {str(e)}. "
            f"Suggestion: Verify the file is valid CSV/TSV and check for encoding issues."
        ) from e
    except ValueError as e:
        # pandas raises ValueError for unknown sheets and unreadable workbooks
        raise InvalidMatrixError(
            f"Error reading {path.name}: {str(e)}",
            details={"path": str(path), "sheet_name": sheet_name},
        ) from e

    if df.empty:
        raise InvalidMatrixError(f"File has no data rows: {path.name}")
    return df


def detect_gene_column(df: pd.DataFrame) -> Optional[str]:
    """
    Find the column holding gene identifiers.

    Priority: a known gene header, then a first column of text values.
    Returns None when no column qualifies.
    """
    for col in df.columns:
        if str(col) in KNOWN_GENE_HEADERS:
            return str(col)
    first = df.columns[0]
    if not pd.api.types.is_numeric_dtype(df[first]):
        values = df[first].dropna().head(10).astype(str).tolist()
        if values and all(v and v[0].isalpha() for v in values):
            return str(first)
    return None


def read_count_table(
    file_path: PathLike,
    gene_column: Optional[str] = None,
    sheet_name: Optional[str] = None,
    biotype_column: str = "gene_biotype",
) -> pd.DataFrame:
    """
    Read a genes × samples count matrix.

    Args:
        file_path: CSV/TSV/XLSX path
        gene_column: Column with gene ids (auto-detected when None)
        sheet_name: Excel sheet (default: first sheet)
        biotype_column: Annotation column kept for biotype filtering

    Returns:
        DataFrame indexed by gene id with one column per sample (and the
        biotype column when present). Values are not validated here.
    """
    df = read_table(file_path, sheet_name=sheet_name)
    if gene_column is None:
        gene_column = detect_gene_column(df)
        if gene_column is None:
            raise InvalidMatrixError(
                "Could not detect the gene id column. "
                "Suggestion: Name it 'gene_id' or pass gene_column explicitly.",
                details={"columns": [str(c) for c in df.columns]},
            )
    elif gene_column not in df.columns:
        raise InvalidMatrixError(
            f"Gene column '{gene_column}' not found",
            details={"columns": [str(c) for c in df.columns]},
        )

    df = df.set_index(gene_column)
    df.index = df.index.astype(str)
    df.index.name = "gene_id"

    drop = [c for c in df.columns if str(c) in ANNOTATION_COLUMNS and str(c) != biotype_column]
    if drop:
        logger.info(f"Dropping annotation columns: {drop}")
        df = df.drop(columns=drop)
    df = df[~df.index.str.startswith(SPECIAL_ROW_PREFIX)]

    n_samples = len([c for c in df.columns if c != biotype_column])
    if n_samples < 2:
        raise InvalidMatrixError(
            f"Count table must have at least 2 sample columns, found {n_samples}. "
            f"Suggestion: Check the delimiter and that samples are columns.",
            details={"columns": [str(c) for c in df.columns]},
        )
    if integer_like_fraction(df) < 0.99:
        logger.warning(
            f"{Path(file_path).name} contains non-integer values; "
            f"counts will be rounded, but normalized input (TPM/FPKM) is not valid for testing"
        )
    logger.info(f"Read count table {Path(file_path).name}: {len(df)} genes × {n_samples} samples")
    return df


def _sanitize_sample_name(name: str) -> str:
    """Sanitize sample name: replace special chars with underscore."""
    return re.sub(r"[^a-zA-Z0-9_]", "_", str(name)).strip("_")


def read_count_files(
    file_paths: Sequence[PathLike],
    sample_names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Combine per-sample two-column count files (gene, count) into one matrix.

    Sample names default to the file stems. Only genes present in every file
    are kept; htseq-count summary rows ("__no_feature" etc.) are dropped.

    Raises:
        InvalidMatrixError: fewer than two files, duplicate sample names,
            a file without two columns, or no shared genes
    """
    if len(file_paths) < 2:
        raise InvalidMatrixError(f"Need at least 2 count files, got {len(file_paths)}")
    if sample_names is None:
        sample_names = [_sanitize_sample_name(Path(p).stem) for p in file_paths]
    if len(sample_names) != len(file_paths):
        raise ValueError("sample_names must match file_paths in length")
    if len(set(sample_names)) != len(sample_names):
        raise InvalidMatrixError(
            "Duplicate sample names across count files",
            details={"sample_names": list(sample_names)},
        )

    columns: Dict[str, pd.Series] = {}
    for path, name in zip(file_paths, sample_names):
        path = Path(path)
        if not path.exists():
            raise InvalidMatrixError(f"File not found: {path}")
        try:
            df = pd.read_csv(path, sep="\t", header=None, comment="#")
            if df.shape[1] == 1:
                df = pd.read_csv(path, sep=",", header=None, comment="#")
        except pd.errors.EmptyDataError:
            raise InvalidMatrixError(f"Count file is empty: {path.name}")
        if df.shape[1] != 2:
            raise InvalidMatrixError(
                f"{path.name} must have exactly 2 columns (gene, count), found {df.shape[1]}",
                details={"path": str(path)},
            )
        # Drop a header row if the count column is not numeric on the first line
        if pd.isna(pd.to_numeric(df.iloc[0, 1], errors="coerce")):
            df = df.iloc[1:]
        series = pd.Series(df.iloc[:, 1].values, index=df.iloc[:, 0].astype(str), name=name)
        series = series[~series.index.str.startswith(SPECIAL_ROW_PREFIX)]
        columns[name] = series

    gene_sets = [set(s.index) for s in columns.values()]
    shared = set.intersection(*gene_sets)
    all_genes = set.union(*gene_sets)
    if not shared:
        raise InvalidMatrixError("No shared genes across count files. Cannot merge.")
    if len(shared) < len(all_genes):
        logger.warning(f"Keeping {len(shared)} of {len(all_genes)} genes shared by all files")

    order = [g for g in next(iter(columns.values())).index if g in shared]
    merged = pd.DataFrame({name: s[~s.index.duplicated()].reindex(order) for name, s in columns.items()})
    merged.index.name = "gene_id"
    return merged


def merge_count_tables(tables: Sequence[pd.DataFrame]) -> pd.DataFrame:
    """
    Merge genes × samples tables on their shared genes.

    Raises:
        InvalidMatrixError: duplicate sample names or no shared genes
    """
    if not tables:
        raise InvalidMatrixError("No count tables to merge")
    if len(tables) == 1:
        return tables[0].copy()
    samples: List[str] = [str(c) for t in tables for c in t.columns]
    if len(set(samples)) != len(samples):
        raise InvalidMatrixError(
            "Duplicate sample names across count tables",
            details={"samples": samples},
        )
    shared = set.intersection(*[set(t.index) for t in tables])
    if not shared:
        raise InvalidMatrixError("No shared genes across count tables. Cannot merge.")
    order = [g for g in tables[0].index if g in shared]
    return pd.concat([t.loc[order] for t in tables], axis=1)


def read_sample_metadata(
    file_path: PathLike,
    sample_column: Optional[str] = None,
    group_column: str = "condition",
    sheet_name: Optional[str] = None,
) -> SampleGroupAssignment:
    """
    Read a sample sheet into a SampleGroupAssignment.

    Args:
        file_path: CSV/TSV/XLSX sample sheet
        sample_column: Column with sample ids (default: first column)
        group_column: Column with the group label
    """
    df = read_table(file_path, sheet_name=sheet_name)
    if sample_column is None:
        sample_column = str(df.columns[0])
    missing_groups = df[group_column].isna() if group_column in df.columns else None
    if missing_groups is not None and missing_groups.any():
        raise InvalidMatrixError(
            f"{int(missing_groups.sum())} samples have no '{group_column}' value",
            details={"samples": df.loc[missing_groups, sample_column].astype(str).tolist()},
        )
    return SampleGroupAssignment.from_metadata(df, sample_column=sample_column, group_column=group_column)


def integer_like_fraction(df: pd.DataFrame, tolerance: float = 0.001) -> float:
    """Fraction of numeric cells within ``tolerance`` of an integer (raw counts are ~1.0)."""
    values = df.select_dtypes(include=[np.number]).to_numpy(dtype=float).ravel()
    values = values[np.isfinite(values)]
    if values.size == 0:
        return 0.0
    return float(np.mean(np.abs(values - np.round(values)) <= tolerance))
