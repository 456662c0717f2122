"""
Gene identifier lookup (e.g. Ensembl → gene symbol / Entrez id).

The statistics never depend on annotation; missing mappings resolve to None.
"""

from typing import Dict, Iterable, Optional, Protocol, Sequence, Tuple, Union
from pathlib import Path
import logging
import pandas as pd

from de_analysis import DifferentialResult

logger = logging.getLogger(__name__)

SYMBOL = "symbol"
ENTREZ = "entrez_id"
ENSEMBL = "ensembl_gene_id"


class AnnotationResolver(Protocol):
    """Maps gene ids between namespaces. Unknown ids map to None."""

    def resolve(
        self, gene_ids: Iterable[str], from_namespace: str, to_namespace: str
    ) -> Dict[str, Optional[str]]:
        ...


class TableAnnotationResolver:
    """
    Resolver backed by a table with one column per namespace.

    Args:
        table: DataFrame with columns such as "ensembl_gene_id", "symbol", "entrez_id"
    """

    def __init__(self, table: pd.DataFrame):
        self.table = table.copy()
        self.namespaces = tuple(str(c) for c in self.table.columns)

    @classmethod
    def from_file(cls, path: Union[str, Path], sep: Optional[str] = None) -> "TableAnnotationResolver":
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Annotation table not found: {path}")
        if sep is None:
            sep = "\t" if file_path.suffix.lower() in (".tsv", ".txt") else ","
        return cls(pd.read_csv(file_path, sep=sep, dtype=str))

    def resolve(
        self, gene_ids: Iterable[str], from_namespace: str, to_namespace: str
    ) -> Dict[str, Optional[str]]:
        for ns in (from_namespace, to_namespace):
            if ns not in self.namespaces:
                raise KeyError(f"Unknown namespace '{ns}', available: {list(self.namespaces)}")
        pairs = self.table[[from_namespace, to_namespace]].dropna()
        # First mapping wins when a source id maps to several targets
        pairs = pairs.drop_duplicates(subset=from_namespace, keep="first")
        lookup = dict(zip(pairs[from_namespace].astype(str), pairs[to_namespace].astype(str)))
        return {str(g): lookup.get(str(g)) for g in gene_ids}


def annotate_results(
    results: Sequence[DifferentialResult],
    resolver: AnnotationResolver,
    from_namespace: str,
    symbol_namespace: str = SYMBOL,
    entrez_namespace: Optional[str] = ENTREZ,
) -> Tuple[DifferentialResult, ...]:
    """Return new results with symbol (and Entrez id) attached."""
    gene_ids = [r.gene_id for r in results]
    symbols = resolver.resolve(gene_ids, from_namespace, symbol_namespace)
    if entrez_namespace is not None:
        entrez = resolver.resolve(gene_ids, from_namespace, entrez_namespace)
    else:
        entrez = {}
    annotated = tuple(
        r.with_annotation(symbols.get(r.gene_id), entrez.get(r.gene_id)) for r in results
    )
    n_missing = sum(1 for r in annotated if r.symbol is None)
    if n_missing:
        logger.info(f"{n_missing} of {len(annotated)} genes have no {symbol_namespace} mapping")
    return annotated
