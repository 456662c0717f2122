"""
Gene-set catalogs (GO categories, KEGG pathways, MSigDB collections).

A catalog is a mapping of term id → GeneSet. Catalogs come from in-memory
mappings, GMT files, or Enrichr libraries downloaded through gseapy.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
import logging
import re
import gseapy as gp

logger = logging.getLogger(__name__)

# "apoptotic process (GO:0006915)" → "GO:0006915"
TERM_ID_PATTERN = re.compile(r"\(((?:GO|R-[A-Z]{3}|hsa|mmu|WP)[:\-]?[\w\-]+)\)\s*$")


@dataclass(frozen=True)
class GeneSet:
    """Named set of gene identifiers."""

    term_id: str
    name: str
    members: frozenset
    source: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "members", frozenset(str(m) for m in self.members))

    def __len__(self) -> int:
        return len(self.members)

    def __contains__(self, gene_id: object) -> bool:
        return gene_id in self.members

    def restricted_to(self, universe: Iterable[str]) -> "GeneSet":
        """Copy of this set keeping only members present in ``universe``."""
        return GeneSet(self.term_id, self.name, self.members & frozenset(universe), self.source)


GeneSetCatalog = Mapping[str, GeneSet]
PathwayMembership = Mapping[str, GeneSet]


def split_term_label(label: str) -> Tuple[str, str]:
    """
    Split an Enrichr-style label into (term_id, name).

    Labels without an embedded accession use the whole label as both.
    """
    label = label.strip()
    match = TERM_ID_PATTERN.search(label)
    if match:
        return match.group(1), label[: match.start()].strip()
    return label, label


def catalog_from_mapping(
    mapping: Mapping[str, Iterable[str]],
    source: Optional[str] = None,
    names: Optional[Mapping[str, str]] = None,
) -> Dict[str, GeneSet]:
    """
    Build a catalog from a term → genes mapping.

    Args:
        mapping: Term id → member gene ids
        source: Catalog name recorded on each GeneSet (e.g. "GO_BP")
        names: Optional term id → display name

    Returns:
        Dict of term id → GeneSet
    """
    names = names or {}
    catalog = {}
    for term_id, members in mapping.items():
        genes = [str(g).strip() for g in members if str(g).strip()]
        catalog[str(term_id)] = GeneSet(
            term_id=str(term_id),
            name=names.get(term_id, str(term_id)),
            members=frozenset(genes),
            source=source,
        )
    return catalog


def _catalog_from_labels(
    raw: Mapping[str, Iterable[str]], source: Optional[str]
) -> Dict[str, GeneSet]:
    catalog: Dict[str, GeneSet] = {}
    for label, genes in raw.items():
        term_id, name = split_term_label(str(label))
        if isinstance(genes, str):
            genes = genes.split("\t")
        members = frozenset(str(g).strip() for g in genes if str(g).strip())
        if term_id in catalog:
            # Same accession listed twice: merge members
            members = members | catalog[term_id].members
        catalog[term_id] = GeneSet(term_id, name, members, source)
    return catalog


def load_gmt(path: Union[str, Path], source: Optional[str] = None) -> Dict[str, GeneSet]:
    """
    Load a GMT file (one term per line: name, description, genes...).

    Args:
        path: GMT file path
        source: Catalog name (default: file stem)

    Raises:
        FileNotFoundError: path does not exist
    """
    gmt_path = Path(path)
    if not gmt_path.exists():
        raise FileNotFoundError(f"Gene set file not found: {path}")
    raw = gp.read_gmt(path=str(gmt_path))
    catalog = _catalog_from_labels(raw, source or gmt_path.stem)
    logger.info(f"Loaded {len(catalog)} gene sets from {gmt_path.name}")
    return catalog


@lru_cache(maxsize=None)
def _download_library(name: str, organism: str) -> Tuple[Tuple[str, Tuple[str, ...]], ...]:
    logger.info(f"Downloading gene set library {name} ({organism}) via gseapy")
    raw = gp.get_library(name=name, organism=organism)
    return tuple((str(term), tuple(genes)) for term, genes in raw.items())


def fetch_library(
    name: str, organism: str = "Human", source: Optional[str] = None
) -> Dict[str, GeneSet]:
    """
    Fetch an Enrichr library (e.g. "GO_Biological_Process_2023", "KEGG_2021_Human").

    Downloads are cached for the lifetime of the process.
    """
    raw = dict(_download_library(name, organism))
    catalog = _catalog_from_labels(raw, source or name)
    if not catalog:
        raise ValueError(f"Gene set library '{name}' is empty")
    return catalog


def restrict_to_universe(catalog: GeneSetCatalog, universe: Iterable[str]) -> Dict[str, GeneSet]:
    """Restrict every set to the universe, dropping sets left empty."""
    universe = frozenset(universe)
    restricted = {tid: gs.restricted_to(universe) for tid, gs in catalog.items()}
    return {tid: gs for tid, gs in restricted.items() if len(gs) > 0}


def catalog_genes(catalog: GeneSetCatalog) -> frozenset:
    """Union of all member genes."""
    genes: set = set()
    for gs in catalog.values():
        genes |= gs.members
    return frozenset(genes)


def catalog_to_dict(catalog: GeneSetCatalog) -> Dict[str, List[str]]:
    return {tid: sorted(gs.members) for tid, gs in catalog.items()}
