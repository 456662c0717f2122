"""
Pathway-scoped views of per-gene differential results.

For a chosen pathway, every member gene is reported once, either with its
differential result and label or as untested when the gene was not measured.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Tuple
import logging

from analysis_errors import UnknownPathwayError
from de_analysis import DifferentialResult
from gene_classifier import ClassifiedGene, RegulationLabel
from gene_sets import PathwayMembership

logger = logging.getLogger(__name__)

KEYS = ("gene_id", "symbol", "entrez_id")


@dataclass(frozen=True)
class PathwayGeneView:
    """One pathway member. ``result`` and ``label`` are None when the gene is untested."""

    gene_id: str
    result: Optional[DifferentialResult] = None
    label: Optional[RegulationLabel] = None

    @property
    def tested(self) -> bool:
        return self.result is not None


@dataclass(frozen=True)
class PathwaySummary:
    pathway_id: str
    n_members: int
    n_up: int
    n_down: int
    n_not_significant: int
    n_untested: int


class PathwayAggregator:
    """
    Join classified results onto pathway membership.

    Args:
        key: Identifier matched against pathway members: "gene_id", "symbol"
            or "entrez_id"
    """

    def __init__(self, key: str = "gene_id"):
        if key not in KEYS:
            raise ValueError(f"key must be one of {KEYS}, got '{key}'")
        self.key = key

    def _index(self, classified: Iterable[ClassifiedGene]) -> Dict[str, ClassifiedGene]:
        index: Dict[str, ClassifiedGene] = {}
        for gene in classified:
            ident = getattr(gene, self.key)
            # First occurrence wins for shared symbols
            if ident is not None and ident not in index:
                index[str(ident)] = gene
        return index

    def aggregate(
        self,
        classified: Sequence[ClassifiedGene],
        membership: PathwayMembership,
        pathway_id: str,
    ) -> Tuple[PathwayGeneView, ...]:
        """
        View of every member of ``pathway_id``, sorted by member id.

        Raises:
            UnknownPathwayError: pathway_id is not in ``membership``
        """
        return self._aggregate(self._index(classified), membership, pathway_id)

    def aggregate_many(
        self,
        classified: Sequence[ClassifiedGene],
        membership: PathwayMembership,
        pathway_ids: Iterable[str],
    ) -> Dict[str, Tuple[PathwayGeneView, ...]]:
        """``aggregate`` for each pathway id, sharing one lookup index."""
        index = self._index(classified)
        return {pid: self._aggregate(index, membership, pid) for pid in pathway_ids}

    @staticmethod
    def _aggregate(
        index: Dict[str, ClassifiedGene],
        membership: PathwayMembership,
        pathway_id: str,
    ) -> Tuple[PathwayGeneView, ...]:
        if pathway_id not in membership:
            raise UnknownPathwayError(
                f"Unknown pathway '{pathway_id}'",
                details={"pathway_id": pathway_id, "n_known": len(membership)},
            )
        views = []
        for member in sorted(membership[pathway_id].members):
            gene = index.get(member)
            if gene is None:
                views.append(PathwayGeneView(gene_id=member))
            else:
                views.append(PathwayGeneView(gene_id=member, result=gene.result, label=gene.label))
        n_untested = sum(1 for v in views if not v.tested)
        logger.debug(f"Pathway {pathway_id}: {len(views)} members, {n_untested} untested")
        return tuple(views)


def summarize(pathway_id: str, views: Sequence[PathwayGeneView]) -> PathwaySummary:
    """Count members by label; untested members are counted separately."""
    counts = {label: 0 for label in RegulationLabel}
    untested = 0
    for view in views:
        if view.label is None:
            untested += 1
        else:
            counts[view.label] += 1
    return PathwaySummary(
        pathway_id=pathway_id,
        n_members=len(views),
        n_up=counts[RegulationLabel.UP],
        n_down=counts[RegulationLabel.DOWN],
        n_not_significant=counts[RegulationLabel.NOT_SIGNIFICANT],
        n_untested=untested,
    )
