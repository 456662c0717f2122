"""
Up / Down / NotSignificant classification of differential results.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Tuple
import logging

from de_analysis import DifferentialResult

logger = logging.getLogger(__name__)


class RegulationLabel(Enum):
    """Direction of a significant change (group A relative to group B)."""

    UP = "up"
    DOWN = "down"
    NOT_SIGNIFICANT = "not_significant"


@dataclass(frozen=True)
class ClassifiedGene:
    """A DifferentialResult together with its regulation label."""

    result: DifferentialResult
    label: RegulationLabel

    @property
    def gene_id(self) -> str:
        return self.result.gene_id

    @property
    def symbol(self) -> Optional[str]:
        return self.result.symbol

    @property
    def entrez_id(self) -> Optional[str]:
        return self.result.entrez_id


def label_for(
    result: DifferentialResult, padj_threshold: float, log2fc_threshold: float
) -> RegulationLabel:
    """Single significance rule: padj < t_p and |log2FC| > t_fc, NaN never passes."""
    padj = result.padj
    lfc = result.log2_fold_change
    # NaN comparisons are always False
    if padj < padj_threshold:
        if lfc > log2fc_threshold:
            return RegulationLabel.UP
        if lfc < -log2fc_threshold:
            return RegulationLabel.DOWN
    return RegulationLabel.NOT_SIGNIFICANT


class GeneClassifier:
    """Assign a RegulationLabel to every differential result."""

    def __init__(self, padj_threshold: float = 0.05, log2fc_threshold: float = 1.0):
        if not 0 < padj_threshold <= 1:
            raise ValueError(f"padj_threshold must be in (0, 1], got {padj_threshold}")
        if log2fc_threshold < 0:
            raise ValueError(f"log2fc_threshold must be >= 0, got {log2fc_threshold}")
        self.padj_threshold = padj_threshold
        self.log2fc_threshold = log2fc_threshold

    def classify(
        self,
        results: Iterable[DifferentialResult],
        padj_threshold: Optional[float] = None,
        log2fc_threshold: Optional[float] = None,
    ) -> Tuple[ClassifiedGene, ...]:
        """
        Label each result; input order is preserved.

        Classifying the results again yields identical labels.

        Args:
            results: DifferentialResults to label
            padj_threshold: Overrides the instance threshold for this call
            log2fc_threshold: Overrides the instance threshold for this call
        """
        if padj_threshold is None and log2fc_threshold is None:
            t_p, t_fc = self.padj_threshold, self.log2fc_threshold
        else:
            checked = GeneClassifier(
                self.padj_threshold if padj_threshold is None else padj_threshold,
                self.log2fc_threshold if log2fc_threshold is None else log2fc_threshold,
            )
            t_p, t_fc = checked.padj_threshold, checked.log2fc_threshold
        classified = tuple(ClassifiedGene(r, label_for(r, t_p, t_fc)) for r in results)
        counts = count_labels(classified)
        logger.info(
            f"Classified {len(classified)} genes: "
            f"{counts[RegulationLabel.UP]} up, {counts[RegulationLabel.DOWN]} down"
        )
        return classified


def count_labels(classified: Sequence[ClassifiedGene]) -> Dict[RegulationLabel, int]:
    counts = {label: 0 for label in RegulationLabel}
    for gene in classified:
        counts[gene.label] += 1
    return counts
