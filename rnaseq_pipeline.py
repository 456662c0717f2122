"""
End-to-end two-group analysis driven by an AnalysisConfig.

Stages: preparation, differential testing, (optional) annotation,
classification, ORA per catalog and direction, GSEA, pathway views.
Stages run in order; the first failure propagates.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple
import logging
import time
import pandas as pd

from analysis_config import AnalysisConfig, EnrichmentConfig, default_config
from count_preparation import CountMatrix, CountMatrixPreparer, SampleGroupAssignment
from de_analysis import DifferentialResult, DifferentialTester
from gene_annotation import AnnotationResolver, annotate_results
from gene_classifier import ClassifiedGene, GeneClassifier, RegulationLabel, count_labels
from gene_sets import GeneSetCatalog, PathwayMembership, fetch_library, load_gmt
from pathway_aggregator import PathwayAggregator, PathwayGeneView
from pathway_enrichment import DIRECTIONS, EnrichmentResult, SetEnrichmentEngine, select_foreground
from ranked_enrichment import RankedEnrichmentEngine, ranking_from_results

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Attach a stream handler to the root logger (for scripts and notebooks)."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


@contextmanager
def _timed(stage: str) -> Iterator[None]:
    start = time.perf_counter()
    yield
    logger.info(f"{stage} finished in {time.perf_counter() - start:.2f}s")


@dataclass(frozen=True)
class PipelineResult:
    """Outputs of one run; the mappings are read-only views."""

    matrix: CountMatrix
    results: Tuple[DifferentialResult, ...]
    classified: Tuple[ClassifiedGene, ...]
    label_counts: Mapping[RegulationLabel, int]
    # catalog name -> direction ("up", "down", "both") -> results
    enrichment: Mapping[str, Mapping[str, Tuple[EnrichmentResult, ...]]] = field(default_factory=dict)
    gsea: Tuple[EnrichmentResult, ...] = ()
    pathways: Mapping[str, Tuple[PathwayGeneView, ...]] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "label_counts", MappingProxyType(dict(self.label_counts)))
        object.__setattr__(
            self,
            "enrichment",
            MappingProxyType(
                {name: MappingProxyType(dict(by_dir)) for name, by_dir in self.enrichment.items()}
            ),
        )
        object.__setattr__(self, "pathways", MappingProxyType(dict(self.pathways)))


def load_catalogs(config: EnrichmentConfig) -> Dict[str, GeneSetCatalog]:
    """Load every configured catalog from its GMT file or Enrichr library."""
    catalogs = {}
    for name, source in config.catalogs.items():
        if source.gmt is not None:
            catalogs[name] = load_gmt(source.gmt, source=name)
        else:
            catalogs[name] = fetch_library(source.library, organism=config.organism, source=name)
    return catalogs


class RNASeqPipeline:
    """
    Run the full analysis with the thresholds of one AnalysisConfig.

    Args:
        config: Analysis settings (default: built-in defaults)
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or default_config()
        diff = self.config.differential
        self.preparer = CountMatrixPreparer()
        self.tester = DifferentialTester(
            engine=diff.engine,
            n_jobs=diff.n_jobs,
            chunk_size=diff.chunk_size,
            refit_cooks=diff.refit_cooks,
        )
        self.classifier = GeneClassifier(
            padj_threshold=self.config.classification.padj_threshold,
            log2fc_threshold=self.config.classification.log2fc_threshold,
        )
        self.ora = SetEnrichmentEngine(
            pvalue_cutoff=self.config.enrichment.pvalue_cutoff,
            qvalue_cutoff=self.config.enrichment.qvalue_cutoff,
        )
        gsea = self.config.gsea
        self.gsea = RankedEnrichmentEngine(
            permutations=gsea.permutations,
            min_size=gsea.min_size,
            max_size=gsea.max_size,
            weight=gsea.weight,
            seed=gsea.seed,
            n_jobs=gsea.n_jobs,
            fdr_cutoff=gsea.fdr_cutoff,
            engine=gsea.engine,
        )
        self.aggregator = PathwayAggregator(key=self.config.enrichment.gene_key)

    def run(
        self,
        raw_counts: pd.DataFrame,
        groups: SampleGroupAssignment,
        group_a: str,
        group_b: str,
        catalogs: Optional[Mapping[str, GeneSetCatalog]] = None,
        gsea_catalog: Optional[GeneSetCatalog] = None,
        pathways: Optional[PathwayMembership] = None,
        pathway_ids: Iterable[str] = (),
        resolver: Optional[AnnotationResolver] = None,
        annotation_namespace: Optional[str] = None,
    ) -> PipelineResult:
        """
        Analyse ``group_a`` against the reference ``group_b``.

        Args:
            raw_counts: Raw genes × samples counts
            groups: Sample → group assignment
            group_a: Test group
            group_b: Reference group
            catalogs: name → catalog for ORA (default: load the configured catalogs)
            gsea_catalog: Catalog for GSEA (default: the configured ``gsea.catalog``
                from ``catalogs``; GSEA is skipped when neither is available)
            pathways: Membership used for pathway views (default: the GSEA catalog)
            pathway_ids: Pathways to build views for
            resolver: Optional annotation resolver for symbols / Entrez ids
            annotation_namespace: Namespace of the count-matrix gene ids

        Returns:
            PipelineResult
        """
        prep = self.config.preparation
        key = self.config.enrichment.gene_key

        with _timed("Preparation"):
            matrix = self.preparer.prepare(
                raw_counts,
                min_mean_count=prep.min_mean_count,
                biotype_filter=prep.biotype_filter,
                biotype_column=prep.biotype_column,
            )

        with _timed("Differential testing"):
            results = self.tester.test(matrix, groups, group_a, group_b)

        if resolver is not None:
            if annotation_namespace is None:
                raise ValueError("annotation_namespace is required when a resolver is given")
            with _timed("Annotation"):
                results = annotate_results(results, resolver, annotation_namespace)

        with _timed("Classification"):
            classified = self.classifier.classify(results)
            label_counts = count_labels(classified)
        logger.info(
            f"{label_counts[RegulationLabel.UP]} up, {label_counts[RegulationLabel.DOWN]} down, "
            f"{label_counts[RegulationLabel.NOT_SIGNIFICANT]} not significant"
        )

        if catalogs is None:
            with _timed("Catalog loading"):
                catalogs = load_catalogs(self.config.enrichment)

        enrichment: Dict[str, Dict[str, Tuple[EnrichmentResult, ...]]] = {}
        with _timed("Over-representation analysis"):
            for name, catalog in catalogs.items():
                enrichment[name] = {}
                for direction in DIRECTIONS:
                    foreground, universe = select_foreground(classified, direction, key=key)
                    if not foreground:
                        logger.warning(f"No '{direction}' genes; skipping ORA on {name}")
                        enrichment[name][direction] = ()
                        continue
                    enrichment[name][direction] = self.ora.enrich(foreground, universe, catalog)

        if gsea_catalog is None and self.config.gsea.catalog is not None:
            gsea_catalog = catalogs.get(self.config.gsea.catalog)
        gsea_results: Tuple[EnrichmentResult, ...] = ()
        if gsea_catalog is not None:
            with _timed("GSEA"):
                ranked = ranking_from_results(results, metric=self.config.gsea.ranking_metric, key=key)
                gsea_results = self.gsea.rank_enrich(ranked, gsea_catalog)
        else:
            logger.info("No GSEA catalog configured; skipping GSEA")

        pathway_ids = list(pathway_ids)
        views: Dict[str, Tuple[PathwayGeneView, ...]] = {}
        if pathway_ids:
            membership = pathways if pathways is not None else gsea_catalog
            if membership is None:
                raise ValueError("pathway_ids given without pathway membership")
            with _timed("Pathway aggregation"):
                views = self.aggregator.aggregate_many(classified, membership, pathway_ids)

        return PipelineResult(
            matrix=matrix,
            results=results,
            classified=classified,
            label_counts=label_counts,
            enrichment=enrichment,
            gsea=gsea_results,
            pathways=views,
        )
