"""
Analysis configuration loaded from YAML.

The core components take their thresholds as explicit arguments; this module
only collects them in one place for the pipeline.
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "analysis.yaml"


@dataclass(frozen=True)
class PreparationConfig:
    min_mean_count: float = 50.0
    biotype_filter: Optional[str] = None
    biotype_column: str = "gene_biotype"


@dataclass(frozen=True)
class DifferentialConfig:
    engine: str = "native"
    n_jobs: Optional[int] = 1
    chunk_size: int = 2000
    refit_cooks: bool = True


@dataclass(frozen=True)
class ClassificationConfig:
    padj_threshold: float = 0.05
    log2fc_threshold: float = 1.0


@dataclass(frozen=True)
class CatalogSource:
    """Where a gene-set catalog comes from: an Enrichr library name or a GMT file."""

    library: Optional[str] = None
    gmt: Optional[str] = None


@dataclass(frozen=True)
class EnrichmentConfig:
    pvalue_cutoff: float = 0.05
    qvalue_cutoff: float = 0.2
    gene_key: str = "gene_id"
    organism: str = "Human"
    catalogs: Dict[str, CatalogSource] = field(default_factory=dict)


@dataclass(frozen=True)
class GSEAConfig:
    permutations: int = 1000
    min_size: int = 5
    max_size: Optional[int] = None
    weight: float = 1.0
    seed: int = 42
    n_jobs: Optional[int] = 1
    fdr_cutoff: float = 0.25
    ranking_metric: str = "stat"
    catalog: Optional[str] = None
    engine: str = "native"


@dataclass(frozen=True)
class AnalysisConfig:
    preparation: PreparationConfig = field(default_factory=PreparationConfig)
    differential: DifferentialConfig = field(default_factory=DifferentialConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    gsea: GSEAConfig = field(default_factory=GSEAConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _build(cls, section: Optional[Dict[str, Any]], name: str):
    section = section or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {unknown}")
    return cls(**section)


def config_from_dict(raw: Dict[str, Any]) -> AnalysisConfig:
    """Build an AnalysisConfig from a parsed YAML mapping (missing sections use defaults)."""
    raw = raw or {}
    unknown = sorted(set(raw) - {f.name for f in fields(AnalysisConfig)})
    if unknown:
        raise ValueError(f"Unknown config sections: {unknown}")

    enrichment_raw = dict(raw.get("enrichment") or {})
    catalogs = {
        str(name): _build(CatalogSource, section, f"enrichment.catalogs.{name}")
        for name, section in (enrichment_raw.pop("catalogs", None) or {}).items()
    }
    return AnalysisConfig(
        preparation=_build(PreparationConfig, raw.get("preparation"), "preparation"),
        differential=_build(DifferentialConfig, raw.get("differential"), "differential"),
        classification=_build(ClassificationConfig, raw.get("classification"), "classification"),
        enrichment=_build(EnrichmentConfig, {**enrichment_raw, "catalogs": catalogs}, "enrichment"),
        gsea=_build(GSEAConfig, raw.get("gsea"), "gsea"),
    )


def load_config(config_path: Union[str, Path, None] = None) -> AnalysisConfig:
    """
    Load analysis settings from a YAML file.

    Args:
        config_path: Path to YAML config file (default: config/analysis.yaml)

    Returns:
        AnalysisConfig

    Raises:
        FileNotFoundError: config file does not exist
        ValueError: unknown keys or invalid values
    """
    config_file = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    if not config_file.exists():
        raise FileNotFoundError(f"Analysis config not found: {config_file}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f)

    config = config_from_dict(raw or {})
    problems = validate_config(config)
    if problems:
        raise ValueError(f"Invalid analysis config {config_file}: " + "; ".join(problems))
    logger.info(f"Loaded analysis config from {config_file}")
    return config


def default_config() -> AnalysisConfig:
    return AnalysisConfig()


def validate_config(config: AnalysisConfig) -> List[str]:
    """Return a list of problems (empty when the config is usable)."""
    problems = []
    if config.preparation.min_mean_count < 0:
        problems.append("preparation.min_mean_count must be >= 0")
    if config.differential.engine not in ("native", "pydeseq2"):
        problems.append(f"differential.engine '{config.differential.engine}' is not supported")
    if config.differential.chunk_size < 1:
        problems.append("differential.chunk_size must be >= 1")
    if not 0 < config.classification.padj_threshold <= 1:
        problems.append("classification.padj_threshold must be in (0, 1]")
    if config.classification.log2fc_threshold < 0:
        problems.append("classification.log2fc_threshold must be >= 0")
    for label in ("pvalue_cutoff", "qvalue_cutoff"):
        value = getattr(config.enrichment, label)
        if not 0 < value <= 1:
            problems.append(f"enrichment.{label} must be in (0, 1]")
    if config.enrichment.gene_key not in ("gene_id", "symbol", "entrez_id"):
        problems.append(f"enrichment.gene_key '{config.enrichment.gene_key}' is not supported")
    for name, source in config.enrichment.catalogs.items():
        if (source.library is None) == (source.gmt is None):
            problems.append(f"enrichment.catalogs.{name} needs exactly one of 'library' or 'gmt'")
    if config.gsea.permutations < 1:
        problems.append("gsea.permutations must be >= 1")
    if config.gsea.min_size < 1:
        problems.append("gsea.min_size must be >= 1")
    if config.gsea.max_size is not None and config.gsea.max_size < config.gsea.min_size:
        problems.append("gsea.max_size must be >= gsea.min_size")
    if config.gsea.ranking_metric not in ("stat", "signed_log10_pvalue", "log2_fold_change"):
        problems.append(f"gsea.ranking_metric '{config.gsea.ranking_metric}' is not supported")
    if config.gsea.engine not in ("native", "gseapy"):
        problems.append(f"gsea.engine '{config.gsea.engine}' is not supported")
    if config.gsea.catalog is not None and config.gsea.catalog not in config.enrichment.catalogs:
        problems.append(f"gsea.catalog '{config.gsea.catalog}' is not a configured catalog")
    return problems
