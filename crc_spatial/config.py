"""Configuration classes for the tumor vs healthy spatial comparison.

Every parameter has a default so the analysis runs without a config file;
YAML documents override only the keys they set.
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


TUMOR = "tumor"
HEALTHY = "healthy"
CONDITIONS = (TUMOR, HEALTHY)

# 10x public FFPE colorectal cancer section, fetched by sc.datasets.visium_sge
DEFAULT_TUMOR_DEMO = "Parent_Visium_Human_ColorectalCancer"


@dataclass
class QCConfig:
    """Spot and gene filtering thresholds.

    Attributes
    ----------
    min_counts : int
        Minimum total UMI counts per spot
    min_genes : int
        Minimum detected genes per spot
    max_pct_mt : float
        Maximum percentage of mitochondrial counts per spot
    min_spots_per_gene : int
        Genes detected in fewer spots are dropped
    mt_prefix : str
        Prefix identifying mitochondrial genes
    """

    min_counts: int = 500
    min_genes: int = 200
    max_pct_mt: float = 25.0
    min_spots_per_gene: int = 10
    mt_prefix: str = "MT-"


@dataclass
class PreprocessConfig:
    """Normalization, dimensionality reduction and clustering parameters."""

    target_sum: float = 1e4
    n_top_genes: int = 2000
    hvg_flavor: str = "seurat"
    scale_max_value: float = 10.0
    n_comps: int = 50
    n_pcs: int = 30
    n_neighbors: int = 15
    resolution: float = 1.0
    random_state: int = 0
    variance_target: float = 0.8


@dataclass
class ComparisonConfig:
    """Statistical comparison parameters.

    Attributes
    ----------
    pseudocount : float
        Added to expm1-space means before taking the log2 ratio
    alpha : float
        Significance level on adjusted p-values
    min_log2fc : float
        Minimum absolute log2 fold change to call a direction
    correction : str
        Multiple testing method passed to statsmodels multipletests
    coexpression_method : str
        Correlation method for spot-level co-expression (pearson/spearman)
    """

    pseudocount: float = 0.1
    alpha: float = 0.05
    min_log2fc: float = 0.5
    correction: str = "fdr_bh"
    coexpression_method: str = "spearman"


@dataclass
class DatasetConfig:
    """Where one dataset comes from.

    Either ``path`` (Visium directory, .h5, .h5ad or .loom) or ``demo``
    (a 10x sample id understood by ``sc.datasets.visium_sge``) must be set
    before loading.
    """

    label: str = TUMOR
    path: Optional[str] = None
    demo: Optional[str] = None
    library_id: Optional[str] = None

    @property
    def is_set(self) -> bool:
        return bool(self.path or self.demo)


@dataclass
class MarkerPanel:
    """A named group of marker genes with the expected tumor behaviour."""

    name: str
    genes: List[str]
    description: str = ""
    expected_in_tumor: str = "mixed"

    def __post_init__(self):
        if self.expected_in_tumor not in ("up", "down", "mixed"):
            raise ValueError(
                f"Panel {self.name!r}: expected_in_tumor must be up, down or mixed, "
                f"got {self.expected_in_tumor!r}"
            )
        self.genes = [str(g) for g in self.genes]


DEFAULT_MARKER_PANELS: List[MarkerPanel] = [
    MarkerPanel(
        name="epithelial_tumor",
        genes=["EPCAM", "CEACAM5", "CEACAM6", "KRT20", "KRT8", "CDX2"],
        description="Epithelial and CRC-associated epithelial markers",
        expected_in_tumor="up",
    ),
    MarkerPanel(
        name="stem_wnt",
        genes=["LGR5", "ASCL2", "AXIN2", "OLFM4", "SOX9", "MYC"],
        description="Crypt stem cell and Wnt target genes",
        expected_in_tumor="up",
    ),
    MarkerPanel(
        name="proliferation",
        genes=["MKI67", "TOP2A", "PCNA", "MCM2", "CCNB1"],
        description="Cell cycle and proliferation markers",
        expected_in_tumor="up",
    ),
    MarkerPanel(
        name="colonocyte",
        genes=["CA1", "CA2", "CA4", "SLC26A3", "AQP8", "GUCA2A", "GUCA2B"],
        description="Mature absorptive colonocyte markers",
        expected_in_tumor="down",
    ),
    MarkerPanel(
        name="goblet",
        genes=["MUC2", "CLCA1", "TFF3", "FCGBP", "ZG16"],
        description="Goblet and secretory lineage markers",
        expected_in_tumor="down",
    ),
    MarkerPanel(
        name="stroma_caf",
        genes=["COL1A1", "COL1A2", "COL3A1", "FAP", "ACTA2", "POSTN"],
        description="Stromal and cancer-associated fibroblast markers",
        expected_in_tumor="up",
    ),
    MarkerPanel(
        name="invasion",
        genes=["MMP7", "SPP1", "LCN2", "S100P"],
        description="Invasion and tumor microenvironment remodelling markers",
        expected_in_tumor="up",
    ),
    MarkerPanel(
        name="immune",
        genes=["PTPRC", "CD3E", "CD68", "CD74", "MS4A1", "IGKC"],
        description="Immune infiltrate markers",
        expected_in_tumor="mixed",
    ),
]


def _build(cls, data: Optional[Dict[str, Any]], section: str):
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section {section!r}: {unknown}")
    return cls(**data)


@dataclass
class AnalysisConfig:
    """Master configuration for the tumor vs healthy comparison."""

    tumor: DatasetConfig = field(
        default_factory=lambda: DatasetConfig(label=TUMOR, demo=DEFAULT_TUMOR_DEMO)
    )
    healthy: DatasetConfig = field(default_factory=lambda: DatasetConfig(label=HEALTHY))
    qc: QCConfig = field(default_factory=QCConfig)
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    comparison: ComparisonConfig = field(default_factory=ComparisonConfig)
    panels: List[MarkerPanel] = field(
        default_factory=lambda: [
            MarkerPanel(p.name, list(p.genes), p.description, p.expected_in_tumor)
            for p in DEFAULT_MARKER_PANELS
        ]
    )
    output_dir: str = "outputs"
    figure_dpi: int = 150

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown top-level config keys: {unknown}")

        kwargs: Dict[str, Any] = {}
        if "tumor" in data:
            kwargs["tumor"] = _build(DatasetConfig, {"label": TUMOR, **(data["tumor"] or {})}, "tumor")
        if "healthy" in data:
            kwargs["healthy"] = _build(
                DatasetConfig, {"label": HEALTHY, **(data["healthy"] or {})}, "healthy"
            )
        if "qc" in data:
            kwargs["qc"] = _build(QCConfig, data["qc"], "qc")
        if "preprocess" in data:
            kwargs["preprocess"] = _build(PreprocessConfig, data["preprocess"], "preprocess")
        if "comparison" in data:
            kwargs["comparison"] = _build(ComparisonConfig, data["comparison"], "comparison")
        if "panels" in data:
            kwargs["panels"] = [_build(MarkerPanel, p, "panels") for p in data["panels"]]
        for key in ("output_dir", "figure_dpi"):
            if key in data:
                kwargs[key] = data[key]
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> "AnalysisConfig":
        """Load configuration from a YAML file.

        The document may hold the settings at top level or nested under
        an ``analysis:`` key.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        if "analysis" in data:
            data = data["analysis"] or {}
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def panel(self, name: str) -> MarkerPanel:
        for p in self.panels:
            if p.name == name:
                return p
        raise KeyError(f"No marker panel named {name!r}")

    def all_marker_genes(self) -> List[str]:
        """Unique marker genes across panels, in panel order."""
        seen = []
        for p in self.panels:
            for g in p.genes:
                if g not in seen:
                    seen.append(g)
        return seen

    def gene_to_panel(self) -> Dict[str, str]:
        """Map each marker gene to the first panel listing it."""
        mapping: Dict[str, str] = {}
        for p in self.panels:
            for g in p.genes:
                mapping.setdefault(g.upper(), p.name)
        return mapping
