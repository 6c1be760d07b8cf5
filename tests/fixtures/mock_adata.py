"""Mock AnnData generators for testing.

Counts follow a Poisson model on a spot grid. Tumor sections over-express
epithelial, stem, proliferation and invasion markers; healthy sections
over-express colonocyte and goblet markers. The right half of every
section is stroma-rich so clustering finds at least two domains.
"""

from typing import Iterable, Optional

import numpy as np
import pandas as pd

TUMOR_UP = ["EPCAM", "CEACAM5", "CEACAM6", "LGR5", "ASCL2", "MKI67", "TOP2A", "MMP7", "SPP1"]
HEALTHY_UP = ["CA1", "CA2", "SLC26A3", "AQP8", "GUCA2A", "MUC2", "CLCA1", "ZG16"]
STROMA = ["COL1A1", "COL1A2", "COL3A1", "ACTA2", "POSTN"]
SHARED = ["KRT20", "KRT8", "CDX2", "PTPRC", "CD74", "TFF3"]
MITO = ["MT-CO1", "MT-ND1", "MT-ATP6"]
RIBO = ["RPS3", "RPL13"]


def create_visium_adata(
    condition: str = "tumor",
    n_rows: int = 15,
    n_cols: int = 20,
    n_filler: int = 150,
    seed: int = 0,
    include_spatial: bool = True,
    extra_genes: Optional[Iterable[str]] = None,
) -> "AnnData":
    """Create a raw-count AnnData shaped like a small Visium section.

    Parameters
    ----------
    condition : str
        "tumor" or "healthy"; decides which marker program is boosted.
    n_rows, n_cols : int
        Spot grid size (n_spots = n_rows * n_cols).
    n_filler : int
        Number of background genes.
    seed : int
        Random seed for reproducibility.
    include_spatial : bool
        Add spot coordinates to ``obsm["spatial"]``.
    extra_genes : Iterable[str], optional
        Additional background genes.
    """
    import anndata as ad

    rng = np.random.default_rng(seed)
    genes = TUMOR_UP + HEALTHY_UP + STROMA + SHARED + MITO + RIBO
    genes += list(extra_genes or [])
    genes += [f"GENE{i}" for i in range(n_filler)]
    n_spots = n_rows * n_cols

    rows, cols = np.divmod(np.arange(n_spots), n_cols)
    stroma_domain = cols >= n_cols // 2

    base = rng.uniform(0.5, 3.0, size=len(genes))
    rates = np.tile(base, (n_spots, 1))
    idx = {g: i for i, g in enumerate(genes)}

    program = TUMOR_UP if condition == "tumor" else HEALTHY_UP
    epithelial = ~stroma_domain
    for g in program:
        rates[epithelial, idx[g]] *= 10
        rates[stroma_domain, idx[g]] *= 3
    for g in STROMA:
        rates[stroma_domain, idx[g]] *= 8
    for g in MITO:
        rates[:, idx[g]] *= 2

    X = rng.poisson(rates).astype(np.float32)

    obs = pd.DataFrame(
        {"domain": pd.Categorical(np.where(stroma_domain, "stroma", "epithelium"))},
        index=pd.Index([f"{condition}_spot_{i}" for i in range(n_spots)]),
    )
    var = pd.DataFrame(index=pd.Index(genes))
    adata = ad.AnnData(X=X, obs=obs, var=var)

    if include_spatial:
        adata.obsm["spatial"] = np.column_stack([cols * 100.0, rows * 100.0])

    adata.obs["condition"] = pd.Categorical([condition] * n_spots)
    adata.uns["condition"] = condition
    adata.uns["source"] = f"mock:{condition}"
    return adata


def create_lognorm_pair(n_spots: int = 60, seed: int = 1):
    """Two small log-normalized datasets with a known marker shift.

    ``UPGENE`` is higher in tumor, ``DOWNGENE`` higher in healthy,
    ``FLATGENE`` is identical and ``ZEROGENE`` is never expressed.
    Only the tumor dataset measures ``TUMORONLY``.
    """
    import anndata as ad

    rng = np.random.default_rng(seed)

    def make(up_mean, down_mean, extra):
        genes = ["UPGENE", "DOWNGENE", "FLATGENE", "ZEROGENE", "NOISE1", "NOISE2"] + extra
        X = np.zeros((n_spots, len(genes)))
        X[:, 0] = rng.normal(up_mean, 0.2, n_spots).clip(0)
        X[:, 1] = rng.normal(down_mean, 0.2, n_spots).clip(0)
        X[:, 2] = 1.0
        X[:, 4] = rng.uniform(0, 2, n_spots)
        X[:, 5] = rng.uniform(0, 2, n_spots)
        if extra:
            X[:, 6:] = rng.uniform(0, 1, (n_spots, len(extra)))
        return ad.AnnData(
            X=X,
            obs=pd.DataFrame(index=[f"s{i}" for i in range(n_spots)]),
            var=pd.DataFrame(index=genes),
        )

    tumor = make(3.0, 0.5, ["TUMORONLY"])
    healthy = make(0.5, 3.0, [])
    return tumor, healthy


def write_10x_h5(adata, path):
    """Write raw counts in the Cell Ranger v3 ``filtered_feature_bc_matrix.h5`` layout."""
    import h5py
    from scipy import sparse

    counts = sparse.csr_matrix(adata.X, dtype=np.int32)
    n_genes = adata.n_vars
    with h5py.File(path, "w") as f:
        matrix = f.create_group("matrix")
        matrix.create_dataset("barcodes", data=np.array(adata.obs_names, dtype="S"))
        matrix.create_dataset("data", data=counts.data)
        matrix.create_dataset("indices", data=counts.indices)
        matrix.create_dataset("indptr", data=counts.indptr)
        matrix.create_dataset("shape", data=np.array([n_genes, adata.n_obs], dtype=np.int32))
        features = matrix.create_group("features")
        features.create_dataset("id", data=np.array([f"ENSG{i:011d}" for i in range(n_genes)], dtype="S"))
        features.create_dataset("name", data=np.array(adata.var_names, dtype="S"))
        features.create_dataset("feature_type", data=np.array(["Gene Expression"] * n_genes, dtype="S"))
        features.create_dataset("genome", data=np.array(["GRCh38"] * n_genes, dtype="S"))
    return path
