import streamlit as st
import scanpy as sc
import matplotlib.pyplot as plt
import math

from crc_spatial.preprocessing import is_done, pcs_for_variance, run_pca
from crc_spatial.plotting import variance_elbow
from crc_spatial.markers import resolve_genes
from crc_spatial.webapp import (
    dataset_selector,
    get_config,
    get_dataset,
    next_page_link,
    require_dataset,
    save_and_download,
    set_dataset,
    show_figure,
)

st.title("📉 Linear Dimensional Reduction (PCA)")

st.markdown("""
Principal Component Analysis (**PCA**) projects spots into a low-dimensional space that captures the
**major sources of variation** in each section.

The workflow includes:
1. **Run PCA** – choose how many principal components to compute and whether to restrict the analysis to **HVGs**.
2. **Inspect variance explained (Elbow plot)** – determine how many PCs capture most of the variation.
3. **Visualize PCA scatter plots** – explore how spots separate in the PCA space.
4. **Examine PCA loadings** – identify which genes contribute most to each principal component.

👉 *Run PCA on both datasets; these PCs are used in clustering and UMAP.*
""")

condition = dataset_selector()
adata = require_dataset(condition, "Preprocessing")
config = get_config()

if not is_done(adata, "scale"):
    st.error(f"The {condition} dataset is not scaled yet. Please complete **Preprocessing** (through Scaling) first.")
    st.stop()

# --- User options ---
n_comps = st.number_input(
    "Number of PCs",
    min_value=5, max_value=100, value=config.preprocess.n_comps, step=5,
    help="How many principal components to compute. Typically 30–50."
)

use_hvg_option = st.selectbox(
    "Use highly variable genes (HVGs)?",
    options=["Auto (use HVGs if available)", "Yes (only HVGs)", "No (all genes)"],
    index=0,
    help="Auto – If HVGs have been identified, PCA will use only HVGs. "
        "If not, PCA will use all genes.\n\n"
        "Yes – Force PCA to use only HVGs.\n"
        "No – Force PCA to use all genes."
)

if use_hvg_option.startswith("Auto"):
    use_highly_variable = None
elif use_hvg_option.startswith("Yes"):
    use_highly_variable = True
else:
    use_highly_variable = False

# --- Run PCA ---
if st.button("Run PCA"):
    wait_placeholder = st.empty()
    wait_placeholder.info("⏳ Running PCA...")
    try:
        computed = run_pca(adata, n_comps=int(n_comps), use_highly_variable=use_highly_variable)
    except ValueError as e:
        wait_placeholder.empty()
        st.error(f"❌ {e}")
        st.stop()

    adata.uns["n_pcs_selected"] = computed
    st.session_state[f"n_pcs_{condition}"] = computed
    set_dataset(condition, adata)
    wait_placeholder.empty()
    st.success(f"✅ PCA done on the {condition} dataset with n_comps={computed}")


# --- If PCA done, show plots ---
if "X_pca" in adata.obsm_keys():
    # ---- Elbow plot ----
    st.subheader("📊 Variance explained (Elbow plot)")
    target = config.preprocess.variance_target
    n_var = pcs_for_variance(adata, target)
    st.markdown(
        f"Use this plot to estimate how many PCs capture most of the variance. "
        f"Here **{n_var} PCs** reach {target:.0%} of the variance captured by the computed PCs."
    )

    n_pcs_elbow = st.number_input(
        "Number of PCs to display:",
        min_value=5, max_value=100, value=20, step=5
    )
    show_figure(variance_elbow(adata, n_pcs=int(n_pcs_elbow), target=target))

    # --- User chooses PCs for downstream analysis ---
    st.subheader("🔧 Select number of PCs for downstream analysis")
    st.markdown("""This is based on where the elbow plot plateaus.""")
    n_pcs_final = st.number_input(
        "Number of PCs to use (for clustering, UMAP, etc.):",
        min_value=2, max_value=100,
        value=min(max(2, min(config.preprocess.n_pcs, adata.obsm["X_pca"].shape[1])), 100), step=1
    )

    if st.button("Save selection"):
        st.session_state[f"n_pcs_{condition}"] = int(n_pcs_final)
        config.preprocess.n_pcs = int(n_pcs_final)
        adata.uns["n_pcs_selected"] = int(n_pcs_final)
        set_dataset(condition, adata)
        st.success(f"✅ Using {n_pcs_final} PCs for downstream analysis.")
        save_and_download(adata, f"{condition}_pca.h5ad", "Download PCA-processed data (.h5ad)")

    # ---- PCA scatter plot ----
    st.subheader("🖼️ PCA Scatter Plot")
    st.markdown("""
                Visualize spots in the PCA space. Each point represents a **single Visium spot**
                (a mixture of several cells). Colour by marker genes to see which axis separates
                epithelium, stroma and immune-rich regions.
                """)

    st.info("""
    💡 **Tip:** Marker genes commonly used in colorectal tissue:

    - **EPCAM / KRT20** → epithelium
    - **CEACAM5** → CRC-associated epithelium
    - **MKI67** → proliferation
    - **CA1 / MUC2** → differentiated colonocytes / goblet cells
    - **COL1A1** → stroma
    - **PTPRC** → immune cells
    """)

    marker_genes, _ = resolve_genes(adata, ["EPCAM", "CEACAM5", "MKI67", "CA1", "MUC2", "COL1A1", "PTPRC"])

    x_pc = st.number_input("PC for X-axis", min_value=1, max_value=50, value=1, step=1)
    y_pc = st.number_input("PC for Y-axis", min_value=1, max_value=50, value=2, step=1)

    selected_genes = st.multiselect(
        "Color spots by gene(s) (optional):",
        options=adata.raw.var_names.tolist() if adata.raw is not None else adata.var_names.tolist(),
        default=marker_genes,
        help="Choose one or more genes. If left empty, no gene coloring will be applied."
    )

    if st.button("Plot PCA Scatter"):
        sc.pl.pca(
            adata,
            components=f"{x_pc},{y_pc}",
            color=selected_genes if selected_genes else None,
            show=False
        )
        show_figure(plt.gcf())

    # ---- PCA Loadings ----
    st.subheader("🔎 Top contributing genes per PC")
    st.markdown("See which genes drive each principal component (PC).")

    n_pcs_loadings = st.number_input(
        "Number of PCs to inspect (must be even number to display):",
        min_value=2, max_value=20, value=6, step=2
    )

    n_pairs = math.ceil(n_pcs_loadings / 2)
    for i in range(n_pairs):
        pc1 = 2 * i + 1
        pc2 = 2 * i + 2
        if pc2 <= min(n_pcs_loadings, adata.obsm["X_pca"].shape[1]):
            sc.pl.pca_loadings(
                adata,
                components=(pc1, pc2),
                include_lowest=True,
                show=False
            )
            show_figure(plt.gcf())

else:
    st.info("👉 Run PCA first to view elbow plot, scatter plot, and PC loadings.")

# --- Show "Next: Clustering & UMAP" only after PCA is done on both ---
tumor, healthy = get_dataset("tumor"), get_dataset("healthy")
if all(a is not None and "X_pca" in a.obsm_keys() for a in (tumor, healthy)):
    next_page_link("pages/4_Clustering & UMAP.py", "➡️ Next: Clustering & UMAP", ratios=(0.5, 0.2))
