import streamlit as st
import matplotlib.pyplot as plt

from crc_spatial.config import QCConfig
from crc_spatial.plotting import QC_LABELS, qc_violins, spatial_map
from crc_spatial.io.loading import has_spatial
from crc_spatial.preprocessing import (
    annotate_qc,
    filter_spots,
    is_done,
    normalize,
    scale,
    select_hvg,
)
from crc_spatial.webapp import (
    clear_results,
    dataset_selector,
    get_config,
    next_page_link,
    require_dataset,
    save_and_download,
    set_dataset,
    show_figure,
)

st.title("🔧 Preprocessing")

st.markdown("""
This step prepares **each** spatial dataset for downstream analysis.
The preprocessing workflow must be performed in order, once for the tumor and once for the healthy section:

1. **QC and Filtering** – assess spot quality and remove low-quality spots and rarely detected genes.
2. **Normalization** – standardize sequencing depth across spots.
3. **Highly Variable Gene (HVG) Selection** – identify informative features for dimensionality reduction and clustering.
4. **Scaling** – shift gene expression to mean = 0 and variance = 1 so that all features contribute comparably.

👉 **Important:**
- The steps must be completed in order: each one requires the previous step to be done.
- Use the **same settings** for both datasets so the comparison stays fair.
""")

condition = dataset_selector()
adata = require_dataset(condition)
config = get_config()
raw_key = f"adata_raw_{condition}"

# --- Sidebar to choose submodule ---
submodule = st.sidebar.radio(
    "Choose preprocessing step:",
    ["QC and Filtering", "Normalization", "HVG Selection", "Scaling"]
)

st.caption(f"Working on the **{condition}** dataset: {adata.n_obs} spots x {adata.n_vars} genes")


# =========================================================
# --- QC and Filtering ---
# =========================================================
if submodule == "QC and Filtering":
    st.header("🧹 QC and Filtering")
    st.markdown("""
    **Typical workflow:**
    1. Visualize QC metrics (before filtering), on violins and on the tissue.
    2. Decide filtering thresholds (total counts, number of genes, mitochondrial %).
    3. Apply filtering.
    4. Re-plot QC metrics after filtering to check the effect.
    """)

    # --- Keep an unfiltered copy of the dataset currently loaded ---
    origin_key = f"adata_raw_origin_{condition}"
    if raw_key not in st.session_state or (
        not is_done(adata, "filter") and st.session_state.get(origin_key) != id(adata)
    ):
        st.session_state[raw_key] = adata.copy()
        st.session_state[origin_key] = id(adata)

    adata_raw = st.session_state[raw_key]

    if not is_done(adata_raw, "qc"):
        annotate_qc(adata_raw, config.qc.mt_prefix)

    st.subheader("QC Violin Plots (before filtering)")
    show_figure(qc_violins(adata_raw))

    # --- QC on the tissue ---
    if has_spatial(adata_raw):
        st.subheader("QC metrics on the tissue")
        metric = st.selectbox("Metric to show:", list(QC_LABELS), format_func=QC_LABELS.get)
        show_figure(spatial_map(adata_raw, metric, QC_LABELS[metric]))

    st.subheader("QC Scatter Plot (before filtering)")
    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(
        adata_raw.obs["total_counts"],
        adata_raw.obs["n_genes_by_counts"],
        c=adata_raw.obs["pct_counts_mt"],
        s=8,
        cmap="viridis",
        alpha=0.7,
        edgecolors="none"
    )
    ax.set_xlabel(QC_LABELS["total_counts"])
    ax.set_ylabel(QC_LABELS["n_genes_by_counts"])
    ax.set_title("Genes vs counts (colour = mitochondrial %)")
    show_figure(fig)

    # --- Filtering thresholds ---
    st.subheader("Filtering thresholds")

    min_counts = st.number_input("Minimum total counts per spot", min_value=0, value=config.qc.min_counts)
    min_genes = st.number_input("Minimum number of genes per spot", min_value=0, value=config.qc.min_genes)
    max_pct_mt = st.number_input("Maximum mitochondrial percentage", min_value=0.0, max_value=100.0,
                                 value=float(config.qc.max_pct_mt))
    min_spots = st.number_input("Minimum spots per gene", min_value=0, value=config.qc.min_spots_per_gene)

    if st.button("Apply filtering"):
        config.qc = QCConfig(
            min_counts=int(min_counts),
            min_genes=int(min_genes),
            max_pct_mt=float(max_pct_mt),
            min_spots_per_gene=int(min_spots),
            mt_prefix=config.qc.mt_prefix,
        )
        try:
            adata, summary = filter_spots(adata_raw, config.qc)
        except ValueError as e:
            st.error(f"❌ {e}")
            st.stop()

        set_dataset(condition, adata)
        clear_results()
        st.session_state[f"qc_summary_{condition}"] = summary
        st.success(
            f"Filtered from {summary.n_spots_before} spots to {summary.n_spots_after} spots "
            f"and from {summary.n_genes_before} to {summary.n_genes_after} genes."
        )
        st.write(
            f"Removed for low counts: {summary.removed_low_counts} · low genes: {summary.removed_low_genes} "
            f"· high mitochondrial %: {summary.removed_high_mt} (spots can fail several filters)"
        )

        save_and_download(adata, f"{condition}_filtered.h5ad", "Download filtered data (.h5ad)")

        st.subheader("QC Violin Plots (after filtering)")
        show_figure(qc_violins(adata))

        # 👉 Reminder
        st.warning("👉 Continue to **Normalization** step in the sidebar.")


# =========================================================
# --- Normalization ---
# =========================================================
elif submodule == "Normalization":
    st.header("📊 Normalization")
    st.markdown("""
    Normalize sequencing depth across spots to make them comparable.
    Raw counts are kept in `layers["counts"]` and the log-normalized matrix is frozen in `adata.raw`,
    which is what the tumor vs healthy comparison uses later.
    """)

    if not is_done(adata, "filter"):
        st.error("Please run **QC and Filtering** first.")
    elif is_done(adata, "normalize"):
        st.info("✅ Normalization already performed. To normalize again, please re-run **QC and Filtering** first.")
    else:
        scale_factor = st.number_input("Scale factor (target counts per spot)", min_value=1000,
                                       value=int(config.preprocess.target_sum), step=1000)

        if st.button("Run Normalisation"):
            config.preprocess.target_sum = float(scale_factor)
            normalize(adata, target_sum=scale_factor)
            set_dataset(condition, adata)
            st.success(f"✅ Normalized each spot to {scale_factor} counts and log-transformed.")

            save_and_download(adata, f"{condition}_normalized.h5ad", "Download normalized data (.h5ad)")

            # 👉 Reminder
            st.warning("👉 Continue to **HVG Selection** step in the sidebar.")


# =========================================================
# --- HVG Selection ---
# =========================================================
elif submodule == "HVG Selection":
    st.header("✨ Highly Variable Gene (HVG) Selection")
    st.markdown("""
    Identify the most informative features that drive biological variability.
    These HVGs are used for dimensionality reduction and clustering.
    """)

    if not is_done(adata, "normalize"):
        st.error("Please run **Normalization** first.")
        st.stop()

    n_top_genes = st.number_input("Number of variable genes", min_value=50,
                                  value=config.preprocess.n_top_genes, step=500)

    if st.button("Identify HVGs"):
        config.preprocess.n_top_genes = int(n_top_genes)
        n_hvg = select_hvg(adata, n_top_genes=int(n_top_genes), flavor=config.preprocess.hvg_flavor)
        set_dataset(condition, adata)
        st.success(f"✅ Identified top {n_hvg} highly variable genes.")
        save_and_download(adata, f"{condition}_hvg.h5ad", "Download HVG data (.h5ad)")

        wait_msg = st.empty()
        wait_msg.info("⏳ Plotting HVG selection... please wait, this may take a few seconds.")

        hv = adata.var["highly_variable"]
        fig, axes = plt.subplots(1, 2, figsize=(12, 5))
        for ax, col, title in zip(axes, ["dispersions_norm", "dispersions"],
                                  ["Normalized dispersion", "Raw dispersion"]):
            ax.scatter(adata.var["means"][~hv], adata.var[col][~hv], c="black", s=5, label="Other genes")
            ax.scatter(adata.var["means"][hv], adata.var[col][hv], c="red", s=5, label="Highly variable genes")
            ax.set_title(title)
        axes[0].legend(frameon=False)
        show_figure(fig)

        wait_msg.empty()

        # 👉 Reminder
        st.warning("👉 Continue to **Scaling** step in the sidebar.")


# =========================================================
# --- Scaling ---
# =========================================================
elif submodule == "Scaling":
    st.header("⚖️ Scaling")
    st.markdown("""
    Scale each feature to mean = 0 and variance = 1,
    so that all features contribute comparably to downstream dimensionality reduction methods.
    """)

    if not is_done(adata, "hvg"):
        st.error("Please run **HVG Selection** first.")
    elif is_done(adata, "scale"):
        st.info("✅ Scaling already performed. To run scaling again, please re-run **QC and Filtering** first.")
    else:
        if st.button("Run Scaling"):
            scale(adata, max_value=config.preprocess.scale_max_value)
            set_dataset(condition, adata)
            st.success("✅ Scaled all genes to unit variance and mean 0.")
            save_and_download(adata, f"{condition}_scaled.h5ad", "Download scaled data (.h5ad)")


# --- Show "Next: PCA" only after both datasets are scaled ---
tumor_ready = st.session_state.get("adata_tumor") is not None and is_done(st.session_state["adata_tumor"], "scale")
healthy_ready = st.session_state.get("adata_healthy") is not None and is_done(st.session_state["adata_healthy"], "scale")

if tumor_ready and healthy_ready:
    next_page_link("pages/3_PCA.py", "➡️ Next: PCA", ratios=(1.1, 0.2))
elif submodule == "Scaling" and is_done(adata, "scale"):
    st.info("👉 Switch to the other dataset in the sidebar and preprocess it too.")
