import streamlit as st
import scanpy as sc
import matplotlib.pyplot as plt
import pandas as pd

from crc_spatial.comparison import condition_de
from crc_spatial.markers import flatten_rank_genes
from crc_spatial.webapp import (
    dataset_selector,
    get_config,
    next_page_link,
    require_both,
    require_dataset,
    set_dataset,
    show_figure,
)

st.title("🧬 Differential Expression (Marker Genes)")

st.markdown("""
In this step, we identify **marker genes** that are differentially expressed.

The workflow includes:
1. **Find marker genes** – perform differential expression tests.
   - Comparison options:
     - **One cluster vs all other clusters** (within one dataset)
     - **Two specific clusters** (within one dataset)
     - **All clusters vs rest** (within one dataset)
     - **Tumor vs healthy** (all spots of both sections, log-normalized data)
   - Test method: **Wilcoxon rank-sum test** (default in Scanpy).

2. **Inspect marker genes** – view top ranked genes and their statistics (scores, fold-changes, adjusted p-values).

👉 Cluster markers give **biological meaning** to spatial domains; tumor vs healthy genes point to what changes in cancer.
""")

condition = dataset_selector()
adata = require_dataset(condition, "Clustering & UMAP")

if "leiden" not in adata.obs:
    st.error("No clustering found. Please run **Clustering & UMAP** first.")
    st.stop()


# =========================================================
# --- Step 1: Select comparison mode ---
# =========================================================
st.subheader("📌 Step 1: Choose comparison mode")

mode = st.radio(
    "What would you like to compare?",
    ["Cluster vs all other clusters", "Cluster vs cluster", "All clusters vs rest", "Tumor vs healthy"],
    help="""
    - **Cluster vs all other clusters** 🧩: Choose one cluster and compare against all others.
    - **Cluster vs cluster** ⚖️: Compare two specific clusters.
    - **All clusters vs rest** 🌐: Compute marker genes for *all clusters* at once.
    - **Tumor vs healthy** 🔴🟢: Compare every tumor spot against every healthy spot.
    """
)

clusters = sorted(adata.obs["leiden"].unique(), key=lambda c: int(c) if str(c).isdigit() else str(c))
run_deg = False
cluster = None
cluster1 = None
cluster2 = None

if mode == "Cluster vs all other clusters":
    cluster = st.selectbox("Select cluster:", clusters)
    if st.button("Run DE analysis"):
        run_deg = True

elif mode == "Cluster vs cluster":
    if len(clusters) < 2:
        st.warning("⚠️ Only one cluster found; increase the Leiden resolution.")
    else:
        col1, col2 = st.columns(2)
        with col1:
            cluster1 = st.selectbox("Cluster 1:", clusters, index=0)
        with col2:
            cluster2 = st.selectbox("Cluster 2:", clusters, index=1)
        if st.button("Run DE analysis"):
            run_deg = True

elif mode == "All clusters vs rest":
    if st.button("Run DE analysis for all clusters"):
        run_deg = True

elif mode == "Tumor vs healthy":
    restrict = st.checkbox("Restrict to marker panel genes", value=False)
    if st.button("Run tumor vs healthy DE"):
        run_deg = True


# =========================================================
# --- Step 2: Run DE analysis ---
# =========================================================
if run_deg:
    wait_msg = st.empty()
    wait_msg.info("⏳ Running differential expression analysis...")

    if mode == "Cluster vs all other clusters":
        sc.tl.rank_genes_groups(adata, groupby="leiden", groups=[cluster], reference="rest", method="wilcoxon")
        st.success(f"✅ Marker genes for cluster {cluster} vs all others computed ({condition}).")

    elif mode == "Cluster vs cluster":
        sc.tl.rank_genes_groups(adata, groupby="leiden", groups=[cluster1], reference=cluster2, method="wilcoxon")
        st.success(f"✅ Marker genes for cluster {cluster1} vs cluster {cluster2} computed ({condition}).")

    elif mode == "All clusters vs rest":
        sc.tl.rank_genes_groups(adata, groupby="leiden", reference="rest", method="wilcoxon")
        st.success(f"✅ Marker genes computed for ALL clusters vs rest ({condition}).")

    elif mode == "Tumor vs healthy":
        tumor, healthy = require_both("Clustering & UMAP")
        genes = get_config().all_marker_genes() if restrict else None
        try:
            st.session_state["condition_de"] = condition_de(tumor, healthy, genes=genes)
            st.success("✅ Tumor vs healthy differential expression computed.")
        except ValueError as e:
            st.error(f"❌ {e}")

    wait_msg.empty()
    set_dataset(condition, adata)


# =========================================================
# --- Step 2 conti.: Show results ---
# =========================================================
if mode == "Tumor vs healthy" and "condition_de" in st.session_state:
    st.subheader("📊 Step 2: Tumor vs healthy genes")
    de = st.session_state["condition_de"]
    n_show = st.number_input("Number of genes to show in each direction", min_value=5, max_value=100, value=20)
    col1, col2 = st.columns(2)
    with col1:
        st.markdown("**Higher in tumor**")
        st.dataframe(de.sort_values("scores", ascending=False).head(int(n_show)))
    with col2:
        st.markdown("**Higher in healthy**")
        st.dataframe(de.sort_values("scores").head(int(n_show)))

    st.download_button(
        label="💾 Download tumor vs healthy DE results (.csv)",
        data=de.to_csv(index=False).encode("utf-8"),
        file_name="tumor_vs_healthy_DE.csv",
        mime="text/csv"
    )

elif mode != "Tumor vs healthy" and "rank_genes_groups" in adata.uns:
    st.subheader(f"📊 Step 2: Inspect marker genes ({condition})")

    st.markdown("Here are the **top ranked marker genes** per cluster (Scanpy visualization):")
    sc.pl.rank_genes_groups(adata, n_genes=20, sharey=False, show=False)
    show_figure(plt.gcf())

    df_out = flatten_rank_genes(adata.uns["rank_genes_groups"])
    st.download_button(
        label="💾 Download DE results (.csv)",
        data=df_out.to_csv(index=False).encode("utf-8"),
        file_name=f"{condition}_DE_results.csv",
        mime="text/csv"
    )

    # =========================================================
    # --- Step 3: Automatically detect marker genes ---
    # =========================================================
    st.subheader("✨ Step 3: Automatic Marker Gene Detection")

    top_n = st.number_input("Number of top genes per cluster", min_value=1, max_value=50, value=5, step=1)

    result = adata.uns["rank_genes_groups"]
    marker_table = [
        {"Cluster": g, "Markers": ", ".join(result["names"][g][:top_n].tolist())}
        for g in result["names"].dtype.names
    ]
    df_markers = pd.DataFrame(marker_table)
    st.dataframe(df_markers)

    st.download_button(
        label="💾 Download marker genes (.csv)",
        data=df_markers.to_csv(index=False).encode("utf-8"),
        file_name=f"{condition}_marker_genes.csv",
        mime="text/csv"
    )

    # --- Save top marker per cluster ---
    top_markers = {g: result["names"][g][0] for g in result["names"].dtype.names if len(result["names"][g]) > 0}
    st.session_state[f"top_markers_{condition}"] = top_markers
    st.info(f"💡 Saved top marker genes per cluster: {list(top_markers.values())}")

    next_page_link("pages/6_Marker_Comparison.py", "➡️ Next: Marker Comparison", ratios=(0.6, 0.255))
