import streamlit as st

from crc_spatial.config import HEALTHY, TUMOR
from crc_spatial.io.loading import has_spatial
from crc_spatial.markers import resolve_genes, score_column
from crc_spatial.pipeline import compare_datasets
from crc_spatial.plotting import (
    coexpression_heatmap,
    comparison_bars,
    marker_dotplot,
    mean_scatter,
    panel_score_violins,
    spatial_map,
    umap_map,
)
from crc_spatial.report import interpret_correlation, interpret_panel
from crc_spatial.webapp import DATASET_LABELS, get_config, next_page_link, require_both, show_figure

st.title("🧭 Marker Comparison: Tumor vs Healthy")

st.markdown("""
In this step, we compare **marker gene expression** between the colorectal tumor and the healthy intestine.

The workflow includes:
1. **Marker genes on the tissue** – the same gene shown side by side on both sections.
2. **Statistical comparison** – per-gene Mann–Whitney tests, log2 fold changes and Benjamini–Hochberg correction.
3. **Correlation** – do tumor and healthy share the same marker expression profile?
4. **Marker panel scores** – per-spot scores for biological programs (stemness, proliferation, differentiation …).
5. **Cluster annotation** – label each Leiden cluster with its most enriched marker panel.

👉 All comparisons use the **log-normalized** data stored in `adata.raw`.
""")

tumor, healthy = require_both("Clustering & UMAP")
config = get_config()

if "leiden" not in tumor.obs or "leiden" not in healthy.obs:
    st.error("❌ Please complete **Clustering & UMAP** for both datasets first.")
    st.stop()

# =========================================================
# Part 1: Marker genes on the tissue
# =========================================================
st.subheader("📌 Step 1: Marker genes on the tissue")

panel_names = [p.name for p in config.panels]
panel_choice = st.selectbox("Marker panel:", panel_names, index=0)
panel = config.panel(panel_choice)
st.caption(f"{panel.description} – expected in tumor: **{panel.expected_in_tumor}**")

in_tumor, missing_tumor = resolve_genes(tumor, panel.genes)
in_healthy, missing_healthy = resolve_genes(healthy, panel.genes)
if missing_tumor or missing_healthy:
    st.warning(
        f"⚠️ Not measured – tumor: {', '.join(missing_tumor) or 'none'}; "
        f"healthy: {', '.join(missing_healthy) or 'none'}"
    )

selected_genes = st.multiselect(
    "Select genes to show:",
    options=[g for g in panel.genes if g in in_tumor or g in in_healthy],
    default=[g for g in panel.genes if g in in_tumor and g in in_healthy][:2],
)

if st.button("Plot genes on both sections"):
    for gene in selected_genes:
        cols = st.columns(2)
        for col, (cond, adata) in zip(cols, [(TUMOR, tumor), (HEALTHY, healthy)]):
            with col:
                st.markdown(f"**{DATASET_LABELS[cond]} – {gene}**")
                if not has_spatial(adata):
                    st.warning("⚠️ No spatial coordinates; showing UMAP instead.")
                    present, _ = resolve_genes(adata, [gene])
                    if present:
                        show_figure(umap_map(adata, present[0]))
                    continue
                try:
                    show_figure(spatial_map(adata, gene, gene))
                except KeyError as e:
                    st.info(f"{e}")

# =========================================================
# Part 2: Statistical comparison
# =========================================================
st.subheader("📌 Step 2: Statistical comparison")

st.markdown("""
For every marker measured in both sections we report mean log expression, the fraction of spots
expressing the gene, the **log2 fold change** (tumor / healthy) and a two-sided **Mann–Whitney U** test.
A gene is called *up* or *down* in tumor when the adjusted p-value is below α **and** |log2FC| passes the threshold.
""")

col1, col2 = st.columns(2)
with col1:
    alpha = st.number_input("Significance level α (adjusted p)", min_value=0.001, max_value=0.2,
                            value=float(config.comparison.alpha), step=0.005, format="%.3f")
with col2:
    min_log2fc = st.number_input("Minimum |log2FC|", min_value=0.0, max_value=5.0,
                                 value=float(config.comparison.min_log2fc), step=0.25)

if st.button("Run comparison"):
    config.comparison.alpha = float(alpha)
    config.comparison.min_log2fc = float(min_log2fc)
    wait_msg = st.empty()
    wait_msg.info("⏳ Scoring panels and comparing marker genes...")
    try:
        st.session_state["comparison"] = compare_datasets(tumor, healthy, config)
        wait_msg.empty()
        st.success("✅ Comparison complete.")
    except (KeyError, ValueError) as e:
        wait_msg.empty()
        st.error(f"❌ {e}")

result = st.session_state.get("comparison")
if result is None:
    st.info("👉 Run the comparison to see statistics, correlations and panel scores.")
    st.stop()

table = result.marker_table
st.dataframe(table)
st.download_button(
    label="💾 Download marker comparison (.csv)",
    data=table.to_csv(index=False).encode("utf-8"),
    file_name="marker_comparison.csv",
    mime="text/csv"
)
show_figure(comparison_bars(table))

# =========================================================
# Part 3: Correlation
# =========================================================
st.subheader("📌 Step 3: Correlation between tumor and healthy")
show_figure(mean_scatter(table, result.marker_correlation))
st.write(interpret_correlation(result.marker_correlation))
st.write(interpret_correlation(result.genome_correlation, "pseudo-bulk transcriptomes"))

st.markdown("**Spot-level co-expression of the markers within each section**")
cols = st.columns(2)
for col, cond in zip(cols, (TUMOR, HEALTHY)):
    with col:
        show_figure(coexpression_heatmap(result.coexpression[cond], f"{cond}: co-expression"))

# =========================================================
# Part 4: Marker panel scores
# =========================================================
st.subheader("📌 Step 4: Marker panel scores")
if result.panel_table is not None and not result.panel_table.empty:
    st.dataframe(result.panel_table)
    show_figure(panel_score_violins(tumor, healthy, config.panels))

    score_panel = st.selectbox("Show panel score on the tissue:", list(result.scored_panels[TUMOR]))
    cols = st.columns(2)
    for col, (cond, adata) in zip(cols, [(TUMOR, tumor), (HEALTHY, healthy)]):
        with col:
            if has_spatial(adata) and score_column(score_panel) in adata.obs:
                show_figure(spatial_map(adata, score_column(score_panel), f"{cond}: {score_panel}"))
else:
    st.warning("⚠️ No marker panel could be scored in both datasets.")

st.markdown("**What the panels say**")
for p in config.panels:
    st.markdown(f"- {interpret_panel(p, table[table['panel'] == p.name])}")

# =========================================================
# Part 5: Cluster annotation
# =========================================================
st.subheader("📌 Step 5: Cluster annotation by marker panel")
st.markdown("""
Each Leiden cluster is labelled with the marker panel whose score is most enriched in it
(z-score of the cluster mean across clusters). This is a **coarse spatial domain label**, not a cell type call:
Visium spots mix several cells.
""")

cols = st.columns(2)
for col, (cond, adata) in zip(cols, [(TUMOR, tumor), (HEALTHY, healthy)]):
    with col:
        st.markdown(f"**{DATASET_LABELS[cond]}**")
        if cond in result.cluster_annotations:
            st.dataframe(result.cluster_annotations[cond])
            if has_spatial(adata):
                show_figure(spatial_map(adata, "panel_annotation", "Panel annotation"))
            else:
                show_figure(umap_map(adata, "panel_annotation"))

if st.button("Plot marker dotplots by cluster"):
    for cond, adata in [(TUMOR, tumor), (HEALTHY, healthy)]:
        st.markdown(f"**{DATASET_LABELS[cond]}**")
        show_figure(marker_dotplot(adata, table["gene"].tolist(), groupby="leiden"))

next_page_link("pages/7_Report.py", "➡️ Next: Report", ratios=(0.6, 0.2))
