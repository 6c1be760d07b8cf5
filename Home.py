import streamlit as st

st.set_page_config(page_title="Spatial CRC vs Healthy Webtool", page_icon="🧬")

st.title("🧬 Spatial Transcriptomics: Colorectal Tumor vs Healthy Intestine")

st.markdown("""
Welcome to the **Spatial Transcriptomics Comparison Webtool** 👋
This interactive app was developed as part of a **course report** on colorectal cancer (CRC).
It walks a 10x **Visium** tumor section and a **healthy intestine** reference through the
[Scanpy](https://scanpy.readthedocs.io/) workflow, then compares marker gene expression
between the two tissues on the tissue itself.

The tool is inspired by:
- [Scanpy spatial tutorial](https://scanpy-tutorials.readthedocs.io/en/latest/spatial/basic-analysis.html)
- [10x Visium Human Colorectal Cancer dataset](https://www.10xgenomics.com/datasets) (FFPE, Space Ranger)

---

## 🚀 Workflow Overview

Both datasets go through the same steps:

1. **Load Data** – Visium output folder, `.h5ad` / `.h5` / `.loom` upload, or the 10x CRC demo for the tumor
2. **Preprocessing** – QC filtering of spots, normalization, HVG selection and scaling
3. **PCA** – Linear dimensional reduction and choice of PCs
4. **Clustering & UMAP** – Leiden clusters shown on UMAP **and on the tissue**
5. **DEGs** – Marker genes per cluster, and **tumor vs healthy** differential expression
6. **Marker Comparison** – Side-by-side spatial maps, statistics and correlations of marker panels
   - Epithelial / CRC, stem & Wnt, proliferation, colonocyte, goblet, stroma, invasion, immune
7. **Report** – Prose interpretation of the comparison, ready for download

---

## 📦 Data Input Options
- Path to a **Space Ranger `outs/` folder** (`filtered_feature_bc_matrix.h5` + `spatial/`) → keeps the H&E image
- Upload `.h5ad`, `.h5`, or `.loom` file
- Use the **10x Visium Human Colorectal Cancer** demo (tumor only)

---

ℹ️ A headless version of the same analysis runs with `python -m crc_spatial --help`.
""")
