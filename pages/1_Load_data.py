import streamlit as st
import pandas as pd

from crc_spatial.config import DEFAULT_TUMOR_DEMO, HEALTHY, TUMOR
from crc_spatial.io.loading import dataset_summary, load_dataset, load_demo
from crc_spatial.webapp import (
    DATASET_LABELS,
    dataset_selector,
    get_dataset,
    load_uploaded,
    next_page_link,
    replace_dataset,
)

# --- Sidebar controls ---
st.sidebar.header("Step 1: Load Data 📂")

condition = dataset_selector("Which dataset are you loading?")

options = [
    "Visium output folder (Space Ranger outs/)",
    "Upload file (.h5ad / .h5 / .loom)",
]
if condition == TUMOR:
    options.append("Use Demo Data (10x Visium CRC)")

option = st.sidebar.radio(
    "Choose how to load your data:",
    options,
    index=len(options) - 1,
    key=f"load_option_{condition}",
)

adata = None

# 1. Visium folder on disk (keeps the tissue image)
if option == "Visium output folder (Space Ranger outs/)":
    folder = st.sidebar.text_input(
        "Path to the `outs/` folder",
        key=f"visium_path_{condition}",
        help="Folder containing `filtered_feature_bc_matrix.h5` and the `spatial/` directory.",
    )
    if folder and st.sidebar.button("Load folder", key=f"load_folder_{condition}"):
        try:
            adata = load_dataset(folder, condition)
            st.sidebar.success(f"✅ Loaded Visium folder {folder}")
        except (FileNotFoundError, ValueError) as e:
            st.sidebar.error(f"❌ {e}")

# 2. Upload a single file
elif option == "Upload file (.h5ad / .h5 / .loom)":
    uploaded_file = st.sidebar.file_uploader(
        "Upload one file",
        type=["h5ad", "h5", "loom"],
        key=f"upload_{condition}",
    )
    if uploaded_file is not None and st.sidebar.button("Load file", key=f"load_file_{condition}"):
        try:
            adata = load_uploaded(uploaded_file, condition)
            st.sidebar.success(f"✅ Loaded {uploaded_file.name}")
        except Exception as e:
            st.sidebar.error(f"❌ Error reading {uploaded_file.name}: {e}")

# 3. Use demo data
elif option == "Use Demo Data (10x Visium CRC)":
    if st.sidebar.button("Load demo", key="load_demo_tumor"):
        try:
            with st.spinner("⏳ Downloading the 10x demo (first time only)..."):
                adata = load_demo(DEFAULT_TUMOR_DEMO, TUMOR)
            st.sidebar.success(f"✅ Demo data loaded ({DEFAULT_TUMOR_DEMO})!")
        except Exception as e:
            st.sidebar.error(f"❌ Could not load demo dataset: {e}")


# --- Main page ---
st.title("📂 Load your data here!")

st.markdown("""
Welcome to the **data loading step**!
This tool compares **two** datasets, so you need to load both:

- 🔴 **Tumor** – a colorectal cancer Visium section (or the 10x demo)
- 🟢 **Healthy** – a healthy intestine reference section

Pick the dataset in the sidebar, choose how to load it and press the load button.
""")

if adata is not None:
    replace_dataset(condition, adata)

# --- Preview both datasets ---
for cond in (TUMOR, HEALTHY):
    current = get_dataset(cond)
    st.subheader(f"🔍 {DATASET_LABELS[cond]}")
    if current is None:
        st.info(f"No {cond} dataset loaded yet.")
        continue

    summary = dataset_summary(current)
    st.write(f"**Number of spots:** {summary['n_spots']}")
    st.write(f"**Number of genes:** {summary['n_genes']}")
    st.write(
        f"**Spatial coordinates:** {'✅' if summary['has_spatial'] else '❌'} "
        f"&nbsp; **Tissue image:** {'✅' if summary['has_image'] else '❌'}"
    )
    if not summary["has_spatial"]:
        st.warning("⚠️ No spatial coordinates found; spatial maps will be skipped for this dataset.")

    try:
        X = current.X[:5, :5].toarray() if hasattr(current.X, "toarray") else current.X[:5, :5]
        df = pd.DataFrame(X, index=current.obs_names[:5], columns=current.var_names[:5])
        st.dataframe(df)
    except Exception as e:
        st.error(f"Could not display preview matrix: {e}")

# --- Bottom-right "Next: Preprocessing" link ---
if get_dataset(TUMOR) is not None and get_dataset(HEALTHY) is not None:
    next_page_link("pages/2_Preprocessing.py", "➡️ Next: Preprocessing")
