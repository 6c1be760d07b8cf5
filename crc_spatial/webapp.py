"""Streamlit helpers shared by the web app pages."""

import os
import tempfile

import matplotlib.pyplot as plt
import streamlit as st

from .config import CONDITIONS, HEALTHY, TUMOR, AnalysisConfig
from .io.loading import load_dataset

DATASET_KEYS = {TUMOR: "adata_tumor", HEALTHY: "adata_healthy"}
DATASET_LABELS = {TUMOR: "🔴 Tumor (colorectal cancer)", HEALTHY: "🟢 Healthy intestine"}

PAGE_LINK_CSS = """
<style>
/* Only affect links rendered in the main content, not the sidebar */
section[data-testid="stMain"] [data-testid="stPageLink"] a,
section[data-testid="stMain"] [data-testid="stPageLink"] p {
  font-style: italic !important;
}
</style>
"""


def get_config() -> AnalysisConfig:
    if "config" not in st.session_state:
        st.session_state["config"] = AnalysisConfig()
    return st.session_state["config"]


def get_dataset(condition):
    return st.session_state.get(DATASET_KEYS[condition])


def set_dataset(condition, adata):
    st.session_state[DATASET_KEYS[condition]] = adata


# per-dataset keys derived from the loaded section
DERIVED_KEYS = ("adata_raw_{}", "adata_raw_origin_{}", "qc_summary_{}", "n_pcs_{}", "top_markers_{}")
# results computed from both datasets
RESULT_KEYS = ("comparison", "condition_de", "report")


def clear_results():
    for key in RESULT_KEYS:
        st.session_state.pop(key, None)


def replace_dataset(condition, adata):
    """Store a newly loaded dataset and forget everything computed from the previous one."""
    for key in DERIVED_KEYS:
        st.session_state.pop(key.format(condition), None)
    clear_results()
    set_dataset(condition, adata)


def loaded_conditions():
    return [c for c in CONDITIONS if get_dataset(c) is not None]


def dataset_selector(label="Choose dataset:"):
    """Sidebar radio to pick which dataset a page works on."""
    return st.sidebar.radio(
        label,
        list(CONDITIONS),
        format_func=lambda c: DATASET_LABELS[c],
    )


def require_dataset(condition, previous_step="Load data"):
    adata = get_dataset(condition)
    if adata is None:
        st.error(f"No {condition} AnnData object found. Please complete **{previous_step}** first.")
        st.stop()
    return adata


def require_both(previous_step="Load data"):
    return require_dataset(TUMOR, previous_step), require_dataset(HEALTHY, previous_step)


def load_uploaded(uploaded_file, condition):
    """Write an uploaded file to a temp dir and load it with scanpy."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp_path = os.path.join(tmpdir, uploaded_file.name)
        with open(tmp_path, "wb") as f:
            f.write(uploaded_file.read())
        return load_dataset(tmp_path, condition)


def save_and_download(adata, filename, label="Download data (.h5ad)"):
    """Save AnnData and provide a download button."""
    with tempfile.NamedTemporaryFile(delete=False, suffix=".h5ad") as tmp:
        adata.write(tmp.name)
        tmp_path = tmp.name
    with open(tmp_path, "rb") as f:
        st.download_button(
            label=f"💾 {label}",
            data=f.read(),
            file_name=filename,
            mime="application/octet-stream",
            key=f"download_{filename}",
        )
    os.remove(tmp_path)


def show_figure(fig):
    st.pyplot(fig)
    plt.close(fig)


def next_page_link(page, label, ratios=(0.6, 0.2)):
    """Italic page link pinned to the bottom right of the main area."""
    st.markdown(PAGE_LINK_CSS, unsafe_allow_html=True)
    spacer, right = st.columns(list(ratios), gap="small")
    with right:
        st.page_link(page, label=label)
