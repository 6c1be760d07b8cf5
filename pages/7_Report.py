import streamlit as st

from crc_spatial.config import CONDITIONS
from crc_spatial.io.loading import dataset_summary
from crc_spatial.preprocessing import describe
from crc_spatial.report import build_report
from crc_spatial.webapp import get_config, get_dataset

st.title("📝 Report: Biological Interpretation")

st.markdown("""
This page turns the comparison into a **written interpretation** for your report:
data and QC summary, cluster annotation, the marker comparison table, correlations,
panel scores, a panel-by-panel interpretation and the **caveats** of comparing two single sections.

👉 Edit the text freely after downloading; it is a starting point, not a conclusion.
""")

result = st.session_state.get("comparison")
if result is None:
    st.error("No comparison found. Please run **Marker Comparison** first.")
    st.stop()

config = get_config()

for cond in CONDITIONS:
    adata = get_dataset(cond)
    if adata is None:
        continue
    raw = st.session_state.get(f"adata_raw_{cond}")
    result.summaries[cond] = dataset_summary(raw if raw is not None else adata)
    result.preprocess[cond] = describe(
        adata,
        st.session_state.get(f"qc_summary_{cond}"),
        config.preprocess.variance_target,
    )

report = build_report(result.report_context(config))
st.session_state["report"] = report

st.markdown(report)

st.download_button(
    label="💾 Download report (.md)",
    data=report.encode("utf-8"),
    file_name="tumor_vs_healthy_report.md",
    mime="text/markdown"
)

if result.condition_de is not None:
    st.download_button(
        label="💾 Download tumor vs healthy DE results (.csv)",
        data=result.condition_de.to_csv(index=False).encode("utf-8"),
        file_name="tumor_vs_healthy_DE.csv",
        mime="text/csv"
    )

if result.panel_table is not None:
    st.download_button(
        label="💾 Download panel score comparison (.csv)",
        data=result.panel_table.to_csv(index=False).encode("utf-8"),
        file_name="panel_score_comparison.csv",
        mime="text/csv"
    )
