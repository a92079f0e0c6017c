from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any

import streamlit as st

from dyad_pipeline import (
    DEFAULT_DATA_DIR,
    FIGURE_ORDER,
    OUTPUT_DIR,
    REPORT_FILE,
    REPORT_SECTIONS,
    CHART_SUBDIR,
    build_outputs,
    export_html_report,
    export_png_pack,
    resolve_data_paths,
)

st.set_page_config(page_title="Dyadic Interaction Sessions", layout="wide")
st.title("Caregiver-Infant Dyadic Interaction Sessions")

if "result" not in st.session_state:
    st.session_state["result"] = None


@st.cache_data(show_spinner=False)
def _build_default_cached(data_dir: str) -> dict[str, Any]:
    paths = resolve_data_paths(data_dir)
    return build_outputs(
        paths["sessions"],
        column_labels_path=paths["column_labels"],
        questionnaire_path=paths["questionnaire"],
        output_dir=None,
    )


st.sidebar.header("Data")
source_mode = st.sidebar.radio(
    "Source",
    ["Default data folder", "Upload session CSV"],
    index=0,
)

if source_mode == "Default data folder":
    data_dir = st.sidebar.text_input("Data folder", value=str(DEFAULT_DATA_DIR))
    if st.sidebar.button("Load data folder"):
        try:
            st.session_state["result"] = _build_default_cached(data_dir)
            st.sidebar.success("Session table loaded.")
        except Exception as exc:
            st.sidebar.error(f"Failed to load data folder: {exc}")
else:
    uploaded = st.sidebar.file_uploader("Upload session table (.csv)", type=["csv"])
    if st.sidebar.button("Process uploaded table"):
        if uploaded is None:
            st.sidebar.warning("Please upload a .csv file first.")
        else:
            tmp_path = None
            try:
                with tempfile.NamedTemporaryFile(delete=False, suffix=".csv") as tmp:
                    tmp.write(uploaded.getbuffer())
                    tmp_path = tmp.name
                st.session_state["result"] = build_outputs(tmp_path, output_dir=None)
                st.sidebar.success("Session table processed.")
            except Exception as exc:
                st.sidebar.error(f"Processing failed: {exc}")
            finally:
                if tmp_path and Path(tmp_path).exists():
                    Path(tmp_path).unlink(missing_ok=True)

if st.session_state["result"] is None:
    try:
        st.session_state["result"] = _build_default_cached(str(DEFAULT_DATA_DIR))
        st.caption(f"Loaded session table from {DEFAULT_DATA_DIR}/.")
    except Exception:
        st.warning(
            "No session table found. Place dyad_sessions.csv in data/ or upload a CSV in the sidebar."
        )
        st.stop()

result: dict[str, Any] = st.session_state["result"]
tables = result["tables"]
figures = result["figures"]
logs = result["logs"]

col1, col2, col3 = st.columns(3)
col1.metric("Session records", f"{logs['sessions']:,}")
col2.metric("Subjects", f"{logs['subjects']:,}")
col3.metric("Labels without a session number", f"{logs['label_issue_count']:,}")

st.subheader("Raw data")
st.dataframe(tables["raw"], use_container_width=True)

st.subheader("Variable types")
col_left, col_right = st.columns(2)
with col_left:
    st.caption("Before cleaning")
    st.dataframe(tables["types_before"], use_container_width=True)
with col_right:
    st.caption("After cleaning")
    st.dataframe(tables["types_after"], use_container_width=True)

st.subheader("Session number cleanup")
st.dataframe(tables["session_cleanup"], use_container_width=True)
if not tables["session_label_issues"].empty:
    st.warning(f"{len(tables['session_label_issues'])} session labels did not yield a session number.")
    st.dataframe(tables["session_label_issues"], use_container_width=True)

st.subheader("Total attendance")
st.dataframe(tables["attendance"], use_container_width=True)

if tables.get("column_labels") is not None:
    with st.expander("Column labels"):
        st.dataframe(tables["column_labels"], use_container_width=True)

for heading, keys in REPORT_SECTIONS.items():
    st.subheader(heading)
    for left_key, right_key in zip(keys[0::2], keys[1::2] + [None]):
        col_left, col_right = st.columns(2)
        with col_left:
            st.plotly_chart(figures[left_key], use_container_width=True)
        if right_key is not None:
            with col_right:
                st.plotly_chart(figures[right_key], use_container_width=True)

if st.button("Export HTML report"):
    try:
        path = export_html_report(tables, figures, OUTPUT_DIR / REPORT_FILE)
        st.success(f"Report written to {path}")
    except OSError as exc:
        st.error(f"Report export failed: {exc}")

if st.button("Export PNG pack"):
    try:
        paths = export_png_pack({k: figures[k] for k in FIGURE_ORDER}, out_dir=str(OUTPUT_DIR / CHART_SUBDIR))
        st.success(f"Exported {len(paths)} PNG charts to {OUTPUT_DIR / CHART_SUBDIR}/")
        if paths:
            st.caption("\n".join(paths))
    except Exception as exc:
        st.error(
            "PNG export failed. Ensure `kaleido` is installed and Chrome is available on the host. "
            f"Details: {exc}"
        )
