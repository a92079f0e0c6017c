from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import pytest

from dyad_pipeline import (
    AGE_BIN_COUNT,
    FIGURE_ORDER,
    REPORT_SECTIONS,
    binary_indicator,
    build_figures,
    build_outputs,
    gam_curve,
    normalize_sessions,
    proportion_table,
    render_html_report,
)


@pytest.fixture
def normalized(raw_sessions) -> pd.DataFrame:
    return normalize_sessions(raw_sessions)


def test_shares_sum_to_one_per_outcome(normalized):
    table = proportion_table(normalized, "diagnostic_outcome", "plays_peekaboo")

    sums = table.groupby("diagnostic_outcome", observed=True)["Share"].sum()
    assert np.allclose(sums.to_numpy(), 1.0)
    assert set(table["plays_peekaboo"].astype(str)) == {"Yes", "No"}
    assert table["Count"].sum() == normalized["plays_peekaboo"].notna().sum()


def test_group_without_target_values_is_omitted(normalized):
    frame = normalized.copy()
    frame.loc[frame["diagnostic_outcome"] == "TD", "plays_peekaboo"] = np.nan

    table = proportion_table(frame, "diagnostic_outcome", "plays_peekaboo")

    assert "TD" not in set(table["diagnostic_outcome"].astype(str))
    assert (table["Count"] > 0).all()
    assert table["Share"].notna().all()
    assert table["diagnostic_outcome"].notna().all()


def test_empty_target_gives_empty_table(normalized):
    table = proportion_table(normalized, "diagnostic_outcome", "moves")

    assert table.empty
    assert list(table.columns) == ["diagnostic_outcome", "moves", "Count", "Share"]


def test_age_bins_are_equal_width(normalized):
    table = proportion_table(normalized, "age_months", "sings", bins=AGE_BIN_COUNT)

    labels = table["age_months"].cat.categories
    assert len(labels) == AGE_BIN_COUNT
    assert table["age_months"].nunique() <= AGE_BIN_COUNT
    sums = table.groupby("age_months", observed=True)["Share"].sum()
    assert np.allclose(sums.to_numpy(), 1.0)


def test_binary_indicator_tokens():
    values = pd.Series(["Yes", "no", "1", 0, 1.0, None, "maybe", True])

    result = binary_indicator(values)

    assert result.iloc[:5].tolist() == [1.0, 0.0, 1.0, 0.0, 1.0]
    assert result.iloc[5:7].isna().all()
    assert result.iloc[7] == 1.0


def test_gam_curve_by_outcome(normalized):
    curve, skipped = gam_curve(normalized, "age_months", "sings", strata_col="diagnostic_outcome", grid_size=50)

    assert skipped == {}
    assert set(curve["diagnostic_outcome"]) == {"ASD", "EL no ASD", "TD"}
    assert len(curve) == 150
    assert curve["Probability"].between(0, 1).all()
    for _, part in curve.groupby("diagnostic_outcome"):
        assert part["age_months"].is_monotonic_increasing


def test_gam_curve_omits_sparse_stratum(normalized):
    td_rows = normalized.index[normalized["diagnostic_outcome"] == "TD"]
    frame = normalized.drop(td_rows[5:])

    curve, skipped = gam_curve(frame, "age_months", "sings", strata_col="diagnostic_outcome")

    assert "TD" not in set(curve["diagnostic_outcome"])
    assert "fewer than" in skipped["TD"]


def test_gam_curve_without_strata(normalized):
    curve, skipped = gam_curve(normalized, "income_continuous", "greets")

    assert skipped == {}
    assert set(curve["Group"]) == {"All"}
    assert curve["Probability"].between(0, 1).all()


def test_build_figures_covers_every_section(normalized):
    figures = build_figures(normalized)

    assert list(figures) == FIGURE_ORDER
    assert all(isinstance(fig, go.Figure) for fig in figures.values())
    assert [key for keys in REPORT_SECTIONS.values() for key in keys] == FIGURE_ORDER


def test_build_figures_does_not_mutate_table(normalized):
    before = normalized.copy()

    build_figures(normalized)

    pd.testing.assert_frame_equal(normalized, before)


def test_chart_without_data_renders_placeholder(normalized):
    frame = normalized.copy()
    frame["sings"] = np.nan

    figures = build_figures(frame)

    by_outcome = figures["06_singing_by_outcome"]
    assert len(by_outcome.data) == 0
    assert by_outcome.layout.annotations[0].text == "No qualifying records"
    assert len(figures["10_greeting_by_outcome"].data) > 0


def test_render_html_report_order(normalized, raw_sessions):
    figures = build_figures(normalized)
    tables = {"raw": raw_sessions.head(), "attendance": pd.DataFrame({"SubjectID": ["1001"], "TotalAttendance": [3]})}

    document = render_html_report(tables, figures)

    assert document.index("Raw data") < document.index("Total attendance") < document.index("Singing")
    assert document.index("Sex and diagnosis") < document.index("Peekaboo")
    assert document.count("plotly-graph-div") >= len(FIGURE_ORDER)


def test_build_outputs_end_to_end(tmp_path: Path, raw_sessions):
    malformed = {**raw_sessions.iloc[0].to_dict(), "session_label": "1001.x"}
    raw = pd.concat([raw_sessions, pd.DataFrame([malformed])], ignore_index=True)
    csv_path = tmp_path / "dyad_sessions.csv"
    raw.to_csv(csv_path, index=False)

    result = build_outputs(csv_path, output_dir=tmp_path / "out")

    logs = result["logs"]
    assert logs["sessions"] == len(raw)
    assert logs["subjects"] == 60
    assert logs["label_issue_count"] == 1
    assert logs["label_issue_sample"] == ["1001.x"]
    assert logs["questionnaire_shape"] is None
    assert Path(logs["output_report"]).exists()
    for path in logs["output_tables"]:
        assert Path(path).exists()
    assert result["tables"]["types_after"]["Type"].eq("category").all()
    assert set(result["figures"]) == set(FIGURE_ORDER)


def test_build_outputs_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        build_outputs(tmp_path / "missing.csv", output_dir=None)


def test_column_labels_follow_attendance_in_report(normalized, raw_sessions):
    tables = {
        "raw": raw_sessions.head(),
        "types_after": pd.DataFrame({"Variable": ["sings"], "Type": ["category"]}),
        "attendance": pd.DataFrame({"SubjectID": ["1001"], "TotalAttendance": [3]}),
        "column_labels": pd.DataFrame({"Variable": ["sings"], "Description": ["Caregiver sings"]}),
    }

    document = render_html_report(tables, build_figures(normalized))

    labels_at = document.index("<h2>Column labels</h2>")
    assert document.index("<h2>Variable types after cleaning</h2>") < labels_at
    assert document.index("<h2>Total attendance</h2>") < labels_at
    assert labels_at < document.index("<h2>Sex and diagnosis</h2>")
