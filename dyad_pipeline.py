from __future__ import annotations

import argparse
import html
import re
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import plotly.io as pio
import statsmodels.api as sm
from statsmodels.gam.api import BSplines, GLMGam
from statsmodels.tools.sm_exceptions import PerfectSeparationError

DEFAULT_DATA_DIR = Path("data")
SESSIONS_FILE = "dyad_sessions.csv"
COLUMN_LABELS_FILE = "column_labels.xlsx"
QUESTIONNAIRE_FILE = "questionnaire.xlsx"

OUTPUT_DIR = Path("outputs")
TABLE_SUBDIR = "tables"
CHART_SUBDIR = "charts"
REPORT_FILE = "report.html"

# Canonical column -> case-insensitive substrings tried when the exact name is absent.
RAW_COLUMN_PATTERNS: dict[str, list[str]] = {
    "subject_id": ["subject", "participant", "id"],
    "session_label": ["session_label", "session", "visit"],
    "age_months": ["age"],
    "sex": ["sex"],
    "gender": ["gender"],
    "diagnostic_outcome": ["outcome", "diagnos", "group"],
    "income_category": ["income_cat", "income cat", "income_group", "inc_cat"],
    "income_continuous": ["income"],
    "session_usable": ["usable", "viable", "valid"],
    "leans_forward": ["lean"],
    "sings": ["sing"],
    "plays_peekaboo": ["peekaboo", "peek"],
    "greets": ["greet"],
    "moves": ["move"],
    "wears_glasses": ["glasses"],
    "covers_face": ["cover"],
    "hand_in_mouth": ["hand"],
    "uses_pacifier": ["pacifier", "paci"],
    "name_change": ["name"],
}
REQUIRED_COLUMNS = ["subject_id", "session_label", "age_months", "diagnostic_outcome"]

BEHAVIOUR_COLUMNS = [
    "leans_forward",
    "sings",
    "plays_peekaboo",
    "greets",
    "moves",
    "wears_glasses",
    "covers_face",
    "hand_in_mouth",
    "uses_pacifier",
    "name_change",
]
CATEGORICAL_COLUMNS = [
    "subject_id",
    "sex",
    "gender",
    "diagnostic_outcome",
    "income_category",
    "session_usable",
] + BEHAVIOUR_COLUMNS
CONTINUOUS_COLUMNS = ["age_months", "income_continuous"]

SESSION_DOMAIN = range(1, 8)
INCOME_DOMAIN = range(1, 6)

OUTCOME_ORDER = ["ASD", "EL no ASD", "TD"]
OUTCOME_ALIASES = {
    "asd": "ASD",
    "autism": "ASD",
    "autismspectrumdisorder": "ASD",
    "autismspectrumdiagnosis": "ASD",
    "elnoasd": "EL no ASD",
    "elasdneg": "EL no ASD",
    "elnodiagnosis": "EL no ASD",
    "elevatedlikelihoodnodiagnosis": "EL no ASD",
    "elevatedlikelihoodnoasd": "EL no ASD",
    "td": "TD",
    "typicallydeveloping": "TD",
}

TRUE_TOKENS = {"1", "1.0", "yes", "y", "true", "t"}
FALSE_TOKENS = {"0", "0.0", "no", "n", "false", "f"}

AGE_BIN_COUNT = 15
GAM_SPLINE_DF = 6
GAM_SPLINE_DEGREE = 3
GAM_PENALTY = 1.0
GAM_MIN_ROWS = 20
GAM_GRID_SIZE = 100

VARIABLE_LABELS = {
    "subject_id": "Subject",
    "session_number": "Session",
    "total_attendance": "Total sessions attended",
    "age_months": "Infant age (months)",
    "sex": "Sex",
    "gender": "Gender",
    "diagnostic_outcome": "Diagnostic outcome",
    "income_category": "Income category",
    "income_continuous": "Income",
    "session_usable": "Session usable",
    "sings": "Caregiver sings",
    "greets": "Caregiver greets",
    "plays_peekaboo": "Caregiver plays peekaboo",
}

PALETTE = {
    "navy": "#004976",
    "sky": "#0081A6",
    "green": "#007A3E",
    "lime": "#00AD50",
    "crimson": "#C5003E",
    "orange": "#DC4405",
    "cocoa": "#C99700",
    "slate": "#505759",
    "light_grey": "#919D9D",
    "bg": "#F7F9FB",
    "grid": "#E6E9EF",
}

COMPARISON_SEQUENCE = [
    PALETTE["navy"],
    PALETTE["sky"],
    PALETTE["green"],
    PALETTE["lime"],
    PALETTE["cocoa"],
    PALETTE["orange"],
    PALETTE["slate"],
]

OUTCOME_COLOR_MAP = {
    "ASD": PALETTE["crimson"],
    "EL no ASD": PALETTE["cocoa"],
    "TD": PALETTE["navy"],
}

BEHAVIOUR_SECTIONS = [
    ("Singing", "sings", "singing"),
    ("Greeting", "greets", "greeting"),
    ("Peekaboo", "plays_peekaboo", "peekaboo"),
]


def _figure_keys() -> tuple[list[str], dict[str, list[str]]]:
    sections: dict[str, list[str]] = {
        "Sex and diagnosis": ["01_sex_by_outcome"],
        "Data viability": ["02_usable_by_outcome", "03_usable_by_age"],
        "Attendance": ["04_attendance_by_outcome", "05_attendance_by_income"],
    }
    number = 6
    for heading, _, slug in BEHAVIOUR_SECTIONS:
        keys = []
        for suffix in ["by_outcome", "by_age", "gam_age", "gam_income"]:
            keys.append(f"{number:02d}_{slug}_{suffix}")
            number += 1
        sections[heading] = keys
    order = [key for keys in sections.values() for key in keys]
    return order, sections


FIGURE_ORDER, REPORT_SECTIONS = _figure_keys()


def _register_report_template() -> None:
    pio.templates["dyad_report"] = go.layout.Template(
        layout=go.Layout(
            paper_bgcolor=PALETTE["bg"],
            plot_bgcolor=PALETTE["bg"],
            colorway=COMPARISON_SEQUENCE,
            margin=dict(l=40, r=20, t=55, b=40),
            title=dict(x=0.02, xanchor="left"),
            xaxis=dict(
                showgrid=True,
                gridcolor=PALETTE["grid"],
                zeroline=False,
                linecolor=PALETTE["grid"],
            ),
            yaxis=dict(
                showgrid=True,
                gridcolor=PALETTE["grid"],
                zeroline=False,
                linecolor=PALETTE["grid"],
            ),
            legend=dict(
                bgcolor="rgba(255,255,255,0.6)",
                bordercolor="rgba(0,0,0,0)",
                borderwidth=0,
            ),
        )
    )
    pio.templates.default = "dyad_report"


_register_report_template()


def _normalize_label(series: pd.Series) -> pd.Series:
    clean = series.astype("string").str.strip()
    return clean.mask(clean.isna() | (clean == "") | (clean.str.lower() == "nan"), pd.NA)


def _normalize_token(series: pd.Series) -> pd.Series:
    # Integral floats (ids and 0/1 flags read next to blanks) print without ".0".
    if pd.api.types.is_float_dtype(series):
        present = series.dropna()
        if (present == present.round()).all():
            series = series.astype("Int64")
    return _normalize_label(series)


def _header_key(name: str) -> str:
    return re.sub(r"[\s\-]+", "_", str(name).strip().lower())


def _find_column(
    columns: list[str], exact: str, fallback_patterns: list[str], substring: bool = True
) -> str:
    if exact in columns:
        return exact

    # Whole-header matches (case and separator insensitive) beat substring hits.
    keyed = {c: _header_key(c) for c in columns}
    for target in [exact] + fallback_patterns:
        key = _header_key(target)
        for col in columns:
            if keyed[col] == key:
                return col

    if substring:
        lowered = {c: c.lower() for c in columns}
        for pattern in fallback_patterns:
            pat = pattern.lower()
            for col in columns:
                if pat in lowered[col]:
                    return col

    raise KeyError(
        f"Could not resolve required column. exact='{exact}', fallback_patterns={fallback_patterns}"
    )


def _find_optional_column(
    columns: list[str], exact: str, fallback_patterns: list[str], substring: bool = True
) -> str | None:
    try:
        return _find_column(columns, exact, fallback_patterns, substring=substring)
    except KeyError:
        return None


def resolve_columns(columns: list[str]) -> dict[str, str]:
    """Map canonical column names to raw headers.

    Whole-header matches are claimed for every field before any substring
    pattern is tried, so ``Session Usable`` never shadows ``Session`` and
    ``Language exposure`` never shadows ``Age``. Each raw header is used once.
    Raises KeyError when a required column cannot be resolved.
    """
    columns = [str(c) for c in columns]
    resolved: dict[str, str] = {}
    for substring in (False, True):
        for name, patterns in RAW_COLUMN_PATTERNS.items():
            if name in resolved:
                continue
            remaining = [c for c in columns if c not in resolved.values()]
            found = _find_optional_column(remaining, name, patterns, substring=substring)
            if found is not None:
                resolved[name] = found

    missing = [name for name in REQUIRED_COLUMNS if name not in resolved]
    if missing:
        raise KeyError(f"Could not resolve required columns {missing} from headers {columns}")
    return {name: resolved[name] for name in RAW_COLUMN_PATTERNS if name in resolved}


def _canonical_outcome(series: pd.Series) -> pd.Series:
    clean = _normalize_label(series)
    keys = clean.str.lower().str.replace(r"[^a-z]", "", regex=True)
    return clean.where(~keys.isin(list(OUTCOME_ALIASES)), keys.map(OUTCOME_ALIASES))


def _coerce_categorical(series: pd.Series, preferred_order: list[str] | None = None) -> pd.Series:
    clean = _normalize_token(series)
    observed = sorted(clean.dropna().unique().tolist())
    if preferred_order:
        observed = [c for c in preferred_order if c in observed] + [
            c for c in observed if c not in preferred_order
        ]
    return pd.Series(
        pd.Categorical(clean.astype(object).where(clean.notna(), None), categories=observed),
        index=series.index,
        name=series.name,
    )


def _ordinal_categorical(values: pd.Series, domain: range) -> pd.Series:
    numeric = pd.to_numeric(values, errors="coerce")
    lookup = {value: code for code, value in enumerate(domain)}
    codes = [
        lookup.get(int(v), -1) if pd.notna(v) and float(v).is_integer() else -1
        for v in numeric
    ]
    return pd.Series(
        pd.Categorical.from_codes(codes, categories=list(domain), ordered=True),
        index=values.index,
        name=values.name,
    )


def _parse_session_label(label: Any, subject_id: Any = None) -> tuple[int | None, str | None]:
    if label is None or pd.isna(label) or not str(label).strip():
        return None, "missing label"

    text = str(label).strip()
    prefix = "" if subject_id is None or pd.isna(subject_id) else str(subject_id).strip()
    if prefix and text.startswith(prefix) and not text[len(prefix):][:1].isdigit():
        rest = text[len(prefix):]
    else:
        rest = text.rsplit(".", 1)[-1]

    match = re.search(r"\d.*$", rest)
    if match is None:
        return None, "no numeral after subject prefix"

    token = re.sub(r"\D+$", "", match.group(0))
    if not token.isdigit():
        return None, f"non-numeric session token '{match.group(0)}'"

    number = int(token)
    if number not in SESSION_DOMAIN:
        return None, f"session {number} outside {SESSION_DOMAIN.start}-{SESSION_DOMAIN.stop - 1}"
    return number, None


def parse_session_number(label: Any, subject_id: Any = None) -> int | None:
    """Session index embedded in a label such as ``"1023.4*"``, or None."""
    number, _ = _parse_session_label(label, subject_id)
    return number


def normalize_sessions(raw: pd.DataFrame) -> pd.DataFrame:
    """Build the normalized session table from the raw export.

    The raw frame is left untouched. Malformed session labels yield a missing
    ``session_number`` and a ``session_label_issue`` reason instead of an error.
    """
    resolved = resolve_columns(list(raw.columns))
    out = pd.DataFrame(index=raw.index)
    for name in RAW_COLUMN_PATTERNS:
        source = resolved.get(name)
        if source is None:
            out[name] = pd.Series(np.nan, index=raw.index, dtype="float64")
        else:
            out[name] = raw[source].copy()

    subject_tokens = _normalize_token(out["subject_id"])
    out["session_label"] = _normalize_label(out["session_label"])

    parsed = [
        _parse_session_label(label, subject)
        for label, subject in zip(out["session_label"], subject_tokens)
    ]
    numbers = pd.Series(
        [np.nan if number is None else float(number) for number, _ in parsed],
        index=out.index,
        dtype="float64",
    )
    totals = numbers.groupby(subject_tokens, dropna=True).transform("max")

    for name in CONTINUOUS_COLUMNS:
        out[name] = pd.to_numeric(out[name], errors="coerce").astype("float64")

    for name in CATEGORICAL_COLUMNS:
        if name == "income_category":
            out[name] = _ordinal_categorical(out[name], INCOME_DOMAIN)
        elif name == "diagnostic_outcome":
            out[name] = _coerce_categorical(_canonical_outcome(out[name]), OUTCOME_ORDER)
        else:
            out[name] = _coerce_categorical(out[name])

    out["session_number"] = _ordinal_categorical(numbers.rename("session_number"), SESSION_DOMAIN)
    out["total_attendance"] = _ordinal_categorical(
        totals.reindex(out.index).rename("total_attendance"), SESSION_DOMAIN
    )
    out["session_label_issue"] = pd.Series(
        [issue for _, issue in parsed], index=out.index, dtype="string"
    )
    return out


def variable_types(frame: pd.DataFrame, columns: list[str] | None = None) -> pd.DataFrame:
    columns = [c for c in (columns or list(frame.columns)) if c in frame.columns]
    return pd.DataFrame(
        {
            "Variable": columns,
            "Type": [str(frame[c].dtype) for c in columns],
            "Missing": [int(frame[c].isna().sum()) for c in columns],
            "Distinct": [int(frame[c].nunique(dropna=True)) for c in columns],
        }
    )


def session_cleanup_table(normalized: pd.DataFrame) -> pd.DataFrame:
    table = (
        normalized[["session_label", "session_number", "session_label_issue"]]
        .astype({"session_number": "object"})
        .drop_duplicates()
        .rename(
            columns={
                "session_label": "SessionLabel",
                "session_number": "SessionNumber",
                "session_label_issue": "Issue",
            }
        )
    )
    return table.reset_index(drop=True)


def attendance_table(normalized: pd.DataFrame) -> pd.DataFrame:
    per_subject = normalized.dropna(subset=["subject_id"])
    table = (
        per_subject.groupby("subject_id", observed=True)
        .agg(
            Sessions=("session_label", "size"),
            TotalAttendance=("total_attendance", "first"),
        )
        .reset_index()
        .rename(columns={"subject_id": "SubjectID"})
    )
    return table


def session_label_issues(normalized: pd.DataFrame) -> pd.DataFrame:
    flagged = normalized[normalized["session_label_issue"].notna()]
    return flagged[["subject_id", "session_label", "session_label_issue"]].reset_index(drop=True)


def _per_subject(df: pd.DataFrame) -> pd.DataFrame:
    return df.dropna(subset=["subject_id"]).drop_duplicates("subject_id")


def _interval_label(interval: pd.Interval) -> str:
    return f"{interval.left:.1f}-{interval.right:.1f}"


def _age_bins(values: pd.Series, bins: int) -> pd.Series:
    numeric = values.astype("float64")
    binned = pd.cut(numeric, bins=bins if numeric.nunique() > 1 else 1)
    labels = [_interval_label(iv) for iv in binned.cat.categories]
    if len(set(labels)) < len(labels):
        labels = [str(iv) for iv in binned.cat.categories]
    return binned.cat.rename_categories(labels)


def proportion_table(
    df: pd.DataFrame,
    group_col: str,
    target_col: str,
    bins: int | None = None,
) -> pd.DataFrame:
    """Share of each ``target_col`` category within each ``group_col`` value.

    Rows missing either variable are dropped first. With ``bins`` the group
    variable is cut into that many equal-width intervals. Groups without any
    qualifying rows are absent from the result; shares sum to 1 per group.
    """
    work = df[[group_col, target_col]].dropna()
    if work.empty:
        return pd.DataFrame(columns=[group_col, target_col, "Count", "Share"])

    if bins:
        work = work.assign(**{group_col: _age_bins(work[group_col], bins)})

    counts = (
        work.groupby([group_col, target_col], observed=True)
        .size()
        .reset_index(name="Count")
    )
    counts["Share"] = counts["Count"] / counts.groupby(group_col, observed=True)["Count"].transform("sum")
    return counts.reset_index(drop=True)


def binary_indicator(series: pd.Series) -> pd.Series:
    tokens = series.astype("string").str.strip().str.lower()
    out = pd.Series(np.nan, index=series.index, dtype="float64")
    out[tokens.isin(TRUE_TOKENS).fillna(False).astype(bool)] = 1.0
    out[tokens.isin(FALSE_TOKENS).fillna(False).astype(bool)] = 0.0
    return out


def _gam_unfit_reason(x: np.ndarray, y: np.ndarray) -> str | None:
    if len(y) < GAM_MIN_ROWS:
        return f"fewer than {GAM_MIN_ROWS} records"
    if len(np.unique(y)) < 2:
        return "only one outcome observed"
    if len(np.unique(x)) < GAM_SPLINE_DF:
        return f"fewer than {GAM_SPLINE_DF} distinct x values"
    return None


def _fit_binomial_gam(x: np.ndarray, y: np.ndarray, grid_size: int) -> tuple[np.ndarray, np.ndarray]:
    smoother = BSplines(x[:, None], df=[GAM_SPLINE_DF], degree=[GAM_SPLINE_DEGREE])
    model = GLMGam(
        y,
        exog=np.ones((len(y), 1)),
        smoother=smoother,
        alpha=GAM_PENALTY,
        family=sm.families.Binomial(),
    )
    result = model.fit()
    grid = np.linspace(x.min(), x.max(), grid_size)
    probability = result.predict(exog=np.ones((grid_size, 1)), exog_smooth=grid[:, None])
    return grid, np.clip(np.asarray(probability, dtype="float64"), 0.0, 1.0)


def gam_curve(
    df: pd.DataFrame,
    x_col: str,
    target_col: str,
    strata_col: str | None = None,
    grid_size: int = GAM_GRID_SIZE,
) -> tuple[pd.DataFrame, dict[str, str]]:
    """Fitted probability of a binary indicator along a continuous predictor.

    One binomial GAM per stratum of ``strata_col`` (or a single "All" curve).
    Returns the curve table and a mapping of omitted strata to the reason.
    """
    group_col = strata_col or "Group"
    work = pd.DataFrame(
        {
            "x": pd.to_numeric(df[x_col], errors="coerce"),
            "y": binary_indicator(df[target_col]),
        },
        index=df.index,
    )
    work[group_col] = df[strata_col] if strata_col else "All"
    work = work.dropna(subset=["x", "y", group_col])

    curves: list[pd.DataFrame] = []
    skipped: dict[str, str] = {}
    for level, part in work.groupby(group_col, observed=True, sort=True):
        x = part["x"].to_numpy(dtype="float64")
        y = part["y"].to_numpy(dtype="float64")
        reason = _gam_unfit_reason(x, y)
        if reason:
            skipped[str(level)] = reason
            continue
        try:
            grid, probability = _fit_binomial_gam(x, y, grid_size)
        except (np.linalg.LinAlgError, ValueError, PerfectSeparationError) as exc:
            skipped[str(level)] = f"fit failed: {exc}"
            continue
        curves.append(pd.DataFrame({group_col: str(level), x_col: grid, "Probability": probability}))

    if not curves:
        return pd.DataFrame(columns=[group_col, x_col, "Probability"]), skipped
    return pd.concat(curves, ignore_index=True), skipped


def _empty_figure(title: str) -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(
        text="No qualifying records",
        showarrow=False,
        x=0.5,
        y=0.5,
        font=dict(color=PALETTE["slate"]),
    )
    fig.update_layout(
        title=title,
        xaxis_visible=False,
        yaxis_visible=False,
        template="dyad_report",
        paper_bgcolor=PALETTE["bg"],
        plot_bgcolor=PALETTE["bg"],
    )
    return fig


def _category_layout_profile(count: int) -> dict[str, Any]:
    if count <= 1:
        return {"bargap": 0.62, "margin": dict(l=90, r=90, t=55, b=40)}
    if count <= 3:
        return {"bargap": 0.48, "margin": dict(l=70, r=70, t=55, b=40)}
    if count <= 6:
        return {"bargap": 0.34, "margin": dict(l=55, r=55, t=55, b=40)}
    return {"bargap": 0.22, "margin": dict(l=40, r=20, t=55, b=40)}


def _observed_order(series: pd.Series) -> list[str]:
    present = set(series.astype(str))
    if isinstance(series.dtype, pd.CategoricalDtype):
        return [str(c) for c in series.cat.categories if str(c) in present]
    return sorted(present)


def _proportion_figure(
    table: pd.DataFrame,
    group_col: str,
    target_col: str,
    title: str,
    color_map: dict[str, str] | None = None,
) -> go.Figure:
    if table.empty:
        return _empty_figure(title)

    group_order = _observed_order(table[group_col])
    target_order = _observed_order(table[target_col])
    plot = table.astype({group_col: str, target_col: str})
    fig = px.bar(
        plot,
        x=group_col,
        y="Share",
        color=target_col,
        title=title,
        labels={
            group_col: VARIABLE_LABELS.get(group_col, group_col),
            target_col: VARIABLE_LABELS.get(target_col, target_col),
            "Share": "Share of records",
        },
        category_orders={group_col: group_order, target_col: target_order},
        color_discrete_map=color_map or {},
        color_discrete_sequence=COMPARISON_SEQUENCE,
        custom_data=["Count"],
    )
    fig.update_traces(
        marker_line_width=0,
        hovertemplate="%{x}<br>Share: %{y:.1%}<br>Records: %{customdata[0]}<extra></extra>",
    )
    fig.update_yaxes(tickformat=".0%", range=[0, 1])
    profile = _category_layout_profile(len(group_order))
    fig.update_layout(barmode="stack", bargap=profile["bargap"], margin=profile["margin"])
    if len(group_order) == 1:
        # Keep a single bar from stretching across the canvas.
        fig.update_layout(xaxis=dict(domain=[0.28, 0.72]))
    return fig


def _gam_figure(
    curve: pd.DataFrame,
    skipped: dict[str, str],
    x_col: str,
    strata_col: str,
    title: str,
) -> go.Figure:
    if curve.empty:
        fig = _empty_figure(title)
    else:
        fig = px.line(
            curve,
            x=x_col,
            y="Probability",
            color=strata_col,
            title=title,
            labels={
                x_col: VARIABLE_LABELS.get(x_col, x_col),
                strata_col: VARIABLE_LABELS.get(strata_col, strata_col),
                "Probability": "Smoothed probability",
            },
            category_orders={strata_col: [o for o in OUTCOME_ORDER if o in set(curve[strata_col])]},
            color_discrete_map=OUTCOME_COLOR_MAP,
            color_discrete_sequence=COMPARISON_SEQUENCE,
        )
        fig.update_traces(line=dict(width=3))
        fig.update_yaxes(range=[0, 1], tickformat=".0%")
    if skipped:
        note = "; ".join(f"{level}: {reason}" for level, reason in sorted(skipped.items()))
        fig.add_annotation(
            xref="paper",
            yref="paper",
            x=0.0,
            y=-0.18,
            text=f"Omitted: {note}",
            showarrow=False,
            xanchor="left",
            font=dict(color=PALETTE["slate"], size=11),
        )
    return fig


def build_figures(normalized: pd.DataFrame) -> dict[str, go.Figure]:
    _register_report_template()
    subjects = _per_subject(normalized)
    figures: dict[str, go.Figure] = {}

    figures["01_sex_by_outcome"] = _proportion_figure(
        proportion_table(subjects, "diagnostic_outcome", "sex"),
        "diagnostic_outcome",
        "sex",
        "Sex by diagnostic outcome (subjects)",
    )
    figures["02_usable_by_outcome"] = _proportion_figure(
        proportion_table(normalized, "diagnostic_outcome", "session_usable"),
        "diagnostic_outcome",
        "session_usable",
        "Usable sessions by diagnostic outcome",
    )
    figures["03_usable_by_age"] = _proportion_figure(
        proportion_table(normalized, "age_months", "session_usable", bins=AGE_BIN_COUNT),
        "age_months",
        "session_usable",
        "Usable sessions by infant age",
    )
    figures["04_attendance_by_outcome"] = _proportion_figure(
        proportion_table(subjects, "diagnostic_outcome", "total_attendance"),
        "diagnostic_outcome",
        "total_attendance",
        "Total sessions attended by diagnostic outcome (subjects)",
    )
    figures["05_attendance_by_income"] = _proportion_figure(
        proportion_table(subjects, "income_category", "total_attendance"),
        "income_category",
        "total_attendance",
        "Total sessions attended by income category (subjects)",
    )

    for heading, column, slug in BEHAVIOUR_SECTIONS:
        keys = dict(zip(["by_outcome", "by_age", "gam_age", "gam_income"], REPORT_SECTIONS[heading]))
        label = VARIABLE_LABELS.get(column, column)
        figures[keys["by_outcome"]] = _proportion_figure(
            proportion_table(normalized, "diagnostic_outcome", column),
            "diagnostic_outcome",
            column,
            f"{label} by diagnostic outcome",
        )
        figures[keys["by_age"]] = _proportion_figure(
            proportion_table(normalized, "age_months", column, bins=AGE_BIN_COUNT),
            "age_months",
            column,
            f"{label} by infant age",
        )
        for key, x_col in [(keys["gam_age"], "age_months"), (keys["gam_income"], "income_continuous")]:
            curve, skipped = gam_curve(normalized, x_col, column, strata_col="diagnostic_outcome")
            figures[key] = _gam_figure(
                curve,
                skipped,
                x_col,
                "diagnostic_outcome",
                f"{label}: smoothed probability by {VARIABLE_LABELS[x_col].lower()}",
            )

    return figures


def load_sessions(path: str | Path) -> pd.DataFrame:
    header = list(pd.read_csv(path, nrows=0).columns)
    label_col = resolve_columns(header)["session_label"]
    # Labels like "1023.10" must not be read as floats.
    return pd.read_csv(path, dtype={label_col: "string"})


def load_column_labels(path: str | Path) -> pd.DataFrame:
    sheet = pd.read_excel(path)
    columns = [str(c) for c in sheet.columns]
    sheet.columns = columns
    var_col = _find_column(columns, "Variable", ["variable", "column", "field", "name"])
    desc_col = _find_column(
        [c for c in columns if c != var_col], "Description", ["description", "label", "meaning"]
    )
    labels = pd.DataFrame(
        {
            "Variable": _normalize_label(sheet[var_col]),
            "Description": _normalize_label(sheet[desc_col]),
        }
    )
    return labels.dropna(subset=["Variable"]).reset_index(drop=True)


def load_questionnaire(path: str | Path) -> pd.DataFrame:
    return pd.read_excel(path)


def resolve_data_paths(data_dir: str | Path) -> dict[str, Path | None]:
    base = Path(data_dir)
    sessions = base / SESSIONS_FILE
    if not sessions.exists():
        raise FileNotFoundError(
            f"Session table not found: {sessions}. Place {SESSIONS_FILE} in {base} or pass --data-dir."
        )
    labels = base / COLUMN_LABELS_FILE
    questionnaire = base / QUESTIONNAIRE_FILE
    return {
        "sessions": sessions,
        "column_labels": labels if labels.exists() else None,
        "questionnaire": questionnaire if questionnaire.exists() else None,
    }


def _table_html(frame: pd.DataFrame) -> str:
    return frame.to_html(index=False, na_rep="NA", classes="report-table", border=0)


def render_html_report(tables: dict[str, pd.DataFrame | None], figures: dict[str, go.Figure]) -> str:
    """Single self-contained HTML document with the audit tables and every chart."""
    parts = [
        "<!DOCTYPE html>",
        "<html><head><meta charset='utf-8'><title>Dyadic interaction sessions</title>",
        "<style>"
        f"body{{font-family:sans-serif;background:{PALETTE['bg']};color:{PALETTE['slate']};margin:2em;}}"
        ".scroll{max-height:420px;overflow:auto;margin-bottom:1.5em;}"
        ".report-table{border-collapse:collapse;font-size:12px;}"
        f".report-table th,.report-table td{{padding:2px 8px;border-bottom:1px solid {PALETTE['grid']};}}"
        "</style></head><body>",
        "<h1>Dyadic interaction sessions</h1>",
    ]

    audit = [
        ("Raw data", "raw"),
        ("Variable types before cleaning", "types_before"),
        ("Variable types after cleaning", "types_after"),
        ("Session number cleanup", "session_cleanup"),
        ("Total attendance", "attendance"),
        ("Column labels", "column_labels"),
    ]
    for heading, key in audit:
        frame = tables.get(key)
        if frame is None:
            continue
        parts.append(f"<h2>{html.escape(heading)}</h2>")
        parts.append(f"<div class='scroll'>{_table_html(frame)}</div>")

    issues = tables.get("session_label_issues")
    if issues is not None and not issues.empty:
        parts.append("<h3>Session labels without a session number</h3>")
        parts.append(f"<div class='scroll'>{_table_html(issues)}</div>")

    include_js: bool | str = True
    for heading, keys in REPORT_SECTIONS.items():
        parts.append(f"<h2>{html.escape(heading)}</h2>")
        for key in keys:
            fig = figures.get(key)
            if fig is None:
                continue
            parts.append(fig.to_html(full_html=False, include_plotlyjs=include_js))
            include_js = False

    parts.append("</body></html>")
    return "\n".join(parts)


def export_html_report(
    tables: dict[str, pd.DataFrame | None],
    figures: dict[str, go.Figure],
    out_path: str | Path = OUTPUT_DIR / REPORT_FILE,
) -> str:
    path = Path(out_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_html_report(tables, figures), encoding="utf-8")
    return str(path)


def export_png_pack(
    figures: dict[str, go.Figure],
    out_dir: str = str(OUTPUT_DIR / CHART_SUBDIR),
    width: int = 1600,
    height: int = 900,
    scale: int = 2,
) -> list[str]:
    _register_report_template()
    output = Path(out_dir)
    output.mkdir(parents=True, exist_ok=True)

    written: list[str] = []
    try:
        for chart_name in FIGURE_ORDER:
            fig = figures.get(chart_name)
            if fig is None:
                continue
            path = output / f"{chart_name}.png"
            fig.write_image(path, width=width, height=height, scale=scale)
            written.append(str(path))
    except Exception as exc:  # pragma: no cover - environment dependent
        raise RuntimeError(
            "PNG export failed. Ensure kaleido is installed and Chrome is available for static image rendering."
        ) from exc

    return written


def build_outputs(
    input_path: str | Path,
    column_labels_path: str | Path | None = None,
    questionnaire_path: str | Path | None = None,
    output_dir: str | Path | None = OUTPUT_DIR,
    export_charts: bool = False,
    export_html: bool = True,
) -> dict[str, Any]:
    sessions_path = Path(input_path)
    if not sessions_path.exists():
        raise FileNotFoundError(f"Input file not found: {sessions_path}")

    raw = load_sessions(sessions_path)
    normalized = normalize_sessions(raw)
    resolved = resolve_columns(list(raw.columns))

    column_labels = load_column_labels(column_labels_path) if column_labels_path else None
    questionnaire = load_questionnaire(questionnaire_path) if questionnaire_path else None

    issues = session_label_issues(normalized)
    tables: dict[str, pd.DataFrame | None] = {
        "raw": raw,
        "column_labels": column_labels,
        "questionnaire": questionnaire,
        "types_before": variable_types(raw, [resolved[c] for c in CATEGORICAL_COLUMNS if c in resolved]),
        "types_after": variable_types(normalized, CATEGORICAL_COLUMNS + ["session_number", "total_attendance"]),
        "session_cleanup": session_cleanup_table(normalized),
        "attendance": attendance_table(normalized),
        "session_label_issues": issues,
        "sessions": normalized,
    }
    figures = build_figures(normalized)

    output_tables: list[str] = []
    report_path: str | None = None
    chart_paths: list[str] = []
    if output_dir is not None:
        out_root = Path(output_dir)
        table_dir = out_root / TABLE_SUBDIR
        table_dir.mkdir(parents=True, exist_ok=True)
        for key in ["sessions", "session_cleanup", "attendance", "session_label_issues"]:
            path = table_dir / f"{key}.csv"
            tables[key].to_csv(path, index=False)
            output_tables.append(str(path))
        if export_html:
            report_path = export_html_report(tables, figures, out_root / REPORT_FILE)
        if export_charts:
            chart_paths = export_png_pack(figures, out_dir=str(out_root / CHART_SUBDIR))

    logs = {
        "sessions": int(len(normalized)),
        "subjects": int(normalized["subject_id"].nunique()),
        "unresolved_columns": [c for c in RAW_COLUMN_PATTERNS if c not in resolved],
        "label_issue_count": int(len(issues)),
        "label_issue_sample": issues["session_label"].astype(str).head(10).tolist(),
        "column_labels_loaded": column_labels is not None,
        "questionnaire_shape": None if questionnaire is None else tuple(questionnaire.shape),
        "output_tables": output_tables,
        "output_report": report_path,
        "output_charts": chart_paths,
    }

    return {"tables": tables, "figures": figures, "logs": logs}


def _print_acceptance_logs(logs: dict[str, Any]) -> None:
    print(f"Session records: {logs['sessions']}")
    print(f"Subjects: {logs['subjects']}")
    if logs["unresolved_columns"]:
        print(f"Columns not found in input (left empty): {logs['unresolved_columns']}")

    print(f"Session labels without a session number: {logs['label_issue_count']}")
    if logs["label_issue_count"] > 0:
        print(f"Sample malformed labels: {logs['label_issue_sample']}")

    print(f"Column label sheet loaded: {logs['column_labels_loaded']}")
    if logs["questionnaire_shape"] is None:
        print("Questionnaire sheet: not found")
    else:
        rows, cols = logs["questionnaire_shape"]
        print(f"Questionnaire sheet: {rows} rows x {cols} columns (not joined)")

    if logs["output_tables"]:
        print("Written tables:")
        for path in logs["output_tables"]:
            print(f"- {path}")
    if logs["output_report"]:
        print(f"Written report: {logs['output_report']}")
    if logs["output_charts"]:
        print("Written charts:")
        for path in logs["output_charts"]:
            print(f"- {path}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dyadic interaction session report")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=str(DEFAULT_DATA_DIR),
        help=f"Folder holding {SESSIONS_FILE} and the optional label/questionnaire workbooks",
    )
    parser.add_argument("--output-dir", type=str, default=str(OUTPUT_DIR), help="Folder for tables and report")
    parser.add_argument("--export-charts", action="store_true", help="Export PNG chart pack")
    parser.add_argument("--no-html", action="store_true", help="Skip writing the HTML report")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    paths = resolve_data_paths(args.data_dir)
    result = build_outputs(
        paths["sessions"],
        column_labels_path=paths["column_labels"],
        questionnaire_path=paths["questionnaire"],
        output_dir=args.output_dir,
        export_charts=args.export_charts,
        export_html=not args.no_html,
    )
    _print_acceptance_logs(result["logs"])


if __name__ == "__main__":
    main()
