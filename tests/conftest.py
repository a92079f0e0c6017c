from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

OUTCOMES = ["ASD", "EL no ASD", "TD"]


def _logistic(x: float) -> float:
    return 1 / (1 + np.exp(-x))


@pytest.fixture
def raw_sessions() -> pd.DataFrame:
    """Synthetic session export: 60 subjects, 1-7 visits each."""
    rng = np.random.default_rng(7)
    rows = []
    for subject in range(1001, 1061):
        outcome = OUTCOMES[subject % 3]
        attended = int(rng.integers(1, 8))
        income = float(rng.uniform(20, 150))
        for session in range(1, attended + 1):
            age = 2.0 + 2.0 * session + float(rng.uniform(-0.8, 0.8))
            peekaboo = rng.random()
            rows.append(
                {
                    "subject_id": subject,
                    "session_label": f"{subject}.{session}" + ("*" if session == 2 else ""),
                    "age_months": round(age, 2),
                    "sex": "F" if subject % 2 else "M",
                    "gender": "Female" if subject % 2 else "Male",
                    "diagnostic_outcome": outcome,
                    "income_category": min(5, int(income // 30) + 1),
                    "income_continuous": round(income, 1),
                    "session_usable": int(rng.random() < 0.85),
                    "sings": int(rng.random() < _logistic((age - 8) / 3)),
                    "greets": int(rng.random() < _logistic((income - 80) / 40)),
                    "plays_peekaboo": np.nan if peekaboo < 0.2 else ("Yes" if peekaboo < 0.6 else "No"),
                    "leans_forward": int(rng.random() < 0.5),
                }
            )
    return pd.DataFrame(rows)
