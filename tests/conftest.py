import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

import cohort_data


def make_visits(n_patients: int = 150, seed: int = 1) -> pd.DataFrame:
    """Three visits per synthetic patient, Framingham column layout, shuffled rows."""
    gen = np.random.default_rng(seed)
    rows = []
    for pid in range(1, n_patients + 1):
        sex = int(gen.integers(1, 3))
        age0 = float(gen.integers(35, 70))
        bmi = float(gen.normal(26, 4))
        smoke = int(gen.integers(0, 2))
        time = 0.0
        for period in (1, 2, 3):
            if period > 1:
                time += float(gen.normal(2190, 120))
                bmi = 0.9 * bmi + 2.6 + 0.4 * smoke + gen.normal(0, 0.5)
            rows.append({
                "RANDID": 1000 + pid,
                "SEX": sex,
                "TOTCHOL": float(gen.normal(235, 40)),
                "AGE": age0 + (period - 1) * 6,
                "SYSBP": float(gen.uniform(95, 200)),
                "DIABP": float(gen.uniform(60, 125)),
                "CURSMOKE": smoke,
                "BMI": round(bmi, 2),
                "HEARTRTE": float(gen.normal(75, 10)),
                "GLUCOSE": float(gen.normal(85, 15)) if gen.random() > 0.05 else np.nan,
                "TIME": round(time),
                "PERIOD": period,
                "HDLC": float(gen.normal(50, 10)) if period == 3 else np.nan,
                "DEATH": int(gen.integers(0, 2)),
                "TIMEDTH": 8766,
            })
    return pd.DataFrame(rows).sample(frac=1.0, random_state=3).reset_index(drop=True)


@pytest.fixture(scope="session", autouse=True)
def no_plot_windows():
    cohort_data.SHOW_PLOTS = False
    yield
    cohort_data.SHOW_PLOTS = True


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def visits():
    return make_visits()


@pytest.fixture
def visits_csv(visits, tmp_path):
    path = tmp_path / "frmgham.csv"
    visits.to_csv(path, index=False)
    return str(path)


@pytest.fixture(scope="module")
def visits_csv_module(tmp_path_factory):
    path = tmp_path_factory.mktemp("data") / "frmgham.csv"
    make_visits().to_csv(path, index=False)
    return str(path)
