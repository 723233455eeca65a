import pandas as pd
import pytest
from synthetic import make_survey, make_trials


@pytest.fixture(scope="session")
def trials() -> pd.DataFrame:
    return make_trials()


@pytest.fixture(scope="session")
def survey() -> pd.DataFrame:
    return make_survey()
