"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/tests/conftest.py

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import numpy as np
import pytest

from gendismix.data import DataSet
from gendismix.scores import IndependentModel

SEQ_LENGTH = 5

_CLASS0 = ["ACGTA", "ACGTT", "ACGAA", "TCGTA", "ACCTA", "ACGTA"]
_CLASS1 = ["TTGCA", "TAGCA", "GTGCA", "TTGCC", "TTACA"]
_CLASS2 = ["GGGGC", "GAGGC", "GGTGC", "CGGGC"]


# fixtures
@pytest.fixture
def two_class_data() -> list[DataSet]:
    return [DataSet.from_strings(_CLASS0, name="fg"), DataSet.from_strings(_CLASS1, name="bg")]


@pytest.fixture
def three_class_data() -> list[DataSet]:
    return [
        DataSet.from_strings(_CLASS0, name="a"),
        DataSet.from_strings(_CLASS1, name="b"),
        DataSet.from_strings(_CLASS2, name="c"),
    ]


@pytest.fixture
def uneven_weights() -> list[np.ndarray]:
    return [
        np.array([1.0, 0.5, 2.0, 1.0, 0.0, 1.5]),
        np.array([1.0, 1.0, 0.25, 3.0, 1.0]),
    ]


@pytest.fixture
def make_models():
    def _make(n_classes: int, ess: float = 0.0) -> list[IndependentModel]:
        return [IndependentModel(SEQ_LENGTH, ess=ess, name=f"class{c}") for c in range(n_classes)]

    return _make
