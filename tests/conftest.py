"""
Pytest configuration and shared fixtures for outbredqc tests.

Fixture Dependency Map:
=======================

Data Generation Fixtures:
├── do_cross (40 individuals, 60 markers per autosome, with true states)
│   ├── do_adata (AnnData only)
│   ├── do_truth (true founder-pair states)
│   └── reconstructor (SimulatedReconstructor over do_truth)
└── tiny_adata (hand-written 4 × 6 genotype matrix)

Service Fixtures:
└── runner (ReconstructionRunner over reconstructor, single worker)

Config Fixtures:
└── thresholds (default QCThresholds)
"""

import logging
from typing import Tuple

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from outbredqc.config.qc_config import QCThresholds
from outbredqc.services.analysis.reconstruction_runner import ReconstructionRunner
from outbredqc.testing.fixtures import SimulatedReconstructor, synthetic_do_cross

logging.getLogger("anndata").setLevel(logging.ERROR)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests of a single service")
    config.addinivalue_line("markers", "integration: end-to-end pipeline tests")


@pytest.fixture
def do_cross() -> Tuple[ad.AnnData, pd.DataFrame]:
    """Small synthetic DO cross with known founder-pair states."""
    return synthetic_do_cross(n_individuals=40, markers_per_chromosome=60, seed=7)


@pytest.fixture
def do_adata(do_cross) -> ad.AnnData:
    return do_cross[0]


@pytest.fixture
def do_truth(do_cross) -> pd.DataFrame:
    return do_cross[1]


@pytest.fixture
def reconstructor(do_truth) -> SimulatedReconstructor:
    return SimulatedReconstructor(do_truth)


@pytest.fixture
def runner(reconstructor) -> ReconstructionRunner:
    return ReconstructionRunner(reconstructor, max_workers=1)


@pytest.fixture
def thresholds() -> QCThresholds:
    return QCThresholds()


@pytest.fixture
def tiny_adata() -> ad.AnnData:
    """
    Hand-written 4 individuals × 6 markers with 2 founders.

    Founder panel (markers × founders):
        m1..m4 complete (AA/BB), m5 founder missing, m6 founder heterozygous
    """
    gt = np.array(
        [
            [0, 1, 2, 0, 1, 2],
            [0, 1, 2, -1, 1, 2],
            [-1, -1, -1, -1, -1, -1],
            [2, 2, 0, 0, 1, -1],
        ],
        dtype=np.int8,
    )
    founders = np.array(
        [[0, 2], [2, 2], [0, 0], [2, 0], [-1, 2], [1, 0]],
        dtype=np.int8,
    )
    adata = ad.AnnData(
        X=np.zeros(gt.shape, dtype=np.float32),
        obs=pd.DataFrame(
            {"sex": ["F", "M", "F", "M"], "generation": [10, 11, 12, 13]},
            index=["ind_a", "ind_b", "ind_c", "ind_d"],
        ),
        var=pd.DataFrame(
            {"chr": ["1", "1", "1", "2", "2", "X"], "cM": [1.0, 2.0, 3.0, 1.0, 2.0, 5.0]},
            index=[f"m{i}" for i in range(1, 7)],
        ),
    )
    adata.layers["GT"] = gt
    adata.varm["founder_GT"] = founders
    adata.uns["founder_strains"] = ["A/J", "C57BL/6J"]
    return adata
