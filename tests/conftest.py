"""
Shared fixtures for the picrust2_tools tests.
"""
import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture
def two_group_metadata():
    return pd.DataFrame({
        "sample_name": [f"S{i}" for i in range(1, 7)],
        "Environment": ["Forest", "Forest", "Forest", "Desert", "Desert", "Desert"],
    })


@pytest.fixture
def pathway_abundance():
    """20 pathways x 6 samples; map00010 is higher in Forest."""
    rng = np.random.default_rng(0)
    values = rng.poisson(200, size=(20, 6)).astype(float)
    values[0, :3] = [900, 950, 880]
    features = [f"map{i:05d}" for i in range(10, 210, 10)]
    return pd.DataFrame(values, index=features, columns=[f"S{i}" for i in range(1, 7)])


@pytest.fixture
def ko_abundance():
    """KO table with two mapped KOs, one unknown KO and one EC row."""
    return pd.DataFrame(
        {
            "S1": [10.0, 5.0, 7.0, 1.0],
            "S2": [20.0, 0.0, 3.0, 2.0],
            "S3": [12.0, 6.0, 0.0, 4.0],
            "S4": [11.0, 4.0, 2.0, 0.0],
        },
        index=["K00134", "K01810", "K99999", "EC:1.1.1.27"],
    )


@pytest.fixture
def small_abundance():
    """3 features x 4 samples, two samples per group."""
    return pd.DataFrame(
        {
            "S1": [10.0, 20.0, 30.0],
            "S2": [12.0, 18.0, 33.0],
            "S3": [30.0, 10.0, 25.0],
            "S4": [28.0, 13.0, 20.0],
        },
        index=["map00010", "map00020", "map00030"],
    )


@pytest.fixture
def small_metadata():
    return pd.DataFrame({
        "SampleID": ["S1", "S2", "S3", "S4"],
        "group": ["A", "A", "B", "B"],
    })


@pytest.fixture
def three_group_metadata():
    return pd.DataFrame({
        "sample_name": [f"S{i}" for i in range(1, 7)],
        "Environment": ["Forest", "Forest", "Desert", "Desert", "Lake", "Lake"],
    })


@pytest.fixture
def daa_results():
    """Normalized single-method results for the pathway_abundance fixture."""
    return pd.DataFrame({
        "feature": ["map00010", "map00020", "map00030", "map00040"],
        "method": "LinDA",
        "group1": "Desert",
        "group2": "Forest",
        "effect_size": [2.1, -0.4, 0.3, 0.1],
        "p_values": [0.0001, 0.004, 0.01, 0.6],
        "p_adjust": [0.002, 0.02, 0.04, 0.6],
    })
