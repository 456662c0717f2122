"""Tests for demo dataset module."""
import pandas as pd

from demo_data import DERMATOLOGY_PANELS, load_demo_dataset, get_demo_description


def test_load_demo_dataset_shapes():
    demo = load_demo_dataset()
    assert demo.counts.shape[1] == 6
    assert demo.counts.shape[0] > 50
    assert len(demo.groups) == 6


def test_load_demo_dataset_conditions():
    demo = load_demo_dataset()
    assert demo.groups.labels == ("Control", "Treatment")
    assert all(demo.groups.get(s) in s for s in demo.counts.columns)


def test_load_demo_dataset_integer_counts():
    demo = load_demo_dataset()
    for col in demo.counts.columns:
        assert pd.api.types.is_integer_dtype(demo.counts[col])
    assert (demo.counts.values >= 0).all()


def test_load_demo_dataset_reproducible():
    first = load_demo_dataset(seed=3)
    second = load_demo_dataset(seed=3)
    assert first.counts.equals(second.counts)
    assert not first.counts.equals(load_demo_dataset(seed=4).counts)


def test_planted_genes_are_in_catalog():
    demo = load_demo_dataset()
    assert demo.up_genes <= demo.catalog["Wound Healing"].members | demo.catalog["Anti-aging"].members
    assert demo.down_genes <= demo.catalog["Skin Barrier"].members
    assert set(DERMATOLOGY_PANELS) <= set(demo.catalog)


def test_planted_genes_shift_in_treatment():
    demo = load_demo_dataset()
    treatment = demo.groups.samples_in("Treatment")
    control = demo.groups.samples_in("Control")
    means_t = demo.counts[treatment].mean(axis=1)
    means_c = demo.counts[control].mean(axis=1)
    assert all(means_t[g] > means_c[g] for g in demo.up_genes)
    assert all(means_t[g] < means_c[g] for g in demo.down_genes)


def test_get_demo_description():
    desc = get_demo_description()
    assert isinstance(desc, str)
    assert len(desc) > 50
