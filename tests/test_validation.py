import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from jointde import validation as v
from jointde.pseudobulk import resolve_groups, split_samples


@pytest.fixture(autouse=True)
def engine_available(monkeypatch):
    # argument checks are independent of the DE engine being installed
    monkeypatch.setattr(v, "require_deseq_engine", lambda: None)


@pytest.fixture
def samples(joint_adata):
    return split_samples(joint_adata, sample_key="sample_id")


@pytest.fixture
def groups(joint_adata):
    return resolve_groups(joint_adata, "celltype")


def test_valid_per_cell_type(samples, groups, sample_groups):
    v.validate_per_cell_type_params(samples, groups, sample_groups, "ctrl", "<!!>")


def test_needs_exactly_two_groups(samples, groups):
    sg = {"a": ["s1"], "b": ["s2"], "c": ["s3"]}
    with pytest.raises(ValueError, match="length 2"):
        v.validate_per_cell_type_params(samples, groups, sg, "a", "<!!>")


def test_ref_level_must_be_a_group(samples, groups, sample_groups):
    with pytest.raises(ValueError, match="ref_level"):
        v.validate_per_cell_type_params(samples, groups, sample_groups, "other", "<!!>")
    with pytest.raises(ValueError, match="reference level"):
        v.validate_per_cell_type_params(samples, groups, sample_groups, None, "<!!>")


def test_unknown_sample_in_groups(samples, groups):
    sg = {"ctrl": ["s1", "nope"], "case": ["s3"]}
    with pytest.raises(ValueError, match="unknown"):
        v.validate_per_cell_type_params(samples, groups, sg, "ctrl", "<!!>")


def test_empty_group_rejected(samples, groups):
    with pytest.raises(ValueError, match="greater or equal"):
        v.validate_per_cell_type_params(samples, groups, {"ctrl": [], "case": ["s3"]}, "ctrl", "<!!>")


def test_sample_in_both_groups(samples, groups):
    sg = {"ctrl": ["s1", "s2"], "case": ["s2", "s3"]}
    with pytest.raises(ValueError, match="both"):
        v.validate_per_cell_type_params(samples, groups, sg, "ctrl", "<!!>")


def test_groups_must_be_categorical(samples, groups, sample_groups):
    with pytest.raises(TypeError):
        v.validate_per_cell_type_params(samples, groups.astype(str), sample_groups, "ctrl", "<!!>")
    with pytest.raises(ValueError, match="groups must be specified"):
        v.validate_per_cell_type_params(samples, None, sample_groups, "ctrl", "<!!>")


def test_separator_in_sample_name(groups):
    from anndata import AnnData
    bad = {"s<!!>1": AnnData(np.ones((2, 2))), "s2": AnnData(np.ones((2, 2)))}
    with pytest.raises(ValueError, match="sample name"):
        v.validate_per_cell_type_params(bad, groups, {"a": ["s<!!>1"], "b": ["s2"]}, "a", "<!!>")


def test_separator_in_cluster_name(samples, sample_groups):
    g = pd.Series(["T<!!>x", "B"], index=["c1", "c2"], dtype="category")
    with pytest.raises(ValueError, match="cluster name"):
        v.validate_per_cell_type_params(samples, g, sample_groups, "ctrl", "<!!>")


def test_between_requires_both_groups(samples, groups, sample_groups):
    v.validate_between_cell_type_params(samples, groups, sample_groups, "T", "B", "<!!>")
    with pytest.raises(ValueError, match="alt_group"):
        v.validate_between_cell_type_params(samples, groups, sample_groups, "T", None, "<!!>")
    with pytest.raises(ValueError, match="must differ"):
        v.validate_between_cell_type_params(samples, groups, sample_groups, "T", "T", "<!!>")


def test_samples_must_be_anndata(groups):
    with pytest.raises(TypeError):
        v.validate_between_cell_type_params({"s1": np.ones((2, 2))}, groups, {"a": ["s1"]}, "T", "B", "<!!>")


# ---------------------------------------------------------------------
# count checks
# ---------------------------------------------------------------------
@pytest.mark.parametrize(
    "mat",
    [
        np.array([[1, 2], [0, 5]]),
        sp.csr_matrix(np.array([[1.0, 0.0], [3.0, 4.0]])),
        pd.DataFrame({"a": [1.0, 2.0]}),
    ],
)
def test_whole_numbers_ok(mat):
    v.check_counts_whole_numbers(mat)


def test_non_integer_counts_reported():
    m = pd.DataFrame({"a": [1.5, 2.0], "b": [0.25, 3.0]})
    with pytest.raises(ValueError, match="There are 2 counts"):
        v.check_counts_whole_numbers(m)
