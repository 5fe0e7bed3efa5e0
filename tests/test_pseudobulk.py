import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
from anndata import AnnData

import jointde.pseudobulk as pb


def _tiny_sample():
    # 5 cells x 3 genes, two types: T (3 cells), B (2 cells)
    X = np.array(
        [
            [1, 0, 2],
            [0, 1, 1],
            [3, 0, 0],
            [1, 1, 1],
            [0, 2, 0],
        ],
        dtype=np.float32,
    )
    a = AnnData(sp.csr_matrix(X))
    a.obs_names = ["c1", "c2", "c3", "c4", "c5"]
    a.var_names = ["g1", "g2", "g3"]
    groups = pd.Series(["T", "T", "T", "B", "B"], index=a.obs_names, dtype="category")
    return a, groups


# ---------------------------------------------------------------------
# collapse
# ---------------------------------------------------------------------
def test_collapse_sums_per_type():
    a, groups = _tiny_sample()
    tc = pb.collapse_cells_by_type(a, groups, min_cell_count=1)

    assert list(tc.index) == ["B", "T"]
    assert tc.loc["T"].tolist() == [4, 1, 3]
    assert tc.loc["B"].tolist() == [1, 3, 1]


def test_collapse_min_cell_count_drops_small_types():
    a, groups = _tiny_sample()
    tc = pb.collapse_cells_by_type(a, groups, min_cell_count=3)
    assert list(tc.index) == ["T"]


def test_collapse_ignores_unlabelled_cells():
    a, groups = _tiny_sample()
    tc = pb.collapse_cells_by_type(a, groups.drop(["c1"]), min_cell_count=1)
    assert tc.loc["T"].tolist() == [3, 1, 1]


def test_collapse_subsampling_is_seeded():
    a, groups = _tiny_sample()
    t1 = pb.collapse_cells_by_type(a, groups, min_cell_count=1, max_cell_count=2, random_state=1)
    t2 = pb.collapse_cells_by_type(a, groups, min_cell_count=1, max_cell_count=2, random_state=1)
    pd.testing.assert_frame_equal(t1, t2)
    # B has exactly 2 cells and is never subsampled
    assert t1.loc["B"].tolist() == [1, 3, 1]


# ---------------------------------------------------------------------
# naming and binding
# ---------------------------------------------------------------------
def test_bind_and_split_names():
    m1 = pd.DataFrame([[1, 2]], index=["T"], columns=["g1", "g2"])
    m2 = pd.DataFrame([[3, 4], [5, 6]], index=["T", "B"], columns=["g1", "g2"])
    out = pb.bind_pseudobulk_matrices({"s1": m1, "s2": m2}, cluster_sep="<!!>")

    assert out.shape == (2, 3)
    assert list(out.columns) == ["s1<!!>T", "s2<!!>T", "s2<!!>B"]
    assert out["s2<!!>B"].tolist() == [5, 6]

    assert list(pb.split_pseudobulk_name(out.columns, "<!!>", 0)) == ["s1", "s2", "s2"]
    assert list(pb.split_pseudobulk_name(out.columns, "<!!>", 1)) == ["T", "T", "B"]


def test_common_genes_follow_first_sample():
    a = AnnData(np.ones((2, 3)))
    a.var_names = ["g3", "g1", "g2"]
    b = AnnData(np.ones((2, 2)))
    b.var_names = ["g1", "g3"]
    out = pb.raw_matrices_with_common_genes({"a": a, "b": b, "c": a}, {"x": ["a"], "y": ["b"]})

    assert list(out) == ["a", "b"]
    assert list(out["a"].var_names) == ["g3", "g1"]
    assert list(out["b"].var_names) == ["g3", "g1"]


def test_build_pseudobulk(joint_adata, sample_groups):
    samples = pb.split_samples(joint_adata, sample_key="sample_id")
    groups = pb.resolve_groups(joint_adata, "celltype")
    aggr = pb.build_pseudobulk(samples, groups, sample_groups, min_cell_count=10)

    assert aggr.shape == (joint_adata.n_vars, 8)
    assert "s1<!!>T" in aggr.columns
    total = np.asarray(joint_adata.X.sum())
    assert float(aggr.to_numpy().sum()) == pytest.approx(float(total))


# ---------------------------------------------------------------------
# splitting / resolving
# ---------------------------------------------------------------------
def test_split_samples_keeps_cell_ids(joint_adata):
    samples = pb.split_samples(joint_adata, sample_key="sample_id")
    assert list(samples) == ["s1", "s2", "s3", "s4"]
    assert samples["s2"].n_obs == 40
    assert samples["s2"].obs_names[0] == "s2_T_0"


def test_split_samples_uses_counts_layer(joint_adata):
    joint_adata.layers["counts"] = joint_adata.X.copy()
    joint_adata.X = joint_adata.X * 0
    samples = pb.split_samples(joint_adata, sample_key="sample_id", counts_layer="counts")
    assert samples["s1"].X.sum() > 0

    with pytest.raises(KeyError):
        pb.split_samples(joint_adata, sample_key="sample_id", counts_layer="missing")


def test_resolve_groups_from_obs(joint_adata):
    joint_adata.obs["cl"] = ["x"] * joint_adata.n_obs
    g = pb.resolve_groups(joint_adata, "cl")
    assert isinstance(g.dtype, pd.CategoricalDtype)

    with pytest.raises(KeyError):
        pb.resolve_groups(joint_adata, "nope")


def test_resolve_samples_rejects_other_types():
    with pytest.raises(TypeError):
        pb.resolve_samples([1, 2, 3])


# ---------------------------------------------------------------------
# library metadata
# ---------------------------------------------------------------------
def test_metadata_and_pairing():
    libs = ["s1<!!>T", "s1<!!>B", "s2<!!>T", "s3<!!>B", "s3<!!>NK"]
    meta = pb.pseudobulk_metadata(libs, "T", "B")

    assert list(meta.index) == ["s1<!!>T", "s1<!!>B", "s2<!!>T", "s3<!!>B"]
    assert list(meta["library"]) == ["s1", "s1", "s2", "s3"]

    paired = pb.paired_libraries(meta)
    assert list(paired.index) == ["s1<!!>T", "s1<!!>B"]


def test_merge_count_matrices_zero_fills():
    a = AnnData(sp.csr_matrix(np.array([[1.0, 2.0]])))
    a.obs_names = ["a1"]
    a.var_names = ["g1", "g2"]
    b = AnnData(sp.csr_matrix(np.array([[3.0, 4.0]])))
    b.obs_names = ["b1"]
    b.var_names = ["g2", "g3"]

    merged = pb.merge_count_matrices({"A": a, "B": b})
    assert sorted(merged.var_names) == ["g1", "g2", "g3"]
    assert list(merged.obs["Dataset"]) == ["A", "B"]

    dense = pd.DataFrame(merged.X.toarray(), index=merged.obs_names, columns=merged.var_names)
    assert dense.loc["b1", "g1"] == 0
    assert dense.loc["b1", "g3"] == 4


def test_split_samples_drops_cells_without_sample(joint_adata):
    sid = joint_adata.obs["sample_id"].astype(object)
    sid.iloc[:3] = None
    joint_adata.obs["sample_id"] = sid

    samples = pb.split_samples(joint_adata, sample_key="sample_id")
    assert list(samples) == ["s1", "s2", "s3", "s4"]
    assert samples["s1"].n_obs == 37
    assert sum(a.n_obs for a in samples.values()) == joint_adata.n_obs - 3
