import numpy as np
import pandas as pd
import pytest

import jointde.de_utils as du
import jointde.validation as validation
from conftest import make_joint_adata


# ---------------------------------------------------------------------
# Options / small helpers
# ---------------------------------------------------------------------
def test_options_defaults():
    opts = du.DESeqOptions()
    assert opts.test == "Wald"
    assert opts.cooks_cutoff is False
    assert opts.independent_filtering is False
    assert opts.remove_na is True


def test_options_reject_lrt_and_unknown():
    with pytest.raises(ValueError, match="Wald"):
        du.DESeqOptions(test="LRT")
    with pytest.raises(ValueError):
        du.DESeqOptions(test="t-test")
    with pytest.raises(ValueError):
        du.DESeqOptions(alpha=0.0)


@pytest.mark.parametrize(
    "n_groups,total,expected",
    [(10, 4, (4, 1)), (4, 4, (4, 1)), (4, 10, (4, 2)), (3, 16, (3, 5)), (0, 0, (1, 1))],
)
def test_compute_parallelism(n_groups, total, expected):
    assert du.compute_parallelism(n_groups=n_groups, total_cpus=total) == expected


def test_order_and_filter():
    res = pd.DataFrame({"padj": [0.5, np.nan, 0.01, 0.2]}, index=["a", "b", "c", "d"])
    assert list(du.order_and_filter(res, remove_na=True).index) == ["c", "d", "a"]
    assert list(du.order_and_filter(res, remove_na=False).index) == ["c", "d", "a", "b"]


def test_is_error():
    assert du.is_error(du.DEFailure(level="T", reason="x"))
    assert not du.is_error(pd.DataFrame())


# ---------------------------------------------------------------------
# Worker failure paths (no engine needed)
# ---------------------------------------------------------------------
def _payload(columns, **kw):
    cm = pd.DataFrame(np.ones((3, len(columns)), dtype=int), columns=columns, index=["g1", "g2", "g3"])
    p = {
        "level": "T",
        "cm": cm,
        "sample_groups": {"ctrl": ["s1", "s2"], "case": ["s3", "s4"]},
        "ref_level": "ctrl",
        "cluster_sep": "<!!>",
        "opts": du.DESeqOptions(),
    }
    p.update(kw)
    return p


def test_worker_reference_absent():
    lev, out = du._per_cell_type_worker(_payload(["s3<!!>T", "s4<!!>T"]))
    assert lev == "T"
    assert du.is_error(out)
    assert "reference level is absent" in out.reason


def test_worker_single_condition():
    lev, out = du._per_cell_type_worker(_payload(["s1<!!>T", "s2<!!>T"]))
    assert du.is_error(out)
    assert "not present in both conditions" in out.reason


def test_worker_no_libraries():
    lev, out = du._per_cell_type_worker(_payload([]))
    assert du.is_error(out)


def test_between_missing_cell_type_raises(monkeypatch, joint_adata, sample_groups):
    monkeypatch.setattr(validation, "require_deseq_engine", lambda: None)
    with pytest.raises(ValueError, match="No pseudobulk libraries left"):
        du.between_cell_type_de(
            joint_adata,
            "celltype",
            sample_groups,
            "T",
            "NK",
            min_cell_count=5,
        )


# ---------------------------------------------------------------------
# Full runs through PyDESeq2
# ---------------------------------------------------------------------
@pytest.fixture
def de_adata():
    return make_joint_adata(n_genes=60, cells_per_type=25, seed=3)


def test_per_cell_type_de_runs(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    res = du.per_cell_type_de(
        de_adata,
        "celltype",
        sample_groups,
        "ctrl",
        min_cell_count=10,
        n_jobs=1,
    )

    assert list(res) == ["T", "B"]
    out = res["T"]
    assert isinstance(out, du.CellTypeDE)
    assert set(du.RESULT_COLUMNS).issubset(out.res.columns)
    assert out.res["padj"].notna().all()
    assert out.res["padj"].is_monotonic_increasing
    assert out.cm.shape[1] == 4
    assert list(out.meta["group"].cat.categories) == ["ctrl", "case"]
    assert out.provenance["contrast"] == ["group", "case", "ctrl"]


def test_per_cell_type_de_records_failures(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    # drop B cells from the case samples
    keep = ~((de_adata.obs["celltype"] == "B") & de_adata.obs["sample_id"].isin(["s3", "s4"]))
    adata = de_adata[keep.to_numpy()].copy()

    res = du.per_cell_type_de(adata, "celltype", sample_groups, "ctrl", min_cell_count=10)
    assert isinstance(res["T"], du.CellTypeDE)
    assert du.is_error(res["B"])
    assert "both conditions" in res["B"].reason


def test_per_cell_type_de_plain_tables(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    res = du.per_cell_type_de(
        de_adata, "celltype", sample_groups, "ctrl", return_details=False
    )
    assert isinstance(res["T"], pd.DataFrame)


def test_between_cell_type_de_runs(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    out = du.between_cell_type_de(de_adata, "celltype", sample_groups, "T", "B")

    assert isinstance(out, du.BetweenCellTypeDE)
    assert out.meta.shape[0] == 8
    assert list(out.meta["celltype"].cat.categories) == ["T", "B"]
    assert out.provenance["design"] == "~library + celltype"
    assert out.res.shape[0] > 0


def test_per_cell_type_de_rejects_lrt(de_adata, sample_groups):
    with pytest.raises(ValueError, match="Wald"):
        du.per_cell_type_de(de_adata, "celltype", sample_groups, "ctrl", test="LRT")


def test_per_cell_type_de_parallel_matches_serial(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    serial = du.per_cell_type_de(de_adata, "celltype", sample_groups, "ctrl", n_jobs=1)
    parallel = du.per_cell_type_de(de_adata, "celltype", sample_groups, "ctrl", n_jobs=2)

    # categorical order, not completion order
    assert list(parallel) == ["T", "B"]
    for lev in ["T", "B"]:
        pd.testing.assert_frame_equal(
            serial[lev].res, parallel[lev].res, check_exact=False, rtol=1e-6
        )


def test_per_cell_type_de_subsamples_before_min_count(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    full = du.per_cell_type_de(de_adata, "celltype", sample_groups, "ctrl")
    sub = du.per_cell_type_de(
        de_adata, "celltype", sample_groups, "ctrl", max_cell_count=12, random_state=1
    )
    assert isinstance(sub["T"], du.CellTypeDE)
    assert (sub["T"].cm.sum(axis=0) < full["T"].cm.sum(axis=0)).all()

    # 5 cells per library is below min_cell_count, so no level can be tested
    tiny = du.per_cell_type_de(
        de_adata, "celltype", sample_groups, "ctrl", max_cell_count=5, min_cell_count=10
    )
    assert all(du.is_error(x) for x in tiny.values())


def test_per_cell_type_de_shrunk_lfc(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    res = du.per_cell_type_de(de_adata, "celltype", sample_groups, "ctrl", shrink_lfc=True)
    assert res["T"].provenance["lfc_shrunk"] is True

    plain = du.per_cell_type_de(de_adata, "celltype", sample_groups, "ctrl")
    assert plain["T"].provenance["lfc_shrunk"] is False


def test_between_cell_type_de_keeps_unpaired_samples(de_adata, sample_groups):
    pytest.importorskip("pydeseq2")

    # s1 loses its B cells
    keep = ~((de_adata.obs["celltype"] == "B") & (de_adata.obs["sample_id"] == "s1"))
    adata = de_adata[keep.to_numpy()].copy()

    paired = du.between_cell_type_de(adata, "celltype", sample_groups, "T", "B")
    assert paired.meta.shape[0] == 6
    assert "s1" not in set(paired.meta["library"])

    unpaired = du.between_cell_type_de(
        adata, "celltype", sample_groups, "T", "B",
        only_paired=False, cooks_cutoff=True, remove_na=False,
    )
    assert unpaired.meta.shape[0] == 7
    assert unpaired.res.shape[0] == adata.n_vars
