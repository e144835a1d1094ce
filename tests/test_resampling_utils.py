# tests/test_resampling_utils.py

import logging

import numpy as np
import pandas as pd
import pytest

from sccontrast.de_backends import DEResult
from sccontrast.resampling_utils import prepare_samples_for_de, summarize_de_resampling_results

GROUPS = {"ctrl": ["c1", "c2", "c3"], "case": ["t1", "t2", "t3", "t4"]}


# -------------------------------------------------------------------------
# Planner
# -------------------------------------------------------------------------
def test_loo_drops_each_sample_once():
    plans = prepare_samples_for_de(GROUPS, "loo")
    all_samples = {s for v in GROUPS.values() for s in v}

    assert len(plans) == len(all_samples)
    removed = set()
    for name, groups in plans.items():
        kept = {s for v in groups.values() for s in v}
        assert len(kept) == len(all_samples) - 1
        (gone,) = all_samples - kept
        assert gone == name
        removed.add(gone)
    assert removed == all_samples


def test_bootstrap_keeps_group_sizes():
    plans = prepare_samples_for_de(GROUPS, "bootstrap", n_resamplings=5, rng=np.random.default_rng(0))

    assert list(plans) == [f"bootstrap.{i}" for i in range(1, 6)]
    for groups in plans.values():
        for k, v in groups.items():
            assert len(v) == len(GROUPS[k])
            assert set(v) <= set(GROUPS[k])


@pytest.mark.parametrize("method", ["fix.cells", "fix.samples"])
def test_fix_methods_reuse_groups(method):
    plans = prepare_samples_for_de(GROUPS, method, n_resamplings=3)
    assert list(plans) == ["fix.1", "fix.2", "fix.3"]
    assert all(g == GROUPS for g in plans.values())


def test_unknown_resampling_method():
    with pytest.raises(ValueError, match="resampling_method"):
        prepare_samples_for_de(GROUPS, "jackknife")


# -------------------------------------------------------------------------
# Aggregator
# -------------------------------------------------------------------------
def _tab(genes, pvalues):
    return pd.DataFrame({"Gene": genes, "pvalue": pvalues, "log2FoldChange": 1.0}, index=genes)


def test_summary_aligns_ranks_by_gene_not_position():
    primary = {"T": DEResult(res=_tab(["a", "b", "c"], [0.01, 0.2, 0.5]))}
    it1 = {"T": _tab(["c", "b", "a"], [0.9, 0.3, 0.001])}
    it2 = {"T": _tab(["b", "a", "c", "d"], [0.05, 0.01, 0.7, 0.0001])}

    out = summarize_de_resampling_results(primary, {"it1": it1, "it2": it2})
    res = out["T"].res

    assert res.loc["a", "stab.mean.rank"] == pytest.approx(1.0)
    assert res.loc["b", "stab.mean.rank"] == pytest.approx(2.0)
    assert res.loc["c", "stab.median.rank"] == pytest.approx(3.0)
    assert res.loc["a", "stab.var.rank"] == pytest.approx(0.0)
    assert set(out["T"].subsamples) == {"it1", "it2"}


def test_summary_ranks_missing_values_last():
    primary = {"T": DEResult(res=_tab(["a", "b"], [0.01, 0.2]))}
    it1 = {"T": _tab(["a", "b"], [np.nan, 0.3])}

    res = summarize_de_resampling_results(primary, {"it1": it1})["T"].res
    assert res.loc["a", "stab.mean.rank"] == pytest.approx(2.0)
    assert res.loc["b", "stab.mean.rank"] == pytest.approx(1.0)


def test_summary_keeps_primary_if_type_never_resampled(caplog):
    prim = DEResult(res=_tab(["a"], [0.1]))
    with caplog.at_level(logging.WARNING):
        out = summarize_de_resampling_results({"T": prim}, {"it1": {}})

    assert out["T"] is prim
    assert "not present in any subsamples" in caplog.text


def test_summary_keeps_primary_apart_from_iteration_names():
    # leave-one-out iterations are named after samples, any name is allowed
    primary = {"T": DEResult(res=_tab(["a", "b"], [0.01, 0.2]))}
    initial = {"T": _tab(["a", "b"], [0.9, 0.001])}

    out = summarize_de_resampling_results(primary, {"initial": initial})
    res = out["T"].res

    assert res["pvalue"].tolist() == [0.01, 0.2]
    assert res.loc["b", "stab.mean.rank"] == pytest.approx(1.0)
    assert list(out["T"].subsamples) == ["initial"]
