from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from .case_control import run_de, run_expression_shifts
from .config import DEConfig, ExpressionShiftConfig
from .de_backends import DE_METHODS
from .gene_selection_utils import DISTANCES, GENE_SELECTIONS
from .logging_utils import init_logging
from .parallel_utils import default_n_jobs
from .resampling_utils import RESAMPLING_METHODS


app = typer.Typer(help="sccontrast CLI: case-control comparison of scRNA-seq conditions per cell type.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*Observation names are not unique.*", category=UserWarning)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _split_csv(values: Optional[List[str]]) -> List[str]:
    """Supports e.g. --covariates A,B --covariates C."""
    if not values:
        return []
    expanded = []
    for v in values:
        expanded.extend([x.strip() for x in v.split(",") if x.strip()])
    return expanded


def _test_completion(ctx: typer.Context, args: List[str], incomplete: str) -> List[str]:
    choices = ["wilcoxon", "wilcoxon.totcount", "wilcoxon.deseq2", "wilcoxon.edger",
               "t-test", "deseq2", "deseq2.wald", "deseq2.lrt", "edger", "limma-voom"]
    prefix = incomplete.lower()
    return [c for c in choices if c.startswith(prefix)]


# ======================================================================
#  de
# ======================================================================
@app.command("de", help="Pseudo-bulk differential expression per cell type between two conditions.")
def de(
    # -----------------------------
    # I/O
    # -----------------------------
    input_path: Path = typer.Option(
        ..., "--input-path", "-i",
        help="[I/O] AnnData (.h5ad) with raw counts of all samples.",
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o",
        help="[I/O] Output directory (default = <input parent>/de).",
    ),

    # -----------------------------
    # obs keys / contrast
    # -----------------------------
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s", help="[Keys] Sample column in .obs."),
    cell_type_key: str = typer.Option("cell_type", "--cell-type-key", "-c", help="[Keys] Cell type column in .obs."),
    condition_key: str = typer.Option("condition", "--condition-key", "-k", help="[Keys] Condition column in .obs."),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer", help="[Keys] Raw counts layer (default: X)."),
    ref_level: str = typer.Option(..., "--ref-level", "-r", help="[Contrast] Reference condition."),
    target_level: Optional[str] = typer.Option(None, "--target-level", "-t", help="[Contrast] Target condition."),
    covariates: Optional[List[str]] = typer.Option(
        None, "--covariates",
        help="[Contrast] Per-sample .obs columns added to the design (comma-separated or repeated).",
    ),

    # -----------------------------
    # Test
    # -----------------------------
    test: str = typer.Option(
        "deseq2.wald", "--test",
        autocompletion=_test_completion,
        help=f"[DE] method[.subtype]; methods: {', '.join(DE_METHODS)}.",
    ),
    min_cell_count: int = typer.Option(10, help="[Pseudo-bulk] Minimum cells per sample and cell type."),
    max_cell_count: Optional[float] = typer.Option(None, help="[Pseudo-bulk] Maximum cells per sample and cell type."),
    common_genes: bool = typer.Option(False, "--common-genes/--gene-union", help="[Pseudo-bulk] Gene intersection instead of union."),
    cooks_cutoff: bool = typer.Option(False, "--cooks-cutoff/--no-cooks-cutoff", help="[DESeq2] Cook's distance outlier filter."),
    independent_filtering: bool = typer.Option(
        True, "--independent-filtering/--no-independent-filtering", help="[DESeq2] Independent filtering of padj.",
    ),

    # -----------------------------
    # Resampling
    # -----------------------------
    resampling_method: Optional[str] = typer.Option(
        None, "--resampling-method",
        help=f"[Resampling] One of {', '.join(RESAMPLING_METHODS)}.",
    ),
    n_resamplings: int = typer.Option(30, help="[Resampling] Iterations for bootstrap/fix.*."),
    fix_n_samples: Optional[int] = typer.Option(None, help="[Resampling] Samples per condition for fix.samples."),
    n_cells_subsample: Optional[int] = typer.Option(None, help="[Resampling] Cells per sample and type for fix.cells."),

    # -----------------------------
    # Compute
    # -----------------------------
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", "-j", help="Parallel workers. Default = CPU cores - 1."),
    seed: int = typer.Option(42, help="Random seed."),
    fail_on_error: bool = typer.Option(False, "--fail-on-error/--skip-failed", help="Abort on the first failing cell type."),
):
    out = output_dir or input_path.parent / "de"
    logfile = out / "de.log"
    init_logging(logfile)

    cfg = DEConfig(
        input_path=input_path,
        output_dir=out,
        sample_key=sample_key,
        cell_type_key=cell_type_key,
        condition_key=condition_key,
        counts_layer=counts_layer,
        ref_level=ref_level,
        target_level=target_level,
        covariates=_split_csv(covariates),
        test=test,
        min_cell_count=min_cell_count,
        max_cell_count=max_cell_count,
        common_genes=common_genes,
        cooks_cutoff=cooks_cutoff,
        independent_filtering=independent_filtering,
        resampling_method=resampling_method,
        n_resamplings=n_resamplings,
        fix_n_samples=fix_n_samples,
        n_cells_subsample=n_cells_subsample,
        n_jobs=default_n_jobs() if n_jobs is None else n_jobs,
        seed=seed,
        fail_on_error=fail_on_error,
        logfile=logfile,
    )

    run_de(cfg)


# ======================================================================
#  expression-shifts
# ======================================================================
@app.command("expression-shifts", help="Expression shift magnitudes per cell type with permutation p-values.")
def expression_shifts(
    # -----------------------------
    # I/O
    # -----------------------------
    input_path: Path = typer.Option(
        ..., "--input-path", "-i",
        help="[I/O] AnnData (.h5ad) with raw counts of all samples.",
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o",
        help="[I/O] Output directory (default = <input parent>/expression_shifts).",
    ),

    # -----------------------------
    # obs keys / contrast
    # -----------------------------
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s", help="[Keys] Sample column in .obs."),
    cell_type_key: str = typer.Option("cell_type", "--cell-type-key", "-c", help="[Keys] Cell type column in .obs."),
    condition_key: str = typer.Option("condition", "--condition-key", "-k", help="[Keys] Condition column in .obs."),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer", help="[Keys] Raw counts layer (default: X)."),
    ref_level: str = typer.Option(..., "--ref-level", "-r", help="[Contrast] Reference condition."),
    target_level: Optional[str] = typer.Option(None, "--target-level", "-t", help="[Contrast] Target condition."),

    # -----------------------------
    # Distances
    # -----------------------------
    dist: Optional[str] = typer.Option(
        None, "--dist",
        help=f"[Distance] One of {', '.join(DISTANCES)} (default depends on dimensionality).",
    ),
    dist_type: str = typer.Option("shift", "--dist-type", help="[Distance] shift, total or var."),
    n_permutations: int = typer.Option(1000, help="[Stats] Label permutations per cell type."),
    p_adjust_method: str = typer.Option("BH", help="[Stats] Multiple-testing correction across cell types."),
    trim: float = typer.Option(0.2, help="[Stats] Trimmed-mean fraction per tail."),
    top_n_genes: Optional[int] = typer.Option(None, help="[Genes] Use only the top N genes per cell type."),
    gene_selection: str = typer.Option(
        "wilcox", help=f"[Genes] One of {', '.join(GENE_SELECTIONS)}.",
    ),
    n_pcs: Optional[int] = typer.Option(None, help="[Genes] Project onto N principal components."),
    exclude_genes: Optional[List[str]] = typer.Option(None, help="[Genes] Genes never selected (comma-separated)."),

    # -----------------------------
    # Input filtering
    # -----------------------------
    min_cells_per_sample: int = typer.Option(10, help="[Filter] Minimum cells per sample and cell type."),
    min_samp_per_type: int = typer.Option(2, help="[Filter] Minimum samples per condition and cell type."),
    min_gene_frac: float = typer.Option(0.01, help="[Filter] Minimum fraction of expressing cells per sample."),

    # -----------------------------
    # Compute
    # -----------------------------
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", "-j", help="Parallel workers. Default = CPU cores - 1."),
    seed: int = typer.Option(42, help="Random seed."),
):
    out = output_dir or input_path.parent / "expression_shifts"
    logfile = out / "expression-shifts.log"
    init_logging(logfile)

    cfg = ExpressionShiftConfig(
        input_path=input_path,
        output_dir=out,
        sample_key=sample_key,
        cell_type_key=cell_type_key,
        condition_key=condition_key,
        counts_layer=counts_layer,
        ref_level=ref_level,
        target_level=target_level,
        dist=dist,
        dist_type=dist_type,
        n_permutations=n_permutations,
        p_adjust_method=p_adjust_method,
        trim=trim,
        top_n_genes=top_n_genes,
        gene_selection=gene_selection,
        n_pcs=n_pcs,
        exclude_genes=_split_csv(exclude_genes),
        min_cells_per_sample=min_cells_per_sample,
        min_samp_per_type=min_samp_per_type,
        min_gene_frac=min_gene_frac,
        n_jobs=default_n_jobs() if n_jobs is None else n_jobs,
        seed=seed,
        logfile=logfile,
    )

    run_expression_shifts(cfg)


if __name__ == "__main__":
    app()
