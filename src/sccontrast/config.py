from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .de_backends import parse_de_test
from .parallel_utils import ExecutionContext, default_n_jobs
from .resampling_utils import RESAMPLING_METHODS
from .stats_utils import P_ADJUST_METHODS


class _CommonConfig(BaseModel):

    # ---- I/O ----
    input_path: Path = Field(..., description="AnnData (.h5ad) with raw counts of all samples")
    output_dir: Path

    # ---- obs keys ----
    sample_key: str = "sample_id"
    cell_type_key: str = "cell_type"
    condition_key: str = "condition"
    counts_layer: Optional[str] = Field(
        None,
        description="Layer with raw counts; adata.X is used when unset.",
    )

    # ---- Contrast ----
    ref_level: str
    target_level: Optional[str] = None

    # ---- Compute ----
    n_jobs: int = Field(default_factory=default_n_jobs, ge=1)
    seed: int = 42
    fail_on_error: bool = False
    progress: bool = True

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def execution(self) -> ExecutionContext:
        return ExecutionContext(n_jobs=int(self.n_jobs), progress=bool(self.progress))

    @model_validator(mode="after")
    def check_levels(self):
        if self.target_level is not None and self.target_level == self.ref_level:
            raise ValueError("target_level must differ from ref_level")
        return self


# ---------------------------------------------------------------------
# DE CONFIG
# ---------------------------------------------------------------------
class DEConfig(_CommonConfig):

    test: str = "deseq2.wald"
    covariates: List[str] = Field(
        default_factory=list,
        description="Per-sample obs columns added to the design before the group term.",
    )

    # ---- Pseudo-bulk ----
    common_genes: bool = False
    min_cell_count: int = Field(10, ge=1)
    max_cell_count: Optional[float] = None

    # ---- DESeq2 ----
    cooks_cutoff: bool = False
    independent_filtering: bool = True

    # ---- Resampling ----
    resampling_method: Optional[str] = None
    n_resamplings: int = Field(30, ge=1)
    fix_n_samples: Optional[int] = Field(None, ge=2)
    n_cells_subsample: Optional[int] = Field(None, ge=1)
    var_to_sort: str = "pvalue"

    # ---- Extras ----
    append_statistics: bool = True

    @field_validator("test")
    def check_test(cls, v: str) -> str:
        parse_de_test(v)
        return v.lower()

    @field_validator("resampling_method")
    def check_resampling(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.lower()
        if v not in RESAMPLING_METHODS:
            raise ValueError(f"resampling_method must be one of {', '.join(RESAMPLING_METHODS)}")
        return v

    @field_validator("covariates")
    def normalize_covariates(cls, v: List[str]) -> List[str]:
        expanded = []
        for c in v:
            expanded.extend([x.strip() for x in c.split(",") if x.strip()])
        return expanded


# ---------------------------------------------------------------------
# EXPRESSION SHIFT CONFIG
# ---------------------------------------------------------------------
class ExpressionShiftConfig(_CommonConfig):

    dist: Optional[Literal["l1", "l2", "cor"]] = None
    dist_type: Literal["shift", "total", "var"] = "shift"
    n_permutations: int = Field(1000, ge=0)
    p_adjust_method: str = "BH"
    trim: float = Field(0.2, ge=0.0, lt=0.5)

    # ---- Gene selection / PCA ----
    top_n_genes: Optional[int] = Field(None, ge=1)
    gene_selection: Literal["wilcox", "var", "od"] = "wilcox"
    n_pcs: Optional[int] = Field(None, ge=1)
    exclude_genes: List[str] = Field(default_factory=list)

    # ---- Input filtering ----
    min_cells_per_sample: int = Field(10, ge=1)
    min_samp_per_type: int = Field(2, ge=1)
    min_gene_frac: float = Field(0.01, ge=0.0, le=1.0)

    fail_on_error: bool = True

    @field_validator("dist", mode="before")
    def lower_dist(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("p_adjust_method")
    def check_p_adjust(cls, v: str) -> str:
        if v.lower() != "none" and v.lower() not in P_ADJUST_METHODS:
            raise ValueError(f"Unknown p_adjust_method={v!r}")
        return v
