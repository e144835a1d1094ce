# src/sccontrast/parallel_utils.py
from __future__ import annotations

import logging
import multiprocessing as mp
import os
import time
from concurrent.futures import ProcessPoolExecutor, TimeoutError, as_completed
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

import numpy as np

LOGGER = logging.getLogger(__name__)

# Worker contract: payload -> (key, value, meta)
WorkerFn = Callable[[dict], Tuple[Hashable, Any, dict]]


@dataclass(frozen=True)
class ExecutionContext:
    """Explicit parallel execution settings handed to every parallel stage."""
    n_jobs: int = 1
    progress: bool = True
    heartbeat_s: float = 60.0

    def with_jobs(self, n_jobs: int) -> "ExecutionContext":
        return replace(self, n_jobs=int(max(1, n_jobs)))


def default_n_jobs() -> int:
    return max(1, (os.cpu_count() or 2) - 1)


def compute_parallelism(
    *,
    n_units: int,
    total_cpus: int,
) -> tuple[int, int]:
    """
    Decide (n_jobs, n_cpus_per_job) for a batch of independent units.

    Rules:
      - If total_cpus <= n_units:
          n_jobs = total_cpus
          n_cpus = 1
      - Else:
          n_jobs = n_units
          n_cpus = 1 + floor((total_cpus - n_units) / n_units)
    """
    total_cpus = int(max(1, total_cpus))
    n_units = int(max(1, n_units))

    if total_cpus <= n_units:
        return total_cpus, 1

    extra = total_cpus - n_units
    n_cpus = 1 + (extra // n_units)
    return n_units, n_cpus


def spawn_seeds(seed: Optional[int], n: int) -> List[int]:
    """Independent integer seeds for n parallel units, reproducible for a fixed seed."""
    ss = np.random.SeedSequence(seed)
    return [int(child.generate_state(1)[0]) for child in ss.spawn(int(n))]


def _failed(key: Hashable, exc: BaseException, *, stage: str, fail_on_error: bool) -> tuple[Hashable, Any, dict]:
    if fail_on_error:
        raise RuntimeError(f"{stage}: unit {key!r} failed: {exc}") from exc
    LOGGER.warning("%s: unit %r failed and is skipped: %s", stage, key, exc)
    return key, None, {"status": "failed", "reason": str(exc)}


def run_parallel(
    worker: WorkerFn,
    payloads: Sequence[dict],
    *,
    ctx: ExecutionContext,
    stage: str,
    key_field: str = "key",
    fail_on_error: bool = False,
) -> Tuple[Dict[Hashable, Any], Dict[Hashable, dict]]:
    """
    Run ``worker`` over ``payloads`` (serially or in a spawn-based process pool).

    Results are keyed by ``payload[key_field]``; completion order is irrelevant.
    A failing unit is converted into a ``None`` value plus a warning, unless
    ``fail_on_error`` is set, in which case the whole batch aborts.

    Returns (values_by_key, meta_by_key).
    """
    values: Dict[Hashable, Any] = {}
    metas: Dict[Hashable, dict] = {}

    total = int(len(payloads))
    if total == 0:
        LOGGER.info("%s: nothing to run.", stage)
        return values, metas

    t0 = time.perf_counter()

    def _record(done: int, key: Hashable, value: Any, meta: dict, dt: float) -> None:
        values[key] = value
        metas[key] = dict(meta or {})
        metas[key]["runtime_s"] = float(dt)
        if ctx.progress:
            elapsed = time.perf_counter() - t0
            eta_s = (elapsed / max(1, done)) * (total - done)
            LOGGER.info(
                "%s [%d/%d] done  unit=%s status=%s time=%.1fs elapsed=%.1fs eta=%.1fs",
                stage, done, total, key, metas[key].get("status", "ok"), dt, elapsed, eta_s,
            )

    if int(ctx.n_jobs) <= 1 or total <= 1:
        for i, p in enumerate(payloads, start=1):
            key = p[key_field]
            t_u0 = time.perf_counter()
            try:
                key, value, meta = worker(p)
            except Exception as e:
                key, value, meta = _failed(key, e, stage=stage, fail_on_error=fail_on_error)
            _record(i, key, value, meta, time.perf_counter() - t_u0)
        return values, metas

    max_workers = int(min(ctx.n_jobs, total))
    if ctx.progress:
        LOGGER.info("%s: running in parallel (units=%d, max_workers=%d).", stage, total, max_workers)

    submit_ts: dict[Hashable, float] = {}
    with ProcessPoolExecutor(max_workers=max_workers, mp_context=mp.get_context("spawn")) as ex:
        futs = {}
        for p in payloads:
            key = p[key_field]
            submit_ts[key] = time.perf_counter()
            futs[ex.submit(worker, p)] = key

        done = 0
        pending = set(futs.keys())
        while pending:
            try:
                for fut in as_completed(pending, timeout=float(ctx.heartbeat_s)):
                    pending.remove(fut)
                    key = futs[fut]
                    dt = time.perf_counter() - float(submit_ts.get(key, t0))
                    try:
                        key, value, meta = fut.result()
                    except Exception as e:
                        if fail_on_error:
                            for f in pending:
                                f.cancel()
                        key, value, meta = _failed(key, e, stage=stage, fail_on_error=fail_on_error)
                    done += 1
                    _record(done, key, value, meta, dt)
            except TimeoutError:
                now = time.perf_counter()
                pending_keys = sorted((futs[f] for f in pending), key=lambda k: submit_ts.get(k, now))
                longest = [f"{k}:{now - float(submit_ts.get(k, now)):.0f}s" for k in pending_keys[:3]]
                LOGGER.info(
                    "%s heartbeat: done=%d/%d pending=%d elapsed=%.1fs longest=%s",
                    stage, done, total, len(pending), now - t0, ", ".join(longest) if longest else "NA",
                )

    return values, metas
