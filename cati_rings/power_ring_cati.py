"""
Monte Carlo power analysis for a ring-level CATI delay study.

The study question is whether rings that receive the case-area targeted
intervention sooner after the index case is reported go on to have fewer
cases. Power is estimated by repeatedly drawing a pilot-sized sample of rings
from a simulated ring population (see ``ring_simulation.py``), fitting a
count regression of ring case count on intervention delay, and counting the
replicates in which the delay coefficient is significant.

Analysis model
--------------
    case_count ~ intervention_delay + offset(log(population)),
    grouped by surveillance-capacity category.

- gee (default): the negative-binomial dispersion is first estimated by
  maximum likelihood, then a GEE with a NegativeBinomial(alpha) family and an
  exchangeable working correlation within surveillance-capacity groups is
  fitted (the marginal counterpart of a random intercept). Falls back to
  negbin if the GEE fit fails.
- negbin: NB2 maximum likelihood with surveillance-capacity intercepts.

Each fit reports intercept and delay coefficients, two-sided Wald p-values
and confidence bounds, and the Pearson dispersion ratio sum(r^2) / (n - p).

Non-convergence policy
----------------------
A replicate whose fit fails or does not converge is kept in the denominator
and counted as NON-significant (power = hits / sims). The number of such
replicates is reported as n_failed so its influence on the estimate is
visible.

Usage
-----
1) Power at 80 rings (1000 replicates) for a simulated population of 2000 rings:
   python3 -m cati_rings.power_ring_cati --mode power --n-rings 2000 \
     --sample-size 80 --sims 1000 --seed 12345

2) Power across candidate sample sizes with Wilson intervals:
   python3 -m cati_rings.power_ring_cati --mode curve \
     --sample-sizes 50,75,100,125,150 --sims 500 --n-jobs -1

3) Smallest sample size reaching 80% power, with study constants from JSON:
   python3 -m cati_rings.power_ring_cati --mode n-for-power \
     --config study.json --target-power 0.8 --sims 400

Notes
-----
- Replicate i uses the i-th child of SeedSequence(seed), so results do not
  depend on n_jobs or chunk_size.
- Every candidate sample size re-uses the same replicate seeds (common random
  numbers), which keeps a power curve smooth across sizes.
"""

from __future__ import annotations

import argparse
import math
import sys
import warnings
from dataclasses import asdict, dataclass, replace
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

import scipy.stats as sps
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from cati_rings.ring_simulation import (
    ConfigurationError,
    EstimationNonConvergence,
    RingStudyConfig,
    OffspringSpec,
    ImplementationDelay,
    _chunk_indices,
    _effective_chunk_size,
    _map_chunks,
    _resolve_n_jobs,
    _spawn_seeds,
    load_config,
    simulate_rings,
    summarize_rings,
    validate_probability,
)


DEFAULT_CHUNK_SIZE = 32
ANALYSIS_METHODS = ("gee", "negbin")
DELAY_FORMULA = "case_count ~ intervention_delay"
_MIN_ALPHA = 1e-8


# ---------- Pilot study estimator ----------

@dataclass
class PilotFit:
    intercept: float
    delay_coef: float
    intercept_pvalue: float
    delay_pvalue: float
    dispersion_ratio: float
    intercept_ci_low: float
    intercept_ci_high: float
    delay_ci_low: float
    delay_ci_high: float
    converged: bool
    method: str

    @classmethod
    def failed(cls, method: str) -> "PilotFit":
        nan = float("nan")
        return cls(nan, nan, nan, nan, nan, nan, nan, nan, nan, converged=False, method=method)

    def is_significant(self, alpha: float) -> bool:
        return bool(significant_mask([self.converged], [self.delay_pvalue], alpha)[0])


def significant_mask(converged, pvalues, alpha: float) -> np.ndarray:
    """Replicates that count as hits: converged fits with delay p-value below alpha."""
    converged = np.asarray(converged, dtype=bool)
    pvalues = np.asarray(pvalues, dtype=float)
    return converged & ~np.isnan(pvalues) & (pvalues < alpha)


def _fit_quietly(fit):
    """Call fit() and report whether statsmodels flagged non-convergence."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = fit()
    flagged = any(issubclass(w.category, ConvergenceWarning) for w in caught)
    return result, flagged


def _pearson_dispersion(y: np.ndarray, mu: np.ndarray, alpha: float, n_params: int) -> float:
    var = mu + alpha * mu ** 2
    dof = max(1, len(y) - n_params)
    with np.errstate(divide="ignore", invalid="ignore"):
        resid = (y - mu) / np.sqrt(var)
        return float(np.sum(resid ** 2) / dof)


def _check_identifiable(sample: pd.DataFrame) -> None:
    """Reject samples where the delay slope cannot be estimated."""
    if sample["intervention_delay"].nunique() < 2:
        raise EstimationNonConvergence("intervention_delay is constant in the pilot sample")
    if sample["case_count"].nunique() < 2:
        raise EstimationNonConvergence("case_count is constant in the pilot sample")


def _build_fit(params: pd.Series, pvalues: pd.Series, bse: pd.Series, ci: pd.DataFrame, dispersion: float,
               method: str) -> PilotFit:
    terms = ["Intercept", "intervention_delay"]
    se = bse[terms].to_numpy(dtype=float)
    if not (np.all(np.isfinite(se)) and np.all(se > 0)):
        raise EstimationNonConvergence(f"{method} fit produced degenerate standard errors")
    fit = PilotFit(
        intercept=float(params["Intercept"]),
        delay_coef=float(params["intervention_delay"]),
        intercept_pvalue=float(pvalues["Intercept"]),
        delay_pvalue=float(pvalues["intervention_delay"]),
        dispersion_ratio=float(dispersion),
        intercept_ci_low=float(ci.loc["Intercept", 0]),
        intercept_ci_high=float(ci.loc["Intercept", 1]),
        delay_ci_low=float(ci.loc["intervention_delay", 0]),
        delay_ci_high=float(ci.loc["intervention_delay", 1]),
        converged=True,
        method=method,
    )
    values = [
        fit.intercept, fit.delay_coef, fit.intercept_pvalue, fit.delay_pvalue, fit.dispersion_ratio,
        fit.intercept_ci_low, fit.intercept_ci_high, fit.delay_ci_low, fit.delay_ci_high,
    ]
    if not np.all(np.isfinite(values)):
        raise EstimationNonConvergence(f"{method} fit produced non-finite estimates")
    return fit


def _fit_negbin_ml(sample: pd.DataFrame, formula: str):
    offset = sample["log_population"].to_numpy(dtype=float)
    model = smf.negativebinomial(formula, data=sample, offset=offset)
    try:
        result, flagged = _fit_quietly(lambda: model.fit(disp=False, maxiter=200))
    except (ValueError, np.linalg.LinAlgError, FloatingPointError, OverflowError) as e:
        raise EstimationNonConvergence(f"negative binomial fit failed: {e}") from e
    if flagged or not result.mle_retvals.get("converged", True):
        raise EstimationNonConvergence("negative binomial fit did not converge")
    alpha = float(result.params["alpha"])
    if not np.isfinite(alpha):
        raise EstimationNonConvergence("negative binomial dispersion is not finite")
    return result, offset, max(alpha, _MIN_ALPHA)


def _fit_negbin(sample: pd.DataFrame) -> PilotFit:
    formula = DELAY_FORMULA
    if sample["surveillance_capacity"].nunique() > 1:
        formula += " + C(surveillance_capacity)"
    result, offset, alpha = _fit_negbin_ml(sample, formula)
    beta = result.params.drop("alpha").to_numpy()
    mu = np.exp(result.model.exog @ beta + offset)
    dispersion = _pearson_dispersion(sample["case_count"].to_numpy(dtype=float), mu, alpha, len(beta))
    return _build_fit(result.params, result.pvalues, result.bse, result.conf_int(), dispersion, "negbin")


def _fit_gee(sample: pd.DataFrame) -> PilotFit:
    _, offset, alpha = _fit_negbin_ml(sample, DELAY_FORMULA)
    model = smf.gee(
        DELAY_FORMULA,
        groups=sample["surveillance_capacity"].to_numpy(),
        data=sample,
        offset=offset,
        family=sm.families.NegativeBinomial(alpha=alpha),
        cov_struct=sm.cov_struct.Exchangeable(),
    )
    try:
        # Model-based covariance; there are at most three capacity groups
        result, flagged = _fit_quietly(lambda: model.fit(maxiter=100, cov_type="naive"))
    except (ValueError, np.linalg.LinAlgError, FloatingPointError, OverflowError) as e:
        raise EstimationNonConvergence(f"GEE fit failed: {e}") from e
    if flagged:
        raise EstimationNonConvergence("GEE fit did not converge")
    beta = result.params.to_numpy()
    mu = np.exp(model.exog @ beta + offset)
    dispersion = _pearson_dispersion(sample["case_count"].to_numpy(dtype=float), mu, alpha, len(beta))
    return _build_fit(result.params, result.pvalues, result.bse, result.conf_int(), dispersion, "gee")


def fit_delay_model(sample: pd.DataFrame, analysis: str = "gee") -> PilotFit:
    """Fit the delay model to a sample of ring summary rows.

    Raises EstimationNonConvergence when no method yields a usable fit.
    """
    if analysis not in ANALYSIS_METHODS:
        raise ConfigurationError(f"analysis must be one of {ANALYSIS_METHODS}, got {analysis!r}")
    _check_identifiable(sample)
    sample = sample.assign(surveillance_capacity=sample["surveillance_capacity"].astype(str))
    if analysis == "gee":
        try:
            return _fit_gee(sample)
        except EstimationNonConvergence:
            # Fall back to the fixed-intercept NB model; PilotFit.method records it
            pass
    return _fit_negbin(sample)


def draw_pilot_sample(summary: pd.DataFrame, sample_size: int, rng: np.random.Generator) -> pd.DataFrame:
    if sample_size < 2:
        raise ConfigurationError(f"sample_size must be >= 2, got {sample_size}")
    if sample_size > len(summary):
        raise ConfigurationError(
            f"sample_size ({sample_size}) exceeds the number of simulated rings ({len(summary)})"
        )
    idx = rng.choice(len(summary), size=sample_size, replace=False)
    return summary.iloc[idx].reset_index(drop=True)


def run_pilot_study(summary: pd.DataFrame, sample_size: int, rng: np.random.Generator,
                    analysis: str = "gee") -> PilotFit:
    """Sample rings without replacement and fit the delay model."""
    return fit_delay_model(draw_pilot_sample(summary, sample_size, rng), analysis=analysis)


# ---------- Replicates ----------

@dataclass(frozen=True)
class _PilotSpecLite:
    """Lightweight payload of pilot-study parameters for worker processes."""

    sample_size: int
    analysis: str


@dataclass(frozen=True)
class _ReplicateWorkerInput:
    start: int
    seeds: Tuple[np.random.SeedSequence, ...]
    spec: _PilotSpecLite
    summary: pd.DataFrame


@dataclass
class _ReplicateWorkerResult:
    start: int
    rows: List[dict]


def _run_replicate_chunk(payload: _ReplicateWorkerInput) -> _ReplicateWorkerResult:
    spec = payload.spec
    rows = []
    for offset, seed in enumerate(payload.seeds):
        rng = np.random.default_rng(seed)
        try:
            fit = run_pilot_study(payload.summary, spec.sample_size, rng, analysis=spec.analysis)
        except EstimationNonConvergence:
            fit = PilotFit.failed(spec.analysis)
        row = {"sample_size": spec.sample_size, "replicate": payload.start + offset}
        row.update(asdict(fit))
        rows.append(row)
    return _ReplicateWorkerResult(start=payload.start, rows=rows)


def run_replicates(
    summary: pd.DataFrame,
    sample_size: int,
    sims: int = 1000,
    *,
    analysis: str = "gee",
    seed: Optional[int] = 12345,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> pd.DataFrame:
    """Run independent pilot-study replicates; one row per replicate."""
    if sims <= 0:
        raise ValueError("sims must be a positive integer")
    if analysis not in ANALYSIS_METHODS:
        raise ConfigurationError(f"analysis must be one of {ANALYSIS_METHODS}, got {analysis!r}")
    if sample_size > len(summary):
        raise ConfigurationError(
            f"sample_size ({sample_size}) exceeds the number of simulated rings ({len(summary)})"
        )

    seeds = _spawn_seeds(seed, sims)
    spec = _PilotSpecLite(sample_size=int(sample_size), analysis=analysis)
    chunks = _chunk_indices(sims, _effective_chunk_size(sims, chunk_size, DEFAULT_CHUNK_SIZE))
    payloads = [
        _ReplicateWorkerInput(start=start, seeds=tuple(seeds[start:start + count]), spec=spec, summary=summary)
        for start, count in chunks
    ]
    results = _map_chunks(_run_replicate_chunk, payloads, _resolve_n_jobs(n_jobs))
    rows = [row for result in sorted(results, key=lambda r: r.start) for row in result.rows]
    return pd.DataFrame(rows)


# ---------- Power estimation ----------

def _z_two_sided(alpha: float) -> float:
    """Two-sided normal z for given alpha (SciPy)."""
    return float(sps.norm.ppf(1.0 - alpha / 2.0))


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for binomial proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z = _z_two_sided(alpha)
    phat = k / n
    denom = 1.0 + (z * z) / n
    center = (phat + (z * z) / (2.0 * n)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n + (z * z) / (4.0 * n * n)))
    return max(0.0, center - half), min(1.0, center + half)


@dataclass
class PowerEstimate:
    sample_size: int
    power: float
    ci_low: float
    ci_high: float
    hits: int
    sims: int
    n_failed: int
    avg_delay_coef: float

    def as_row(self) -> dict:
        return asdict(self)


def summarize_replicates(replicates: pd.DataFrame, alpha: float = 0.05, alpha_ci: float = 0.05) -> PowerEstimate:
    """Aggregate replicate rows into a power estimate.

    Failed fits stay in the denominator and count as non-significant.
    """
    validate_probability(alpha, "alpha", allow_zero=False, allow_one=False)
    sims = len(replicates)
    if sims == 0:
        raise ValueError("no replicates to summarize")
    converged = replicates["converged"].to_numpy(dtype=bool)
    pvals = replicates["delay_pvalue"].to_numpy(dtype=float)
    hits = int(significant_mask(converged, pvals, alpha).sum())
    low, high = binomial_wilson_ci(hits, sims, alpha=alpha_ci)
    coefs = replicates.loc[converged, "delay_coef"]
    return PowerEstimate(
        sample_size=int(replicates["sample_size"].iloc[0]),
        power=hits / sims,
        ci_low=low,
        ci_high=high,
        hits=hits,
        sims=sims,
        n_failed=int((~converged).sum()),
        avg_delay_coef=float(coefs.mean()) if len(coefs) else float("nan"),
    )


def _warn_failed(estimate: PowerEstimate) -> None:
    if estimate.n_failed:
        warnings.warn(
            f"{estimate.n_failed} of {estimate.sims} replicates at sample size {estimate.sample_size} "
            "failed to fit and were counted as non-significant",
            RuntimeWarning,
            stacklevel=3,
        )


def simulate_distribution(
    summary: pd.DataFrame,
    sample_size: int,
    sims: int = 1000,
    *,
    alpha: float = 0.05,
    alpha_ci: float = 0.05,
    analysis: str = "gee",
    seed: Optional[int] = 12345,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Tuple[PowerEstimate, pd.DataFrame]:
    """Run replicates and return (estimate, per-replicate Power Estimate rows)."""
    replicates = run_replicates(
        summary, sample_size, sims, analysis=analysis, seed=seed, n_jobs=n_jobs, chunk_size=chunk_size
    )
    estimate = summarize_replicates(replicates, alpha=alpha, alpha_ci=alpha_ci)
    _warn_failed(estimate)
    return estimate, replicates


def simulate_power(
    summary: pd.DataFrame,
    sample_size: int,
    sims: int = 1000,
    *,
    alpha: float = 0.05,
    alpha_ci: float = 0.05,
    analysis: str = "gee",
    seed: Optional[int] = 12345,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> PowerEstimate:
    """Monte Carlo power for one pilot sample size."""
    estimate, _ = simulate_distribution(
        summary,
        sample_size,
        sims,
        alpha=alpha,
        alpha_ci=alpha_ci,
        analysis=analysis,
        seed=seed,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    )
    return estimate


def power_curve(
    summary: pd.DataFrame,
    sample_sizes: Sequence[int],
    sims: int = 1000,
    *,
    alpha: float = 0.05,
    alpha_ci: float = 0.05,
    analysis: str = "gee",
    seed: Optional[int] = 12345,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> pd.DataFrame:
    """Compute power across candidate sample sizes with Wilson intervals.

    Returns a DataFrame with one row per sample size: sample_size, power,
    ci_low, ci_high, hits, sims, n_failed, avg_delay_coef.
    """
    rows = []
    for n in sample_sizes:
        est = simulate_power(
            summary,
            int(n),
            sims,
            alpha=alpha,
            alpha_ci=alpha_ci,
            analysis=analysis,
            seed=seed,
            n_jobs=n_jobs,
            chunk_size=chunk_size,
        )
        rows.append(est.as_row())
    return pd.DataFrame(rows, columns=list(PowerEstimate.__dataclass_fields__))


def find_n_for_power(
    target_power: float,
    summary: pd.DataFrame,
    sims: int = 400,
    n_min: int = 20,
    n_max: Optional[int] = None,
    tol: float = 0.01,
    *,
    alpha: float = 0.05,
    analysis: str = "gee",
    seed: Optional[int] = 12345,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    max_iter: int = 32,
) -> Tuple[int, float]:
    """Binary search for the smallest pilot sample size achieving target power.

    The upper bound is the number of simulated rings. Returns
    (n_required, achieved_power_at_n).
    """
    validate_probability(target_power, "target_power", allow_zero=False, allow_one=False)
    n_rings = len(summary)
    high = n_rings if n_max is None else min(int(n_max), n_rings)
    low = max(2, int(n_min))
    if low > high:
        raise ConfigurationError(f"n_min ({low}) exceeds the usable maximum sample size ({high})")

    power_cache: dict[int, float] = {}

    def evaluate(n: int) -> float:
        if n not in power_cache:
            est = simulate_power(
                summary,
                n,
                sims,
                alpha=alpha,
                analysis=analysis,
                seed=seed,
                n_jobs=n_jobs,
                chunk_size=chunk_size,
            )
            power_cache[n] = est.power
        return power_cache[n]

    pw_high = evaluate(high)
    if pw_high < target_power - tol:
        raise RuntimeError(
            f"Unable to achieve target power {target_power:.3f} with at most {high} rings "
            f"(power {pw_high:.3f}); simulate more rings or relax the target"
        )

    best_n, best_pw = high, pw_high
    iterations = 0
    while low <= high and iterations < max_iter:
        mid = (low + high) // 2
        pw = evaluate(mid)
        if pw >= target_power - tol:
            best_n, best_pw = mid, pw
            high = mid - 1
        else:
            low = mid + 1
        iterations += 1

    if iterations >= max_iter and low <= high:
        raise RuntimeError("Binary search did not converge within max_iter")

    return best_n, best_pw


# ---------- CLI ----------

def _parse_csv_numbers(s: Optional[str], cast=float) -> Optional[list]:
    """Parse a comma-separated list of numbers into a list with the given cast.

    Returns None if s is None. Strips whitespace and ignores empty items.
    """
    if s is None:
        return None
    items = []
    for part in str(s).split(','):
        part = part.strip()
        if not part:
            continue
        items.append(cast(part))
    return items


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Power analysis for a ring-level CATI intervention-delay study",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--mode", choices=["rings", "power", "curve", "n-for-power"], default="power",
                   help="Analysis mode")
    p.add_argument("--config", default=None,
                   help="JSON file with study constants (nested keys mirror RingStudyConfig)")

    # Ring simulation overrides
    p.add_argument("--n-rings", type=int, default=None, help="Number of rings to simulate")
    p.add_argument("--mean-offspring", type=float, default=None, help="Mean offspring count R")
    p.add_argument("--dispersion", type=float, default=None,
                   help="Offspring dispersion k (use 'inf' for Poisson)")
    p.add_argument("--population-mean", type=float, default=None, help="Mean ring population")
    p.add_argument("--population-sd", type=float, default=None, help="SD of ring population")
    p.add_argument("--max-implementation-delay", type=int, default=None,
                   help="Largest delay (days) from index report to intervention start")
    p.add_argument("--follow-up", type=float, default=None, help="Follow-up window after index report (days)")

    # Power settings
    p.add_argument("--sample-size", type=int, default=80, help="Rings per pilot study (mode=power)")
    p.add_argument("--sample-sizes", type=str, default="50,75,100,125,150",
                   help="Comma-separated candidate sample sizes (mode=curve)")
    p.add_argument("--target-power", type=float, default=0.80, help="Target power (mode=n-for-power)")
    p.add_argument("--alpha", type=float, default=0.05, help="Significance level (two-sided)")
    p.add_argument("--sims", type=int, default=1000, help="Monte Carlo replicates per sample size")
    p.add_argument("--analysis", choices=list(ANALYSIS_METHODS), default="gee", help="Analysis method")
    p.add_argument("--seed", type=int, default=None, help="Random seed (rings and replicates)")
    p.add_argument("--n-jobs", type=int, default=1, help="Worker processes (-1 uses all cores)")
    p.add_argument("--chunk-size", type=int, default=None, help="Tasks per worker chunk when parallelized")
    return p


def _resolve_config(args: argparse.Namespace) -> RingStudyConfig:
    config = load_config(args.config) if args.config else RingStudyConfig()
    overrides = {}
    if args.n_rings is not None:
        overrides["n_rings"] = args.n_rings
    if args.seed is not None:
        overrides["seed"] = args.seed
    if args.follow_up is not None:
        overrides["follow_up_duration"] = args.follow_up
    if args.mean_offspring is not None or args.dispersion is not None:
        overrides["offspring"] = OffspringSpec(
            mean=config.offspring.mean if args.mean_offspring is None else args.mean_offspring,
            dispersion=config.offspring.dispersion if args.dispersion is None else args.dispersion,
        )
    if args.population_mean is not None or args.population_sd is not None:
        overrides["population"] = replace(
            config.population,
            mean=config.population.mean if args.population_mean is None else args.population_mean,
            sd=config.population.sd if args.population_sd is None else args.population_sd,
        )
    if args.max_implementation_delay is not None:
        overrides["implementation_delay"] = ImplementationDelay(
            low=min(config.implementation_delay.low, args.max_implementation_delay),
            high=args.max_implementation_delay,
        )
    return replace(config, **overrides) if overrides else config


def _print_estimate(est: PowerEstimate, alpha: float) -> None:
    print(f"  Sample size (rings): {est.sample_size}")
    print(f"  Estimated power: {est.power:.3f}  ({est.hits}/{est.sims} replicates with p < {alpha})")
    print(f"  95% CI (Wilson): [{est.ci_low:.3f}, {est.ci_high:.3f}]")
    print(f"  Failed fits (counted non-significant): {est.n_failed}")
    print(f"  Avg delay coefficient (log rate ratio per day): {est.avg_delay_coef:.4f}")


def main(argv: Optional[Sequence[str]] = None):
    args = _build_parser().parse_args(argv)
    try:
        config = _resolve_config(args)
        sample_sizes = _parse_csv_numbers(args.sample_sizes, cast=int)
        validate_probability(args.alpha, "alpha", allow_zero=False, allow_one=False)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    seed = config.seed
    print(f"[info] Simulating {config.n_rings} rings (seed={seed}, n_jobs={args.n_jobs})", file=sys.stderr)
    batch = simulate_rings(config, n_jobs=args.n_jobs, chunk_size=args.chunk_size)
    summary = summarize_rings(batch)

    print("=" * 70)
    print("RING SIMULATION")
    print("=" * 70)
    print(f"  Rings simulated: {config.n_rings} (aborted at safety cap: {len(batch.aborted)})")
    print(f"  Retained cases: {len(batch.cases)}")
    print(f"  Offspring: {config.offspring.kind.value}, R={config.offspring.mean}, k={config.offspring.dispersion}")
    print(f"  Serial interval: mean={config.serial_interval.mean}, sd={config.serial_interval.sd}")
    print(f"  Population: mean={config.population.mean}, sd={config.population.sd}")
    print(f"  Implementation delay: {config.implementation_delay.low}-{config.implementation_delay.high} days")
    print(f"  Follow-up window: {config.follow_up_duration} days after index report")
    if args.mode == "rings":
        return

    try:
        print("\nPOWER ANALYSIS")
        print(f"  alpha={args.alpha}, sims={args.sims}, analysis={args.analysis}")
        if args.mode == "power":
            est = simulate_power(
                summary, args.sample_size, args.sims, alpha=args.alpha, analysis=args.analysis,
                seed=seed, n_jobs=args.n_jobs, chunk_size=args.chunk_size,
            )
            _print_estimate(est, args.alpha)
        elif args.mode == "curve":
            df = power_curve(
                summary, sample_sizes, args.sims, alpha=args.alpha, analysis=args.analysis,
                seed=seed, n_jobs=args.n_jobs, chunk_size=args.chunk_size,
            )
            print(df.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
        else:
            n_req, pw = find_n_for_power(
                args.target_power, summary, args.sims, alpha=args.alpha, analysis=args.analysis,
                seed=seed, n_jobs=args.n_jobs, chunk_size=args.chunk_size,
            )
            print(f"  Target power: {args.target_power}")
            print(f"  Required sample size (rings): {n_req}")
            print(f"  Achieved power at n: {pw:.3f}")
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
