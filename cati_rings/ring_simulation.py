"""
Ring-level outbreak simulation for a case-area targeted intervention (CATI).

This module generates the simulated transmission clusters ("rings") that the
power analysis in ``power_ring_cati.py`` re-samples. Each ring grows from one
index case through a branching process whose susceptible pool is depleted by
infection and cut back by a phased intervention-effect schedule once the ring
response has been delivered.

Approach
--------
- Offspring model: each case draws a number of secondary cases from a
  negative binomial (mean R, dispersion k) or, when k is unset/infinite, its
  Poisson limit. The mean is scaled by the remaining susceptible fraction
  S / N and the running total is capped at S, so a ring can never infect more
  people than it has susceptibles.
- Serial interval: gamma-distributed, parameterized by mean and SD (days).
- Intervention effect: before each generation step the schedule maps the
  elapsed time since index onset to a susceptible multiplier:
    t <= end                   -> 1 (not yet active)
    t <= end + wash_only_delay -> WASH + antibiotic prophylaxis
    t <= end + vaccine_delay   -> WASH only (antibiotic cover has lapsed)
    otherwise                  -> WASH + vaccine
  and the remaining susceptible count becomes round(S * multiplier).
- Reporting: onset-to-report delays are integer days, drawn from a slower
  distribution before the intervention is active and a faster one after it.
  The index case reports after the ring-level delay sampled up front.
- Windowing: only cases reported within [0, follow_up_duration] days of the
  index report are kept.

Ring summary
------------
One row per ring with the retained case count, last report time relative to
the index report, population, delay from index report to intervention start,
a delay bucket, the coverage constant, a surveillance-capacity category
derived from the index reporting delay, and a heterogeneity draw.

Notes
-----
- Every ring consumes randomness from its own child of a numpy SeedSequence,
  so a batch is identical for any n_jobs / chunk_size under a fixed seed.
- Rings that hit the generation or case safety cap are aborted, reported via
  a RuntimeWarning and excluded from the summary.
- Default constants are illustrative placeholders; supply study values via
  RingStudyConfig or a JSON config file.
"""

from __future__ import annotations

import json
import math
import os
import warnings
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


DEFAULT_CHUNK_SIZE = 256
DEFAULT_MAX_GENERATIONS = 200
DEFAULT_MAX_CASES = 50_000
CAPACITY_DTYPE = pd.CategoricalDtype(categories=["1", "2", "3"], ordered=False)

CASE_COLUMNS = [
    "ring_id",
    "case_id",
    "parent_id",
    "generation",
    "onset_time",
    "report_time",
    "time_since_index_report",
]
RING_COLUMNS = [
    "ring_id",
    "population",
    "initial_immune",
    "index_report_delay",
    "index_report_time",
    "intervention_start",
    "intervention_end",
    "heterogeneity",
]


# ---------- Errors ----------

class ConfigurationError(ValueError):
    """Invalid simulation or study configuration; fatal, never retried."""


class StochasticDegeneracy(RuntimeError):
    """A simulated chain exceeded its generation or case safety cap."""


class EstimationNonConvergence(RuntimeError):
    """A pilot-study regression failed to converge or gave degenerate output."""


# ---------- Validation helpers ----------

def validate_probability(value: float, name: str, allow_zero: bool = True, allow_one: bool = True) -> None:
    """Validate a probability-like value in [0,1] with optional strictness."""
    if value is None or not (value == value):  # NaN check
        raise ConfigurationError(f"{name} must be a real number in [0,1]")
    if (not allow_zero and value <= 0.0) or (allow_zero and value < 0.0):
        raise ConfigurationError(f"{name} must be >= 0{'' if allow_zero else ' (strict)'}, got {value}")
    if (not allow_one and value >= 1.0) or (allow_one and value > 1.0):
        raise ConfigurationError(f"{name} must be <= 1{'' if allow_one else ' (strict)'}, got {value}")


def validate_positive(value: float, name: str, allow_zero: bool = False) -> None:
    """Validate that value is positive (or non-negative if allow_zero)."""
    if value is None or not (value == value):
        raise ConfigurationError(f"{name} must be a real number, got {value}")
    if value < 0.0 or (not allow_zero and value == 0.0):
        raise ConfigurationError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {value}")


def _validate_dispersion(dispersion: Optional[float], name: str) -> None:
    if dispersion is None or math.isinf(dispersion):
        return
    if not (dispersion > 0.0):
        raise ConfigurationError(f"{name} must be > 0 (or None/inf for Poisson), got {dispersion}")


# ---------- Distributions ----------

class OffspringKind(Enum):
    NEGATIVE_BINOMIAL = "nbinom"
    POISSON = "pois"


def _resolve_kind(dispersion: Optional[float]) -> OffspringKind:
    if dispersion is None or math.isinf(dispersion):
        return OffspringKind.POISSON
    return OffspringKind.NEGATIVE_BINOMIAL


def _draw_counts(kind: OffspringKind, mean: float, dispersion: Optional[float], size: int,
                 rng: np.random.Generator) -> np.ndarray:
    """Draw non-negative counts with the given mean.

    Negative binomial uses numpy's (n, p) form with n = k and p = k / (k + mean),
    so Var = mean + mean^2 / k.
    """
    if kind is OffspringKind.POISSON:
        return rng.poisson(max(0.0, mean), size=size)
    p = dispersion / (dispersion + max(0.0, mean))
    return rng.negative_binomial(dispersion, p, size=size)


@dataclass(frozen=True)
class OffspringSpec:
    """Offspring distribution: mean R and dispersion k (None/inf -> Poisson)."""

    mean: float = 2.0
    dispersion: Optional[float] = 1.5
    kind: OffspringKind = field(init=False)

    def __post_init__(self):
        validate_positive(self.mean, "offspring mean", allow_zero=True)
        _validate_dispersion(self.dispersion, "offspring dispersion")
        object.__setattr__(self, "kind", _resolve_kind(self.dispersion))

    def draw(self, mean: float, size: int, rng: np.random.Generator) -> np.ndarray:
        return _draw_counts(self.kind, mean, self.dispersion, size, rng)


@dataclass(frozen=True)
class DiscreteDelay:
    """Integer-day delay with a given mean (negative binomial, or Poisson if dispersion unset)."""

    mean: float
    dispersion: Optional[float] = None
    kind: OffspringKind = field(init=False)

    def __post_init__(self):
        validate_positive(self.mean, "delay mean", allow_zero=True)
        _validate_dispersion(self.dispersion, "delay dispersion")
        object.__setattr__(self, "kind", _resolve_kind(self.dispersion))

    def sample(self, rng: np.random.Generator, size: Optional[int] = None):
        if size is None:
            return int(_draw_counts(self.kind, self.mean, self.dispersion, 1, rng)[0])
        return _draw_counts(self.kind, self.mean, self.dispersion, size, rng)


@dataclass(frozen=True)
class SerialInterval:
    """Gamma serial interval parameterized by mean and SD (days)."""

    mean: float = 5.0
    sd: float = 2.0

    def __post_init__(self):
        validate_positive(self.mean, "serial interval mean")
        validate_positive(self.sd, "serial interval sd")

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        shape = (self.mean / self.sd) ** 2
        scale = self.sd ** 2 / self.mean
        return rng.gamma(shape, scale, size=size)


@dataclass(frozen=True)
class PopulationSpec:
    """Ring population size: gamma with mean/SD, floored at min_population."""

    mean: float = 500.0
    sd: float = 150.0
    min_population: float = 20.0

    def __post_init__(self):
        validate_positive(self.mean, "population mean")
        validate_positive(self.sd, "population sd")
        validate_positive(self.min_population, "min_population")

    def sample(self, rng: np.random.Generator) -> float:
        shape = (self.mean / self.sd) ** 2
        scale = self.sd ** 2 / self.mean
        return float(max(self.min_population, rng.gamma(shape, scale)))


@dataclass(frozen=True)
class ImplementationDelay:
    """Whole days from index report to intervention start, uniform on [low, high]."""

    low: int = 0
    high: int = 10

    def __post_init__(self):
        if self.low < 0 or self.high < self.low:
            raise ConfigurationError(
                f"implementation delay range must satisfy 0 <= low <= high, got [{self.low}, {self.high}]"
            )

    def sample(self, rng: np.random.Generator) -> int:
        return int(rng.integers(self.low, self.high + 1))


# ---------- Effect schedule ----------

@dataclass(frozen=True)
class OffspringParams:
    """Offspring parameters threaded through a chain's generation loop."""

    mean: float
    dispersion: Optional[float]
    susceptible: int


def phase_multiplier(efficacies: Iterable[float], coverage: float) -> float:
    """Fraction of susceptibles left after a bundle of components at a given coverage.

    Combined efficacy is 1 - prod(1 - e_i); only the covered share of the ring
    is protected, so the multiplier is 1 - coverage * combined.
    """
    validate_probability(coverage, "coverage")
    remaining = 1.0
    for e in efficacies:
        validate_probability(e, "component efficacy")
        remaining *= 1.0 - e
    return float(1.0 - coverage * (1.0 - remaining))


@dataclass(frozen=True)
class EffectSchedule:
    """Phase boundaries (days after intervention end) and per-phase susceptible multipliers."""

    wash_and_antibiotic_effect: float
    wash_only_effect: float
    wash_plus_vaccine_effect: float
    wash_only_delay: float = 3.0
    vaccine_delay: float = 10.0

    def __post_init__(self):
        validate_positive(self.wash_only_delay, "wash_only_delay", allow_zero=True)
        validate_positive(self.vaccine_delay, "vaccine_delay", allow_zero=True)
        if self.vaccine_delay < self.wash_only_delay:
            raise ConfigurationError(
                f"phase boundaries must be non-decreasing: vaccine_delay ({self.vaccine_delay}) "
                f"< wash_only_delay ({self.wash_only_delay})"
            )
        # Multipliers above 1 would grow the susceptible pool past the population.
        validate_probability(self.wash_and_antibiotic_effect, "wash_and_antibiotic_effect")
        validate_probability(self.wash_only_effect, "wash_only_effect")
        validate_probability(self.wash_plus_vaccine_effect, "wash_plus_vaccine_effect")

    @classmethod
    def from_efficacies(
        cls,
        antibiotic_efficacy: float = 0.66,
        wash_efficacy: float = 0.47,
        vaccine_efficacy: float = 0.58,
        coverage: float = 0.8,
        wash_only_delay: float = 3.0,
        vaccine_delay: float = 10.0,
    ) -> "EffectSchedule":
        return cls(
            wash_and_antibiotic_effect=phase_multiplier([wash_efficacy, antibiotic_efficacy], coverage),
            wash_only_effect=phase_multiplier([wash_efficacy], coverage),
            wash_plus_vaccine_effect=phase_multiplier([wash_efficacy, vaccine_efficacy], coverage),
            wash_only_delay=wash_only_delay,
            vaccine_delay=vaccine_delay,
        )

    @property
    def multipliers(self) -> Tuple[float, float, float, float]:
        return (1.0, self.wash_and_antibiotic_effect, self.wash_only_effect, self.wash_plus_vaccine_effect)

    def multiplier(self, t: float, intervention_end: float) -> float:
        """Susceptible multiplier at elapsed time t since index onset (first match wins)."""
        if t <= intervention_end:
            return 1.0
        if t <= intervention_end + self.wash_only_delay:
            return self.wash_and_antibiotic_effect
        if t <= intervention_end + self.vaccine_delay:
            return self.wash_only_effect
        return self.wash_plus_vaccine_effect

    def apply(self, params: OffspringParams, t: float, intervention_end: float) -> OffspringParams:
        x = self.multiplier(t, intervention_end)
        if x == 1.0:
            return params
        return replace(params, susceptible=int(round(params.susceptible * x)))


# ---------- Configuration ----------

@dataclass(frozen=True)
class RingStudyConfig:
    offspring: OffspringSpec = field(default_factory=OffspringSpec)
    serial_interval: SerialInterval = field(default_factory=SerialInterval)
    population: PopulationSpec = field(default_factory=PopulationSpec)
    immune_fraction: float = 0.0
    # Onset-to-report delays (days): index case, before and after the intervention is active
    index_report_delay: DiscreteDelay = field(default_factory=lambda: DiscreteDelay(mean=1.5))
    report_delay_before: DiscreteDelay = field(default_factory=lambda: DiscreteDelay(mean=3.0))
    report_delay_after: DiscreteDelay = field(default_factory=lambda: DiscreteDelay(mean=1.0))
    implementation_delay: ImplementationDelay = field(default_factory=ImplementationDelay)
    intervention_duration: float = 2.0
    # Built from default efficacies at `coverage` when not given; explicit
    # multipliers already fold in their own coverage
    schedule: Optional[EffectSchedule] = None
    follow_up_duration: float = 30.0
    coverage: float = 0.8
    heterogeneity_mean: float = 1.0
    heterogeneity_dispersion: float = 2.0
    delay_bucket_edges: Tuple[int, ...] = (3, 7)
    n_rings: int = 1000
    max_generations: int = DEFAULT_MAX_GENERATIONS
    max_cases: int = DEFAULT_MAX_CASES
    seed: Optional[int] = 12345

    def __post_init__(self):
        self.validate()
        if self.schedule is None:
            object.__setattr__(self, "schedule", EffectSchedule.from_efficacies(coverage=self.coverage))

    def validate(self) -> None:
        validate_probability(self.immune_fraction, "immune_fraction", allow_one=False)
        validate_probability(self.coverage, "coverage")
        validate_positive(self.intervention_duration, "intervention_duration", allow_zero=True)
        validate_positive(self.follow_up_duration, "follow_up_duration", allow_zero=True)
        validate_positive(self.heterogeneity_mean, "heterogeneity_mean", allow_zero=True)
        validate_positive(self.heterogeneity_dispersion, "heterogeneity_dispersion")
        edges = list(self.delay_bucket_edges)
        if any(b <= a for a, b in zip(edges, edges[1:])) or any(e < 0 for e in edges):
            raise ConfigurationError(f"delay_bucket_edges must be increasing and non-negative, got {edges}")
        if self.n_rings < 1:
            raise ConfigurationError(f"n_rings must be >= 1, got {self.n_rings}")
        if self.max_generations < 1 or self.max_cases < 1:
            raise ConfigurationError("max_generations and max_cases must be >= 1")


def config_from_dict(values: Dict[str, Any]) -> RingStudyConfig:
    """Build a RingStudyConfig from nested plain values (e.g. parsed JSON).

    The "schedule" entry accepts either the three phase multipliers
    (wash_and_antibiotic_effect, ...) or component efficacies
    (antibiotic_efficacy, wash_efficacy, vaccine_efficacy); the latter are
    combined at the config's coverage.
    """
    values = dict(values)
    nested = {
        "offspring": OffspringSpec,
        "serial_interval": SerialInterval,
        "population": PopulationSpec,
        "index_report_delay": DiscreteDelay,
        "report_delay_before": DiscreteDelay,
        "report_delay_after": DiscreteDelay,
        "implementation_delay": ImplementationDelay,
    }
    kwargs: Dict[str, Any] = {}
    for key, cls in nested.items():
        if key in values:
            kwargs[key] = cls(**values.pop(key))
    if "schedule" in values:
        sched = dict(values.pop("schedule"))
        if "wash_and_antibiotic_effect" in sched:
            kwargs["schedule"] = EffectSchedule(**sched)
        else:
            sched.setdefault("coverage", values.get("coverage", 0.8))
            kwargs["schedule"] = EffectSchedule.from_efficacies(**sched)
    if "delay_bucket_edges" in values:
        values["delay_bucket_edges"] = tuple(int(e) for e in values["delay_bucket_edges"])
    unknown = set(values) - set(RingStudyConfig.__dataclass_fields__)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
    kwargs.update(values)
    return RingStudyConfig(**kwargs)


def load_config(path: str) -> RingStudyConfig:
    with open(path, "r", encoding="utf-8") as fh:
        return config_from_dict(json.load(fh))


# ---------- Chain simulator ----------

def simulate_chain(
    offspring: OffspringSpec,
    serial_interval: SerialInterval,
    t_start: float,
    t_end: float,
    population: float,
    initial_immune: int,
    schedule: EffectSchedule,
    intervention_end: float,
    rng: np.random.Generator,
    max_generations: int = DEFAULT_MAX_GENERATIONS,
    max_cases: int = DEFAULT_MAX_CASES,
) -> pd.DataFrame:
    """Simulate one transmission chain with susceptible depletion.

    Times are on the simulation clock; ``intervention_end`` is measured from
    the index onset, like the elapsed time handed to the schedule.

    Returns a DataFrame (case_id, parent_id, generation, onset_time) ordered
    by generation then onset. Case 0 is the index case.
    """
    if not (population > 0):
        raise ConfigurationError(f"population must be > 0, got {population}")
    if initial_immune < 0 or initial_immune > population:
        raise ConfigurationError(f"initial_immune must be in [0, population], got {initial_immune}")

    params = OffspringParams(
        mean=offspring.mean,
        dispersion=offspring.dispersion,
        susceptible=max(0, int(math.floor(population)) - int(initial_immune)),
    )

    case_ids = [np.array([0])]
    parents = [np.array([-1])]
    generations = [np.array([0])]
    onsets = [np.array([float(t_start)])]

    frontier_ids = case_ids[0]
    frontier_onset = onsets[0]
    n_cases = 1
    gen = 0
    while frontier_ids.size > 0 and params.susceptible > 0:
        params = schedule.apply(params, float(frontier_onset.min()) - t_start, intervention_end)
        if params.susceptible <= 0:
            break
        eff_mean = params.mean * params.susceptible / population
        counts = offspring.draw(eff_mean, frontier_ids.size, rng)
        # Cap the running total so the generation cannot overdraw the susceptible pool
        capped = np.minimum(np.cumsum(counts), params.susceptible)
        counts = np.diff(capped, prepend=0)
        total = int(capped[-1])
        if total == 0:
            break

        gen += 1
        n_new = n_cases + total
        if gen > max_generations or n_new > max_cases:
            raise StochasticDegeneracy(
                f"chain exceeded safety cap (generation={gen}, cases={n_new}; "
                f"max_generations={max_generations}, max_cases={max_cases})"
            )
        params = replace(params, susceptible=params.susceptible - total)

        child_ids = np.arange(n_cases, n_new)
        child_onset = np.repeat(frontier_onset, counts) + serial_interval.sample(rng, total)
        case_ids.append(child_ids)
        parents.append(np.repeat(frontier_ids, counts))
        generations.append(np.full(total, gen))
        onsets.append(child_onset)
        n_cases = n_new

        # Cases with onset past t_end are kept but do not branch
        branching = child_onset <= t_end
        frontier_ids = child_ids[branching]
        frontier_onset = child_onset[branching]

    chain = pd.DataFrame({
        "case_id": np.concatenate(case_ids),
        "parent_id": np.concatenate(parents),
        "generation": np.concatenate(generations),
        "onset_time": np.concatenate(onsets),
    })
    return chain.sort_values(["generation", "onset_time"], kind="mergesort").reset_index(drop=True)


# ---------- Reporting delays and windowing ----------

def assign_report_times(
    cases: pd.DataFrame,
    index_report_delay: int,
    intervention_end: float,
    before: DiscreteDelay,
    after: DiscreteDelay,
    rng: np.random.Generator,
) -> pd.DataFrame:
    """Add report_time and time_since_index_report to a chain's cases.

    Non-index cases with onset before intervention_end use the ``before``
    delay, the rest use ``after``. The index case reports after the ring-level
    ``index_report_delay``.
    """
    onset = cases["onset_time"].to_numpy(dtype=float)
    is_index = (cases["generation"] == 0).to_numpy()
    delays = np.empty(len(cases), dtype=float)
    delays[is_index] = index_report_delay
    pre = ~is_index & (onset < intervention_end)
    post = ~is_index & ~pre
    delays[pre] = before.sample(rng, int(pre.sum()))
    delays[post] = after.sample(rng, int(post.sum()))

    report = onset + delays
    index_report_time = float(report[is_index][0])
    return cases.assign(report_time=report, time_since_index_report=report - index_report_time)


def filter_window(cases: pd.DataFrame, follow_up_duration: float) -> pd.DataFrame:
    """Keep cases reported within [0, follow_up_duration] days of the index report."""
    t = cases["time_since_index_report"]
    return cases.loc[(t >= 0) & (t <= follow_up_duration)].reset_index(drop=True)


# ---------- Ring batch generator ----------

@dataclass(frozen=True, eq=False)
class Ring:
    ring_id: int
    population: float
    initial_immune: int
    index_report_delay: int
    index_report_time: float
    intervention_start: float
    intervention_end: float
    heterogeneity: int
    cases: pd.DataFrame

    def as_row(self) -> Dict[str, Any]:
        return {col: getattr(self, col) for col in RING_COLUMNS}


def simulate_ring(config: RingStudyConfig, ring_id: int, rng: np.random.Generator) -> Ring:
    """Sample ring-level parameters, run one chain, assign report times and window it."""
    population = config.population.sample(rng)
    initial_immune = int(round(population * config.immune_fraction))
    index_delay = config.index_report_delay.sample(rng)
    implementation_delay = config.implementation_delay.sample(rng)
    heterogeneity = int(_draw_counts(
        OffspringKind.NEGATIVE_BINOMIAL, config.heterogeneity_mean, config.heterogeneity_dispersion, 1, rng
    )[0])

    # Simulation clock starts at the index onset
    index_report_time = float(index_delay)
    intervention_start = index_report_time + implementation_delay
    intervention_end = intervention_start + config.intervention_duration

    chain = simulate_chain(
        config.offspring,
        config.serial_interval,
        t_start=0.0,
        t_end=index_report_time + config.follow_up_duration,
        population=population,
        initial_immune=initial_immune,
        schedule=config.schedule,
        intervention_end=intervention_end,
        rng=rng,
        max_generations=config.max_generations,
        max_cases=config.max_cases,
    )
    chain = assign_report_times(
        chain, index_delay, intervention_end, config.report_delay_before, config.report_delay_after, rng
    )
    cases = filter_window(chain, config.follow_up_duration)
    cases.insert(0, "ring_id", ring_id)

    return Ring(
        ring_id=ring_id,
        population=population,
        initial_immune=initial_immune,
        index_report_delay=index_delay,
        index_report_time=index_report_time,
        intervention_start=intervention_start,
        intervention_end=intervention_end,
        heterogeneity=heterogeneity,
        cases=cases,
    )


@dataclass
class RingBatch:
    config: RingStudyConfig
    cases: pd.DataFrame
    rings: pd.DataFrame
    aborted: Tuple[int, ...] = ()

    @property
    def n_rings(self) -> int:
        return len(self.rings)


@dataclass(frozen=True)
class _RingWorkerInput:
    start: int
    seeds: Tuple[np.random.SeedSequence, ...]
    config: RingStudyConfig


@dataclass
class _RingWorkerResult:
    start: int
    rings: List[Ring]
    aborted: List[int]


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate user-provided n_jobs into an actual worker count."""
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return 1
    if n_jobs < 0:
        cpu = os.cpu_count() or 1
        # Example: -1 -> cpu, -2 -> cpu-1
        target = cpu + 1 + n_jobs
        return max(1, target)
    return max(1, int(n_jobs))


def _effective_chunk_size(total: int, chunk_size: Optional[int], default: int = DEFAULT_CHUNK_SIZE) -> int:
    if chunk_size is None or chunk_size <= 0:
        return min(default, max(1, total))
    return min(int(chunk_size), max(1, total))


def _chunk_indices(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    chunks: List[Tuple[int, int]] = []
    start = 0
    while start < total:
        count = min(chunk_size, total - start)
        chunks.append((start, count))
        start += count
    return chunks


def _spawn_seeds(base_seed: Optional[int], count: int) -> List[np.random.SeedSequence]:
    """One independent child seed per task, so results do not depend on scheduling."""
    if count <= 0:
        return []
    return np.random.SeedSequence(base_seed).spawn(count)


def _map_chunks(func: Callable, payloads: Sequence, worker_count: int) -> List:
    """Run func over payloads, in-process when serial, else in a process pool.

    Falls back to threads where processes are not allowed.
    """
    if worker_count <= 1 or len(payloads) <= 1:
        return [func(p) for p in payloads]
    max_workers = min(worker_count, len(payloads)) or 1
    try:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(func, payloads))
    except (PermissionError, NotImplementedError, OSError):
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(func, payloads))


def _run_ring_chunk(payload: _RingWorkerInput) -> _RingWorkerResult:
    rings: List[Ring] = []
    aborted: List[int] = []
    for offset, seed in enumerate(payload.seeds):
        ring_id = payload.start + offset
        rng = np.random.default_rng(seed)
        try:
            rings.append(simulate_ring(payload.config, ring_id, rng))
        except StochasticDegeneracy:
            aborted.append(ring_id)
    return _RingWorkerResult(start=payload.start, rings=rings, aborted=aborted)


def simulate_rings(
    config: RingStudyConfig,
    n_rings: Optional[int] = None,
    seed: Optional[int] = None,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> RingBatch:
    """Simulate independent rings and collect the windowed Case table and ring table.

    n_rings and seed default to the config's values.
    """
    n_rings = config.n_rings if n_rings is None else int(n_rings)
    if n_rings < 1:
        raise ConfigurationError(f"n_rings must be >= 1, got {n_rings}")
    seed = config.seed if seed is None else seed

    seeds = _spawn_seeds(seed, n_rings)
    chunks = _chunk_indices(n_rings, _effective_chunk_size(n_rings, chunk_size))
    payloads = [
        _RingWorkerInput(start=start, seeds=tuple(seeds[start:start + count]), config=config)
        for start, count in chunks
    ]
    results = sorted(_map_chunks(_run_ring_chunk, payloads, _resolve_n_jobs(n_jobs)), key=lambda r: r.start)

    rings = [ring for result in results for ring in result.rings]
    aborted = tuple(ring_id for result in results for ring_id in result.aborted)
    if aborted:
        warnings.warn(
            f"{len(aborted)} of {n_rings} rings aborted after exceeding the chain safety cap "
            f"(max_generations={config.max_generations}, max_cases={config.max_cases}); "
            "they are excluded from the ring summary",
            RuntimeWarning,
            stacklevel=2,
        )

    if rings:
        cases = pd.concat([ring.cases for ring in rings], ignore_index=True)
    else:
        cases = pd.DataFrame(columns=CASE_COLUMNS)
    ring_table = pd.DataFrame([ring.as_row() for ring in rings], columns=RING_COLUMNS)
    return RingBatch(config=config, cases=cases[CASE_COLUMNS], rings=ring_table, aborted=aborted)


# ---------- Ring summarizer ----------

def surveillance_capacity(index_report_delay: int) -> str:
    """Surveillance-capacity category from the index reporting delay.

    The rule set overlaps at delay == 1 (both "delay 1" and "delay >= 1");
    the first matching rule wins, so 1 maps to "2".
    """
    if index_report_delay == 0:
        return "1"
    if index_report_delay == 1:
        return "2"
    return "3"


def _delay_bucket_labels(edges: Sequence[int]) -> List[str]:
    labels = []
    lower = 0
    for edge in edges:
        labels.append(f"{lower}-{edge}")
        lower = edge + 1
    labels.append(f"{lower}+")
    return labels


def delay_buckets(delays: pd.Series, edges: Sequence[int]) -> pd.Series:
    bins = [-np.inf, *edges, np.inf]
    return pd.cut(delays, bins=bins, labels=_delay_bucket_labels(edges), right=True)


def summarize_rings(batch: RingBatch) -> pd.DataFrame:
    """Reduce each ring's retained cases to one summary row."""
    config = batch.config
    counts = batch.cases.groupby("ring_id").agg(
        case_count=("case_id", "size"),
        last_report=("time_since_index_report", "max"),
    )
    rings = batch.rings
    summary = pd.DataFrame({
        "ring_id": rings["ring_id"].astype(int),
        "population": rings["population"].astype(float),
        "index_report_delay": rings["index_report_delay"].astype(int),
        "intervention_delay": (rings["intervention_start"] - rings["index_report_time"]).astype(float),
        "heterogeneity": rings["heterogeneity"].astype(int),
    })
    summary = summary.join(counts, on="ring_id")
    summary["case_count"] = summary["case_count"].astype(int)
    summary["last_report"] = summary["last_report"].astype(float)
    summary["log_population"] = np.log(summary["population"])
    summary["delay_bucket"] = delay_buckets(summary["intervention_delay"], config.delay_bucket_edges)
    summary["coverage"] = float(config.coverage)
    summary["surveillance_capacity"] = (
        summary["index_report_delay"].map(surveillance_capacity).astype(CAPACITY_DTYPE)
    )
    return summary[[
        "ring_id",
        "case_count",
        "last_report",
        "population",
        "log_population",
        "index_report_delay",
        "intervention_delay",
        "delay_bucket",
        "coverage",
        "surveillance_capacity",
        "heterogeneity",
    ]].reset_index(drop=True)
