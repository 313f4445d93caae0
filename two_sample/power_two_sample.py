"""
Power analysis for a two-sample comparison of means (Cohen's d).

This module computes statistical power, the required sample size per group, or
the minimal detectable effect size for a two-sided two-sample t-test, and
cross-checks the analytic answer by simulating many hypothetical experiments.

Approach
--------
- Analytic model: with n participants per group and standardized effect d,
  the t statistic follows a noncentral t distribution with
    df = 2n - 2,   ncp = |d| * sqrt(n / 2).
  Two-sided power is P(T > t_crit) + P(T < -t_crit), where t_crit is the upper
  alpha/2 quantile of the central t distribution with the same df.
- Power is strictly increasing in n (for fixed d) and in |d| (for fixed n), so
  the missing quantity is found by bracketing and bisection on the continuous
  relaxation. Sample sizes are rounded UP to the smallest integer that meets the
  requested power.
- Simulation: each run draws n values from N(0, 1) for group A and n values from
  N(d, 1) for group B, applies a two-sample t-test (Welch by default) and
  records whether p < alpha. Empirical power is the rejection rate.

Variance assumption
-------------------
The analytic solver defaults to the textbook pooled-variance test while the
simulation defaults to Welch's test. Both expose an ``equal_variance`` flag.
With equal population SDs and equal group sizes the Welch-Satterthwaite df of
the analytic model coincides with 2n - 2, so the flag only changes the
simulated test; small differences between the two methods are expected and
reported rather than reconciled.

Reproducibility
---------------
A seed is expanded with ``numpy.random.SeedSequence`` into one child stream per
simulated run. Run i always sees the same draws (group A first, then group B)
whether the runs execute serially, in threads or in worker processes.

Usage
-----
1) Power for 64 per group at d = 0.5:
   power-two-sample --mode power --effect-size 0.5 --n-per-group 64

2) Sample size per group for 80% power:
   power-two-sample --mode n-for-power --effect-size 0.5 --target-power 0.8

3) Minimal detectable effect for 50 per group:
   power-two-sample --mode effect-for-power --n-per-group 50 --target-power 0.8

4) Power curve as CSV:
   power-two-sample --mode curve --curve-effects 0.2,0.5,0.8 \
     --curve-start 10 --curve-stop 500 --curve-step 10

5) Monte Carlo cross-check of the analytic power:
   power-two-sample --mode validate --effect-size 0.5 --n-per-group 64 \
     --sims 5000 --seed 123456 --n-jobs -1
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import math
import numpy as np
import pandas as pd

import scipy.stats as sps
from statsmodels.stats.weightstats import ttest_ind


logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.05
DEFAULT_SIMS = 5000
DEFAULT_CHUNK_SIZE = 64
DEGENERATE_POLICIES = ("skip", "raise")

# Beyond this noncentrality the normal approximation agrees with the
# noncentral t to double precision (power is 1 for every df >= 2).
_NORMAL_APPROX_NCP = 37.0


# ---------- Errors ----------

class PowerAnalysisError(Exception):
    """Base class for errors raised by the power-analysis engine."""


class InvalidQueryError(PowerAnalysisError, ValueError):
    """Malformed or out-of-domain request. Caller error, never retried."""


class ConvergenceFailure(PowerAnalysisError, RuntimeError):
    """Root-finding did not reach tolerance (see PowerResult.raise_for_convergence)."""


class DegenerateSampleError(PowerAnalysisError, ArithmeticError):
    """Simulated samples for which the t statistic is undefined."""


# ---------- Validation helpers ----------

def validate_probability(value: float, name: str, allow_zero: bool = False, allow_one: bool = False) -> None:
    """Validate a probability-like value; strict (0,1) unless told otherwise."""
    if value is None or isinstance(value, bool):
        raise InvalidQueryError(f"{name} must be a real number, got {value!r}")
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise InvalidQueryError(f"{name} must be a real number, got {value!r}") from None
    if not math.isfinite(value):
        raise InvalidQueryError(f"{name} must be finite, got {value}")
    lower_ok = value >= 0.0 if allow_zero else value > 0.0
    upper_ok = value <= 1.0 if allow_one else value < 1.0
    if not (lower_ok and upper_ok):
        interval = f"{'[' if allow_zero else '('}0, 1{']' if allow_one else ')'}"
        raise InvalidQueryError(f"{name} must be in {interval}, got {value}")


def _validate_integer(value: int, name: str, minimum: int) -> int:
    if value is None or isinstance(value, bool):
        raise InvalidQueryError(f"{name} must be an integer >= {minimum}, got {value!r}")
    try:
        as_float = float(value)
    except (TypeError, ValueError):
        raise InvalidQueryError(f"{name} must be an integer >= {minimum}, got {value!r}") from None
    if not math.isfinite(as_float) or not as_float.is_integer():
        raise InvalidQueryError(f"{name} must be an integer, got {value!r}")
    if as_float < minimum:
        raise InvalidQueryError(f"{name} must be >= {minimum}, got {int(as_float)}")
    return int(value)


def validate_sample_size(value: int, name: str = "sample_size_per_group") -> int:
    """Validate an integer sample size per group (>= 2) and return it as int."""
    return _validate_integer(value, name, minimum=2)


def validate_effect_size(value: float, name: str = "effect_size", allow_zero: bool = False) -> float:
    if value is None or isinstance(value, bool):
        raise InvalidQueryError(f"{name} must be a real number, got {value!r}")
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise InvalidQueryError(f"{name} must be a real number, got {value!r}") from None
    if not math.isfinite(value):
        raise InvalidQueryError(f"{name} must be finite, got {value}")
    if value == 0.0 and not allow_zero:
        raise InvalidQueryError(
            f"{name} must be nonzero: power is undefined and the required sample size infinite at d = 0"
        )
    return value


def inflate_for_attrition(n_completing: int, attrition_rate: float) -> int:
    """Inflate completing N to required enrollment given attrition_rate."""
    validate_probability(attrition_rate, "attrition_rate", allow_zero=True, allow_one=False)
    return int(math.ceil(n_completing / (1.0 - attrition_rate)))


# ---------- Analytic model ----------

def degrees_of_freedom(n_per_group: float, equal_variance: bool = True) -> float:
    """Degrees of freedom of the two-sample t-test with n per group.

    Pooled: 2n - 2. Welch-Satterthwaite with unit population variances in both
    groups: (2/n)^2 / (2 * (1/n)^2 / (n - 1)), which reduces to the same value.
    """
    n = float(n_per_group)
    if equal_variance:
        return 2.0 * n - 2.0
    var_a = var_b = 1.0 / n
    return (var_a + var_b) ** 2 / (var_a ** 2 / (n - 1.0) + var_b ** 2 / (n - 1.0))


def noncentrality(effect_size: float, n_per_group: float) -> float:
    """ncp = |d| * sqrt(n / 2) for two equal groups of size n."""
    return abs(float(effect_size)) * math.sqrt(float(n_per_group) / 2.0)


def _two_sided_power_normal(lam: float, alpha: float) -> float:
    """Two-sided power using normal approx for noncentral mean lam.

    Power = P(Z > z - lam) + P(Z < -z - lam).
    """
    z = float(sps.norm.ppf(1.0 - alpha / 2.0))
    return float(sps.norm.sf(z - lam) + sps.norm.cdf(-z - lam))


def _power_continuous(effect_size: float, n_per_group: float, alpha: float, equal_variance: bool = True) -> float:
    """Two-sided noncentral-t power over the continuous relaxation of n.

    With equal group sizes equal_variance does not change the result (both df
    forms give 2n - 2); the flag records the assumption. For large
    noncentrality the survival function rounds to exactly 1.0 in double
    precision, so saturated cells report power == 1.
    """
    lam = noncentrality(effect_size, n_per_group)
    if lam > _NORMAL_APPROX_NCP:
        return float(max(0.0, min(1.0, _two_sided_power_normal(lam, alpha))))
    df = degrees_of_freedom(n_per_group, equal_variance)
    tcrit = float(sps.t.ppf(1.0 - alpha / 2.0, df))
    # Power = P(T > tcrit) + P(T < -tcrit), T ~ nct(df, lam)
    pw = float(sps.nct.sf(tcrit, df, lam) + sps.nct.cdf(-tcrit, df, lam))
    if math.isnan(pw):
        pw = _two_sided_power_normal(lam, alpha)
    return float(max(0.0, min(1.0, pw)))


# ---------- Queries and results ----------

SOLVABLE_FIELDS = ("effect_size", "sample_size_per_group", "power")


@dataclass(frozen=True)
class PowerQuery:
    """Request with exactly one of effect_size, sample_size_per_group, power unset."""

    effect_size: Optional[float] = None
    sample_size_per_group: Optional[int] = None
    significance_level: float = DEFAULT_ALPHA
    power: Optional[float] = None
    equal_variance: bool = True

    def unknown(self) -> str:
        """Name of the field to solve for."""
        missing = [name for name in SOLVABLE_FIELDS if getattr(self, name) is None]
        if len(missing) != 1:
            raise InvalidQueryError(
                "Exactly one of effect_size, sample_size_per_group, power must be unset; "
                f"got {len(missing)} unset ({', '.join(missing) or 'none'})"
            )
        return missing[0]

    def validate(self) -> str:
        """Check every set field and return the name of the unknown one."""
        target = self.unknown()
        validate_probability(self.significance_level, "significance_level")
        if self.effect_size is not None:
            validate_effect_size(self.effect_size)
        if self.sample_size_per_group is not None:
            validate_sample_size(self.sample_size_per_group)
        if self.power is not None:
            validate_probability(self.power, "power")
        if target == "effect_size" and self.power <= self.significance_level:
            raise InvalidQueryError(
                f"power ({self.power}) must exceed significance_level ({self.significance_level}) "
                "when solving for effect_size"
            )
        return target


@dataclass(frozen=True)
class PowerResult:
    effect_size: float
    sample_size_per_group: int
    significance_level: float
    power: float
    solved_for: str
    converged: bool = True
    iterations: int = 0
    target_power: Optional[float] = None
    equal_variance: bool = True

    def raise_for_convergence(self) -> "PowerResult":
        """Return self, or raise ConvergenceFailure if the solver did not converge."""
        if not self.converged:
            raise ConvergenceFailure(
                f"Solving for {self.solved_for} did not converge after {self.iterations} iterations "
                f"(best estimate: effect_size={self.effect_size:.6g}, "
                f"sample_size_per_group={self.sample_size_per_group}, power={self.power:.6g})"
            )
        return self


@dataclass(frozen=True)
class CurvePoint:
    effect_size: float
    sample_size_per_group: int
    power: float
    converged: bool = True


# ---------- Solver ----------

@dataclass(frozen=True)
class PowerSolver:
    """Solve the two-sample t-test power relation for the missing quantity.

    ``tol`` is the absolute tolerance on power, ``max_iter`` caps bisection
    steps, ``n_max`` and ``effect_max`` cap the search brackets.
    """

    tol: float = 1e-6
    max_iter: int = 200
    n_max: int = 10_000_000
    effect_max: float = 1000.0

    def solve(self, query: PowerQuery) -> PowerResult:
        target = query.validate()
        alpha = float(query.significance_level)
        if target == "power":
            return self._solve_power(query, alpha)
        if target == "sample_size_per_group":
            return self._solve_sample_size(query, alpha)
        return self._solve_effect_size(query, alpha)

    def _solve_power(self, query: PowerQuery, alpha: float) -> PowerResult:
        d = abs(float(query.effect_size))
        n = validate_sample_size(query.sample_size_per_group)
        pw = _power_continuous(d, n, alpha, query.equal_variance)
        return PowerResult(
            effect_size=d,
            sample_size_per_group=n,
            significance_level=alpha,
            power=pw,
            solved_for="power",
            equal_variance=query.equal_variance,
        )

    def _solve_sample_size(self, query: PowerQuery, alpha: float) -> PowerResult:
        d = abs(float(query.effect_size))
        target_power = float(query.power)
        ev = query.equal_variance

        def power_at(n: float) -> float:
            return _power_continuous(d, n, alpha, ev)

        def result(n: int, converged: bool, iterations: int) -> PowerResult:
            return PowerResult(
                effect_size=d,
                sample_size_per_group=int(n),
                significance_level=alpha,
                power=power_at(n),
                solved_for="sample_size_per_group",
                converged=converged,
                iterations=iterations,
                target_power=target_power,
                equal_variance=ev,
            )

        low = 2.0
        if power_at(low) >= target_power:
            return result(2, True, 0)

        # Expand upper bound until power reaches target or cap reached
        high = 4.0
        while power_at(high) < target_power:
            if high >= self.n_max:
                logger.warning(
                    "Target power %.4f not reachable with n <= %d at d=%.4g; returning the cap",
                    target_power, self.n_max, d,
                )
                return result(int(self.n_max), False, 0)
            low = high
            high = min(high * 2.0, float(self.n_max))
        logger.debug("Sample-size bracket [%g, %g] for d=%.4g, power=%.4f", low, high, d, target_power)

        root, converged, iterations = _bisect(power_at, target_power, low, high, self.tol, self.max_iter)
        if not converged:
            logger.warning(
                "Sample-size search did not converge in %d iterations (d=%.4g, power=%.4f); "
                "returning conservative bracket end n=%d",
                iterations, d, target_power, int(math.ceil(root)),
            )
            return result(int(math.ceil(root)), False, iterations)

        # Ceiling of the continuous root, nudged to the smallest integer meeting the target
        n = max(2, int(math.ceil(root)))
        while power_at(n) < target_power:
            n += 1
        while n > 2 and power_at(n - 1) >= target_power:
            n -= 1
        return result(n, True, iterations)

    def _solve_effect_size(self, query: PowerQuery, alpha: float) -> PowerResult:
        n = validate_sample_size(query.sample_size_per_group)
        target_power = float(query.power)
        ev = query.equal_variance

        def power_at(d: float) -> float:
            return _power_continuous(d, n, alpha, ev)

        def result(d: float, converged: bool, iterations: int) -> PowerResult:
            return PowerResult(
                effect_size=float(d),
                sample_size_per_group=n,
                significance_level=alpha,
                power=power_at(d),
                solved_for="effect_size",
                converged=converged,
                iterations=iterations,
                target_power=target_power,
                equal_variance=ev,
            )

        low, high = 0.0, 1.0
        while power_at(high) < target_power:
            if high >= self.effect_max:
                logger.warning(
                    "Target power %.4f not reachable with |d| <= %g at n=%d; returning the cap",
                    target_power, self.effect_max, n,
                )
                return result(self.effect_max, False, 0)
            low = high
            high = min(high * 2.0, float(self.effect_max))
        logger.debug("Effect-size bracket [%g, %g] for n=%d, power=%.4f", low, high, n, target_power)

        root, converged, iterations = _bisect(power_at, target_power, low, high, self.tol, self.max_iter)
        if not converged:
            logger.warning(
                "Effect-size search did not converge in %d iterations (n=%d, power=%.4f)",
                iterations, n, target_power,
            )
        return result(root, converged, iterations)


def _bisect(func: Callable[[float], float], target: float, low: float, high: float,
            tol: float, max_iter: int) -> Tuple[float, bool, int]:
    """Bisection for an increasing func with func(low) < target <= func(high).

    Returns (estimate, converged, iterations). Without convergence the estimate
    is the upper bracket end, where func >= target still holds.
    """
    for iteration in range(1, max_iter + 1):
        mid = 0.5 * (low + high)
        value = func(mid)
        if abs(value - target) <= tol:
            return mid, True, iteration
        if value < target:
            low = mid
        else:
            high = mid
        if high - low <= 1e-12 * max(1.0, abs(high)):
            return high, True, iteration
    return high, False, max_iter


_DEFAULT_SOLVER = PowerSolver()


def solve(
    effect_size: Optional[float] = None,
    sample_size_per_group: Optional[int] = None,
    significance_level: float = DEFAULT_ALPHA,
    power: Optional[float] = None,
    *,
    equal_variance: bool = True,
) -> PowerResult:
    """Solve for whichever of effect_size, sample_size_per_group, power is None."""
    query = PowerQuery(
        effect_size=effect_size,
        sample_size_per_group=sample_size_per_group,
        significance_level=significance_level,
        power=power,
        equal_variance=equal_variance,
    )
    return _DEFAULT_SOLVER.solve(query)


def analytic_power(effect_size: float, sample_size_per_group: int, significance_level: float = DEFAULT_ALPHA,
                   equal_variance: bool = True) -> float:
    """Analytic two-sided power for n per group at standardized effect d."""
    return solve(effect_size, sample_size_per_group, significance_level, equal_variance=equal_variance).power


def solve_sample_size(effect_size: float, target_power: float, significance_level: float = DEFAULT_ALPHA,
                      equal_variance: bool = True) -> Tuple[int, float]:
    """Minimum n per group reaching target_power. Returns (n, achieved_power)."""
    res = solve(effect_size, None, significance_level, target_power, equal_variance=equal_variance)
    return res.sample_size_per_group, res.power


def solve_effect_size(sample_size_per_group: int, target_power: float, significance_level: float = DEFAULT_ALPHA,
                      equal_variance: bool = True) -> float:
    """Minimal detectable |d| for n per group at target_power."""
    res = solve(None, sample_size_per_group, significance_level, target_power, equal_variance=equal_variance)
    return res.effect_size


# ---------- Power curve ----------

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


@dataclass(frozen=True)
class PowerCurveGenerator:
    """Power over the Cartesian grid effect_sizes x sample_sizes.

    Order is effect size outer, sample size inner, each in input order.
    """

    solver: PowerSolver = field(default_factory=PowerSolver)
    equal_variance: bool = True
    n_jobs: Optional[int] = None

    def generate(
        self,
        effect_sizes: Sequence[float],
        sample_sizes: Sequence[int],
        significance_level: float = DEFAULT_ALPHA,
    ) -> List[CurvePoint]:
        sample_sizes = list(sample_sizes)
        queries = [
            PowerQuery(
                effect_size=e,
                sample_size_per_group=n,
                significance_level=significance_level,
                equal_variance=self.equal_variance,
            )
            for e in effect_sizes
            for n in sample_sizes
        ]

        workers = min(_resolve_n_jobs(self.n_jobs), len(queries))
        if workers <= 1:
            results = [self.solver.solve(q) for q in queries]
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(self.solver.solve, queries))

        return [
            CurvePoint(
                effect_size=r.effect_size,
                sample_size_per_group=r.sample_size_per_group,
                power=r.power,
                converged=r.converged,
            )
            for r in results
        ]


def curve_to_frame(points: Iterable[CurvePoint]) -> pd.DataFrame:
    """Tabulate curve points for plotting, one row per grid cell."""
    rows = [
        {
            "effect_size": p.effect_size,
            "sample_size_per_group": p.sample_size_per_group,
            "power": p.power,
            "converged": p.converged,
        }
        for p in points
    ]
    return pd.DataFrame(rows, columns=["effect_size", "sample_size_per_group", "power", "converged"])


def power_curve(
    effect_sizes: Sequence[float],
    sample_sizes: Sequence[int],
    significance_level: float = DEFAULT_ALPHA,
    *,
    equal_variance: bool = True,
    n_jobs: Optional[int] = None,
) -> pd.DataFrame:
    """Compute analytic power across a grid and return it as a DataFrame.

    Columns: effect_size, sample_size_per_group, power, converged.
    """
    generator = PowerCurveGenerator(equal_variance=equal_variance, n_jobs=n_jobs)
    return curve_to_frame(generator.generate(effect_sizes, sample_sizes, significance_level))


# ---------- Monte Carlo validation ----------

@dataclass(frozen=True)
class TTestOutcome:
    statistic: float
    pvalue: float
    df: float


NormalSampler = Callable[[float, float, int, np.random.Generator], np.ndarray]
TwoSampleTest = Callable[[np.ndarray, np.ndarray, bool], TTestOutcome]


def normal_variates(mean: float, sd: float, count: int, rng: np.random.Generator) -> np.ndarray:
    """Draw count values from N(mean, sd^2) using rng."""
    return rng.normal(mean, sd, size=count)


def two_sample_ttest(sample_a: np.ndarray, sample_b: np.ndarray, equal_variance: bool = False) -> TTestOutcome:
    """Two-sided two-sample t-test of mean(B) - mean(A) (Welch unless equal_variance).

    Raises DegenerateSampleError when both samples have zero variance.
    """
    a = np.asarray(sample_a, dtype=float)
    b = np.asarray(sample_b, dtype=float)
    if np.var(a, ddof=1) == 0.0 and np.var(b, ddof=1) == 0.0:
        raise DegenerateSampleError("Both samples have zero variance; the t statistic is undefined")
    usevar = "pooled" if equal_variance else "unequal"
    tstat, pval, df = ttest_ind(b, a, alternative="two-sided", usevar=usevar)
    return TTestOutcome(statistic=float(tstat), pvalue=float(pval), df=float(df))


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for binomial proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z = float(sps.norm.ppf(1.0 - alpha / 2.0))
    phat = k / n
    denom = 1.0 + (z * z) / n
    center = (phat + (z * z) / (2.0 * n)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n + (z * z) / (4.0 * n * n)))
    low = max(0.0, center - half)
    high = min(1.0, center + half)
    return low, high


@dataclass(frozen=True)
class SimulationSummary:
    effect_size: float
    sample_size_per_group: int
    significance_level: float
    num_runs: int
    rejections: int
    valid_runs: int
    skipped_runs: int
    power: float
    std_error: float
    ci_low: float
    ci_high: float
    equal_variance: bool
    seed: int
    p_values: Optional[np.ndarray] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class _SimWorkerInput:
    start: int
    seeds: Tuple[np.random.SeedSequence, ...]
    effect_size: float
    sample_size_per_group: int
    significance_level: float
    equal_variance: bool
    on_degenerate: str
    return_details: bool
    sampler: NormalSampler
    ttest: TwoSampleTest


@dataclass
class _SimWorkerResult:
    start: int
    count: int
    rejections: int
    skipped: int
    pvals: Optional[np.ndarray]


def _effective_chunk_size(sims: int, chunk_size: Optional[int]) -> int:
    if chunk_size is None or chunk_size <= 0:
        return min(DEFAULT_CHUNK_SIZE, max(1, sims))
    return min(int(chunk_size), max(1, sims))


def _chunk_indices(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    chunks: List[Tuple[int, int]] = []
    start = 0
    while start < total:
        count = min(chunk_size, total - start)
        chunks.append((start, count))
        start += count
    return chunks


def _simulate_run(payload: _SimWorkerInput, seed: np.random.SeedSequence) -> float:
    """One experiment: group A ~ N(0,1) then group B ~ N(d,1); returns the p-value."""
    rng = np.random.default_rng(seed)
    n = payload.sample_size_per_group
    group_a = payload.sampler(0.0, 1.0, n, rng)
    group_b = payload.sampler(payload.effect_size, 1.0, n, rng)
    outcome = payload.ttest(group_a, group_b, payload.equal_variance)
    if math.isnan(outcome.pvalue):
        raise DegenerateSampleError("Two-sample test returned an undefined p-value")
    return outcome.pvalue


def _run_simulation_chunk(payload: _SimWorkerInput) -> _SimWorkerResult:
    count = len(payload.seeds)
    rejections = 0
    skipped = 0
    pvals = np.full(count, np.nan, dtype=float) if payload.return_details else None

    for idx, seed in enumerate(payload.seeds):
        try:
            pval = _simulate_run(payload, seed)
        except DegenerateSampleError:
            if payload.on_degenerate == "raise":
                raise
            skipped += 1
            continue
        if pval < payload.significance_level:
            rejections += 1
        if pvals is not None:
            pvals[idx] = pval

    return _SimWorkerResult(
        start=payload.start,
        count=count,
        rejections=rejections,
        skipped=skipped,
        pvals=pvals,
    )


@dataclass(frozen=True)
class MonteCarloValidator:
    """Empirical power from repeated simulated two-group experiments.

    Degenerate runs are skipped and excluded from the denominator by default
    (``on_degenerate="skip"``); ``"raise"`` aborts the whole call instead.
    """

    equal_variance: bool = False
    on_degenerate: str = "skip"
    n_jobs: Optional[int] = None
    chunk_size: Optional[int] = None
    ci_alpha: float = 0.05
    sampler: NormalSampler = normal_variates
    ttest: TwoSampleTest = two_sample_ttest

    def validate(
        self,
        effect_size: float,
        sample_size_per_group: int,
        significance_level: float = DEFAULT_ALPHA,
        num_runs: int = DEFAULT_SIMS,
        random_seed: Optional[int] = None,
        *,
        return_details: bool = False,
    ) -> SimulationSummary:
        effect_size = validate_effect_size(effect_size, allow_zero=True)
        n = validate_sample_size(sample_size_per_group)
        validate_probability(significance_level, "significance_level")
        num_runs = _validate_integer(num_runs, "num_runs", minimum=1)
        if random_seed is not None:
            random_seed = _validate_integer(random_seed, "random_seed", minimum=0)
        if self.on_degenerate not in DEGENERATE_POLICIES:
            raise InvalidQueryError(f"on_degenerate must be one of {DEGENERATE_POLICIES}, got {self.on_degenerate!r}")

        base_seed = np.random.SeedSequence(random_seed)
        run_seeds = base_seed.spawn(num_runs)

        eff_chunk = _effective_chunk_size(num_runs, self.chunk_size)
        payloads = [
            _SimWorkerInput(
                start=start,
                seeds=tuple(run_seeds[start:start + count]),
                effect_size=effect_size,
                sample_size_per_group=n,
                significance_level=float(significance_level),
                equal_variance=self.equal_variance,
                on_degenerate=self.on_degenerate,
                return_details=return_details,
                sampler=self.sampler,
                ttest=self.ttest,
            )
            for start, count in _chunk_indices(num_runs, eff_chunk)
        ]
        results = self._execute(payloads)

        rejections = sum(r.rejections for r in results)
        skipped = sum(r.skipped for r in results)
        valid = num_runs - skipped
        if skipped:
            logger.info("Skipped %d of %d degenerate simulation runs", skipped, num_runs)
        if valid == 0:
            raise DegenerateSampleError(f"All {num_runs} simulation runs were degenerate; power is undefined")

        pvals = None
        if return_details:
            pvals = np.full(num_runs, np.nan, dtype=float)
            for r in results:
                pvals[r.start:r.start + r.count] = r.pvals

        power = rejections / valid
        low, high = binomial_wilson_ci(rejections, valid, alpha=self.ci_alpha)
        return SimulationSummary(
            effect_size=effect_size,
            sample_size_per_group=n,
            significance_level=float(significance_level),
            num_runs=num_runs,
            rejections=rejections,
            valid_runs=valid,
            skipped_runs=skipped,
            power=power,
            std_error=math.sqrt(power * (1.0 - power) / valid),
            ci_low=low,
            ci_high=high,
            equal_variance=self.equal_variance,
            seed=int(base_seed.entropy),
            p_values=pvals,
        )

    def _execute(self, payloads: List[_SimWorkerInput]) -> List[_SimWorkerResult]:
        worker_count = min(_resolve_n_jobs(self.n_jobs), len(payloads))
        if worker_count <= 1:
            return [_run_simulation_chunk(p) for p in payloads]

        # Injected collaborators may be closures that cannot be sent to processes
        picklable = self.sampler is normal_variates and self.ttest is two_sample_ttest
        if picklable:
            try:
                with ProcessPoolExecutor(max_workers=worker_count) as executor:
                    logger.debug("Running %d chunks on %d processes", len(payloads), worker_count)
                    return list(executor.map(_run_simulation_chunk, payloads))
            except (PermissionError, NotImplementedError, OSError) as exc:
                # Fallback to thread-based parallelism when processes are not allowed
                logger.warning("Process pool unavailable (%s); falling back to threads", exc)

        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            logger.debug("Running %d chunks on %d threads", len(payloads), worker_count)
            return list(executor.map(_run_simulation_chunk, payloads))


def simulate_power(
    effect_size: float,
    sample_size_per_group: int,
    significance_level: float = DEFAULT_ALPHA,
    num_runs: int = DEFAULT_SIMS,
    random_seed: Optional[int] = None,
    *,
    equal_variance: bool = False,
    on_degenerate: str = "skip",
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    return_details: bool = False,
) -> SimulationSummary:
    """Monte Carlo power estimate for one (effect size, n per group) pair."""
    validator = MonteCarloValidator(
        equal_variance=equal_variance,
        on_degenerate=on_degenerate,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    )
    return validator.validate(
        effect_size,
        sample_size_per_group,
        significance_level,
        num_runs,
        random_seed,
        return_details=return_details,
    )


@dataclass(frozen=True)
class CrossCheck:
    analytic_power: float
    empirical_power: float
    difference: float
    std_error: float
    z_score: float

    def within(self, tolerance_se: float = 3.0) -> bool:
        """True when the empirical estimate is within tolerance_se standard errors."""
        return abs(self.difference) <= tolerance_se * self.std_error


def compare_with_analytic(summary: SimulationSummary, solver: Optional[PowerSolver] = None) -> CrossCheck:
    """Compare a simulation summary with the analytic power for the same design.

    The standard error uses the analytic power as the binomial proportion, so a
    perfect 0/1 empirical estimate still gets a usable scale.
    """
    if summary.effect_size == 0.0:
        analytic = summary.significance_level
    else:
        analytic = (solver or _DEFAULT_SOLVER).solve(PowerQuery(
            effect_size=summary.effect_size,
            sample_size_per_group=summary.sample_size_per_group,
            significance_level=summary.significance_level,
            equal_variance=summary.equal_variance,
        )).power
    se = math.sqrt(max(analytic * (1.0 - analytic), 1e-12) / summary.valid_runs)
    diff = summary.power - analytic
    return CrossCheck(
        analytic_power=analytic,
        empirical_power=summary.power,
        difference=diff,
        std_error=se,
        z_score=diff / se,
    )


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
        description="Power analysis for a two-sample comparison of means (Cohen's d)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--mode", choices=["power", "n-for-power", "effect-for-power", "curve", "validate"],
                   default="power", help="Analysis mode")
    p.add_argument("--effect-size", type=float, default=0.5, help="Standardized mean difference (Cohen's d)")
    p.add_argument("--n-per-group", type=int, default=64, help="Participants per group (mode=power/effect-for-power/validate)")
    p.add_argument("--target-power", type=float, default=0.80, help="Target power (mode=n-for-power/effect-for-power)")
    p.add_argument("--alpha", type=float, default=DEFAULT_ALPHA, help="Two-sided significance level")
    p.add_argument("--variance", choices=["pooled", "welch"], default=None,
                   help="Variance assumption; default is pooled for analytic modes and Welch for validate")
    p.add_argument("--attrition-rate", type=float, default=0.0,
                   help="Expected dropout rate (0-1). Used to inflate enrollment.")

    # Curve mode
    p.add_argument("--curve-effects", type=str, default="0.2,0.5,0.8",
                   help="Comma-separated effect sizes for mode=curve")
    p.add_argument("--curve-start", type=int, default=10)
    p.add_argument("--curve-stop", type=int, default=500)
    p.add_argument("--curve-step", type=int, default=10)

    # Simulation controls
    p.add_argument("--sims", type=int, default=DEFAULT_SIMS, help="Monte Carlo iterations (mode=validate)")
    p.add_argument("--seed", type=int, default=12345, help="Random seed")
    p.add_argument("--n-jobs", type=int, default=1, help="Workers (-1 uses all cores)")
    p.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Simulations per task when parallelized")
    p.add_argument("--on-degenerate", choices=list(DEGENERATE_POLICIES), default="skip",
                   help="Skip degenerate simulated runs or abort the validation")
    p.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logging")
    return p


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


def _print_enrollment(n_per_group: int, attrition_rate: float) -> None:
    if attrition_rate > 0:
        n_enroll = inflate_for_attrition(n_per_group, attrition_rate)
        print(f"  With {attrition_rate:.1%} attrition, enroll per group: {n_enroll} (total {2 * n_enroll})")


def _convergence_note(res: PowerResult) -> None:
    if not res.converged:
        print(f"  WARNING: search did not converge after {res.iterations} iterations; best estimate shown")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    analytic_ev = args.variance != "welch"
    sim_ev = args.variance == "pooled"

    try:
        if args.mode == "power":
            res = solve(args.effect_size, args.n_per_group, args.alpha, equal_variance=analytic_ev)
            print("Power analysis (analytic, two-sample t-test)")
            print(f"  Effect size (d): {res.effect_size:.4f}")
            print(f"  n per group: {res.sample_size_per_group} (total {2 * res.sample_size_per_group})")
            print(f"  alpha={res.significance_level}, variance={'pooled' if analytic_ev else 'welch'}")
            print(f"  Power: {res.power:.3f} ({res.power * 100:.1f}%)")
            _print_enrollment(res.sample_size_per_group, args.attrition_rate)

        elif args.mode == "n-for-power":
            res = solve(args.effect_size, None, args.alpha, args.target_power, equal_variance=analytic_ev)
            print("Sample size for target power (analytic, two-sample t-test)")
            print(f"  Target power: {args.target_power}")
            print(f"  Effect size (d): {res.effect_size:.4f}")
            print(f"  Required n per group: {res.sample_size_per_group} (total {2 * res.sample_size_per_group})")
            print(f"  Achieved power at n: {res.power:.4f}")
            _convergence_note(res)
            _print_enrollment(res.sample_size_per_group, args.attrition_rate)

        elif args.mode == "effect-for-power":
            res = solve(None, args.n_per_group, args.alpha, args.target_power, equal_variance=analytic_ev)
            print("Minimal detectable effect (analytic, two-sample t-test)")
            print(f"  Target power: {args.target_power}")
            print(f"  n per group: {res.sample_size_per_group}")
            print(f"  Minimal detectable d: {res.effect_size:.4f}")
            _convergence_note(res)

        elif args.mode == "curve":
            effects = _parse_csv_numbers(args.curve_effects, float)
            n_vals = np.arange(int(args.curve_start), int(args.curve_stop) + 1, int(args.curve_step))
            df_curve = power_curve(effects, [int(n) for n in n_vals], args.alpha,
                                   equal_variance=analytic_ev, n_jobs=args.n_jobs)
            print("effect_size,n_per_group,power")
            for row in df_curve.itertuples(index=False):
                print(f"{row.effect_size:g},{row.sample_size_per_group},{row.power:.3f}")

        else:  # validate
            summary = simulate_power(
                args.effect_size,
                args.n_per_group,
                args.alpha,
                args.sims,
                args.seed,
                equal_variance=sim_ev,
                on_degenerate=args.on_degenerate,
                n_jobs=args.n_jobs,
                chunk_size=args.chunk_size,
            )
            check = compare_with_analytic(summary, PowerSolver())
            print("Power analysis (simulation cross-check)")
            print(f"  Effect size (d): {summary.effect_size}")
            print(f"  n per group: {summary.sample_size_per_group}")
            print(f"  alpha={summary.significance_level}, sims={summary.num_runs}, seed={summary.seed}, "
                  f"test={'pooled' if sim_ev else 'welch'}, n_jobs={args.n_jobs}")
            if summary.skipped_runs:
                print(f"  Skipped degenerate runs: {summary.skipped_runs}")
            print(f"  Empirical power: {summary.power:.3f}")
            print(f"  95% CI (Wilson): [{summary.ci_low:.3f}, {summary.ci_high:.3f}]")
            print(f"  Analytic power: {check.analytic_power:.3f}")
            print(f"  Difference: {check.difference:+.4f} ({check.z_score:+.2f} SE)")
            print(f"  Agreement within 3 SE: {'yes' if check.within(3.0) else 'NO'}")

    except PowerAnalysisError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
