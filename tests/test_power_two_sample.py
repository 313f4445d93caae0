"""
Tests for the analytic solver and power curves in power_two_sample.py.

Checks:
- Known textbook values and agreement with statsmodels' TTestIndPower
- Monotonicity in effect size and sample size
- Round-trip between sample-size and power solving (ceiling rounding)
- Query validation and soft convergence failures
- Grid completeness and ordering of power curves
"""

import math

import numpy as np
import pytest
from statsmodels.stats.power import TTestIndPower

import two_sample.power_two_sample as pts


class TestKnownValues:
    """Cross-validation against known benchmarks."""

    def test_textbook_sample_size(self):
        """d=0.5, alpha=0.05, power=0.80 -> n=64 per group."""
        res = pts.solve(effect_size=0.5, power=0.8, significance_level=0.05)
        assert res.sample_size_per_group == 64
        assert res.solved_for == "sample_size_per_group"
        assert res.converged
        assert res.target_power == 0.8
        assert res.power >= 0.8

    def test_power_at_64_per_group(self):
        pw = pts.analytic_power(0.5, 64, 0.05)
        assert pw == pytest.approx(0.8015, abs=1e-3)

    @pytest.mark.parametrize("d,n", [(0.2, 50), (0.5, 20), (0.5, 64), (0.8, 26), (1.2, 10)])
    def test_power_matches_statsmodels(self, d, n):
        expected = TTestIndPower().power(effect_size=d, nobs1=n, alpha=0.05, ratio=1.0, alternative="two-sided")
        assert pts.analytic_power(d, n, 0.05) == pytest.approx(expected, abs=1e-6)

    @pytest.mark.parametrize("d,target", [(0.2, 0.8), (0.5, 0.9), (0.8, 0.8), (0.3, 0.95)])
    def test_sample_size_matches_statsmodels_ceiling(self, d, target):
        sm_n = TTestIndPower().solve_power(effect_size=d, alpha=0.05, power=target, alternative="two-sided")
        n, _ = pts.solve_sample_size(d, target, 0.05)
        assert n == math.ceil(sm_n)

    def test_minimal_detectable_effect(self):
        """n=50, power=0.80 should give d ~ 0.566."""
        res = pts.solve(sample_size_per_group=50, power=0.8)
        assert res.solved_for == "effect_size"
        assert res.effect_size == pytest.approx(0.566, abs=0.002)
        assert res.power == pytest.approx(0.8, abs=1e-5)

    def test_negative_effect_reported_as_magnitude(self):
        pos = pts.solve(effect_size=0.4, sample_size_per_group=30)
        neg = pts.solve(effect_size=-0.4, sample_size_per_group=30)
        assert neg.effect_size == 0.4
        assert neg.power == pos.power

    def test_target_met_at_minimum_size(self):
        """A huge effect reaches modest power with the smallest allowed group."""
        res = pts.solve(effect_size=50.0, power=0.6)
        assert res.sample_size_per_group == 2
        assert res.converged

    def test_very_large_noncentrality_saturates(self):
        assert pts.analytic_power(3.0, 500, 0.05) == pytest.approx(1.0)


class TestMonotonicity:
    """Power grows with |d| and with n."""

    def test_power_increasing_in_effect_size(self):
        effects = np.round(np.arange(0.1, 3.0001, 0.1), 10)
        powers = [pts.analytic_power(float(d), 10, 0.05) for d in effects]
        assert all(a < b for a, b in zip(powers, powers[1:]))

    def test_power_increasing_in_sample_size(self):
        powers = [pts.analytic_power(0.5, n, 0.05) for n in range(2, 201)]
        assert all(a < b for a, b in zip(powers, powers[1:]))

    def test_lower_alpha_requires_more_subjects(self):
        n_05, _ = pts.solve_sample_size(0.5, 0.8, 0.05)
        n_01, _ = pts.solve_sample_size(0.5, 0.8, 0.01)
        assert n_01 > n_05


class TestRoundTrip:
    """Solving for n then for power returns at least the requested power."""

    @pytest.mark.parametrize("d,target", [
        (0.2, 0.80), (0.5, 0.80), (0.8, 0.80),
        (0.3, 0.90), (0.5, 0.95), (1.5, 0.70),
    ])
    def test_ceiling_is_minimal(self, d, target):
        n, achieved = pts.solve_sample_size(d, target, 0.05)
        assert pts.analytic_power(d, n, 0.05) >= target
        assert achieved >= target
        if n > 2:
            assert pts.analytic_power(d, n - 1, 0.05) < target

    def test_effect_round_trip(self):
        d = pts.solve_effect_size(80, 0.85, 0.05)
        assert pts.analytic_power(d, 80, 0.05) == pytest.approx(0.85, abs=1e-5)

    def test_welch_flag_matches_pooled_for_equal_groups(self):
        """With equal unit variances the Welch-Satterthwaite df equals 2n - 2."""
        assert pts.degrees_of_freedom(30, equal_variance=False) == pytest.approx(58.0)
        pooled = pts.analytic_power(0.5, 30, 0.05, equal_variance=True)
        welch = pts.analytic_power(0.5, 30, 0.05, equal_variance=False)
        assert welch == pytest.approx(pooled, abs=1e-12)


class TestQueryValidation:
    """Malformed queries raise InvalidQueryError."""

    def test_zero_effect_solving_for_power(self):
        with pytest.raises(pts.InvalidQueryError):
            pts.solve(effect_size=0.0, sample_size_per_group=50)

    def test_zero_effect_solving_for_sample_size(self):
        with pytest.raises(pts.InvalidQueryError, match="nonzero"):
            pts.solve(effect_size=0.0, power=0.8)

    def test_all_fields_given(self):
        with pytest.raises(pts.InvalidQueryError, match="Exactly one"):
            pts.solve(effect_size=0.5, sample_size_per_group=50, power=0.8)

    def test_two_fields_missing(self):
        with pytest.raises(pts.InvalidQueryError, match="Exactly one"):
            pts.solve(effect_size=0.5)

    @pytest.mark.parametrize("alpha", [0.0, 1.0, -0.1, 1.5, float("nan")])
    def test_invalid_significance_level(self, alpha):
        with pytest.raises(pts.InvalidQueryError, match="significance_level"):
            pts.solve(effect_size=0.5, sample_size_per_group=50, significance_level=alpha)

    @pytest.mark.parametrize("power", [0.0, 1.0, 1.2])
    def test_invalid_power(self, power):
        with pytest.raises(pts.InvalidQueryError, match="power"):
            pts.solve(effect_size=0.5, power=power)

    @pytest.mark.parametrize("n", [1, 0, -5, 10.5])
    def test_invalid_sample_size(self, n):
        with pytest.raises(pts.InvalidQueryError, match="sample_size_per_group"):
            pts.solve(effect_size=0.5, sample_size_per_group=n)

    def test_power_below_alpha_when_solving_effect(self):
        with pytest.raises(pts.InvalidQueryError, match="exceed"):
            pts.solve(sample_size_per_group=50, power=0.04, significance_level=0.05)

    def test_invalid_query_is_value_error(self):
        """Callers catching ValueError keep working."""
        with pytest.raises(ValueError):
            pts.PowerSolver().solve(pts.PowerQuery(effect_size=float("inf"), sample_size_per_group=20))


class TestConvergence:
    """Non-convergence is reported as data, not raised."""

    def test_iteration_cap_sets_flag(self):
        solver = pts.PowerSolver(max_iter=1)
        res = solver.solve(pts.PowerQuery(effect_size=0.5, power=0.8))
        assert res.converged is False
        assert res.iterations == 1
        # Conservative end of the bracket still meets the target
        assert res.power >= 0.8
        with pytest.raises(pts.ConvergenceFailure):
            res.raise_for_convergence()

    def test_unreachable_within_cap(self):
        solver = pts.PowerSolver(n_max=100)
        res = solver.solve(pts.PowerQuery(effect_size=0.05, power=0.9))
        assert res.converged is False
        assert res.sample_size_per_group == 100
        assert res.power < 0.9

    def test_converged_result_passes_through(self):
        res = pts.solve(effect_size=0.5, power=0.8)
        assert res.raise_for_convergence() is res


class TestPowerCurve:
    """Grid completeness and ordering."""

    def test_grid_completeness(self):
        effects = [0.2, 0.5, 0.8]
        ns = list(range(10, 501, 10))
        points = pts.PowerCurveGenerator().generate(effects, ns, 0.05)
        assert len(points) == 150
        assert all(0.0 < p.power <= 1.0 for p in points)
        # Small and medium effects never saturate on this grid
        assert all(p.power < 1.0 for p in points[:100])
        # Effect size outer, sample size inner
        assert [p.effect_size for p in points[:50]] == [0.2] * 50
        assert [p.sample_size_per_group for p in points[:50]] == ns
        assert [p.effect_size for p in points[100:]] == [0.8] * 50

    def test_saturated_cells_are_high_noncentrality(self):
        """Power rounds to exactly 1.0 only for d=0.8 with n >= 330."""
        points = pts.PowerCurveGenerator().generate([0.2, 0.5, 0.8], range(10, 501, 10), 0.05)
        saturated = [(p.effect_size, p.sample_size_per_group) for p in points if p.power == 1.0]
        assert saturated == [(0.8, n) for n in range(330, 501, 10)]
        assert all(pts.noncentrality(d, n) > 10.0 for d, n in saturated)

    def test_curve_points_match_solver(self):
        points = pts.PowerCurveGenerator().generate([0.5], [64])
        assert points[0].power == pytest.approx(pts.analytic_power(0.5, 64))

    def test_threaded_generation_preserves_order(self):
        effects = [0.8, 0.2, 0.5]
        ns = [100, 20, 60]
        serial = pts.PowerCurveGenerator().generate(effects, ns)
        threaded = pts.PowerCurveGenerator(n_jobs=4).generate(effects, ns)
        assert serial == threaded

    def test_zero_effect_propagates(self):
        with pytest.raises(pts.InvalidQueryError):
            pts.PowerCurveGenerator().generate([0.5, 0.0], [10, 20])

    def test_empty_grid_yields_no_points(self):
        assert pts.PowerCurveGenerator().generate([], [10, 20]) == []
        assert pts.PowerCurveGenerator().generate([0.5], []) == []
        frame = pts.power_curve([], [10])
        assert frame.empty
        assert list(frame.columns) == ["effect_size", "sample_size_per_group", "power", "converged"]

    def test_power_curve_frame(self):
        df = pts.power_curve([0.2, 0.5], [10, 20, 30], 0.05)
        assert list(df.columns) == ["effect_size", "sample_size_per_group", "power", "converged"]
        assert len(df) == 6
        grouped = df.groupby("effect_size", sort=False)["power"].apply(list)
        assert list(grouped.index) == [0.2, 0.5]
        assert all(a < b for a, b in zip(grouped[0.5], grouped[0.5][1:]))


class TestHelpers:

    def test_inflate_for_attrition(self):
        assert pts.inflate_for_attrition(64, 0.2) == 80
        assert pts.inflate_for_attrition(64, 0.0) == 64
        with pytest.raises(pts.InvalidQueryError):
            pts.inflate_for_attrition(64, 1.0)

    def test_wilson_interval_brackets_estimate(self):
        low, high = pts.binomial_wilson_ci(400, 500, alpha=0.05)
        assert low < 0.8 < high
        assert high - low == pytest.approx(0.07, abs=0.01)

    def test_wilson_interval_empty(self):
        low, high = pts.binomial_wilson_ci(0, 0)
        assert math.isnan(low) and math.isnan(high)


class TestCli:
    """Command-line entry point prints reports and returns an exit status."""

    def test_n_for_power(self, capsys):
        assert pts.main(["--mode", "n-for-power", "--effect-size", "0.5", "--target-power", "0.8"]) == 0
        out = capsys.readouterr().out
        assert "Required n per group: 64 (total 128)" in out

    def test_curve_csv(self, capsys):
        argv = ["--mode", "curve", "--curve-effects", "0.2,0.5", "--curve-start", "10",
                "--curve-stop", "30", "--curve-step", "10"]
        assert pts.main(argv) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert lines[0] == "effect_size,n_per_group,power"
        assert len(lines) == 1 + 2 * 3
        assert lines[1].startswith("0.2,10,")

    def test_attrition_inflation(self, capsys):
        argv = ["--mode", "power", "--effect-size", "0.5", "--n-per-group", "64", "--attrition-rate", "0.2"]
        assert pts.main(argv) == 0
        assert "enroll per group: 80" in capsys.readouterr().out

    def test_invalid_query_exit_status(self, capsys):
        assert pts.main(["--mode", "power", "--effect-size", "0", "--n-per-group", "20"]) == 1
        assert capsys.readouterr().err.startswith("Error: ")

    def test_validate_mode(self, capsys):
        argv = ["--mode", "validate", "--effect-size", "0.5", "--n-per-group", "64", "--sims", "500",
                "--seed", "123456"]
        assert pts.main(argv) == 0
        out = capsys.readouterr().out
        assert "Empirical power:" in out
        assert "Analytic power: 0.801" in out
