"""
Tests for the pilot-study estimator, replicate runner and power estimation.

Most estimator tests run on a synthetic ring summary with a known delay effect
(log rate ratio per day of delay), so the expected direction of every result
is fixed in advance.
"""

import math

import numpy as np
import pandas as pd
import pytest

import cati_rings.power_ring_cati as prc
import cati_rings.ring_simulation as rs


def _synthetic_summary(n: int = 600, slope: float = 0.15, dispersion: float = 2.0, seed: int = 3) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    delay = rng.integers(0, 11, size=n).astype(float)
    population = rng.gamma(11.0, 45.0, size=n)
    capacity = rng.choice(["1", "2", "3"], size=n)
    mu = np.exp(-3.0 + slope * delay + np.log(population))
    counts = rng.negative_binomial(dispersion, dispersion / (dispersion + mu))
    return pd.DataFrame({
        "ring_id": np.arange(n),
        "case_count": counts.astype(int),
        "population": population,
        "log_population": np.log(population),
        "intervention_delay": delay,
        "surveillance_capacity": pd.Series(capacity).astype(rs.CAPACITY_DTYPE),
    })


@pytest.fixture(scope="module")
def synthetic_summary() -> pd.DataFrame:
    return _synthetic_summary()


@pytest.fixture(scope="module")
def simulated_summary() -> pd.DataFrame:
    config = rs.RingStudyConfig(n_rings=400, seed=11)
    return rs.summarize_rings(rs.simulate_rings(config))


class TestPilotEstimator:
    @pytest.mark.parametrize("analysis", prc.ANALYSIS_METHODS)
    def test_recovers_known_delay_effect(self, synthetic_summary, analysis):
        fit = prc.fit_delay_model(synthetic_summary, analysis=analysis)
        assert fit.converged
        assert fit.method in prc.ANALYSIS_METHODS
        assert abs(fit.delay_coef - 0.15) < 0.08
        assert fit.delay_pvalue < 1e-3
        assert fit.delay_ci_low < fit.delay_coef < fit.delay_ci_high
        assert fit.intercept_ci_low < fit.intercept < fit.intercept_ci_high
        assert fit.dispersion_ratio > 0
        assert fit.is_significant(0.05)

    def test_pilot_fit_contract_on_simulated_rings(self, simulated_summary):
        fits = []
        for seed in range(5):
            rng = np.random.default_rng(seed)
            try:
                fits.append(prc.run_pilot_study(simulated_summary, 80, rng))
            except rs.EstimationNonConvergence:
                continue
        assert fits, "no pilot fit converged on simulated rings"
        for fit in fits:
            assert fit.converged
            assert 0.0 <= fit.delay_pvalue <= 1.0
            assert 0.0 <= fit.intercept_pvalue <= 1.0
            assert fit.delay_ci_low <= fit.delay_coef <= fit.delay_ci_high
            assert math.isfinite(fit.dispersion_ratio) and fit.dispersion_ratio > 0

    def test_sample_is_drawn_without_replacement(self, synthetic_summary):
        sample = prc.draw_pilot_sample(synthetic_summary, 150, np.random.default_rng(0))
        assert len(sample) == 150
        assert sample["ring_id"].is_unique

    def test_sample_size_exceeding_ring_count_rejected(self, synthetic_summary):
        rng = np.random.default_rng(0)
        with pytest.raises(rs.ConfigurationError):
            prc.run_pilot_study(synthetic_summary, len(synthetic_summary) + 1, rng)
        with pytest.raises(rs.ConfigurationError):
            prc.run_replicates(synthetic_summary, len(synthetic_summary) + 1, sims=5)
        with pytest.raises(rs.ConfigurationError):
            prc.draw_pilot_sample(synthetic_summary, 1, rng)

    def test_unknown_analysis_rejected(self, synthetic_summary):
        with pytest.raises(rs.ConfigurationError):
            prc.fit_delay_model(synthetic_summary, analysis="glmm")

    def test_failed_fit_is_never_significant(self):
        fit = prc.PilotFit.failed("gee")
        assert not fit.converged
        assert not fit.is_significant(0.05)
        assert math.isnan(fit.delay_coef)


class TestDegenerateSamples:
    """Samples where the delay slope is not identifiable never count as hits."""

    @pytest.mark.parametrize("analysis", prc.ANALYSIS_METHODS)
    def test_constant_delay_rejected(self, synthetic_summary, analysis):
        sample = synthetic_summary.head(60).assign(intervention_delay=3.0)
        with pytest.raises(rs.EstimationNonConvergence):
            prc.fit_delay_model(sample, analysis=analysis)

    @pytest.mark.parametrize("analysis", prc.ANALYSIS_METHODS)
    def test_constant_counts_rejected(self, synthetic_summary, analysis):
        sample = synthetic_summary.head(60).assign(case_count=1)
        with pytest.raises(rs.EstimationNonConvergence):
            prc.fit_delay_model(sample, analysis=analysis)

    def test_replicates_on_constant_delay_are_failed(self, synthetic_summary):
        summary = synthetic_summary.assign(intervention_delay=3.0)
        replicates = prc.run_replicates(summary, 50, sims=6, seed=4)
        assert not replicates["converged"].any()
        assert replicates["delay_pvalue"].isna().all()
        est = prc.summarize_replicates(replicates)
        assert est.hits == 0
        assert est.n_failed == 6

    @pytest.mark.parametrize("overrides", [
        {"implementation_delay": rs.ImplementationDelay(3, 3)},
        {"offspring": rs.OffspringSpec(mean=0.0)},
    ])
    def test_degenerate_ring_populations_have_zero_power(self, overrides):
        config = rs.RingStudyConfig(n_rings=200, seed=1, **overrides)
        summary = rs.summarize_rings(rs.simulate_rings(config))
        with pytest.warns(RuntimeWarning, match="counted as non-significant"):
            est = prc.simulate_power(summary, 50, sims=5)
        assert est.power == 0.0
        assert est.n_failed == 5
        assert math.isnan(est.avg_delay_coef)

    def test_valid_fit_has_finite_outputs(self, synthetic_summary):
        fit = prc.fit_delay_model(synthetic_summary.head(120))
        for value in (fit.intercept, fit.dispersion_ratio, fit.intercept_ci_low, fit.intercept_ci_high,
                      fit.delay_ci_low, fit.delay_ci_high):
            assert math.isfinite(value)

    def test_significance_rule_shared_with_summary(self):
        fits = [
            prc.PilotFit(0.0, 0.1, 0.5, 0.01, 1.0, -1.0, 1.0, 0.0, 0.2, True, "gee"),
            prc.PilotFit(0.0, 0.1, 0.5, 0.20, 1.0, -1.0, 1.0, -0.1, 0.3, True, "gee"),
            prc.PilotFit.failed("gee"),
        ]
        replicates = pd.DataFrame([{"sample_size": 40, "replicate": i, **vars(f)} for i, f in enumerate(fits)])
        est = prc.summarize_replicates(replicates, alpha=0.05)
        assert est.hits == sum(f.is_significant(0.05) for f in fits) == 1


class TestWilsonCI:
    def test_bounds(self):
        low, high = prc.binomial_wilson_ci(0, 50)
        assert low == 0.0 and 0.0 < high < 0.1
        low, high = prc.binomial_wilson_ci(50, 50)
        assert high == 1.0 and 0.9 < low < 1.0

    def test_symmetric_at_half(self):
        low, high = prc.binomial_wilson_ci(50, 100)
        assert 0.5 - low == pytest.approx(high - 0.5)
        assert low < 0.5 < high

    def test_empty_is_nan(self):
        low, high = prc.binomial_wilson_ci(0, 0)
        assert math.isnan(low) and math.isnan(high)


class TestPowerEstimation:
    def test_failed_fits_count_as_non_significant(self):
        nan = float("nan")
        replicates = pd.DataFrame({
            "sample_size": [80, 80, 80, 80],
            "replicate": [0, 1, 2, 3],
            "delay_coef": [0.10, 0.12, nan, 0.01],
            "delay_pvalue": [0.001, 0.02, nan, 0.40],
            "converged": [True, True, False, True],
        })
        est = prc.summarize_replicates(replicates, alpha=0.05)
        assert est.sims == 4
        assert est.hits == 2
        assert est.n_failed == 1
        assert est.power == pytest.approx(0.5)
        assert est.avg_delay_coef == pytest.approx((0.10 + 0.12 + 0.01) / 3)
        assert est.ci_low <= est.power <= est.ci_high

    def test_failed_fits_warn(self, monkeypatch, synthetic_summary):
        def always_fail(sample, analysis="gee"):
            raise rs.EstimationNonConvergence("forced")

        monkeypatch.setattr(prc, "fit_delay_model", always_fail)
        with pytest.warns(RuntimeWarning, match="counted as non-significant"):
            est = prc.simulate_power(synthetic_summary, 40, sims=6)
        assert est.power == 0.0
        assert est.n_failed == 6
        assert math.isnan(est.avg_delay_coef)

    def test_power_bounds_and_replicate_rows(self, synthetic_summary):
        est, replicates = prc.simulate_distribution(
            synthetic_summary, 30, sims=40, analysis="negbin", seed=21
        )
        assert 0.0 <= est.power <= 1.0
        assert est.ci_low <= est.power <= est.ci_high
        assert est.sims == 40
        assert len(replicates) == 40
        assert replicates["replicate"].tolist() == list(range(40))
        assert (replicates["sample_size"] == 30).all()
        for col in ("intercept", "delay_coef", "delay_pvalue", "dispersion_ratio", "converged", "method"):
            assert col in replicates.columns

    def test_reproducible_with_same_seed(self, synthetic_summary):
        _, a = prc.simulate_distribution(synthetic_summary, 30, sims=30, analysis="negbin", seed=8)
        _, b = prc.simulate_distribution(synthetic_summary, 30, sims=30, analysis="negbin", seed=8)
        pd.testing.assert_frame_equal(a, b)

    def test_power_increases_with_sample_size(self):
        """Power at 50..150 rings grows in expectation for a modest true delay effect."""
        summary = _synthetic_summary(slope=0.04, seed=5)
        sims = 80
        df = prc.power_curve(summary, [50, 75, 100, 125, 150], sims=sims, seed=13)
        assert list(df.columns) == list(prc.PowerEstimate.__dataclass_fields__)
        assert df["sample_size"].tolist() == [50, 75, 100, 125, 150]
        assert ((df["power"] >= 0.0) & (df["power"] <= 1.0)).all()
        assert df["power"].iloc[-1] > df["power"].iloc[0]
        for prev, curr in zip(df["power"].iloc[:-1], df["power"].iloc[1:]):
            mc_se = math.sqrt(max(prev * (1 - prev), curr * (1 - curr)) / sims)
            assert curr >= prev - (3.5 * mc_se + 1e-3)

    def test_find_n_for_power_meets_target(self, synthetic_summary):
        target, tol, sims = 0.80, 0.02, 40
        n_req, pw = prc.find_n_for_power(
            target, synthetic_summary, sims=sims, n_min=10, n_max=120, tol=tol, analysis="negbin", seed=17
        )
        assert 10 <= n_req <= 120
        assert pw >= target - tol
        replay = prc.simulate_power(synthetic_summary, n_req, sims, analysis="negbin", seed=17)
        assert replay.power == pw

    def test_find_n_for_power_unattainable(self):
        summary = _synthetic_summary(n=200, slope=0.0, seed=9)
        with pytest.raises(RuntimeError, match="Unable to achieve target power"):
            prc.find_n_for_power(0.99, summary, sims=20, n_min=10, n_max=40, analysis="negbin")

    def test_find_n_for_power_invalid_bounds(self, synthetic_summary):
        with pytest.raises(rs.ConfigurationError):
            prc.find_n_for_power(0.8, synthetic_summary, sims=10, n_min=500, n_max=100)


class TestCli:
    def test_parse_csv_numbers(self):
        assert prc._parse_csv_numbers("50, 75,,100", cast=int) == [50, 75, 100]
        assert prc._parse_csv_numbers(None) is None

    def test_parser_defaults(self):
        args = prc._build_parser().parse_args([])
        assert args.mode == "power"
        assert args.analysis == "gee"
        assert args.sample_size == 80

    def test_config_overrides(self, tmp_path):
        path = tmp_path / "study.json"
        path.write_text('{"n_rings": 300, "offspring": {"mean": 1.5, "dispersion": 0.7}}', encoding="utf-8")
        args = prc._build_parser().parse_args([
            "--config", str(path), "--dispersion", "inf", "--max-implementation-delay", "6", "--seed", "4",
        ])
        config = prc._resolve_config(args)
        assert config.n_rings == 300
        assert config.offspring.mean == 1.5
        assert config.offspring.kind is rs.OffspringKind.POISSON
        assert config.implementation_delay.high == 6
        assert config.seed == 4

    def test_main_power_mode(self, capsys):
        prc.main([
            "--mode", "power", "--n-rings", "120", "--sample-size", "40", "--sims", "8",
            "--analysis", "negbin", "--seed", "3",
        ])
        out = capsys.readouterr().out
        assert "RING SIMULATION" in out
        assert "Estimated power" in out

    def test_main_rejects_oversized_sample(self, capsys):
        with pytest.raises(SystemExit) as exc:
            prc.main(["--n-rings", "60", "--sample-size", "100", "--sims", "4", "--seed", "3"])
        assert exc.value.code == 1
        assert "Error:" in capsys.readouterr().err

    def test_main_rejects_invalid_alpha(self):
        with pytest.raises(SystemExit):
            prc.main(["--alpha", "1.5"])
