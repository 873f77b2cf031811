import pandas as pd

import cati_rings.power_ring_cati as prc
import cati_rings.ring_simulation as rs


def _config(seed: int = 2024) -> rs.RingStudyConfig:
    return rs.RingStudyConfig(n_rings=240, seed=seed)


def test_simulate_rings_parallel_matches_serial():
    config = _config()
    serial = rs.simulate_rings(config, n_jobs=1)
    parallel = rs.simulate_rings(config, n_jobs=3, chunk_size=37)
    pd.testing.assert_frame_equal(serial.cases, parallel.cases)
    pd.testing.assert_frame_equal(serial.rings, parallel.rings)
    assert serial.aborted == parallel.aborted


def test_simulate_rings_independent_of_chunk_size():
    config = _config(seed=5)
    a = rs.summarize_rings(rs.simulate_rings(config, chunk_size=1))
    b = rs.summarize_rings(rs.simulate_rings(config, chunk_size=500))
    pd.testing.assert_frame_equal(a, b)


def test_replicates_parallel_match_serial():
    summary = rs.summarize_rings(rs.simulate_rings(_config()))
    serial = prc.run_replicates(summary, 60, sims=24, analysis="negbin", seed=31, n_jobs=1)
    parallel = prc.run_replicates(summary, 60, sims=24, analysis="negbin", seed=31, n_jobs=3, chunk_size=5)
    pd.testing.assert_frame_equal(serial, parallel)


def test_simulate_power_parallel_reproducible():
    summary = rs.summarize_rings(rs.simulate_rings(_config(seed=99)))
    est1 = prc.simulate_power(summary, 80, sims=30, seed=7, n_jobs=2, chunk_size=8)
    est2 = prc.simulate_power(summary, 80, sims=30, seed=7, n_jobs=2, chunk_size=8)
    assert est1.hits == est2.hits
    assert est1.power == est2.power
    assert est1.n_failed == est2.n_failed


def test_power_curve_parallel_matches_serial():
    summary = rs.summarize_rings(rs.simulate_rings(_config(seed=12)))
    serial = prc.power_curve(summary, [40, 80], sims=16, analysis="negbin", seed=3)
    parallel = prc.power_curve(summary, [40, 80], sims=16, analysis="negbin", seed=3, n_jobs=2, chunk_size=4)
    pd.testing.assert_frame_equal(serial, parallel)
