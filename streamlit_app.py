"""
Streamlit app: power analysis for a ring-level CATI intervention-delay study.

Simulate a population of rings (branching process with susceptible depletion
and a phased intervention effect), then estimate the power of a pilot study
that regresses ring case counts on the delay from index report to
intervention start. This is a thin UI over:
- cati_rings.ring_simulation
- cati_rings.power_ring_cati
"""

from __future__ import annotations

import time
from typing import Optional

import streamlit as st

from cati_rings.ring_simulation import (
    EffectSchedule,
    ImplementationDelay,
    OffspringSpec,
    PopulationSpec,
    RingStudyConfig,
    SerialInterval,
    simulate_rings,
    summarize_rings,
)
from cati_rings.power_ring_cati import (
    ANALYSIS_METHODS,
    find_n_for_power,
    power_curve,
    simulate_power,
)


st.set_page_config(page_title="CATI Ring Power", layout="wide")
st.title("Ring-Level CATI Power Analysis")
st.caption("Simulated rings, phased intervention effect, and Monte Carlo power for the delay coefficient")
st.warning(
    "Default epidemiological constants are illustrative placeholders. "
    "Replace them with study-specific values before using the results for planning."
)

HELP = {
    "mean_offspring": (
        "Mean number of secondary cases per case (R) in a fully susceptible ring. "
        "The realized mean is scaled by the remaining susceptible fraction."
    ),
    "dispersion": (
        "Negative-binomial dispersion k of the offspring distribution. Lower k means more "
        "superspreading. Set to 0 to use the Poisson limit."
    ),
    "sims": (
        "Monte Carlo replicates per sample size. Monte Carlo SE of power p is about sqrt(p·(1−p)/sims)."
    ),
    "analysis": (
        "gee: NB GEE with exchangeable correlation within surveillance-capacity groups (default).\n"
        "negbin: NB maximum likelihood with surveillance-capacity intercepts.\n"
        "Failed fits count as non-significant and are reported separately."
    ),
}

# Sidebar: ring simulation settings
st.sidebar.header("Ring simulation")
n_rings = st.sidebar.number_input("Rings to simulate", min_value=50, max_value=50000, value=2000, step=50)
seed = st.sidebar.number_input("Random seed", min_value=0, max_value=10**9, value=12345, step=1)
n_jobs = st.sidebar.number_input("Worker processes", min_value=1, max_value=64, value=1, step=1)

col1, col2, col3 = st.columns(3)
with col1:
    mean_offspring = st.number_input("Mean offspring (R)", min_value=0.0, max_value=10.0, value=2.0, step=0.1,
                                     help=HELP["mean_offspring"])
    dispersion = st.number_input("Dispersion (k)", min_value=0.0, max_value=100.0, value=1.5, step=0.1,
                                 help=HELP["dispersion"])
    si_mean = st.number_input("Serial interval mean (days)", min_value=0.5, max_value=30.0, value=5.0, step=0.5)
    si_sd = st.number_input("Serial interval SD (days)", min_value=0.1, max_value=20.0, value=2.0, step=0.1)
with col2:
    pop_mean = st.number_input("Ring population mean", min_value=20.0, max_value=100000.0, value=500.0, step=50.0)
    pop_sd = st.number_input("Ring population SD", min_value=1.0, max_value=50000.0, value=150.0, step=10.0)
    delay_high = st.number_input("Max implementation delay (days)", min_value=0, max_value=60, value=10, step=1)
    follow_up = st.number_input("Follow-up window (days)", min_value=1.0, max_value=365.0, value=30.0, step=1.0)
with col3:
    coverage = st.number_input("Coverage", min_value=0.0, max_value=1.0, value=0.8, step=0.05, format="%.2f")
    abx = st.number_input("Antibiotic efficacy", min_value=0.0, max_value=1.0, value=0.66, step=0.01, format="%.2f")
    wash = st.number_input("WASH efficacy", min_value=0.0, max_value=1.0, value=0.47, step=0.01, format="%.2f")
    vax = st.number_input("Vaccine efficacy", min_value=0.0, max_value=1.0, value=0.58, step=0.01, format="%.2f")

if st.button("Simulate rings", type="primary"):
    error_msg: Optional[str] = None
    start = time.time()
    try:
        config = RingStudyConfig(
            offspring=OffspringSpec(mean=float(mean_offspring),
                                    dispersion=float(dispersion) if dispersion > 0 else None),
            serial_interval=SerialInterval(mean=float(si_mean), sd=float(si_sd)),
            population=PopulationSpec(mean=float(pop_mean), sd=float(pop_sd)),
            implementation_delay=ImplementationDelay(low=0, high=int(delay_high)),
            schedule=EffectSchedule.from_efficacies(float(abx), float(wash), float(vax), float(coverage)),
            follow_up_duration=float(follow_up),
            coverage=float(coverage),
            n_rings=int(n_rings),
            seed=int(seed),
        )
        with st.spinner("Simulating rings…"):
            batch = simulate_rings(config, n_jobs=int(n_jobs))
            st.session_state["summary"] = summarize_rings(batch)
            st.session_state["batch"] = batch
    except ValueError as e:
        error_msg = str(e)
    if error_msg:
        st.error(f"Error: {error_msg}")
        st.stop()
    st.caption(f"Runtime: {time.time() - start:.2f}s")

summary = st.session_state.get("summary")
batch = st.session_state.get("batch")
if summary is not None:
    st.subheader("Ring summary")
    c1, c2, c3 = st.columns(3)
    c1.metric("Rings", f"{len(summary)}")
    c2.metric("Retained cases", f"{len(batch.cases)}")
    c3.metric("Aborted at safety cap", f"{len(batch.aborted)}")
    st.dataframe(summary, use_container_width=True)
    with st.expander("Case table"):
        st.dataframe(batch.cases, use_container_width=True)

    st.divider()
    st.subheader("Power")
    p1, p2, p3 = st.columns(3)
    with p1:
        alpha = st.number_input("Alpha (two-sided)", min_value=0.001, max_value=0.2, value=0.05, step=0.005,
                                format="%.3f")
    with p2:
        sims = st.number_input("Replicates", min_value=50, max_value=20000, value=500, step=50, help=HELP["sims"])
    with p3:
        analysis = st.selectbox("Analysis method", options=list(ANALYSIS_METHODS), index=0, help=HELP["analysis"])

    mode = st.radio("Mode", ("Power at fixed sample size", "Power across sample sizes", "Find sample size"),
                    horizontal=True)
    try:
        if mode == "Power at fixed sample size":
            sample_size = st.number_input("Sample size (rings)", min_value=2, max_value=len(summary),
                                          value=min(80, len(summary)), step=5)
            if st.button("Estimate power"):
                with st.spinner("Running replicates…"):
                    est = simulate_power(summary, int(sample_size), int(sims), alpha=float(alpha),
                                         analysis=analysis, seed=int(seed), n_jobs=int(n_jobs))
                st.metric("Estimated power", f"{est.power:.3f}")
                st.write(
                    f"- 95% CI (Wilson): [{est.ci_low:.3f}, {est.ci_high:.3f}]\n"
                    f"- Significant replicates: {est.hits}/{est.sims}\n"
                    f"- Failed fits (counted non-significant): {est.n_failed}\n"
                    f"- Avg delay coefficient: {est.avg_delay_coef:.4f}"
                )
        elif mode == "Power across sample sizes":
            sizes_text = st.text_input("Candidate sample sizes", value="50,75,100,125,150")
            if st.button("Estimate power curve"):
                sizes = [int(s) for s in sizes_text.split(",") if s.strip()]
                with st.spinner("Running replicates across sample sizes…"):
                    df_curve = power_curve(summary, sizes, int(sims), alpha=float(alpha), analysis=analysis,
                                           seed=int(seed), n_jobs=int(n_jobs))
                st.dataframe(df_curve, use_container_width=True)
        else:
            target_power = st.number_input("Target power", min_value=0.5, max_value=0.99, value=0.8, step=0.01,
                                           format="%.2f")
            if st.button("Find sample size"):
                with st.spinner("Searching sample sizes…"):
                    n_req, pw = find_n_for_power(float(target_power), summary, int(sims), alpha=float(alpha),
                                                 analysis=analysis, seed=int(seed), n_jobs=int(n_jobs))
                st.metric("Required sample size (rings)", str(n_req))
                st.write(f"- Achieved power at n: {pw:.3f}")
    except (ValueError, RuntimeError) as e:
        st.error(f"Error: {e}")

with st.expander("Key assumptions"):
    st.markdown(
        "- Each ring grows from one index case; offspring means are scaled by the remaining susceptible fraction.\n"
        "- The intervention reduces the susceptible pool after it ends: WASH + antibiotics, then WASH only, "
        "then WASH + vaccine.\n"
        "- Reporting is slower before the intervention is active than after it.\n"
        "- Only cases reported within the follow-up window after the index report are counted.\n"
        "- The pilot analysis regresses case count on intervention delay with a log(population) offset."
    )
