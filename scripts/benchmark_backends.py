#!/usr/bin/env python3
import argparse
from pathlib import Path
import sys
import time

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from inflation_survival import run_simulation, summarize_history


def run_case(name, config):
    events = []
    t0 = time.perf_counter()
    try:
        history = run_simulation(
            config=config,
            verbose=False,
            progress_callback=lambda event, payload: events.append((event, payload)),
        )
    except Exception as exc:
        elapsed = time.perf_counter() - t0
        print(f"\n{name}")
        print(f"  elapsed_s:             {elapsed:.3f}")
        print(f"  status:                FAILED")
        print(f"  error:                 {exc!r}")
        return None, None
    elapsed = time.perf_counter() - t0

    month_events = [payload for event, payload in events if event == "month_complete"]
    modes = sorted({payload["execution_mode"] for payload in month_events})
    fallback_reasons = sorted({payload["fallback_reason"] for payload in month_events if payload["fallback_reason"]})
    summary = summarize_history(history)

    print(f"\n{name}")
    print(f"  elapsed_s:             {elapsed:.3f}")
    print(f"  execution_modes:       {', '.join(modes)}")
    print(f"  fallback_reason:       {'; '.join(fallback_reasons) or None}")
    print(f"  months_simulated:      {summary['months_simulated']}")
    print(f"  bankrupt:              {summary['bankrupt']}")
    if summary["final_cash"] is not None:
        print(f"  final_cash:            {summary['final_cash']:,.2f}")
    return elapsed, history


def main():
    parser = argparse.ArgumentParser(description="Benchmark single-thread vs multiprocessing action evaluation.")
    parser.add_argument("--months", type=int, default=24)
    parser.add_argument("--runs", type=int, default=2_000)
    parser.add_argument("--forecast-months", type=int, default=6)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    base = {
        "months": args.months,
        "monte_carlo_runs": args.runs,
        "forecast_months": args.forecast_months,
        "seed": args.seed,
    }
    single_cfg = dict(base, parallel={"enabled": False})
    parallel_cfg = dict(base, parallel={"enabled": True, "workers": args.workers})

    single_elapsed, single_history = run_case("single", single_cfg)
    parallel_elapsed, parallel_history = run_case("multiprocessing", parallel_cfg)

    if single_elapsed and parallel_elapsed:
        print(f"\nSpeedup (single / parallel): {single_elapsed / parallel_elapsed:.2f}x")
    if single_history is not None and parallel_history is not None:
        identical = [item.to_dict() for item in single_history] == [item.to_dict() for item in parallel_history]
        print(f"Histories identical:         {identical}")


if __name__ == "__main__":
    main()
