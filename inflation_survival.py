import concurrent.futures
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
import math
import multiprocessing
import numbers
import os

import rng_backend


INFLATION_SHOCK_STD = 0.01
MARKET_RETURN_MEAN = 0.05
MARKET_RETURN_STD = 0.1

WORK_MORE_SALARY_FACTOR = 1.10
WORK_MORE_HAPPINESS_COST = 5.0
CUT_EXPENSES_FACTOR = 0.85
CUT_EXPENSES_HAPPINESS_COST = 10.0
INVEST_CASH_FRACTION = 0.30
UPSKILL_COST = 1_000.0
UPSKILL_SALARY_FACTOR = 1.20

SURVIVAL_WEIGHT = 0.6
WEALTH_WEIGHT = 0.4
CASH_NORMALIZER = 10_000.0

DEFAULT_MONTHS = 24
DEFAULT_MONTE_CARLO_RUNS = 100
DEFAULT_FORECAST_MONTHS = 6

ORIGINAL_DEFAULT_STATE = {
    "cash": 10_000.0,
    "salary": 3_000.0,
    "expenses": 2_500.0,
    "inflation": 0.05,
    "investment": 0.0,
    "happiness": 100.0,
}

STATE_FIELD_INFO = {
    "cash": "Available liquid cash (currency units)",
    "salary": "Monthly income (currency units)",
    "expenses": "Monthly recurring expenses (currency units)",
    "inflation": "Monthly inflation rate (e.g., 0.05 = 5%)",
    "investment": "Capital currently invested (currency units)",
    "happiness": "Optional emotional metric (arbitrary units)",
}

OPTIONAL_STATE_FIELDS = {"happiness"}

DEFAULT_CONFIG = {
    "months": DEFAULT_MONTHS,
    "monte_carlo_runs": DEFAULT_MONTE_CARLO_RUNS,
    "forecast_months": DEFAULT_FORECAST_MONTHS,
    "initial_state": None,
    "seed": None,
    "record_forecasts": False,
    "parallel": {
        "enabled": False,
        "workers": None,
        "start_method": None,
        "min_action_tasks": 2,
    },
}

_PARALLEL_STATE = None
_PARALLEL_FORECAST_ARGS = None


class InvalidAction(ValueError):
    pass


class InvalidConfiguration(ValueError):
    pass


class MalformedState(ValueError):
    pass


class ActionKind(str, Enum):
    WORK_MORE = "WORK_MORE"
    CUT_EXPENSES = "CUT_EXPENSES"
    INVEST = "INVEST"
    UPSKILL = "UPSKILL"
    DO_NOTHING = "DO_NOTHING"

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value in cls.__members__:
            return cls[value]
        allowed = ", ".join(action.value for action in cls)
        raise InvalidAction(f"Unknown action {value!r}; expected one of: {allowed}")


ACTIONS = tuple(ActionKind)


@dataclass
class FinanceState:
    cash: float
    salary: float
    expenses: float
    inflation: float
    investment: float
    happiness: float = 100.0

    @classmethod
    def from_mapping(cls, mapping):
        if isinstance(mapping, FinanceState):
            return mapping.copy()
        if not isinstance(mapping, Mapping):
            raise MalformedState(
                f"State must be a mapping of field names to numbers, got {type(mapping).__name__}."
            )

        known = {item.name for item in fields(cls)}
        unknown = sorted(str(key) for key in mapping if key not in known)
        if unknown:
            raise MalformedState(f"Unknown state fields: {', '.join(unknown)}")

        values = {}
        for item in fields(cls):
            if item.name not in mapping:
                if item.name in OPTIONAL_STATE_FIELDS:
                    continue
                raise MalformedState(f"State is missing required field '{item.name}'.")
            value = mapping[item.name]
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise MalformedState(f"State field '{item.name}' must be a number, got {value!r}.")
            value = float(value)
            if not math.isfinite(value):
                raise MalformedState(f"State field '{item.name}' must be finite, got {value!r}.")
            values[item.name] = value
        return cls(**values)

    def copy(self):
        return replace(self)

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class ForecastResult:
    survival_probability: float
    expected_cash: float


@dataclass(frozen=True)
class ActionForecast:
    action: ActionKind
    survival_probability: float
    expected_cash: float
    utility: float

    def to_dict(self):
        return {
            "action": self.action.value,
            "survival_probability": self.survival_probability,
            "expected_cash": self.expected_cash,
            "utility": self.utility,
        }


@dataclass(frozen=True)
class MonthSnapshot:
    month: int
    action: ActionKind
    cash: float
    salary: float
    expenses: float
    inflation: float
    investment: float
    happiness: float
    forecasts: tuple = ()

    def to_dict(self):
        record = {
            "month": self.month,
            "action": self.action.value,
            "cash": self.cash,
            "salary": self.salary,
            "expenses": self.expenses,
            "inflation": self.inflation,
            "investment": self.investment,
            "happiness": self.happiness,
        }
        if self.forecasts:
            record["forecasts"] = [row.to_dict() for row in self.forecasts]
        return record


def _deep_merge(base, overrides):
    merged = deepcopy(base)
    _deep_merge_in_place(merged, overrides)
    return merged


def _deep_merge_in_place(target, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge_in_place(target[key], value)
        else:
            target[key] = value


def _is_int(value):
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def original_default_state():
    return dict(ORIGINAL_DEFAULT_STATE)


def get_default_state(template=None):
    if template is None:
        return original_default_state()
    return FinanceState.from_mapping(template).to_dict()


def merge_default_state(template, updates):
    merged = get_default_state(template)
    if updates is None:
        return merged
    if not isinstance(updates, Mapping):
        raise MalformedState(f"State updates must be a mapping, got {type(updates).__name__}.")
    merged.update(updates)
    return FinanceState.from_mapping(merged).to_dict()


def reset_default_state():
    return original_default_state()


def validate_config(config):
    for key in config:
        if key not in DEFAULT_CONFIG:
            raise InvalidConfiguration(f"Unknown config key '{key}'.")
    for key in DEFAULT_CONFIG:
        if key not in config:
            raise InvalidConfiguration(f"Missing config key '{key}'.")

    if not _is_int(config["months"]) or config["months"] <= 0:
        raise InvalidConfiguration("months must be an int > 0.")
    if not _is_int(config["monte_carlo_runs"]) or config["monte_carlo_runs"] <= 0:
        raise InvalidConfiguration("monte_carlo_runs must be an int > 0.")
    if not _is_int(config["forecast_months"]) or config["forecast_months"] < 0:
        raise InvalidConfiguration("forecast_months must be an int >= 0.")
    if config["seed"] is not None and (not _is_int(config["seed"]) or config["seed"] < 0):
        raise InvalidConfiguration("seed must be an int >= 0 or None.")
    if not isinstance(config["record_forecasts"], bool):
        raise InvalidConfiguration("record_forecasts must be a bool.")

    parallel = config["parallel"]
    if not isinstance(parallel, dict):
        raise InvalidConfiguration("parallel must be a dict.")
    for key in parallel:
        if key not in DEFAULT_CONFIG["parallel"]:
            raise InvalidConfiguration(f"Unknown config key 'parallel.{key}'.")
    for key in DEFAULT_CONFIG["parallel"]:
        if key not in parallel:
            raise InvalidConfiguration(f"Missing config key 'parallel.{key}'.")
    if not isinstance(parallel["enabled"], bool):
        raise InvalidConfiguration("parallel.enabled must be a bool.")
    if parallel["workers"] is not None and (not _is_int(parallel["workers"]) or parallel["workers"] <= 0):
        raise InvalidConfiguration("parallel.workers must be an int > 0 or None.")
    if parallel["start_method"] is not None:
        available_methods = multiprocessing.get_all_start_methods()
        if parallel["start_method"] not in available_methods:
            available = ", ".join(available_methods)
            raise InvalidConfiguration(
                f"parallel.start_method must be one of [{available}] or None."
            )
    if not _is_int(parallel["min_action_tasks"]) or parallel["min_action_tasks"] <= 0:
        raise InvalidConfiguration("parallel.min_action_tasks must be an int > 0.")

    if config["initial_state"] is not None:
        FinanceState.from_mapping(config["initial_state"])


def _validate_forecast_args(runs, horizon_months):
    if not _is_int(runs) or runs <= 0:
        raise InvalidConfiguration(f"monte_carlo_runs must be an int > 0, got {runs!r}.")
    if not _is_int(horizon_months) or horizon_months < 0:
        raise InvalidConfiguration(f"horizon_months must be an int >= 0, got {horizon_months!r}.")


def _resolve_candidates(candidates):
    if candidates is None:
        return ACTIONS
    requested = {ActionKind.coerce(action) for action in candidates}
    if not requested:
        raise InvalidConfiguration("At least one candidate action is required.")
    return tuple(action for action in ACTIONS if action in requested)


def _resolve_initial_state(config):
    initial_state = config["initial_state"]
    if initial_state is None:
        return FinanceState.from_mapping(ORIGINAL_DEFAULT_STATE)
    return FinanceState.from_mapping(initial_state)


def _as_state(state):
    if isinstance(state, FinanceState):
        return state
    return FinanceState.from_mapping(state)


def _emit_progress(progress_callback, event, payload):
    if progress_callback is not None:
        progress_callback(event, payload)


def step_economy(state, sampler=None):
    if not isinstance(state, FinanceState):
        raise MalformedState(f"step_economy needs a FinanceState, got {type(state).__name__}.")
    if sampler is None:
        sampler = rng_backend.make_sampler()

    # Inflation is clamped before it compounds expenses in the same month.
    state.inflation += sampler.normal(0.0, INFLATION_SHOCK_STD)
    state.inflation = max(state.inflation, 0.0)
    state.expenses *= 1.0 + state.inflation

    market_return = sampler.normal(MARKET_RETURN_MEAN, MARKET_RETURN_STD)
    state.cash += state.investment * market_return

    state.cash += state.salary - state.expenses
    return state


def apply_action(state, action):
    if not isinstance(state, FinanceState):
        raise MalformedState(f"apply_action needs a FinanceState, got {type(state).__name__}.")
    action = ActionKind.coerce(action)

    if action is ActionKind.WORK_MORE:
        state.salary *= WORK_MORE_SALARY_FACTOR
        state.happiness -= WORK_MORE_HAPPINESS_COST
    elif action is ActionKind.CUT_EXPENSES:
        state.expenses *= CUT_EXPENSES_FACTOR
        state.happiness -= CUT_EXPENSES_HAPPINESS_COST
    elif action is ActionKind.INVEST:
        invest_amount = state.cash * INVEST_CASH_FRACTION
        state.cash -= invest_amount
        state.investment += invest_amount
    elif action is ActionKind.UPSKILL:
        state.cash -= UPSKILL_COST
        state.salary *= UPSKILL_SALARY_FACTOR
    return state


def forecast(
    state,
    action,
    runs=DEFAULT_MONTE_CARLO_RUNS,
    horizon_months=DEFAULT_FORECAST_MONTHS,
    sampler=None,
):
    """Estimate survival odds and surviving wealth after taking ``action`` now.

    Each of the ``runs`` trials copies ``state``, applies the action once and
    steps the economy for up to ``horizon_months`` months, stopping as soon as
    cash drops to zero or below. ``expected_cash`` averages ending cash over
    surviving trials only and is 0.0 when nobody survives.
    """
    action = ActionKind.coerce(action)
    _validate_forecast_args(runs, horizon_months)
    state = _as_state(state)
    if sampler is None:
        sampler = rng_backend.make_sampler()

    survivors = 0
    surviving_cash = 0.0
    for _ in range(runs):
        trial = state.copy()
        apply_action(trial, action)
        for _ in range(horizon_months):
            step_economy(trial, sampler)
            if trial.cash <= 0:
                break

        if trial.cash > 0:
            survivors += 1
            surviving_cash += trial.cash

    return ForecastResult(
        survival_probability=survivors / runs,
        expected_cash=surviving_cash / max(survivors, 1),
    )


def utility(result):
    return SURVIVAL_WEIGHT * result.survival_probability + WEALTH_WEIGHT * (
        result.expected_cash / CASH_NORMALIZER
    )


def _evaluate_action_direct(idx, action, state, runs, horizon_months, sampler):
    result = forecast(state, action, runs, horizon_months, sampler)
    row = ActionForecast(
        action=action,
        survival_probability=result.survival_probability,
        expected_cash=result.expected_cash,
        utility=utility(result),
    )
    return idx, row


def _init_parallel_worker(state, runs, horizon_months):
    global _PARALLEL_STATE
    global _PARALLEL_FORECAST_ARGS
    _PARALLEL_STATE = state
    _PARALLEL_FORECAST_ARGS = (runs, horizon_months)


def _evaluate_action_task(task):
    idx, action, sampler = task

    if _PARALLEL_STATE is None or _PARALLEL_FORECAST_ARGS is None:
        raise RuntimeError("Parallel worker is not initialized.")

    runs, horizon_months = _PARALLEL_FORECAST_ARGS
    return _evaluate_action_direct(idx, action, _PARALLEL_STATE, runs, horizon_months, sampler)


def _default_parallel_start_method():
    methods = multiprocessing.get_all_start_methods()
    if os.name == "posix" and "fork" in methods:
        return "fork"
    if "spawn" in methods:
        return "spawn"
    return methods[0]


def _resolve_execution_settings(config, task_count):
    parallel = config["parallel"]
    resolved_workers = parallel["workers"]
    if resolved_workers is None:
        resolved_workers = os.cpu_count() or 1

    execution = {
        "mode": "single",
        "workers_used": 1,
        "backend": "single",
        "start_method": None,
        "action_tasks": task_count,
        "fallback_reason": None,
    }

    if not parallel["enabled"]:
        return execution
    if task_count < parallel["min_action_tasks"]:
        return execution

    workers_used = max(1, min(resolved_workers, task_count))
    if workers_used <= 1:
        return execution

    execution["mode"] = "parallel"
    execution["workers_used"] = workers_used
    execution["backend"] = "multiprocessing"
    execution["start_method"] = parallel["start_method"] or _default_parallel_start_method()
    return execution


def _collect_action_forecasts_single_thread(state, actions, runs, horizon_months, samplers):
    rows = []
    for idx, action in enumerate(actions):
        _, row = _evaluate_action_direct(idx, action, state, runs, horizon_months, samplers[idx])
        rows.append(row)
    return rows


def _collect_action_forecasts_parallel(state, actions, runs, horizon_months, samplers, execution):
    tasks = [(idx, action, samplers[idx]) for idx, action in enumerate(actions)]
    futures = {}
    results = {}
    mp_context = multiprocessing.get_context(execution["start_method"])

    with concurrent.futures.ProcessPoolExecutor(
        max_workers=execution["workers_used"],
        mp_context=mp_context,
        initializer=_init_parallel_worker,
        initargs=(state, runs, horizon_months),
    ) as executor:
        for task in tasks:
            future = executor.submit(_evaluate_action_task, task)
            futures[future] = task[0]

        for future in concurrent.futures.as_completed(futures):
            idx, row = future.result()
            results[idx] = row

    return [results[idx] for idx in sorted(results)]


def _collect_action_forecasts(state, actions, runs, horizon_months, sampler, config):
    execution = _resolve_execution_settings(config, len(actions))
    spawn = getattr(sampler, "spawn", None)
    if callable(spawn):
        # One child sampler per action keeps results independent of execution mode.
        samplers = spawn(len(actions))
    else:
        # A sampler without spawn() is shared, so actions draw from it in order.
        samplers = [sampler] * len(actions)
        if execution["mode"] == "parallel":
            execution["mode"] = "single"
            execution["workers_used"] = 1
            execution["backend"] = "single"
            execution["start_method"] = None
            execution["fallback_reason"] = "sampler has no spawn(); actions evaluated in order on one sampler."
    if execution["mode"] == "parallel":
        try:
            rows = _collect_action_forecasts_parallel(
                state,
                actions,
                runs,
                horizon_months,
                samplers,
                execution,
            )
        except Exception as exc:
            execution["mode"] = "single"
            execution["workers_used"] = 1
            execution["backend"] = "single"
            execution["start_method"] = None
            execution["fallback_reason"] = str(exc)
            rows = _collect_action_forecasts_single_thread(
                state,
                actions,
                runs,
                horizon_months,
                samplers,
            )
    else:
        rows = _collect_action_forecasts_single_thread(
            state,
            actions,
            runs,
            horizon_months,
            samplers,
        )
    return rows, execution


def evaluate_actions(
    state,
    runs=DEFAULT_MONTE_CARLO_RUNS,
    horizon_months=DEFAULT_FORECAST_MONTHS,
    sampler=None,
    config=None,
    candidates=None,
):
    actions = _resolve_candidates(candidates)
    _validate_forecast_args(runs, horizon_months)
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)
    state = _as_state(state).copy()
    if sampler is None:
        sampler = rng_backend.make_sampler(merged_config["seed"])
    return _collect_action_forecasts(state, actions, runs, horizon_months, sampler, merged_config)


def select_best_action(rows):
    best_action = None
    best_score = -math.inf
    for row in rows:
        # Strict comparison keeps the earliest action on ties.
        if row.utility > best_score:
            best_score = row.utility
            best_action = row.action
    if best_action is None:
        raise InvalidConfiguration("No candidate action produced a comparable utility.")
    return best_action


def choose_best_action(
    state,
    runs=DEFAULT_MONTE_CARLO_RUNS,
    horizon_months=DEFAULT_FORECAST_MONTHS,
    sampler=None,
    config=None,
    candidates=None,
):
    rows, _ = evaluate_actions(
        state,
        runs=runs,
        horizon_months=horizon_months,
        sampler=sampler,
        config=config,
        candidates=candidates,
    )
    return select_best_action(rows)


def _step_month(state, month, sampler, config, progress_callback=None):
    rows, execution = _collect_action_forecasts(
        state.copy(),
        ACTIONS,
        config["monte_carlo_runs"],
        config["forecast_months"],
        sampler,
        config,
    )
    for row in rows:
        _emit_progress(progress_callback, "action_evaluated", {"month": month, **row.to_dict()})

    best_action = select_best_action(rows)
    apply_action(state, best_action)
    step_economy(state, sampler)

    snapshot = MonthSnapshot(
        month=month,
        action=best_action,
        forecasts=tuple(rows) if config["record_forecasts"] else (),
        **state.to_dict(),
    )
    return snapshot, rows, execution


def step_month(state, month, sampler=None, config=None, progress_callback=None):
    if not isinstance(state, FinanceState):
        raise MalformedState(f"step_month needs a FinanceState, got {type(state).__name__}.")
    if not _is_int(month) or month < 1:
        raise InvalidConfiguration(f"month must be an int >= 1, got {month!r}.")
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)
    if sampler is None:
        sampler = rng_backend.make_sampler(merged_config["seed"])
    snapshot, _, _ = _step_month(state, month, sampler, merged_config, progress_callback)
    return snapshot


def summarize_history(history):
    action_counts = {action.value: 0 for action in ACTIONS}
    for snapshot in history:
        action_counts[snapshot.action.value] += 1

    final = history[-1] if history else None
    return {
        "months_simulated": len(history),
        "bankrupt": bool(final is not None and final.cash <= 0),
        "final_cash": final.cash if final is not None else None,
        "final_investment": final.investment if final is not None else None,
        "final_happiness": final.happiness if final is not None else None,
        "action_counts": action_counts,
    }


def _print_month_report(snapshot, rows, execution):
    print(f"\n=========== MONTH {snapshot.month} ===========")
    print(
        f"{'Action':>14} | "
        f"{'Survival':>9} | "
        f"{'Expected Cash':>15} | "
        f"{'Utility':>8}"
    )
    print("-" * 56)
    for row in rows:
        print(
            f"{row.action.value:>14} | "
            f"{row.survival_probability:9.1%} | "
            f"{row.expected_cash:15,.2f} | "
            f"{row.utility:8.3f}"
        )
    if execution["fallback_reason"] is not None:
        print(f"Backend fallback reason: {execution['fallback_reason']}")
    print(f"\nChosen action: {snapshot.action.value}\n")
    print(f"Cash:       {snapshot.cash:,.2f}")
    print(f"Salary:     {snapshot.salary:,.2f}")
    print(f"Expenses:   {snapshot.expenses:,.2f}")
    print(f"Inflation:  {snapshot.inflation:.2%}")
    print(f"Investment: {snapshot.investment:,.2f}")


def run_simulation(config=None, verbose=True, sampler=None, progress_callback=None):
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)

    state = _resolve_initial_state(merged_config)
    if sampler is None:
        sampler = rng_backend.make_sampler(merged_config["seed"])

    months = merged_config["months"]
    execution = _resolve_execution_settings(merged_config, len(ACTIONS))
    _emit_progress(
        progress_callback,
        "run_start",
        {
            "months": months,
            "monte_carlo_runs": merged_config["monte_carlo_runs"],
            "forecast_months": merged_config["forecast_months"],
            "initial_state": state.to_dict(),
            "execution_mode": execution["mode"],
            **rng_backend.describe_sampler(sampler),
        },
    )

    if verbose:
        print(
            f"Simulating up to {months} months with {merged_config['monte_carlo_runs']:,} "
            f"Monte Carlo runs per action ({merged_config['forecast_months']}-month forecasts)..."
        )
        print(
            f"Execution mode: {execution['mode']} "
            f"({execution['backend']}, workers={execution['workers_used']})"
        )

    history = []
    for month in range(1, months + 1):
        _emit_progress(progress_callback, "month_start", {"month": month, "state": state.to_dict()})

        snapshot, rows, month_execution = _step_month(
            state,
            month,
            sampler,
            merged_config,
            progress_callback,
        )
        history.append(snapshot)

        if verbose:
            _print_month_report(snapshot, rows, month_execution)

        _emit_progress(
            progress_callback,
            "month_complete",
            {
                "month": month,
                "action": snapshot.action.value,
                "cash": snapshot.cash,
                "execution_mode": month_execution["mode"],
                "fallback_reason": month_execution["fallback_reason"],
            },
        )

        if state.cash <= 0:
            _emit_progress(progress_callback, "bankrupt", {"month": month, "cash": snapshot.cash})
            if verbose:
                print(f"\nBankrupt in month {month}.")
            break

    summary = summarize_history(history)
    _emit_progress(progress_callback, "run_complete", summary)

    if verbose:
        print("-" * 56)
        print(f"Months simulated:  {summary['months_simulated']}")
        print(f"Bankrupt:          {'yes' if summary['bankrupt'] else 'no'}")
        if summary["final_cash"] is not None:
            print(f"Final cash:        {summary['final_cash']:,.2f}")
            print(f"Final investment:  {summary['final_investment']:,.2f}")
        print("Action counts:")
        for action, count in summary["action_counts"].items():
            print(f"  {action:<14} {count}")

    return history


if __name__ == "__main__":
    run_simulation()
