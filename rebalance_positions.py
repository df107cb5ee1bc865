"""Keep spot holdings hedged by their futures shorts.

Runs one cycle with ``--once``; otherwise repeats every
``--interval`` seconds until Ctrl+C.
"""

import argparse
import logging
import signal
import sys
from datetime import datetime

from funding_hedge import ImbalancePolicy, create_orchestrator, load_settings
from funding_hedge.context import RunContext
from funding_hedge.errors import AuthError, FundingHedgeError
from funding_hedge.monitoring import build_notifier, cycle_summary_event
from funding_hedge.rate_limit import RequestWeightBudget
from funding_hedge.scheduler import PeriodicTask


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument(
        "--close",
        action="store_true",
        help="close the futures leg of imbalanced assets instead of resizing it",
    )
    parser.add_argument("--interval", type=float, default=None, help="seconds between cycles")
    return parser.parse_args(argv)


def _print_result(result) -> None:
    print("\n" + "=" * 70, flush=True)
    print(f"Cycle {result.timestamp.strftime('%Y-%m-%d %H:%M:%S')}", flush=True)
    print("=" * 70, flush=True)
    print(f"  evaluated:     {result.evaluated}", flush=True)
    print(f"  balanced:      {result.balanced}", flush=True)
    print(f"  orders:        {result.orders_submitted}", flush=True)
    print(f"  plan failures: {result.plan_failures}", flush=True)
    print(f"  timeouts:      {result.timeouts}", flush=True)
    if result.trading_halted:
        print("  ⚠️  emergency stop active: no orders placed", flush=True)
    for outcome in result.outcomes:
        print(f"  {outcome.asset}: {outcome.summary}", flush=True)


def main(argv=None) -> int:
    args = _parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger("rebalance_positions")

    problems = settings.validate()
    if problems:
        for p in problems:
            print(f"✗ {p}", flush=True)
        return 1
    logger.info("Settings: %s", settings.sanitized())

    policy = ImbalancePolicy.CLOSE if args.close else ImbalancePolicy.REBALANCE
    notifier = build_notifier(settings)
    context = RunContext(budget=RequestWeightBudget(limit=settings.weight_limit_per_minute))
    orch = create_orchestrator(settings, context=context, notifier=notifier, policy=policy)

    def _run_and_report():
        result = orch.run_cycle()
        _print_result(result)
        if result.timeouts or result.plan_failures or result.errors:
            orch.notify(cycle_summary_event(result))
        return result

    print("=" * 70, flush=True)
    print(f"Hedge rebalancer ({settings.env}, policy={policy.value}, dry_run={settings.dry_run})", flush=True)
    print("=" * 70, flush=True)

    if args.once:
        try:
            _run_and_report()
        except FundingHedgeError as e:
            print(f"\n✗ Cycle failed: {e}", flush=True)
            return 1
        finally:
            context.close()
        return 0

    started = datetime.utcnow()
    signal.signal(signal.SIGINT, lambda signum, frame: orch.token.cancel())

    task = PeriodicTask(
        "hedge-cycle",
        _run_and_report,
        args.interval or orch.config.rebalance_interval_sec,
        token=orch.token,
    )
    context.register_task(task)
    print("Stop with Ctrl+C", flush=True)
    try:
        task.run()
    finally:
        context.close()

    print("\n" + "=" * 70, flush=True)
    print("Stopped", flush=True)
    print(f"  uptime: {datetime.utcnow() - started}", flush=True)
    print(f"  cycles: {task.runs} ({task.failures} failed)", flush=True)
    print("=" * 70, flush=True)
    if isinstance(task.error, AuthError):
        print(f"✗ {task.error}", flush=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
