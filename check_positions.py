"""Print spot holdings, futures positions and per-asset hedge ratios."""

import logging
import sys

from funding_hedge import create_orchestrator, load_settings
from funding_hedge.context import RunContext
from funding_hedge.errors import FundingHedgeError
from funding_hedge.monitoring import format_position_report


def main() -> int:
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    problems = settings.validate()
    if problems:
        for p in problems:
            print(f"✗ {p}", flush=True)
        return 1

    print(f"Checking positions ({settings.env})...", flush=True)
    with RunContext() as context:
        try:
            orch = create_orchestrator(settings, context=context)
            report = orch.build_report()
        except FundingHedgeError as e:
            print(f"✗ {e}", flush=True)
            return 1

    print(format_position_report(report), flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
