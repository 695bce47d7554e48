# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# Swap model strings for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import logging
import sys

from rich.logging import RichHandler

from selfheal import display
from selfheal.config import load_settings
from selfheal.errors import PlanParseError
from selfheal.executor import ToolExecutor
from selfheal.healing import HealingCoordinator, RuleBasedStrategyGenerator, StrategyChain
from selfheal.llm import OpenAIPlanGenerator, OpenAIStrategyGenerator
from selfheal.models import Plan, RunStatus
from selfheal.playwright_driver import PlaywrightDriver
from selfheal.registry import DefaultToolRegistry
from selfheal.runner import StepRunner

PLANNER_MODEL = "anthropic/claude-3.5-haiku"
HEALER_MODEL = "anthropic/claude-3.5-haiku"

DEFAULT_GOAL = "Open https://example.com and read the main heading text."


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="selfheal", description="Plan and run a self-healing browser task.")
    parser.add_argument("goal", nargs="?", default=DEFAULT_GOAL)
    parser.add_argument("--headed", action="store_true", help="Show the browser window.")
    parser.add_argument("--task-id", default=None)
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=display.console, show_path=False)],
    )
    settings = load_settings()
    registry = DefaultToolRegistry()

    display.banner(PLANNER_MODEL)
    display.goal_received(args.goal)

    planner = OpenAIPlanGenerator(PLANNER_MODEL, registry=registry)
    try:
        steps = planner.generate(args.goal, {})
    except PlanParseError as exc:
        display.halt(f"Planner output could not be parsed: {exc}")
        return 2
    display.plan_table(steps)

    with PlaywrightDriver.launch(headless=not args.headed) as driver, \
            ToolExecutor(driver, registry, settings.executor) as executor:
        strategies = StrategyChain(
            OpenAIStrategyGenerator(HEALER_MODEL, registry=registry,
                                    timeout=settings.healing.strategy_timeout / 2),
            RuleBasedStrategyGenerator(settings.healing.default_extended_wait),
        )
        healer = HealingCoordinator(
            executor,
            strategies,
            planner,
            settings.healing,
        )
        try:
            runner = StepRunner(executor, healer, settings.runner)
            result = runner.run(Plan(goal=args.goal, steps=steps), task_id=args.task_id)
        except KeyboardInterrupt:
            display.halt("Interrupted.")
            return 130
        finally:
            healer.close()

    return 0 if result.final_status is RunStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
