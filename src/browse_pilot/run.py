# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# The Page Driver is supplied by the host application as "module:factory";
# the factory takes no arguments and returns an object with async
# execute(tool, args) and detect_intervention().

import argparse
import asyncio
import importlib
import sys
import threading

from browse_pilot import display
from browse_pilot.backend import OpenRouterBackend
from browse_pilot.config import Settings
from browse_pilot.diagnostics import configure_logging
from browse_pilot.harness import AgentHarness
from browse_pilot.models import RunOptions, RunStatus
from browse_pilot.notify import WebhookSink
from browse_pilot.reflection import derive_goal_query

EXAMPLE_GOALS = [
    "Find the current weather in Berlin and report temperature and conditions.",
    "Compare the price of the latest iPhone and the latest Pixel on their official stores.",
]


def load_driver(path: str):
    if ":" not in path:
        raise SystemExit(f"Page driver must look like 'module:factory', got {path!r}")
    module_name, factory_name = path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), factory_name)
    return factory()


def operator_console(harness: AgentHarness, stop: threading.Event) -> None:
    """
    Reads operator commands from stdin while a run is paused.

    An empty line resumes, `abort` aborts, `partial` asks for a best-effort
    result, anything else resumes with that text as guidance.
    """
    for line in sys.stdin:
        if stop.is_set():
            return
        command = line.strip()
        if harness.status != RunStatus.PAUSED:
            continue
        if command.lower() == "abort":
            harness.abort()
        elif command.lower() == "partial":
            harness.request_partial_completion()
        else:
            harness.resume(command)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="browse-pilot", description="Run an autonomous web-browsing task.")
    parser.add_argument("goal", nargs="?", help="Task in natural language.")
    parser.add_argument("--driver", default=Settings.PAGE_DRIVER, help="Page driver factory as module:factory.")
    parser.add_argument("--max-steps", type=int, default=Settings.MAX_STEPS)
    parser.add_argument("--model", default=Settings.MODEL)
    parser.add_argument("--summary-model", default=Settings.SUMMARY_MODEL, help="Model for history-summary merges.")
    parser.add_argument("--notify", action="append", default=[], help="Connector id to receive the final answer.")
    parser.add_argument("--non-interactive", action="store_true", help="Fail instead of pausing for an operator.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(Settings.LOG_LEVEL)

    if not args.driver:
        raise SystemExit("No page driver configured: pass --driver or set BROWSE_PILOT_PAGE_DRIVER")
    goal = args.goal or EXAMPLE_GOALS[0]

    backend = OpenRouterBackend(model=args.model)
    summary_model = args.summary_model or args.model
    harness = AgentHarness(
        load_driver(args.driver),
        backend,
        sink=WebhookSink() if Settings.WEBHOOKS else None,
        summary_backend=OpenRouterBackend(model=summary_model) if summary_model != args.model else backend,
    )
    options = RunOptions.from_settings(
        max_steps=args.max_steps,
        interactive=not args.non_interactive,
        notify_on_finish=args.notify,
    )

    display.banner(args.model, args.max_steps)
    stop = threading.Event()
    if options.interactive:
        threading.Thread(target=operator_console, args=(harness, stop), daemon=True).start()
    try:
        result = asyncio.run(harness.start(goal, options))
    finally:
        stop.set()

    if not result.success:
        print(f"\n[HINT] Try a narrower goal, e.g. search for: {derive_goal_query(goal)}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
