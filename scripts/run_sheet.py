import argparse
import logging

from healing_runner.agent.orchestrator import AutomationRunner
from healing_runner.agent.records import StepStatus
from healing_runner.config import settings
from healing_runner.models import init_db


def main():
    parser = argparse.ArgumentParser(description="Run a spreadsheet of browser steps with self-healing element lookup")
    parser.add_argument("source", nargs="?", help="Instruction workbook (.xlsx)")
    parser.add_argument("--serve", action="store_true", help="Start the HTTP control surface instead of a single run")
    parser.add_argument("--headless", action="store_true", help="Run the browser headless")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    if args.headless:
        settings.headless = True
    init_db()

    if args.serve:
        import uvicorn

        uvicorn.run("healing_runner.server.api:app", host=settings.server_host, port=settings.server_port)
        return

    if not args.source:
        parser.error("source workbook is required unless --serve is given")

    results = AutomationRunner().run_blocking(args.source)
    counts = {s: sum(1 for r in results if r.status == s) for s in StepStatus}
    print(
        "Run finished: "
        + " ".join(f"{status.value.lower()}={count}" for status, count in counts.items())
        + f" results={settings.results_dir}/{settings.results_workbook}"
    )


if __name__ == "__main__":
    main()
