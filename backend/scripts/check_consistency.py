"""
Check, and optionally repair, the secondary copy of one or more projects.

Usage:
    cd backend
    python -m scripts.check_consistency <project_id> [<project_id> ...] [--repair]
"""
import argparse
import asyncio
import json
import os
import sys
from typing import List, Optional, TextIO

backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
root_dir = os.path.dirname(backend_dir)
sys.path.insert(0, backend_dir)

from dotenv import load_dotenv  # noqa: E402

from planforge.core.config import Settings  # noqa: E402
from planforge.domains.project.infrastructure.repositories import ProjectRepository  # noqa: E402
from planforge.infrastructure.observability import render_metrics  # noqa: E402
from planforge.main import lifespan  # noqa: E402


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Compare primary and secondary state for projects.",
    )
    parser.add_argument("project_ids", nargs="+", help="Project ids to check")
    parser.add_argument(
        "--repair",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Re-mirror inconsistent projects to the secondary store",
    )
    parser.add_argument(
        "--metrics",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Print Prometheus metrics after the run",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, config: Optional[Settings] = None, out: TextIO = sys.stdout) -> int:
    """Return 0 when every project is consistent (after repair, if requested)."""
    exit_code = 0
    async with lifespan(config) as container:
        repository = container.resolve(ProjectRepository)
        for project_id in args.project_ids:
            report = {"project_id": project_id}
            check = await repository.check_data_consistency(project_id)
            if not check.success:
                report.update(error=check.error, code=check.code)
                exit_code = 1
                out.write(json.dumps(report) + "\n")
                continue

            report["is_consistent"] = check.data["is_consistent"]
            report["inconsistencies"] = check.data["inconsistencies"]
            if args.repair and not check.data["is_consistent"]:
                repaired = await repository.repair_data_inconsistency(project_id)
                if repaired.success:
                    report["repaired"] = repaired.data["repaired"]
                    recheck = await repository.check_data_consistency(project_id)
                    report["is_consistent"] = recheck.success and recheck.data["is_consistent"]
                else:
                    report.update(error=repaired.error, code=repaired.code)
            if not report["is_consistent"]:
                exit_code = 1
            out.write(json.dumps(report, default=str) + "\n")

    if args.metrics:
        out.write(render_metrics().decode("utf-8"))
    return exit_code


def main() -> None:
    load_dotenv(os.path.join(root_dir, ".env"))
    sys.exit(asyncio.run(run(_parse_args())))


if __name__ == "__main__":
    main()
