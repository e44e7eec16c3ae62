# FILE: livepatch/__main__.py
"""python -m livepatch [--no-poll] script.py [args...]"""

from __future__ import annotations

import argparse
import runpy
import sys
from typing import List, Optional

from . import agent


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="python -m livepatch",
        description="Attach the live-patch agent, then run a script as __main__.",
    )
    p.add_argument("--no-poll", action="store_true", help="install interception rules only")
    p.add_argument("script", help="path of the script to run")
    p.add_argument("args", nargs=argparse.REMAINDER, help="arguments passed to the script")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    ns = _build_parser().parse_args(argv)
    agent.attach(start_poller=not ns.no_poll)
    sys.argv = [ns.script, *ns.args]
    runpy.run_path(ns.script, run_name="__main__")
    return 0


if __name__ == "__main__":
    sys.exit(main())
