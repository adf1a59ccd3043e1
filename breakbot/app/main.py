import os
import logging

# Respect systemd LOG_LEVEL (default INFO)
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(message)s"
)

import argparse
import sys

from breakbot.app.config import ConfigError, load_config
from breakbot.app.engine import InitError, run_bot

log = logging.getLogger(__name__)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(prog="breakbot")
    sub = ap.add_subparsers(dest="cmd", required=True)

    runp = sub.add_parser("run")
    runp.add_argument("--config", required=True)
    runp.add_argument("--once", action="store_true")
    runp.add_argument("--paper-bars", default=None, help="CSV of OHLC bars; replays them through the paper broker")

    args = ap.parse_args(argv)

    if args.cmd == "run":
        try:
            cfg = load_config(args.config).raw
            run_bot(cfg, once=bool(args.once), paper_bars=args.paper_bars)
        except (ConfigError, InitError, FileNotFoundError, RuntimeError) as e:
            log.error("breakbot: %s", e)
            return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
