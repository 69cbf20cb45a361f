from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from freezegate.config.settings import get_settings
from freezegate.freezer.engine import FreezeEngine, build_engine


async def _run(engine: FreezeEngine, once: bool) -> int:
    try:
        if once:
            report = await engine.manager.tick()
            print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
            return 0 if report.ok else 2
        worker = engine.worker()
        await worker.run_forever()
        return 0
    finally:
        await engine.aclose()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Expire, activate and reconcile freeze windows")
    parser.add_argument("--once", action="store_true", help="run a single tick and print its report")
    args = parser.parse_args(argv)

    cfg = get_settings()
    logging.basicConfig(level=getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO))
    return asyncio.run(_run(build_engine(cfg), args.once))


if __name__ == "__main__":
    sys.exit(main())
