from __future__ import annotations

# =========================================================================================
#      MP"""""`MM                                                       dP              MM'"""'YMM
#      M  mmmmm..M                                                       88              M' .mmm. `M
#      M.      `YM .d8888b. .d8888b. .d8888b. .d8888b. 88d888b. .d8888b. 88              M  MMMMMooM dP    dP 88d888b. 88d888b. .d8888b. 88d888b. .d8888b. dP    dP
#      MMMMMMM.  M 88ooood8 88'  `88 Y8ooooo. 88'  `88 88'  `88 88'  `88 88              M  MMMMMMMM 88    88 88'  `88 88'  `88 88ooood8 88'  `88 88'  `"" 88    88
#      M. .MMM'  M 88.  ... 88.  .88       88 88.  .88 88    88 88.  .88 88              M. `MMM' .M 88.  .88 88       88       88.  ... 88    88 88.  ... 88.  .88
#      Mb.     .dM `88888P' `88888P8 `88888P' `88888P' dP    dP `88888P8 dP              MM.     .dM `88888P' dP       dP       `88888P' dP    dP `88888P' `8888P88
#      MMMMMMMMMMM                                                Seasonal_Currency      MMMMMMMMMMM                                                            .88
#                                                                                                                                                           d8888P.
# =========================================================================================

import argparse
import asyncio
import logging
import signal
import sys

from .app import VmaApp
from .config import load_config

log = logging.getLogger("vmawatch")


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    # httpx logs every request at INFO; the stream reconnects make that noisy.
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def _serve(app: VmaApp) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.stop)
        except NotImplementedError:
            pass
    await app.run()


async def _once(app: VmaApp) -> int:
    app.load_targets()
    try:
        ran = await app.run_once()
    finally:
        await app.aclose()
    return 0 if ran else 1


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="vmawatch", description="Relay VMA emergency alerts to local area targets.")
    ap.add_argument("--config", default="/etc/vmawatch/config.yaml")
    ap.add_argument("--log-level", default="INFO")
    ap.add_argument("--once", action="store_true", help="fetch and distribute once, then exit")
    args = ap.parse_args(argv)

    _setup_logging(args.log_level)
    cfg = load_config(args.config)
    log.info("vmawatch starting (config=%s, state=%s, targets=%d)", args.config, cfg.paths.state_dir, len(cfg.targets))

    app = VmaApp(cfg)
    if args.once:
        return asyncio.run(_once(app))
    asyncio.run(_serve(app))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
