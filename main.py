import argparse
import logging
import os
import signal
import threading
from typing import Dict, List

from gridbot.config import build_grid_config, client_factory_from_general, load_config
from gridbot.grid import StartupError
from gridbot.sessions import Credentials, SessionSupervisor


def credentials_from_config(cfg: Dict, user: str) -> Credentials:
    creds = cfg.get("credentials") or {}
    api_key = creds.get("api_key") or os.getenv("BINANCE_API_KEY", "")
    api_secret = creds.get("api_secret") or os.getenv("BINANCE_API_SECRET", "")
    if not api_key or not api_secret:
        raise SystemExit("Missing Binance credentials (config 'credentials' or BINANCE_API_KEY/BINANCE_API_SECRET)")
    return Credentials(user_id=user, api_key=api_key, api_secret=api_secret)


def run(args) -> None:
    cfg = load_config(args.config) if os.path.exists(args.config) else {}
    general = cfg.get("general", {})
    pairs_raw: List[Dict] = cfg.get("pairs") or []
    if args.symbol:
        target = args.symbol.upper()
        pairs_raw = [p for p in pairs_raw if str(p.get("symbol", "")).upper() == target] or [{"symbol": target}]
    if not pairs_raw:
        raise SystemExit("No pairs defined in config; pass --symbol")

    credentials = credentials_from_config(cfg, args.user)
    supervisor = SessionSupervisor(client_factory_from_general(general))

    for pair_raw in pairs_raw:
        symbol = str(pair_raw["symbol"]).upper()
        grid_cfg = build_grid_config(pair_raw, general, no_buys=args.nobuys, poll_seconds=args.poll_seconds)
        logging.info(
            "Starting GridBot for %s. Monitoring for a price drop of %s%% and upward trend of %s%%...",
            symbol, grid_cfg.percentage_drop, grid_cfg.percentage_rise,
        )
        try:
            supervisor.start(credentials, symbol, grid_cfg)
        except StartupError as exc:
            logging.error("%s", exc)

    if not supervisor.sessions():
        supervisor.stop_all()
        raise SystemExit("No session could be started")

    done = threading.Event()

    def _shutdown(signum, frame):  # noqa: ARG001
        logging.info("Received signal %s, stopping sessions", signum)
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    done.wait()
    supervisor.stop_all(wait=True)


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Run the percentage grid bot against Binance")
    ap.add_argument("--config", default="config.yaml")
    ap.add_argument("--symbol", default="", help="Trade only this pair (default: every pair in config)")
    ap.add_argument("--user", default=os.getenv("GRIDBOT_USER", "local"), help="Session owner id")
    ap.add_argument("--nobuys", action="store_true", help="Only sell filled buys, never place new buys")
    ap.add_argument("--poll-seconds", type=float, default=None, help="Override the polling interval")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    run(args)
