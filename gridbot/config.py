"""YAML config loading shared by the CLI runner and the control service."""
import os
import re
from typing import Dict, Optional

import yaml

from .grid import GridConfig
from .sessions import binance_client_factory

ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_config(path):
    # Expand ${ENV} in yaml values
    with open(path, "r", encoding="utf-8") as f:
        txt = f.read()
    def repl(m): return os.getenv(m.group(1), "")
    txt = ENV_PATTERN.sub(repl, txt)
    return yaml.safe_load(txt) or {}


def client_factory_from_general(general: Dict):
    binance_cfg = general.get("binance") or {}
    return binance_client_factory(
        binance_cfg.get("base_url", "https://api.binance.us"),
        quantity_precision=int(binance_cfg.get("quantity_precision", 6)),
        price_precision=int(binance_cfg.get("price_precision", 4)),
        recv_window=int(binance_cfg.get("recv_window", 5000)),
    )


def build_grid_config(pair_raw: Dict, general: Dict, *, no_buys: bool = False,
                      poll_seconds: Optional[float] = None) -> GridConfig:
    """Merge ``general.grid`` with the pair's own ``grid`` block; CLI flags win."""
    merged = {**(general.get("grid") or {}), **(pair_raw.get("grid") or {})}
    if no_buys:
        merged["no_buys"] = True
    if poll_seconds:
        merged.pop("poll_interval_ms", None)
        merged["poll_seconds"] = poll_seconds
    return GridConfig.from_dict(merged)
