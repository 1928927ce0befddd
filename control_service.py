import argparse
import io
import logging
import threading
from typing import Dict, Optional

import pandas as pd
from flask import Flask, Response, jsonify, request

from gridbot.config import build_grid_config, client_factory_from_general, load_config
from gridbot.grid import GridConfig, StartupError
from gridbot.sessions import Credentials, SessionExistsError, SessionSupervisor

app = Flask(__name__)

# Populated by `main()` (or `configure()` in tests). Credentials are kept in
# memory only, keyed by user id, the same way the chat front end collected them.
GENERAL_CFG: Dict = {}
PAIRS_RAW: Dict[str, Dict] = {}
SUPERVISOR: Optional[SessionSupervisor] = None
_USER_CREDENTIALS: Dict[str, Credentials] = {}
_CRED_LOCK = threading.Lock()


def configure(supervisor: SessionSupervisor, general: Optional[Dict] = None, pairs=None) -> None:
    global SUPERVISOR, GENERAL_CFG, PAIRS_RAW
    SUPERVISOR = supervisor
    GENERAL_CFG = general or {}
    PAIRS_RAW = {str(p["symbol"]).upper(): p for p in (pairs or [])}
    with _CRED_LOCK:
        _USER_CREDENTIALS.clear()


def _supervisor() -> SessionSupervisor:
    if SUPERVISOR is None:
        raise RuntimeError("Supervisor not configured; start the service with main()")
    return SUPERVISOR


def _error(message: str, code: int):
    return jsonify({"status": "error", "message": message}), code


@app.after_request
def add_cors_headers(response: Response) -> Response:
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,OPTIONS"
    return response


@app.route("/users/<user>/credentials", methods=["PUT"])
def set_credentials(user: str) -> Response:
    payload = request.get_json(silent=True) or {}
    api_key = str(payload.get("api_key") or "").strip()
    api_secret = str(payload.get("api_secret") or "").strip()
    if not api_key or not api_secret:
        return _error("Usage: {\"api_key\": ..., \"api_secret\": ...}", 400)
    with _CRED_LOCK:
        _USER_CREDENTIALS[user] = Credentials(user_id=user, api_key=api_key, api_secret=api_secret)
    logging.info("Stored API credentials for user %s", user)
    return jsonify({"status": "ok", "user": user})


@app.route("/sessions", methods=["GET"])
def list_sessions() -> Response:
    return jsonify({"sessions": [h.status() for h in _supervisor().sessions()]})


@app.route("/sessions", methods=["POST"])
def start_session() -> Response:
    payload = request.get_json(silent=True) or {}
    user = str(payload.get("user") or "").strip()
    symbol = str(payload.get("symbol") or "").strip().upper()
    if not user or not symbol:
        return _error("'user' and 'symbol' are required", 400)

    if payload.get("api_key") and payload.get("api_secret"):
        credentials = Credentials(user_id=user, api_key=payload["api_key"], api_secret=payload["api_secret"])
    else:
        with _CRED_LOCK:
            credentials = _USER_CREDENTIALS.get(user)
        if credentials is None:
            return _error(f"Set API credentials for {user} first via PUT /users/{user}/credentials", 400)

    try:
        pair_raw = PAIRS_RAW.get(symbol, {"symbol": symbol})
        grid_cfg = build_grid_config(pair_raw, GENERAL_CFG)
        if payload.get("config"):
            overrides = dict(payload["config"])
            merged = grid_cfg.as_dict()
            if "poll_seconds" in overrides:
                merged.pop("poll_interval_ms")
            grid_cfg = GridConfig.from_dict({**merged, **overrides})
    except (TypeError, ValueError, ArithmeticError) as exc:
        return _error(f"Invalid grid config: {exc}", 400)

    try:
        handle = _supervisor().start(credentials, symbol, grid_cfg)
    except SessionExistsError as exc:
        return _error(str(exc), 409)
    except StartupError as exc:
        logging.exception("Failed to start session for %s/%s", user, symbol)
        return _error(str(exc), 400)
    return jsonify(handle.status()), 201


@app.route("/sessions/<session_id>", methods=["GET"])
def session_status(session_id: str) -> Response:
    handle = _supervisor().get(session_id)
    if handle is None:
        return _error(f"Unknown session {session_id}", 404)
    return jsonify(handle.status())


@app.route("/sessions/<session_id>/stop", methods=["POST"])
def stop_session(session_id: str) -> Response:
    supervisor = _supervisor()
    handle = supervisor.get(session_id)
    if handle is None:
        return _error(f"Unknown session {session_id}", 404)
    supervisor.stop(handle)
    return jsonify({"status": "stopped", "session_id": session_id})


@app.route("/sessions/<session_id>/logs", methods=["GET"])
def session_logs(session_id: str) -> Response:
    try:
        limit = max(0, min(1000, int(request.args.get("limit", 1000))))
    except ValueError:
        limit = 1000
    return jsonify({"session_id": session_id, "logs": _supervisor().events.logs(session_id, limit)})


@app.route("/sessions/<session_id>/export", methods=["GET"])
def export_logs(session_id: str) -> Response:
    logs = _supervisor().events.logs(session_id)
    df = pd.DataFrame(logs, columns=["ts", "session_id", "symbol", "kind", "msg"])
    output = io.StringIO()
    df.to_csv(output, index=False)
    filename = session_id.replace(":", "_")
    return Response(
        output.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}_events.csv"},
    )


@app.route("/health")
def health() -> Response:
    supervisor = _supervisor()
    return jsonify({
        "status": "ok",
        "sessions": len(supervisor.sessions()),
        "logs": supervisor.events.logs(limit=50),
    })


def main() -> None:
    parser = argparse.ArgumentParser(description="HTTP control service for per-user grid sessions")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--http-port", type=int, default=8080)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    cfg = load_config(args.config)
    general = cfg.get("general", {})
    configure(SessionSupervisor(client_factory_from_general(general)), general, cfg.get("pairs", []))
    try:
        app.run(host="0.0.0.0", port=args.http_port)
    finally:
        _supervisor().stop_all()


if __name__ == "__main__":
    main()
