#!/usr/bin/env python3
"""
Foard Board Server
------------------
JSON API over the shared task boards. Every request opens a short board
session (membership check, subscription, edit) against the configured
document store.

Usage:
    python board_server.py --config config/foard.yaml

API (mutating routes need X-API-Key; board routes need X-User-Id):
    POST   /api/login                          → { userId, name, luckyNumber }
    POST   /api/boards                         → create board, caller becomes owner
    GET    /api/users/<user>/boards            → boards the user belongs to
    GET    /api/boards/<id>                    → { board, columns, archive }
    GET    /api/boards/<id>/members            → members with names
    POST   /api/boards/<id>/tasks              → { titles, category }
    POST   /api/boards/<id>/tasks/<task>/move  → { category?, index? }
    POST   /api/boards/<id>/tasks/<task>/drop  → { over }
    POST   /api/boards/<id>/tasks/<task>/archive
    DELETE /api/boards/<id>/tasks/<task>
    POST   /api/boards/<id>/invites            → { token, expiresAt }
    POST   /api/invites/<token>/accept         → { boardId }
    GET    /health

Dependencies:
    pip install "flask[async]" pyyaml
"""

import hmac
import logging
import os
import sys
from functools import wraps

from flask import Flask, jsonify, request

from pkg.board.config import BoardConfig, ConfigError
from pkg.board.docstore import DocumentNotFound, StoreError, TransactionConflict
from pkg.board.identity import IdentityProvider, NotAuthenticated
from pkg.board.members import AccessDenied, CollaborationGate
from pkg.board.ordering import OrderingError, TaskNotFound
from pkg.board.reconcile import BoardSync, PersistenceError
from pkg.board.schema import ValidationError
from pkg.board.store import store_from_config

logger = logging.getLogger(__name__)

app = Flask(__name__)


# ── Config ───────────────────────────────────────────────────────────────────

def get_config() -> BoardConfig:
    cfg = app.config.get("BOARD_CONFIG")
    if cfg is None:
        cfg = BoardConfig.load()
        app.config["BOARD_CONFIG"] = cfg
    return cfg


def get_store():
    store = app.config.get("BOARD_STORE")
    if store is None:
        store = store_from_config(get_config())
        app.config["BOARD_STORE"] = store
    return store


def get_gate() -> CollaborationGate:
    return CollaborationGate(get_store(), invite_ttl_hours=get_config().invite_ttl_hours)


def current_user():
    return request.headers.get("X-User-Id", "").strip() or None


def open_session(board_id: str) -> BoardSync:
    cfg = get_config()
    return BoardSync(
        get_store(),
        board_id,
        user_id=current_user(),
        gate=get_gate(),
        write_attempts=cfg.write_attempts,
        retry_delay=cfg.retry_delay,
        transaction_attempts=cfg.transaction_attempts,
    )


def request_data() -> dict:
    return request.get_json(force=True, silent=True) or {}


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    async def decorated(*args, **kwargs):
        secret = get_config().api_secret
        if not secret:
            return jsonify({"error": "API secret not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return await f(*args, **kwargs)
    return decorated


def require_user():
    user_id = current_user()
    if not user_id:
        raise NotAuthenticated("X-User-Id header is required")
    return user_id


# ── Errors ───────────────────────────────────────────────────────────────────

def _error(e: Exception, code: int):
    return jsonify({"error": str(e), "type": type(e).__name__}), code


@app.errorhandler(ValidationError)
@app.errorhandler(OrderingError)
def handle_bad_request(e):
    return _error(e, 400)


@app.errorhandler(NotAuthenticated)
def handle_not_authenticated(e):
    return _error(e, 401)


@app.errorhandler(AccessDenied)
def handle_access_denied(e):
    return _error(e, 403)


@app.errorhandler(TaskNotFound)
@app.errorhandler(DocumentNotFound)
def handle_not_found(e):
    return _error(e, 404)


@app.errorhandler(TransactionConflict)
def handle_conflict(e):
    return _error(e, 409)


@app.errorhandler(PersistenceError)
def handle_persistence(e):
    app.logger.warning(f"Write failed: {e}")
    return _error(e, 502)


@app.errorhandler(StoreError)
def handle_store(e):
    app.logger.error(f"Store unavailable: {e}")
    return _error(e, 503)


# ── Routes: identity and boards ──────────────────────────────────────────────

@app.route("/api/login", methods=["POST"])
@require_api_key
async def api_login():
    data = request_data()
    provider = IdentityProvider(get_store(), timeout=get_config().identity_timeout)
    identity = await provider.login(data.get("name"), data.get("luckyNumber"))
    return jsonify(identity.to_dict())


@app.route("/api/boards", methods=["POST"])
@require_api_key
async def api_create_board():
    user_id = require_user()
    board = await get_gate().create_board(request_data().get("name", ""), user_id)
    return jsonify({"board": board.to_dict()}), 201


@app.route("/api/users/<user_id>/boards")
async def api_user_boards(user_id):
    if require_user() != user_id:
        raise AccessDenied("Cannot list another user's boards")
    pairs = await get_gate().user_boards(user_id)
    boards = [{**board.to_dict(), "role": member.role.value} for board, member in pairs]
    return jsonify({"boards": boards, "count": len(boards)})


@app.route("/api/boards/<board_id>")
async def api_board(board_id):
    require_user()
    board = await get_gate().get_board(board_id)
    if board is None:
        return jsonify({"error": "Board not found"}), 404
    async with open_session(board_id) as sync:
        return jsonify({"board": board.to_dict(), **sync.view.to_dict()})


@app.route("/api/boards/<board_id>/members")
async def api_members(board_id):
    gate = get_gate()
    await gate.require_member(board_id, require_user())
    members = await gate.list_members(board_id)
    return jsonify({"members": [m.to_dict() for m in members]})


# ── Routes: tasks ────────────────────────────────────────────────────────────

@app.route("/api/boards/<board_id>/tasks", methods=["POST"])
@require_api_key
async def api_create_tasks(board_id):
    require_user()
    data = request_data()
    async with open_session(board_id) as sync:
        created = await sync.create(data.get("titles"), data.get("category", ""))
        return jsonify({"created": [t.to_dict() for t in created], **sync.view.to_dict()}), 201


@app.route("/api/boards/<board_id>/tasks/<task_id>/move", methods=["POST"])
@require_api_key
async def api_move_task(board_id, task_id):
    require_user()
    data = request_data()
    async with open_session(board_id) as sync:
        if data.get("category"):
            view = await sync.move_across(task_id, data["category"], data.get("index"))
        elif "index" in data:
            view = await sync.move_within(task_id, data["index"])
        else:
            raise ValidationError("category or index is required")
        return jsonify(view.to_dict())


@app.route("/api/boards/<board_id>/tasks/<task_id>/drop", methods=["POST"])
@require_api_key
async def api_drop_task(board_id, task_id):
    require_user()
    over = str(request_data().get("over", "")).strip()
    if not over:
        raise ValidationError("over is required")
    async with open_session(board_id) as sync:
        view = await sync.drop(task_id, over)
        return jsonify(view.to_dict())


@app.route("/api/boards/<board_id>/tasks/<task_id>/archive", methods=["POST"])
@require_api_key
async def api_archive_task(board_id, task_id):
    require_user()
    async with open_session(board_id) as sync:
        view = await sync.archive(task_id)
        return jsonify(view.to_dict())


@app.route("/api/boards/<board_id>/tasks/<task_id>", methods=["DELETE"])
@require_api_key
async def api_delete_task(board_id, task_id):
    require_user()
    async with open_session(board_id) as sync:
        view = await sync.delete(task_id)
        return jsonify(view.to_dict())


# ── Routes: invites ──────────────────────────────────────────────────────────

@app.route("/api/boards/<board_id>/invites", methods=["POST"])
@require_api_key
async def api_create_invite(board_id):
    invite = await get_gate().create_invite(board_id, require_user())
    return jsonify({
        "token": invite.token,
        "inviteId": invite.invite_id,
        "expiresAt": invite.expires_at.isoformat(),
    }), 201


@app.route("/api/invites/<token>/accept", methods=["POST"])
@require_api_key
async def api_accept_invite(token):
    board_id = await get_gate().accept_invite(token, require_user())
    if board_id is None:
        return jsonify({"error": "Invite is invalid or expired"}), 404
    return jsonify({"boardId": board_id})


@app.route("/health")
def health():
    return jsonify({"status": "ok", "store": get_config().store})


# ── Main ─────────────────────────────────────────────────────────────────────

def main():
    import argparse

    parser = argparse.ArgumentParser(description="Foard Board Server")
    parser.add_argument("--config", help="Path to foard.yaml (overrides FOARD_CONFIG env var)")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to the SQLite file (overrides FOARD_DB env var)")
    args = parser.parse_args()

    if args.db:
        os.environ["FOARD_DB"] = args.db
    try:
        cfg = BoardConfig.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [foard-server] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    app.config["BOARD_CONFIG"] = cfg

    host = args.host or cfg.host
    port = args.port or cfg.port
    logger.info(f"Serving boards on http://{host}:{port} (store: {cfg.store})")
    app.run(host=host, port=port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
