#!/usr/bin/env python3
"""
Task Board Server
-----------------
JSON API over the task board store. Every request acts on behalf of the user
named in the X-User-Id header; the store decides whether that user may touch
the board. Mutations go through the move protocol so that ordering and the
activity trail behave exactly as they do for in-process clients.

Usage:
    python taskboard_server.py --config taskboard.yaml
    python taskboard_server.py --db /tmp/taskboard.db --port 3000

API:
    POST   /api/profiles                    { email, full_name }
    GET    /api/boards                      boards of the caller
    POST   /api/boards                      { name, description }
    GET    /api/boards/<id>                 board, ordered lists with ordered tasks
    DELETE /api/boards/<id>
    GET    /api/boards/<id>/members
    POST   /api/boards/<id>/members         { email }
    GET    /api/boards/<id>/lists
    POST   /api/boards/<id>/lists           { name }   appended last
    PATCH  /api/lists/<id>                  { name }
    DELETE /api/lists/<id>
    POST   /api/lists/<id>/move             { index }
    GET    /api/boards/<id>/tasks[?q=...]
    POST   /api/lists/<id>/tasks            { title, description, priority, due_date, assigned_to }
    PATCH  /api/tasks/<id>                  { title, description, priority, due_date, assigned_to }
    DELETE /api/tasks/<id>
    POST   /api/tasks/<id>/move             { list_id, index }
    GET    /api/boards/<id>/activity[?limit=N]
"""

import asyncio
import logging
import os
import sys
from functools import wraps
from typing import Optional

from flask import Flask, g, jsonify, request

from taskboard import positions
from taskboard.activity import ActivityTrail
from taskboard.channel import NotificationHub
from taskboard.config import Config
from taskboard.errors import ConfigError, NotFound, PermissionDenied, TransientFailure
from taskboard.moves import MoveProtocol
from taskboard.schema import ActivityAction, EntityType
from taskboard.service import BoardService
from taskboard.store import TaskboardStore

logger = logging.getLogger("taskboard.server")

EDITABLE_TASK_FIELDS = ("title", "description", "priority", "due_date", "assigned_to")


# ── Auth ─────────────────────────────────────────────────────────────────────


def require_actor(f):
    """Decorator: reject requests without an X-User-Id header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        actor = request.headers.get("X-User-Id", "").strip()
        if not actor:
            return jsonify({"error": "X-User-Id header required"}), 401
        g.actor_id = actor
        return f(*args, **kwargs)
    return decorated


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _int_arg(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer")


# ── App factory ──────────────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None, store: Optional[TaskboardStore] = None,
               hub: Optional[NotificationHub] = None) -> Flask:
    cfg = config or Config.load()
    hub = hub or NotificationHub()
    store = store or TaskboardStore(cfg.db_path, notifier=hub)

    app = Flask(__name__)
    app.config["TASKBOARD"] = cfg
    app.extensions["taskboard_store"] = store
    app.extensions["taskboard_hub"] = hub

    def run_mutation(action):
        """Run a MoveProtocol call for the current actor and flush its activity entry."""
        actor_id = g.actor_id

        async def run():
            service = BoardService(store, actor_id)
            trail = ActivityTrail(service, default_limit=cfg.activity_limit)
            protocol = MoveProtocol(service, trail, retries=cfg.move_retries)
            result = await action(protocol)
            await trail.drain()
            return result
        return asyncio.run(run())

    def log_activity(board_id, action, entity_type, entity_name=None, entity_id=None):
        """Synchronous append for routes that bypass the protocol; never fails the request."""
        try:
            store.append_activity(g.actor_id, board_id, action, entity_type,
                                  entity_name=entity_name, entity_id=entity_id)
        except Exception as e:
            logger.warning(f"Failed to append activity on board {board_id}: {e}")

    # ── Errors ───────────────────────────────────────────────────────────────

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(PermissionDenied)
    def handle_permission_denied(e):
        return jsonify({"error": str(e)}), 403

    @app.errorhandler(TransientFailure)
    def handle_transient(e):
        return jsonify({"error": str(e), "retryable": True}), 503

    @app.errorhandler(ValueError)
    def handle_value_error(e):
        return jsonify({"error": str(e)}), 400

    # ── Profiles ─────────────────────────────────────────────────────────────

    @app.route("/api/profiles", methods=["POST"])
    def api_create_profile():
        data = _body()
        profile = store.create_profile(data.get("email", ""), data.get("full_name", ""))
        return jsonify({"profile": profile.to_dict()}), 201

    # ── Boards ───────────────────────────────────────────────────────────────

    @app.route("/api/boards", methods=["GET"])
    @require_actor
    def api_boards():
        boards = store.list_boards(g.actor_id)
        return jsonify({"boards": [b.to_dict() for b in boards], "count": len(boards)})

    @app.route("/api/boards", methods=["POST"])
    @require_actor
    def api_create_board():
        data = _body()
        board = store.create_board(g.actor_id, data.get("name", ""), data.get("description", ""))
        log_activity(board.id, ActivityAction.CREATED, EntityType.BOARD, board.name, board.id)
        return jsonify({"board": board.to_dict()}), 201

    @app.route("/api/boards/<board_id>", methods=["GET"])
    @require_actor
    def api_board(board_id):
        """Board snapshot: lists and tasks in display order with dense indices."""
        board = store.get_board(g.actor_id, board_id)
        lists = store.list_lists(g.actor_id, board_id)
        by_list = positions.group_by_parent(store.list_tasks(g.actor_id, board_id))
        payload = []
        for index, lst in positions.dense(lists):
            item = lst.to_dict()
            item["index"] = index
            item["tasks"] = [
                dict(task.to_dict(), index=i) for i, task in positions.dense(by_list.get(lst.id, []))
            ]
            payload.append(item)
        return jsonify({"board": board.to_dict(), "lists": payload})

    @app.route("/api/boards/<board_id>", methods=["DELETE"])
    @require_actor
    def api_delete_board(board_id):
        store.delete_board(g.actor_id, board_id)
        return jsonify({"deleted": board_id})

    # ── Members ──────────────────────────────────────────────────────────────

    @app.route("/api/boards/<board_id>/members", methods=["GET"])
    @require_actor
    def api_members(board_id):
        members = store.list_members(g.actor_id, board_id)
        return jsonify({"members": [m.to_dict() for m in members]})

    @app.route("/api/boards/<board_id>/members", methods=["POST"])
    @require_actor
    def api_add_member(board_id):
        email = _body().get("email", "").strip()
        if not email:
            return jsonify({"error": "email is required"}), 400
        member = store.add_member_by_email(g.actor_id, board_id, email)
        log_activity(board_id, ActivityAction.ASSIGNED, EntityType.MEMBER, email, member.user_id)
        return jsonify({"member": member.to_dict()}), 201

    # ── Lists ────────────────────────────────────────────────────────────────

    @app.route("/api/boards/<board_id>/lists", methods=["GET"])
    @require_actor
    def api_lists(board_id):
        lists = store.list_lists(g.actor_id, board_id)
        return jsonify({"lists": [dict(lst.to_dict(), index=i) for i, lst in positions.dense(lists)]})

    @app.route("/api/boards/<board_id>/lists", methods=["POST"])
    @require_actor
    def api_create_list(board_id):
        name = _body().get("name", "")
        created = run_mutation(lambda p: p.create_list_at_end(board_id, name))
        return jsonify({"list": created.to_dict()}), 201

    @app.route("/api/lists/<list_id>", methods=["PATCH"])
    @require_actor
    def api_rename_list(list_id):
        name = _body().get("name", "")
        updated = run_mutation(lambda p: p.rename_list(list_id, name))
        return jsonify({"list": updated.to_dict()})

    @app.route("/api/lists/<list_id>", methods=["DELETE"])
    @require_actor
    def api_delete_list(list_id):
        deleted = run_mutation(lambda p: p.delete_list(list_id))
        return jsonify({"deleted": deleted.id})

    @app.route("/api/lists/<list_id>/move", methods=["POST"])
    @require_actor
    def api_move_list(list_id):
        index = _int_arg(_body().get("index"), "index")
        moved = run_mutation(lambda p: p.move_list(list_id, index))
        return jsonify({"list": moved.to_dict()})

    # ── Tasks ────────────────────────────────────────────────────────────────

    @app.route("/api/boards/<board_id>/tasks", methods=["GET"])
    @require_actor
    def api_tasks(board_id):
        query = request.args.get("q", "").strip()
        if query:
            tasks = store.search_tasks(g.actor_id, board_id, query)
        else:
            tasks = store.list_tasks(g.actor_id, board_id)
        return jsonify({"tasks": [t.to_dict() for t in tasks], "count": len(tasks)})

    @app.route("/api/lists/<list_id>/tasks", methods=["POST"])
    @require_actor
    def api_create_task(list_id):
        data = _body()
        fields = {k: data[k] for k in EDITABLE_TASK_FIELDS if k in data and k != "title"}
        created = run_mutation(lambda p: p.create_task_at_end(list_id, data.get("title", ""), **fields))
        return jsonify({"task": created.to_dict()}), 201

    @app.route("/api/tasks/<task_id>", methods=["PATCH"])
    @require_actor
    def api_update_task(task_id):
        data = _body()
        if "list_id" in data or "position" in data:
            return jsonify({"error": "use POST /api/tasks/<id>/move to relocate a task"}), 400
        changes = {k: data[k] for k in EDITABLE_TASK_FIELDS if k in data}
        if not changes:
            return jsonify({"error": "no editable fields given"}), 400
        updated = run_mutation(lambda p: p.edit_task(task_id, **changes))
        return jsonify({"task": updated.to_dict()})

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @require_actor
    def api_delete_task(task_id):
        deleted = run_mutation(lambda p: p.delete_task(task_id))
        return jsonify({"deleted": deleted.id})

    @app.route("/api/tasks/<task_id>/move", methods=["POST"])
    @require_actor
    def api_move_task(task_id):
        data = _body()
        list_id = data.get("list_id", "")
        if not list_id:
            return jsonify({"error": "list_id is required"}), 400
        index = _int_arg(data.get("index"), "index")
        moved = run_mutation(lambda p: p.move_task(task_id, list_id, index))
        return jsonify({"task": moved.to_dict()})

    # ── Activity ─────────────────────────────────────────────────────────────

    @app.route("/api/boards/<board_id>/activity", methods=["GET"])
    @require_actor
    def api_activity(board_id):
        limit = _int_arg(request.args.get("limit", cfg.activity_limit), "limit")
        entries = store.list_activity(g.actor_id, board_id, limit=limit)
        return jsonify({"activity": [e.to_dict() for e in entries]})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": store.db_path})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Task Board Server")
    parser.add_argument("--config", help="Path to taskboard.yaml")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to the SQLite database (overrides TASKBOARD_DB)")
    args = parser.parse_args()

    if args.db:
        os.environ["TASKBOARD_DB"] = args.db
    try:
        cfg = Config.load(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    host = args.host or cfg.host
    port = args.port or cfg.port
    logger.info(f"Task board server on http://{host}:{port} (db={cfg.db_path})")
    create_app(cfg).run(host=host, port=port, debug=False, threaded=True)
