from __future__ import annotations

from flask import current_app, g, jsonify, request

from smartmarks.api import api_bp
from smartmarks.auth.routes import create_account
from smartmarks.extensions import db
from smartmarks.models import ApiToken, User, as_utc, utcnow
from smartmarks.services.feed import latest_cursor, pull_feed_events
from smartmarks.services.security import api_auth_required
from smartmarks.services.store import (
    create_bookmark,
    delete_bookmark,
    list_bookmarks,
    validate_bookmark_input,
)


def _to_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _token_response(user: User, token: str, row: ApiToken):
    return jsonify(
        {
            "token": token,
            "token_name": row.name,
            "user_id": user.id,
            "expires_at": as_utc(row.expires_at).isoformat(),
        }
    )


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "Smartmarks"})


@api_bp.route("/auth/bootstrap-admin", methods=["POST"])
def bootstrap_admin_api():
    if User.query.count() > 0:
        return jsonify({"error": "bootstrap already completed"}), 409

    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        return jsonify({"error": "username and password are required"}), 400

    admin = create_account(username, password, is_admin=True)
    return jsonify({"status": "created", "user_id": admin.id}), 201


@api_bp.route("/auth/token", methods=["POST"])
def create_token_with_credentials():
    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    token_name = (payload.get("token_name") or "Smartmarks session").strip()

    user = User.query.filter_by(username=username).first()
    if not user or not user.is_active or not user.check_password(password):
        return jsonify({"error": "invalid credentials"}), 401

    token, row = ApiToken.create_for(
        user, token_name, current_app.config["ACCESS_TOKEN_TTL_SECONDS"]
    )
    db.session.commit()
    return _token_response(user, token, row)


@api_bp.route("/auth/refresh", methods=["POST"])
@api_auth_required(token_only=True)
def refresh_token():
    user = g.api_user
    current = g.api_token
    token, row = ApiToken.create_for(
        user, current.name, current_app.config["ACCESS_TOKEN_TTL_SECONDS"]
    )
    current.revoked_at = utcnow()
    db.session.commit()
    return _token_response(user, token, row)


@api_bp.route("/auth/logout", methods=["POST"])
@api_auth_required(token_only=True)
def revoke_token():
    g.api_token.revoked_at = utcnow()
    db.session.commit()
    return jsonify({"status": "signed_out"})


@api_bp.route("/auth/me", methods=["GET"])
@api_auth_required()
def current_identity():
    return jsonify({"user": g.api_user.as_identity()})


@api_bp.route("/admin/users", methods=["POST"])
@api_auth_required(admin=True)
def admin_create_user():
    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    is_admin = _to_bool(payload.get("is_admin"), default=False)

    if not username or not password:
        return jsonify({"error": "username and password are required"}), 400
    if User.query.filter_by(username=username).first():
        return jsonify({"error": "username already exists"}), 409

    user = create_account(username, password, is_admin=is_admin)
    return jsonify({"status": "created", "user_id": user.id}), 201


@api_bp.route("/admin/users", methods=["GET"])
@api_auth_required(admin=True)
def admin_list_users():
    users = User.query.order_by(User.created_at.desc()).all()
    return jsonify(
        {
            "items": [
                {
                    "id": user.id,
                    "username": user.username,
                    "is_admin": user.is_admin,
                    "is_active": user.is_active,
                    "created_at": as_utc(user.created_at).isoformat(),
                }
                for user in users
            ]
        }
    )


@api_bp.route("/bookmarks", methods=["GET"])
@api_auth_required()
def bookmarks_list_api():
    user = g.api_user
    cursor = latest_cursor(user.id)
    items = list_bookmarks(user.id)
    return jsonify({"items": [item.as_dict() for item in items], "cursor": cursor})


@api_bp.route("/bookmarks", methods=["POST"])
@api_auth_required()
def bookmarks_create_api():
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    owner = payload.get("owner")
    if owner is not None and owner != user.id:
        return jsonify({"error": "owner does not match session"}), 403
    title, target, error = validate_bookmark_input(
        payload.get("title"), payload.get("url") or payload.get("target")
    )
    if error:
        return jsonify({"error": error}), 400

    bookmark = create_bookmark(user.id, title, target)
    return jsonify(bookmark.as_dict()), 201


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["DELETE"])
@api_auth_required()
def bookmarks_delete_api(bookmark_id: int):
    user = g.api_user
    if not delete_bookmark(user.id, bookmark_id):
        return jsonify({"error": "bookmark not found"}), 404
    return jsonify({"status": "deleted", "id": bookmark_id})


@api_bp.route("/feed/pull", methods=["GET"])
@api_auth_required(token_only=True)
def feed_pull():
    user = g.api_user
    since = request.args.get("since", default=0, type=int)
    default_limit = current_app.config["FEED_PAGE_LIMIT"]
    limit = request.args.get("limit", default=default_limit, type=int)
    limit = max(1, min(limit, default_limit))
    return jsonify(pull_feed_events(user.id, since, limit))
