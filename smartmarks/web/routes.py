from __future__ import annotations

from flask import abort, flash, jsonify, redirect, render_template, request, url_for
from flask_login import current_user, login_required

from smartmarks.models import User
from smartmarks.services.feed import latest_cursor
from smartmarks.services.store import (
    create_bookmark,
    delete_bookmark,
    list_bookmarks,
    validate_bookmark_input,
)
from smartmarks.web import web_bp


@web_bp.before_app_request
def first_run_gate():
    endpoint = request.endpoint or ""
    if endpoint == "static" or endpoint.startswith("api."):
        return None
    allowed = {"auth.bootstrap_admin", "auth.login"}
    if endpoint not in allowed and User.query.count() == 0:
        return redirect(url_for("auth.bootstrap_admin"))
    return None


@web_bp.route("/")
@login_required
def dashboard():
    items = list_bookmarks(current_user.id)
    return render_template(
        "dashboard.html",
        app_name="Smartmarks",
        items=items,
        total=len(items),
    )


@web_bp.route("/bookmarks/live")
@login_required
def bookmarks_live():
    return jsonify(
        {
            "items": [item.as_dict() for item in list_bookmarks(current_user.id)],
            "cursor": latest_cursor(current_user.id),
        }
    )


@web_bp.route("/bookmarks", methods=["POST"])
@login_required
def bookmarks_add():
    title, target, error = validate_bookmark_input(
        request.form.get("title"), request.form.get("url")
    )
    if error:
        flash(f"{error}.", "error")
        return redirect(url_for("web.dashboard"))

    create_bookmark(current_user.id, title, target)
    flash("Bookmark added.", "success")
    return redirect(url_for("web.dashboard"))


@web_bp.route("/bookmarks/<int:bookmark_id>/delete", methods=["POST"])
@login_required
def bookmarks_delete(bookmark_id: int):
    if not delete_bookmark(current_user.id, bookmark_id):
        abort(404)
    flash("Bookmark deleted.", "success")
    return redirect(url_for("web.dashboard"))
