from flask import flash, redirect, render_template, request, url_for
from flask_login import current_user, login_required, login_user, logout_user

from smartmarks.auth import auth_bp
from smartmarks.extensions import db
from smartmarks.models import User


def _safe_redirect_target(raw_next: str | None, fallback: str) -> str:
    candidate = (raw_next or "").strip()
    if candidate.startswith("/") and not candidate.startswith("//"):
        return candidate
    return fallback


def create_account(username: str, password: str, is_admin=False) -> User:
    user = User(username=username, is_admin=is_admin, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


@auth_bp.route("/bootstrap", methods=["GET", "POST"])
def bootstrap_admin():
    if User.query.count() > 0:
        return redirect(url_for("auth.login"))

    if request.method == "POST":
        username = (request.form.get("username") or "").strip()
        password = request.form.get("password") or ""
        confirm = request.form.get("confirm_password") or ""

        if not username or not password:
            flash("Username and password are required.", "error")
        elif password != confirm:
            flash("Passwords do not match.", "error")
        else:
            create_account(username, password, is_admin=True)
            flash("Admin account created. Please sign in.", "success")
            return redirect(url_for("auth.login"))

    return render_template("bootstrap.html", app_name="Smartmarks")


@auth_bp.route("/login", methods=["GET", "POST"])
def login():
    next_url = _safe_redirect_target(
        request.form.get("next") or request.args.get("next"),
        url_for("web.dashboard"),
    )
    if current_user.is_authenticated:
        return redirect(next_url)

    if User.query.count() == 0:
        return redirect(url_for("auth.bootstrap_admin"))

    if request.method == "POST":
        username = (request.form.get("username") or "").strip()
        password = request.form.get("password") or ""

        user = User.query.filter_by(username=username).first()
        if user and user.is_active and user.check_password(password):
            login_user(user)
            return redirect(next_url)
        flash("Invalid credentials.", "error")

    return render_template("login.html", app_name="Smartmarks", next_url=next_url)


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    flash("Signed out.", "success")
    return redirect(url_for("auth.login"))
