# flask_app/routes/auth.py

from datetime import datetime, timezone

from flask import current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from flask_app.models import User, db


def _credentials():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return (payload.get("username") or "").strip(), payload.get("password") or ""
    return (request.form.get("username") or "").strip(), request.form.get("password") or ""


def register_auth_routes(app):
    """Register session login/logout endpoints used by the directory API"""

    @app.route("/login", methods=["POST"])
    def login():
        username, password = _credentials()
        if not username or not password:
            return jsonify({"error": "Username and password are required.", "reason": "invalid_request"}), 400

        user = User.find_by_username(username)
        if user is None or not user.is_active or not user.check_password(password):
            current_app.logger.warning("Failed login attempt for %s", username, extra={"username": username})
            return jsonify({"error": "Invalid username or password.", "reason": "unauthenticated"}), 401

        login_user(user)
        user.last_login = datetime.now(timezone.utc)
        db.session.commit()
        current_app.logger.info("User %s logged in", username, extra={"user_id": user.id})
        return jsonify(
            {
                "ok": True,
                "user_id": user.id,
                "directory_role": user.directory_role,
                "school_id": user.school_id,
                "district_id": user.district_id,
            }
        )

    @app.route("/logout", methods=["POST"])
    @login_required
    def logout():
        user_id = current_user.id
        logout_user()
        current_app.logger.info("User %s logged out", user_id)
        return jsonify({"ok": True})
