"""Auth blueprint: /auth/*

JSON session login for the React frontend. Flask-Login keeps the session
cookie; state-changing requests send the CSRF token from /auth/csrf-token
as the X-CSRFToken header.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from artpero.errors import ForbiddenError, ValidationError
from artpero.extensions import limiter
from artpero.models.user import User
from artpero.services.membership_service import get_membership

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    """Email + password login. Answers with the user profile."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        raise ValidationError("Email and password are required.")

    user = User.query.filter_by(email=email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        raise ValidationError("Invalid email or password.")

    if not user.is_active:
        raise ForbiddenError("Your account has been deactivated.")

    login_user(user, remember=remember)
    return jsonify({"user": user.to_dict()})


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"success": True})


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    """Current user with their membership, if any."""
    membership = get_membership(current_user.id)
    return jsonify({
        "user": current_user.to_dict(),
        "membership": membership.to_dict() if membership else None,
    })


@auth_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrfToken": generate_csrf()})
