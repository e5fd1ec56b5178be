import re
from typing import Optional
from urllib.parse import urlencode

import bcrypt
import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.flask_client import OAuth
from flask import Blueprint, current_app, jsonify, redirect, request
from flask_jwt_extended import create_access_token, get_jwt_identity, jwt_required
from pymongo.errors import DuplicateKeyError, PyMongoError

from .accounts import (
    AccountResolver,
    GoogleProfile,
    ProfileError,
    Resolved,
    UserRepository,
    normalize_email,
    serialize_user_profile,
)

GOOGLE_CLIENT_KEY = "google_oauth_client"
GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
MIN_PASSWORD_LENGTH = 6

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def init_google_oauth(app, settings) -> Optional[OAuth]:
    """Register the Google client, or leave sign-in disabled when unconfigured."""
    if not settings.google_oauth_enabled:
        app.logger.warning(
            "Google OAuth not configured - missing GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET"
        )
        return None

    oauth = OAuth(app)
    client = oauth.register(
        name="google",
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        server_metadata_url=GOOGLE_DISCOVERY_URL,
        client_kwargs={"scope": "openid email profile"},
    )
    app.extensions[GOOGLE_CLIENT_KEY] = client
    app.logger.info("Google OAuth callback URL: %s", settings.google_callback_url)
    return oauth


def issue_token(user_document) -> str:
    return create_access_token(
        identity=normalize_email(user_document.get("email")),
        additional_claims={
            "user_id": str(user_document.get("_id", "")),
            "role": user_document.get("role", "standard"),
        },
    )


def create_auth_blueprint(
    users: UserRepository, resolver: AccountResolver, settings
) -> Blueprint:
    bp = Blueprint("auth", __name__)

    def google_client():
        return current_app.extensions.get(GOOGLE_CLIENT_KEY)

    def frontend_redirect(path: str, **params):
        target = f"{settings.frontend_base_url}{path}"
        if params:
            target = f"{target}?{urlencode(params)}"
        return redirect(target)

    def fetch_google_profile(client) -> GoogleProfile:
        token = client.authorize_access_token()
        info = token.get("userinfo") if token else None
        if not info:
            info = client.userinfo(token=token)
        return GoogleProfile.from_userinfo(info or {})

    @bp.route("/google", methods=["GET"])
    def google_login():
        client = google_client()
        if client is None:
            return jsonify({"message": "Google sign-in is not configured."}), 503
        return client.authorize_redirect(settings.google_callback_url)

    @bp.route("/google/callback", methods=["GET"])
    def google_callback():
        client = google_client()
        if client is None:
            return jsonify({"message": "Google sign-in is not configured."}), 503

        try:
            profile = fetch_google_profile(client)
        except (OAuthError, ProfileError, requests.RequestException) as exc:
            current_app.logger.warning("Google sign-in failed: %s", exc)
            return frontend_redirect("/login", error="google_auth_failed")

        result = resolver.resolve(profile)
        if not isinstance(result, Resolved):
            current_app.logger.error(
                "Google sign-in for %s could not be completed: %s",
                profile.email,
                result.error,
            )
            return frontend_redirect("/login", error="google_auth_failed")

        try:
            users.touch_last_login(result.user["_id"])
        except PyMongoError as exc:
            current_app.logger.warning(
                "Could not record last login for %s: %s", profile.email, exc
            )
        return frontend_redirect("/auth/success", token=issue_token(result.user))

    @bp.route("/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name", "")).strip()
        password = str(payload.get("password", ""))

        if not email or not name or not password:
            return (
                jsonify(
                    {"message": "Email, name, and password are required to create an account."}
                ),
                400,
            )
        if not email_regex.match(email):
            return jsonify({"message": "Please provide a valid email address."}), 400
        if len(password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {"message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters."}
                ),
                400,
            )

        if users.find_by_email(email):
            return jsonify({"message": "An account with this email already exists."}), 400

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        try:
            user = users.create_local(email, name, hashed_pw)
        except DuplicateKeyError:
            return jsonify({"message": "An account with this email already exists."}), 400

        current_app.logger.info("Registered new account %s", email)
        return (
            jsonify(
                {
                    "message": "Account created.",
                    "access_token": issue_token(user),
                    "user": serialize_user_profile(user),
                }
            ),
            201,
        )

    @bp.route("/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = users.find_by_email(email)
        if user and user.get("password") is None:
            return (
                jsonify({"message": "This account uses Google sign-in. Continue with Google."}),
                401,
            )
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"message": "Invalid credentials"}), 401

        users.touch_last_login(user["_id"])
        return jsonify(
            {"access_token": issue_token(user), "user": serialize_user_profile(user)}
        )

    @bp.route("/me", methods=["GET"])
    @jwt_required()
    def current_user():
        user = users.find_by_email(get_jwt_identity())
        if not user:
            return jsonify({"message": "Account not found."}), 404
        return jsonify({"user": serialize_user_profile(user)})

    return bp
