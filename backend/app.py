import os
from datetime import datetime, timedelta
from io import BytesIO
from typing import Mapping, Optional
from uuid import uuid4

from flask import (
    Blueprint,
    Flask,
    Request,
    jsonify,
    make_response,
    request,
    send_from_directory,
)
from flask_compress import Compress
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required
from flask_talisman import Talisman
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.utils import secure_filename

from .accounts import AccountResolver, UserRepository
from .auth import create_auth_blueprint, init_google_oauth
from .config import MB, Settings
from .cors import CorsPolicy
from .database import ConnectionManager

# Mount points for the resource routers; kept stable for existing clients.
RESOURCE_PREFIXES = {
    "products": "/api/products",
    "cart": "/api/cart",
    "wishlist": "/api/wishlist",
    "orders": "/api/orders",
    "payment": "/api/payment",
    "settings": "/api/settings",
    "footer": "/api/footer",
    "admin": "/api/admin",
    "superadmin": "/api/superadmin",
    "notifications": "/api/notifications",
    "homepage": "/api/homepage",
}

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


class InMemoryUploadRequest(Request):
    """Request that keeps multipart file parts in memory instead of temp files."""

    def _get_file_stream(
        self, total_content_length, content_type, filename=None, content_length=None
    ):
        return BytesIO()


def uploaded_file_size(storage) -> int:
    stream = storage.stream
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


def utc_timestamp() -> str:
    return f"{datetime.utcnow().isoformat()}Z"


def create_app(
    settings: Optional[Settings] = None,
    connection: Optional[ConnectionManager] = None,
    resource_blueprints: Optional[Mapping[str, Blueprint]] = None,
) -> Flask:
    """Create and configure the Flask application."""
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.request_class = InMemoryUploadRequest
    app.logger.setLevel(settings.log_level)

    # --- Configuration ---
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["JWT_SECRET_KEY"] = settings.jwt_secret_key
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=settings.jwt_access_token_expires_hours
    )
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length
    app.config["MAX_FORM_MEMORY_SIZE"] = settings.max_content_length
    app.config["UPLOAD_FOLDER"] = settings.upload_folder

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # --- Security headers and compression ---
    Talisman(
        app,
        force_https=False,
        session_cookie_secure=settings.is_production,
        content_security_policy={"default-src": "'self'"},
    )
    Compress(app)

    # --- CORS ---
    cors_policy = CorsPolicy.for_settings(settings)
    if settings.is_production and not settings.frontend_url:
        app.logger.warning(
            "FRONTEND_URL is not set; cross-origin requests will be refused in production."
        )
    CORS(app, **cors_policy.flask_cors_options())

    @app.before_request
    def log_request():
        app.logger.info(
            "%s - %s %s from %s",
            utc_timestamp(),
            request.method,
            request.path,
            request.headers.get("Origin") or "no-origin",
        )

    @app.before_request
    def answer_preflight():
        if request.method != "OPTIONS":
            return None
        response = make_response("", 200)
        for header, value in cors_policy.preflight_headers(
            request.headers.get("Origin")
        ).items():
            response.headers[header] = value
        return response

    @app.before_request
    def enforce_upload_limit():
        if request.mimetype != "multipart/form-data":
            return None
        for _field, storage in request.files.items(multi=True):
            if uploaded_file_size(storage) > settings.max_file_size:
                raise RequestEntityTooLarge(
                    f"Each uploaded file must be {settings.max_file_size // MB} MB or smaller."
                )
        return None

    # --- Authentication context ---
    JWTManager(app)
    init_google_oauth(app, settings)

    # --- Persistence ---
    if connection is None:
        connection = ConnectionManager(
            settings.mongo_uri,
            database_name=settings.database_name,
            options=settings.mongo.client_kwargs(),
            retry_delay=settings.db_retry_delay,
        )
    connection.init_app(app)

    users = UserRepository(connection)
    resolver = AccountResolver(users)
    connection.on_connected(lambda _connection: users.ensure_indexes())

    # --- Helpers ---

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in ALLOWED_IMAGE_EXTENSIONS

    def save_uploaded_image(image_file):
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "An image file is required."

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(app.config["UPLOAD_FOLDER"], unique_filename)

        try:
            image_file.save(destination)
        except OSError:
            return None, "We could not store the uploaded image. Please try again."

        return unique_filename, None

    # --- ROUTES ---

    @app.route("/api/health", methods=["GET"])
    def health():
        return jsonify(
            {
                "status": "OK",
                "message": "Server is running",
                "timestamp": utc_timestamp(),
                "cors": "enabled",
            }
        )

    @app.route("/api/debug/cors", methods=["GET"])
    def debug_cors():
        return jsonify(
            {
                "message": "CORS is working!",
                "origin": request.headers.get("Origin"),
                "headers": dict(request.headers),
                "timestamp": utc_timestamp(),
            }
        )

    # Legacy upload links.
    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    @app.route("/api/upload", methods=["POST"])
    @jwt_required()
    def upload_image():
        filename, error = save_uploaded_image(request.files.get("image"))
        if error:
            return jsonify({"message": error}), 400
        return (
            jsonify(
                {
                    "message": "Image uploaded successfully.",
                    "filename": filename,
                    "url": f"/uploads/{filename}",
                }
            ),
            201,
        )

    app.register_blueprint(
        create_auth_blueprint(users, resolver, settings), url_prefix="/api/auth"
    )
    for name, blueprint in (resource_blueprints or {}).items():
        prefix = RESOURCE_PREFIXES.get(name)
        if prefix is None:
            raise ValueError(f"Unknown resource router: {name}")
        app.register_blueprint(blueprint, url_prefix=prefix)

    # --- Errors ---

    @app.errorhandler(404)
    def route_not_found(_error):
        return jsonify({"message": "Route not found"}), 404

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(Exception)
    def unhandled_error(error):
        app.logger.exception(
            "Unhandled error while processing %s %s", request.method, request.path
        )
        return (
            jsonify(
                {
                    "message": "Something went wrong!",
                    "error": str(error)
                    if settings.is_development
                    else "Internal server error",
                }
            ),
            500,
        )

    if not connection.is_connected:
        connection.start()

    app.logger.info("Environment: %s", settings.environment)
    return app
