import json
import logging
import os
import re
import secrets
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import bcrypt
import requests
from dotenv import load_dotenv
from flask import Flask, jsonify, render_template, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
    verify_jwt_in_request,
)
from flask_pymongo import PyMongo
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from . import orders as order_lifecycle
from . import reviews as product_reviews
from .checkout import (
    DEFAULT_COUNTRY,
    FLAT_SHIPPING_FEE,
    FREE_SHIPPING_THRESHOLD,
    calculate_order_totals,
    normalize_order_item,
    normalize_order_items,
)
from .errors import AuthenticationError, NotFoundError, StorefrontError, ValidationError
from .mail import (
    Mailer,
    build_broadcast_email,
    build_otp_email,
    build_ticket_received_email,
    build_ticket_reply_email,
)
from .otp import (
    MAX_FAILED_OTP_ATTEMPTS,
    OTP_CODE_LENGTH,
    InMemoryOtpStore,
    MongoOtpStore,
    generate_otp_code,
)
from .storage import LocalImageStorage
from .utils import (
    clean_text,
    is_valid_email,
    isoformat,
    normalize_email,
    parse_bool,
    parse_iso_date,
    safe_float,
    safe_positive_int,
    to_object_id,
    utcnow,
)

load_dotenv()

CATEGORIES = ["men", "women", "kids", "accessories"]
PRODUCT_SIZES = ("XS", "S", "M", "L", "XL", "XXL")
ALLOWED_USER_ROLES = {"user", "moderator", "admin"}
STAFF_ROLES = ("admin", "moderator")
TICKET_STATUSES = ("open", "in-progress", "resolved", "closed")
TICKET_PRIORITIES = ("low", "medium", "high", "urgent")
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo"

DEFAULT_THEME_ID = "default"
DEFAULT_THEME = {
    "name": "Default",
    "primary_color": "#dc2626",
    "secondary_color": "#ffffff",
    "accent_color": "#3b82f6",
    "enable_snow": False,
    "enable_particles": False,
    "background_image": "",
    "description": "Default theme",
}
CHRISTMAS_MODE_DEFAULTS = {
    "enabled": False,
    "discount": 25,
    "snowflakes_enabled": True,
    "updated_by": None,
}


def env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    try:
        return int(raw_value) if raw_value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name)
    try:
        return float(raw_value) if raw_value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def create_app(
    test_config: Optional[Dict] = None,
    *,
    database=None,
    mailer=None,
    otp_store=None,
    image_storage=None,
) -> Flask:
    """Create and configure the storefront application.

    Collaborators (database handle, mailer, OTP store, image storage) are
    built from configuration unless passed in explicitly.
    """
    app = Flask(__name__)

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        days=env_int("JWT_ACCESS_TOKEN_EXPIRES_DAYS", 30)
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/nikola_fashion"
    )
    app.config["MAX_CONTENT_LENGTH"] = env_int("MAX_UPLOAD_SIZE_MB", 16) * 1024 * 1024
    app.config["UPLOAD_FOLDER"] = os.getenv(
        "UPLOAD_FOLDER", os.path.join(app.root_path, "uploads")
    )
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["EMAIL_SENDER"] = (
        os.getenv("EMAIL_SENDER") or "Nikola Fashion <no-reply@nikolafashion.com>"
    )
    app.config["ADMIN_EMAIL"] = normalize_email(os.getenv("ADMIN_EMAIL"))
    app.config["FREE_SHIPPING_THRESHOLD"] = env_float(
        "FREE_SHIPPING_THRESHOLD", FREE_SHIPPING_THRESHOLD
    )
    app.config["FLAT_SHIPPING_FEE"] = env_float("FLAT_SHIPPING_FEE", FLAT_SHIPPING_FEE)
    app.config["DEFAULT_COUNTRY"] = os.getenv("DEFAULT_COUNTRY", DEFAULT_COUNTRY)
    app.config["ORDERS_PAGE_SIZE"] = env_int("ORDERS_PAGE_SIZE", 10)
    app.config["OTP_EXPIRATION_MINUTES"] = env_int("OTP_EXPIRATION_MINUTES", 10)
    app.config["OTP_MAX_FAILED_ATTEMPTS"] = env_int(
        "OTP_MAX_FAILED_ATTEMPTS", MAX_FAILED_OTP_ATTEMPTS
    )
    app.config["OTP_STORE_BACKEND"] = os.getenv("OTP_STORE_BACKEND", "memory")
    app.config["ORDER_STRICT_TRANSITIONS"] = parse_bool(
        os.getenv("ORDER_STRICT_TRANSITIONS")
    )
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO")

    if test_config:
        app.config.update(test_config)

    log_level = getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO)
    app.logger.setLevel(log_level)
    logging.getLogger("storefront").setLevel(log_level)

    # Honor proxy headers so generated upload links keep the public origin.
    trusted_proxy_hops = max(0, env_int("TRUSTED_PROXY_HOPS", 1))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    allowed_origins = [
        os.getenv("FRONTEND_URL", "").strip(),
        os.getenv("CLIENT_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database

    if mailer is None:
        mailer = Mailer(app.config["RESEND_API_KEY"], app.config["EMAIL_SENDER"])
    if otp_store is None:
        if app.config["OTP_STORE_BACKEND"] == "mongo":
            otp_store = MongoOtpStore(db.otp_codes)
        else:
            otp_store = InMemoryOtpStore()
    if image_storage is None:
        image_storage = LocalImageStorage(app.config["UPLOAD_FOLDER"])

    otp_ttl_seconds = app.config["OTP_EXPIRATION_MINUTES"] * 60
    pricing_options = {
        "free_shipping_threshold": app.config["FREE_SHIPPING_THRESHOLD"],
        "flat_shipping_fee": app.config["FLAT_SHIPPING_FEE"],
    }

    # --- Error handling ---

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return jsonify({"message": "Not authorized, no token"}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return jsonify({"message": "Not authorized, token failed"}), 401

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Session expired, please sign in again"}), 401

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(exc):
        return jsonify({"message": exc.message}), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        if exc.code is None or exc.code < 400:
            return exc
        return jsonify({"message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": str(exc)}), 500

    # --- Helpers ---

    def json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "user"

    def get_user_role(user_document) -> str:
        if not user_document:
            return "user"

        email = normalize_email(user_document.get("email"))
        if app.config["ADMIN_EMAIL"] and email == app.config["ADMIN_EMAIL"]:
            return "admin"

        return normalize_role(user_document.get("role", "user"))

    def load_current_user():
        current_email = normalize_email(get_jwt_identity())
        user_document = (
            db.users.find_one({"email": current_email}) if current_email else None
        )
        if not user_document:
            raise NotFoundError("User")
        return user_document

    def require_role(*roles: str):
        allowed = {normalize_role(role) for role in roles if role}

        current_email = normalize_email(get_jwt_identity())
        current_user = db.users.find_one({"email": current_email})
        if not current_user:
            return None, (jsonify({"message": "User not found"}), 404)

        if current_user.get("is_active") is False:
            return None, (jsonify({"message": "This account has been blocked."}), 403)

        user_role = get_user_role(current_user)
        if user_role == "admin" or not allowed or user_role in allowed:
            return current_user, None

        return (
            None,
            (
                jsonify(
                    {"message": "You need additional permissions to perform this action."}
                ),
                403,
            ),
        )

    def require_admin_user():
        return require_role("admin")

    def require_staff_user():
        return require_role(*STAFF_ROLES)

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())

    def password_matches(password: str, stored_hash) -> bool:
        if not password or not stored_hash:
            return False
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
        except ValueError:
            return False

    def issue_token(user_document) -> str:
        return create_access_token(
            identity=normalize_email(user_document.get("email")),
            additional_claims={"role": get_user_role(user_document)},
        )

    def serialize_user(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "phone": user_document.get("phone", "") or "",
            "address": user_document.get("address", "") or "",
            "role": get_user_role(user_document),
            "isActive": user_document.get("is_active") is not False,
            "isNewsletterSubscribed": bool(
                user_document.get("is_newsletter_subscribed")
            ),
            "createdAt": isoformat(user_document.get("created_at")),
        }

    def auth_response(user_document) -> Dict[str, object]:
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "role": get_user_role(user_document),
            "token": issue_token(user_document),
        }

    def fetch_user_or_404(user_id: str):
        object_id = to_object_id(user_id)
        user_document = db.users.find_one({"_id": object_id}) if object_id else None
        if not user_document:
            raise NotFoundError("User")
        return user_document

    def deliver_email(recipient: str, subject: str, html: str, text: str = "", context: str = "Email") -> bool:
        try:
            sent, error_details = mailer.send([recipient], subject, html, text)
        except Exception as exc:
            sent, error_details = False, str(exc)
        if not sent:
            app.logger.error(
                "%s delivery failed for %s: %s",
                context,
                recipient,
                error_details or "Unknown delivery error",
            )
        return sent

    def issue_otp(key: str, email: str, purpose: str) -> bool:
        otp = generate_otp_code(OTP_CODE_LENGTH)
        otp_store.set(key, otp, otp_ttl_seconds)
        subject, html_body, text_body = build_otp_email(
            otp, app.config["OTP_EXPIRATION_MINUTES"], purpose
        )
        return deliver_email(email, subject, html_body, text_body, context="OTP")

    def consume_otp(key: str, otp: str) -> bool:
        return otp_store.consume(key, otp, app.config["OTP_MAX_FAILED_ATTEMPTS"])

    def build_upload_url(filename: Optional[str]) -> str:
        if not filename:
            return ""
        return urljoin(request.host_url, f"uploads/{filename}")

    def parse_list_value(value) -> List[str]:
        if value is None:
            return []
        if isinstance(value, (list, tuple, set)):
            return [clean_text(item) for item in value if clean_text(item)]
        text = str(value).strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except ValueError:
                raise ValidationError("Could not read the list value provided.")
            return parse_list_value(decoded if isinstance(decoded, list) else [])
        return [part.strip() for part in text.split(",") if part.strip()]

    def form_or_json_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if request.form:
            for list_field in ("category", "sizes", "colors", "images"):
                values = request.form.getlist(list_field)
                if len(values) > 1:
                    payload[list_field] = values
        if not payload:
            payload = json_payload()
        return payload

    def parse_product_fields(payload: Dict, partial: bool = False) -> Dict[str, object]:
        fields: Dict[str, object] = {}

        if not partial or clean_text(payload.get("name")):
            name = clean_text(payload.get("name"))
            if not name:
                raise ValidationError("A product name is required.")
            fields["name"] = name

        if not partial or clean_text(payload.get("description")):
            description = clean_text(payload.get("description"))
            if not description:
                raise ValidationError("A product description is required.")
            fields["description"] = description

        if not partial or payload.get("price") not in (None, ""):
            price_value = safe_float(payload.get("price"), None)
            if price_value is None or price_value < 0:
                raise ValidationError("Price must be a number of zero or more.")
            fields["price"] = round(price_value, 2)

        if not partial or payload.get("category") not in (None, "", []):
            categories = [
                category.lower() for category in parse_list_value(payload.get("category"))
            ]
            if not categories:
                raise ValidationError("At least one category is required")
            fields["category"] = categories

        if payload.get("sizes") is not None:
            sizes = [size.upper() for size in parse_list_value(payload.get("sizes"))]
            invalid_sizes = [size for size in sizes if size not in PRODUCT_SIZES]
            if invalid_sizes:
                raise ValidationError(
                    f"Unsupported sizes: {', '.join(invalid_sizes)}. "
                    f"Use {', '.join(PRODUCT_SIZES)}."
                )
            fields["sizes"] = sizes
        elif not partial:
            fields["sizes"] = []

        if payload.get("colors") is not None:
            fields["colors"] = parse_list_value(payload.get("colors"))
        elif not partial:
            fields["colors"] = []

        if payload.get("stock") not in (None, ""):
            stock_value = safe_float(payload.get("stock"), None)
            if stock_value is None or stock_value < 0 or stock_value != int(stock_value):
                raise ValidationError("Stock must be a whole number of zero or more.")
            fields["stock"] = int(stock_value)
        elif not partial:
            fields["stock"] = 0

        if payload.get("featured") is not None:
            fields["featured"] = parse_bool(payload.get("featured"))
        elif not partial:
            fields["featured"] = False

        return fields

    def next_product_code() -> str:
        return f"PROD-{db.products.count_documents({}) + 1:05d}"

    def fetch_product_or_404(product_id: str):
        object_id = to_object_id(product_id)
        product_document = db.products.find_one({"_id": object_id}) if object_id else None
        if not product_document:
            raise NotFoundError("Product")
        return product_document

    def serialize_product(product_document) -> Dict[str, object]:
        if not product_document:
            return {}

        return {
            "id": str(product_document.get("_id")),
            "code": product_document.get("code", "") or "",
            "name": product_document.get("name", "") or "",
            "description": product_document.get("description", "") or "",
            "price": round(safe_float(product_document.get("price"), 0.0), 2),
            "category": list(product_document.get("category") or []),
            "sizes": list(product_document.get("sizes") or []),
            "colors": list(product_document.get("colors") or []),
            "images": list(product_document.get("images") or []),
            "stock": safe_positive_int(product_document.get("stock"), 0),
            "featured": bool(product_document.get("featured")),
            "createdAt": isoformat(product_document.get("created_at")),
            "updatedAt": isoformat(product_document.get("updated_at")),
        }

    def local_upload_filenames(image_urls: List[str]) -> List[str]:
        filenames = []
        for image_url in image_urls or []:
            marker = "/uploads/"
            if marker in str(image_url):
                filenames.append(str(image_url).rsplit(marker, 1)[-1])
        return filenames

    def attach_customers(serialized_orders: List[Dict]) -> List[Dict]:
        user_ids = {
            to_object_id(order["user"])
            for order in serialized_orders
            if order.get("user") and to_object_id(order["user"])
        }
        customers: Dict[str, Dict[str, str]] = {}
        if user_ids:
            for user_document in db.users.find(
                {"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1}
            ):
                customers[str(user_document["_id"])] = {
                    "name": user_document.get("name", "") or "",
                    "email": user_document.get("email", "") or "",
                }
        for order in serialized_orders:
            order["customer"] = customers.get(order.get("user") or "") or {
                "name": "Guest",
                "email": order.get("email") or "",
            }
        return serialized_orders

    def send_order_confirmation_email(order_document) -> bool:
        recipient = normalize_email(order_document.get("email"))
        if not is_valid_email(recipient):
            return False

        serialized_order = order_lifecycle.serialize_order(order_document)
        html_body = render_template(
            "emails/order_confirmation.html",
            order=serialized_order,
            created_at=order_document.get("created_at") or utcnow(),
        )
        item_lines = ", ".join(
            f"{item['name']} x{item['quantity']} ({item['price']:.2f})"
            for item in serialized_order["orderItems"]
        )
        text_body = (
            f"Thank you for your purchase! Order {serialized_order['id']}.\n"
            f"Items: {item_lines}.\n"
            f"Total: {serialized_order['totalPrice']:.2f}.\n\n"
            "Nikola Fashion Team"
        )
        return deliver_email(
            recipient,
            "Thank you for your order",
            html_body,
            text_body,
            context="Order confirmation",
        )

    def serialize_cart(items: List[Dict]) -> Dict[str, object]:
        return {"items": items, **calculate_order_totals(items, **pricing_options)}

    def cart_item_key(item: Dict) -> Tuple[str, str, str, str]:
        return (
            item.get("productId", ""),
            item.get("name", "") if not item.get("productId") else "",
            item.get("size", ""),
            item.get("color", ""),
        )

    def serialize_ticket(ticket_document) -> Dict[str, object]:
        if not ticket_document:
            return {}

        return {
            "id": str(ticket_document.get("_id")),
            "user": ticket_document.get("user"),
            "name": ticket_document.get("name", "") or "",
            "email": ticket_document.get("email", "") or "",
            "subject": ticket_document.get("subject", "") or "",
            "message": ticket_document.get("message", "") or "",
            "status": ticket_document.get("status", "open") or "open",
            "priority": ticket_document.get("priority", "medium") or "medium",
            "adminReply": ticket_document.get("admin_reply", "") or "",
            "adminRepliedAt": isoformat(ticket_document.get("admin_replied_at")),
            "createdAt": isoformat(ticket_document.get("created_at")),
            "updatedAt": isoformat(ticket_document.get("updated_at")),
        }

    def fetch_ticket_or_404(ticket_id: str):
        object_id = to_object_id(ticket_id)
        ticket_document = db.tickets.find_one({"_id": object_id}) if object_id else None
        if not ticket_document:
            raise NotFoundError("Ticket")
        return ticket_document

    def ensure_default_theme():
        if db.themes.find_one({"theme_id": DEFAULT_THEME_ID}):
            return
        has_active_theme = db.themes.count_documents({"is_active": True}) > 0
        db.themes.insert_one(
            {
                "theme_id": DEFAULT_THEME_ID,
                **DEFAULT_THEME,
                "is_active": not has_active_theme,
                "updated_at": utcnow(),
            }
        )

    def serialize_theme(theme_document) -> Dict[str, object]:
        return {
            "id": theme_document.get("theme_id", ""),
            "name": theme_document.get("name", "") or "",
            "primaryColor": theme_document.get("primary_color") or DEFAULT_THEME["primary_color"],
            "secondaryColor": theme_document.get("secondary_color") or DEFAULT_THEME["secondary_color"],
            "accentColor": theme_document.get("accent_color") or DEFAULT_THEME["accent_color"],
            "enableSnow": bool(theme_document.get("enable_snow")),
            "enableParticles": bool(theme_document.get("enable_particles")),
            "backgroundImage": theme_document.get("background_image", "") or "",
            "description": theme_document.get("description", "") or "",
            "isActive": bool(theme_document.get("is_active")),
            "updatedAt": isoformat(theme_document.get("updated_at")),
        }

    def fetch_theme_or_404(theme_id: str):
        ensure_default_theme()
        theme_document = db.themes.find_one({"theme_id": theme_id})
        if not theme_document:
            raise NotFoundError("Theme")
        return theme_document

    def get_or_create_christmas_mode():
        mode_document = db.christmas_mode.find_one()
        if not mode_document:
            mode_document = {**CHRISTMAS_MODE_DEFAULTS, "updated_at": utcnow()}
            insert_result = db.christmas_mode.insert_one(mode_document)
            mode_document["_id"] = insert_result.inserted_id
        return mode_document

    def serialize_christmas_mode(mode_document) -> Dict[str, object]:
        return {
            "enabled": bool(mode_document.get("enabled")),
            "discount": safe_float(mode_document.get("discount"), 0.0),
            "snowflakesEnabled": bool(mode_document.get("snowflakes_enabled")),
            "updatedBy": mode_document.get("updated_by"),
            "updatedAt": isoformat(mode_document.get("updated_at")),
        }

    def parse_discount(value) -> float:
        discount_value = safe_float(value, None)
        if discount_value is None or discount_value < 0 or discount_value > 100:
            raise ValidationError("Discount must be between 0 and 100")
        return discount_value

    def serialize_promo(promo_document) -> Dict[str, object]:
        return {
            "id": str(promo_document.get("_id")),
            "title": promo_document.get("title", "") or "",
            "description": promo_document.get("description", "") or "",
            "discountCode": promo_document.get("discount_code", "") or "",
            "discountPercent": safe_float(promo_document.get("discount_percent"), 0.0),
            "validTill": isoformat(promo_document.get("valid_till")),
            "createdAt": isoformat(promo_document.get("created_at")),
        }

    # --- ROUTES ---

    @app.route("/")
    def root():
        return jsonify({"message": "Welcome to Nikola Fashion E-commerce API"})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(image_storage.upload_folder, filename)

    # Catalog
    @app.route("/api/categories", methods=["GET"])
    @app.route("/api/products/categories", methods=["GET"])
    def list_categories():
        categories = [
            {"_id": str(index), "name": category.capitalize(), "slug": category}
            for index, category in enumerate(CATEGORIES)
        ]
        return jsonify(categories)

    @app.route("/api/products/next-code", methods=["GET"])
    @jwt_required()
    def get_next_product_code():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify({"code": next_product_code()})

    @app.route("/api/products/upload-image", methods=["POST"])
    @jwt_required()
    def upload_product_image():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        image_file = request.files.get("image")
        if not image_file:
            return jsonify({"message": "No image file provided"}), 400

        filename, image_error = image_storage.save(image_file, "products")
        if image_error:
            return jsonify({"message": image_error}), 400

        return jsonify({"url": build_upload_url(filename)})

    @app.route("/api/products/search/<query>", methods=["GET"])
    def search_products(query: str):
        pattern = {"$regex": re.escape(query), "$options": "i"}
        product_docs = db.products.find(
            {"$or": [{"name": pattern}, {"description": pattern}]}
        ).sort("created_at", -1)
        return jsonify([serialize_product(document) for document in product_docs])

    @app.route("/api/products", methods=["GET"])
    def list_products():
        query: Dict[str, object] = {}
        category = clean_text(request.args.get("category"))
        if category:
            query["category"] = {
                "$regex": f"^{re.escape(category)}$",
                "$options": "i",
            }
        if request.args.get("featured") == "true":
            query["featured"] = True

        product_docs = db.products.find(query).sort("created_at", -1)
        return jsonify([serialize_product(document) for document in product_docs])

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return jsonify(serialize_product(fetch_product_or_404(product_id)))

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = form_or_json_payload()
        product_fields = parse_product_fields(payload)

        images = parse_list_value(payload.get("images"))
        saved_filenames, image_error = image_storage.save_many(
            request.files.getlist("images") if request.files else [], "products"
        )
        if image_error:
            return jsonify({"message": image_error}), 400
        images.extend(build_upload_url(filename) for filename in saved_filenames)

        timestamp = utcnow()
        product_document = {
            **product_fields,
            "code": clean_text(payload.get("code")) or next_product_code(),
            "images": images,
            "created_by": normalize_email(current_user.get("email")),
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": result.inserted_id})

        app.logger.info(
            "Product %s created by %s", result.inserted_id, product_document["created_by"]
        )
        return jsonify(serialize_product(created_product)), 201

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document = fetch_product_or_404(product_id)
        payload = form_or_json_payload()
        updates = parse_product_fields(payload, partial=True)

        images = list(product_document.get("images") or [])
        if payload.get("images") is not None:
            images = parse_list_value(payload.get("images"))
        saved_filenames, image_error = image_storage.save_many(
            request.files.getlist("images") if request.files else [], "products"
        )
        if image_error:
            return jsonify({"message": image_error}), 400
        images.extend(build_upload_url(filename) for filename in saved_filenames)
        updates["images"] = images
        updates["updated_at"] = utcnow()

        db.products.update_one({"_id": product_document["_id"]}, {"$set": updates})
        updated_product = db.products.find_one({"_id": product_document["_id"]})
        return jsonify(serialize_product(updated_product))

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document = fetch_product_or_404(product_id)
        db.products.delete_one({"_id": product_document["_id"]})
        removed_reviews = db.reviews.delete_many({"product": product_document["_id"]})
        image_storage.remove(local_upload_filenames(product_document.get("images")))

        app.logger.info(
            "Product %s removed along with %d reviews",
            product_document["_id"],
            removed_reviews.deleted_count,
        )
        return jsonify({"message": "Product removed"})

    # Reviews
    @app.route("/api/products/<product_id>/reviews", methods=["GET"])
    def list_product_reviews(product_id: str):
        result = product_reviews.list_reviews(
            db,
            product_id,
            page=request.args.get("page", 1),
            limit=request.args.get("limit", product_reviews.DEFAULT_REVIEW_PAGE_SIZE),
            sort=request.args.get("sort", "newest"),
            rating=request.args.get("rating"),
        )
        return jsonify(result)

    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    def create_product_review(product_id: str):
        review_document = product_reviews.create_review(db, product_id, json_payload())
        return jsonify(product_reviews.serialize_review(review_document)), 201

    @app.route("/api/products/<product_id>/reviews/<review_id>", methods=["PUT"])
    def edit_product_review(product_id: str, review_id: str):
        review_document = product_reviews.edit_review(
            db, product_id, review_id, json_payload()
        )
        return jsonify(product_reviews.serialize_review(review_document))

    @app.route("/api/products/<product_id>/reviews/<review_id>", methods=["DELETE"])
    def delete_product_review(product_id: str, review_id: str):
        email = json_payload().get("email") or request.args.get("email")
        product_reviews.delete_review(db, product_id, review_id, email)
        return jsonify({"message": "Review deleted"})

    @app.route("/api/products/<product_id>/reviews/<review_id>/reply", methods=["POST"])
    @jwt_required()
    def reply_to_product_review(product_id: str, review_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        review_document = product_reviews.add_review_reply(
            db, product_id, review_id, json_payload().get("comment")
        )
        return jsonify(product_reviews.serialize_review(review_document)), 201

    # Accounts
    @app.route("/api/users/register", methods=["POST"])
    def register():
        payload = json_payload()
        name = clean_text(payload.get("name"))
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not name or not email or not password:
            return jsonify({"message": "Name, email, and password are required."}), 400

        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        if db.users.find_one({"email": email}):
            return jsonify({"message": "User already exists"}), 400

        assigned_role = (
            "admin"
            if app.config["ADMIN_EMAIL"] and email == app.config["ADMIN_EMAIL"]
            else "user"
        )
        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "role": assigned_role,
            "phone": "",
            "address": "",
            "is_active": True,
            "is_newsletter_subscribed": False,
            "created_at": utcnow(),
        }
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id

        app.logger.info("Registered new account for %s", email)
        return jsonify(auth_response(user_document)), 201

    @app.route("/api/users/login", methods=["POST"])
    def login():
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not password_matches(password, user.get("password")):
            raise AuthenticationError("Invalid email or password")

        if user.get("is_active") is False:
            return jsonify({"message": "This account has been blocked."}), 403

        db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": utcnow()}})
        return jsonify(auth_response(user))

    @app.route("/api/users/google-login", methods=["POST"])
    def google_login():
        token = clean_text(json_payload().get("token"))
        if not token:
            return jsonify({"message": "Google token is required"}), 400

        try:
            response = requests.get(
                GOOGLE_USERINFO_URL, params={"access_token": token}, timeout=10
            )
            response.raise_for_status()
            profile = response.json()
        except (requests.RequestException, ValueError) as exc:
            app.logger.warning("Google token verification failed: %s", exc)
            return jsonify({"message": "Could not verify the Google sign-in."}), 400

        email = normalize_email(profile.get("email") if isinstance(profile, dict) else None)
        if not email:
            return jsonify({"message": "Could not get email from Google"}), 400

        user = db.users.find_one({"email": email})
        if not user:
            user = {
                "name": clean_text(profile.get("name")) or email.split("@")[0],
                "email": email,
                "password": hash_password(secrets.token_urlsafe(24)),
                "role": "user",
                "phone": "",
                "address": "",
                "avatar_url": clean_text(profile.get("picture")),
                "is_active": True,
                "is_newsletter_subscribed": False,
                "created_at": utcnow(),
            }
            user["_id"] = db.users.insert_one(user).inserted_id
            app.logger.info("Created account for %s via Google sign-in", email)

        if user.get("is_active") is False:
            return jsonify({"message": "This account has been blocked."}), 403

        return jsonify(auth_response(user))

    @app.route("/api/users/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        return jsonify(serialize_user(load_current_user()))

    @app.route("/api/users/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        user = load_current_user()
        payload = json_payload()
        updates: Dict[str, object] = {}
        for field in ("name", "phone", "address"):
            if field not in payload:
                continue
            value = payload.get(field)
            # Addresses may be sent as a structured object.
            updates[field] = value if isinstance(value, dict) else clean_text(value)

        if "name" in updates and not updates["name"]:
            return jsonify({"message": "Name cannot be empty."}), 400

        if updates:
            updates["updated_at"] = utcnow()
            db.users.update_one({"_id": user["_id"]}, {"$set": updates})
        return jsonify(serialize_user(db.users.find_one({"_id": user["_id"]})))

    @app.route("/api/users", methods=["GET"])
    @jwt_required()
    def get_current_user():
        user = load_current_user()
        serialized = serialize_user(user)
        full_name = serialized["name"]
        name_parts = full_name.split(" ")
        serialized["firstName"] = name_parts[0] if full_name else ""
        serialized["lastName"] = " ".join(name_parts[1:])
        return jsonify(serialized)

    @app.route("/api/users/all", methods=["GET"])
    @jwt_required()
    def list_all_users():
        _, staff_error = require_staff_user()
        if staff_error:
            return staff_error
        users = db.users.find().sort("created_at", -1)
        return jsonify([serialize_user(user) for user in users])

    @app.route("/api/users/<user_id>/toggle-block", methods=["POST"])
    @jwt_required()
    def toggle_user_block(user_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        user = fetch_user_or_404(user_id)
        if user["_id"] == admin_user["_id"]:
            return jsonify({"message": "You cannot block your own account."}), 400

        is_active = user.get("is_active") is False
        db.users.update_one({"_id": user["_id"]}, {"$set": {"is_active": is_active}})
        user["is_active"] = is_active
        return jsonify(
            {
                "success": True,
                "message": "User unblocked" if is_active else "User blocked",
                "user": serialize_user(user),
            }
        )

    @app.route("/api/users/<user_id>/toggle-role", methods=["POST"])
    @jwt_required()
    def toggle_user_role(user_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        user = fetch_user_or_404(user_id)
        if normalize_email(user.get("email")) == app.config["ADMIN_EMAIL"]:
            return jsonify({"message": "The default administrator must remain an admin."}), 400

        new_role = "user" if get_user_role(user) == "admin" else "admin"
        db.users.update_one({"_id": user["_id"]}, {"$set": {"role": new_role}})
        user["role"] = new_role
        return jsonify(
            {
                "success": True,
                "message": "User promoted to admin" if new_role == "admin" else "User role revoked",
                "user": serialize_user(user),
            }
        )

    @app.route("/api/users/forgot-password", methods=["POST"])
    def forgot_password():
        email = normalize_email(json_payload().get("email"))
        generic_message = {"message": "If this email exists, a reset code has been sent."}

        if not is_valid_email(email):
            return jsonify(generic_message), 200

        if db.users.find_one({"email": email}):
            issue_otp(f"password-reset:{email}", email, "password_reset")

        return jsonify(generic_message), 200

    @app.route("/api/users/reset-password", methods=["POST"])
    def reset_password():
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        otp = clean_text(payload.get("otp"))
        new_password = str(payload.get("newPassword") or payload.get("new_password") or "")

        if not email or not otp or not new_password.strip():
            return jsonify({"message": "Email, reset code, and new password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not consume_otp(f"password-reset:{email}", otp):
            return jsonify({"message": "Invalid or expired reset code."}), 400

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password": hash_password(new_password), "updated_at": utcnow()}},
        )
        app.logger.info("Password reset completed for %s", email)
        return jsonify({"message": "Password successfully reset"}), 200

    # Cart
    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        user = load_current_user()
        return jsonify(serialize_cart(user.get("cart") or []))

    @app.route("/api/cart", methods=["PUT"])
    @jwt_required()
    def replace_cart():
        user = load_current_user()
        payload = request.get_json(silent=True)
        items = normalize_order_items(payload if payload is not None else {})
        db.users.update_one({"_id": user["_id"]}, {"$set": {"cart": items}})
        return jsonify(serialize_cart(items))

    @app.route("/api/cart/items", methods=["POST"])
    @jwt_required()
    def add_cart_item():
        user = load_current_user()
        payload = json_payload()
        item = normalize_order_item(
            payload.get("item") if isinstance(payload.get("item"), dict) else payload
        )
        if not item:
            return jsonify({"message": "Provide the item to add to the cart."}), 400

        items = list(user.get("cart") or [])
        for existing in items:
            if cart_item_key(existing) == cart_item_key(item):
                existing["quantity"] = safe_positive_int(existing.get("quantity"), 1) + item["quantity"]
                existing["price"] = item["price"]
                break
        else:
            items.append(item)

        db.users.update_one({"_id": user["_id"]}, {"$set": {"cart": items}})
        return jsonify(serialize_cart(items))

    @app.route("/api/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        user = load_current_user()
        db.users.update_one({"_id": user["_id"]}, {"$unset": {"cart": ""}})
        return jsonify(serialize_cart([]))

    # Orders
    @app.route("/api/orders", methods=["POST"])
    def create_order():
        verify_jwt_in_request(optional=True)
        current_email = normalize_email(get_jwt_identity())
        user_document = (
            db.users.find_one({"email": current_email}) if current_email else None
        )

        payload = request.get_json(silent=True)
        if isinstance(payload, list):
            payload = {"items": payload}
        payload = dict(payload) if isinstance(payload, dict) else {}
        if user_document and not payload.get("email"):
            payload["email"] = user_document.get("email")

        order_document = order_lifecycle.create_order(
            db,
            payload,
            user_id=str(user_document["_id"]) if user_document else None,
            default_country=app.config["DEFAULT_COUNTRY"],
            **pricing_options,
        )

        if user_document:
            db.users.update_one({"_id": user_document["_id"]}, {"$unset": {"cart": ""}})

        send_order_confirmation_email(order_document)
        return jsonify(order_lifecycle.serialize_order(order_document)), 201

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        query: Dict[str, object] = {}
        status = clean_text(request.args.get("status")).lower()
        if status:
            query["status"] = order_lifecycle.normalize_status(status)

        serialized = [
            order_lifecycle.serialize_order(document)
            for document in order_lifecycle.list_orders(db, query)
        ]
        return jsonify(attach_customers(serialized))

    @app.route("/api/orders/mine", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        user = load_current_user()
        query = {
            "$or": [
                {"user": str(user["_id"])},
                {"email": normalize_email(user.get("email"))},
            ]
        }
        return jsonify(
            [
                order_lifecycle.serialize_order(document)
                for document in order_lifecycle.list_orders(db, query)
            ]
        )

    @app.route("/api/orders/page/<int:page_num>", methods=["GET"])
    @jwt_required()
    def list_orders_page(page_num: int):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page_size = (
            safe_positive_int(request.args.get("limit"), 0) or app.config["ORDERS_PAGE_SIZE"]
        )
        order_docs, pagination = order_lifecycle.list_orders_page(db, page_num, page_size)
        serialized = [order_lifecycle.serialize_order(document) for document in order_docs]
        return jsonify({"orders": attach_customers(serialized), "pagination": pagination})

    @app.route("/api/orders/<order_id>", methods=["GET"])
    def get_order(order_id: str):
        order_document = order_lifecycle.get_order(db, order_id)
        return jsonify(order_lifecycle.serialize_order(order_document))

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order_document = order_lifecycle.update_order(
            db,
            order_id,
            json_payload(),
            strict_transitions=app.config["ORDER_STRICT_TRANSITIONS"],
        )
        app.logger.info(
            "Order %s updated by %s", order_id, normalize_email(admin_user.get("email"))
        )
        return jsonify(order_lifecycle.serialize_order(order_document))

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order(order_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order_lifecycle.delete_order(db, order_id)
        return jsonify({"message": "Order deleted successfully"})

    # --- Admin Routes ---

    @app.route("/api/admin/users", methods=["GET"])
    @jwt_required()
    def admin_list_users():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify([serialize_user(user) for user in db.users.find().sort("created_at", -1)])

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def admin_update_user_role(user_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        desired_role = clean_text(json_payload().get("role")).lower()
        if desired_role not in ALLOWED_USER_ROLES:
            return jsonify({"message": "Invalid role"}), 400

        user = fetch_user_or_404(user_id)
        if normalize_email(user.get("email")) == app.config["ADMIN_EMAIL"] and desired_role != "admin":
            return jsonify({"message": "The default administrator must remain an admin."}), 400

        db.users.update_one({"_id": user["_id"]}, {"$set": {"role": desired_role}})
        return jsonify(serialize_user(db.users.find_one({"_id": user["_id"]})))

    @app.route("/api/admin/users/<user_id>/status", methods=["PUT"])
    @jwt_required()
    def admin_update_user_status(user_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = json_payload()
        if "isActive" not in payload:
            return jsonify({"message": "isActive is required"}), 400

        user = fetch_user_or_404(user_id)
        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"is_active": parse_bool(payload.get("isActive"))}},
        )
        return jsonify(serialize_user(db.users.find_one({"_id": user["_id"]})))

    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def admin_list_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        serialized = [
            order_lifecycle.serialize_order(document)
            for document in order_lifecycle.list_orders(db)
        ]
        return jsonify(attach_customers(serialized))

    @app.route("/api/admin/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def admin_update_order_status(order_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = json_payload()
        if payload.get("status") is None:
            return jsonify({"message": "Invalid status"}), 400

        order_document = order_lifecycle.update_order(
            db,
            order_id,
            {"status": payload.get("status"), "cancelReason": payload.get("cancelReason")},
            strict_transitions=app.config["ORDER_STRICT_TRANSITIONS"],
        )
        serialized = order_lifecycle.serialize_order(order_document)
        return jsonify(attach_customers([serialized])[0])

    @app.route("/api/admin/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_order(order_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order_lifecycle.delete_order(db, order_id)
        return jsonify({"message": "Order deleted successfully"})

    @app.route("/api/admin/stats/products", methods=["GET"])
    @jwt_required()
    def admin_product_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        return jsonify(
            {
                "totalProducts": db.products.count_documents({}),
                "totalOrders": db.orders.count_documents({}),
                "totalUsers": db.users.count_documents({}),
                "totalRevenue": order_lifecycle.summarize_sales(db),
            }
        )

    # Support tickets
    @app.route("/api/tickets", methods=["POST"])
    def create_ticket():
        payload = json_payload()
        name = clean_text(payload.get("name"))
        email = normalize_email(payload.get("email"))
        subject = clean_text(payload.get("subject"))
        message = clean_text(payload.get("message"))

        if not name or not email or not subject or not message:
            return jsonify({"message": "All fields are required"}), 400

        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        timestamp = utcnow()
        ticket_document = {
            "user": clean_text(payload.get("userId")) or None,
            "name": name,
            "email": email,
            "subject": subject,
            "message": message,
            "status": "open",
            "priority": "medium",
            "admin_reply": "",
            "admin_replied_at": None,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        ticket_document["_id"] = db.tickets.insert_one(ticket_document).inserted_id

        email_subject, html_body = build_ticket_received_email(name, subject)
        deliver_email(email, email_subject, html_body, context="Ticket confirmation")

        return jsonify(serialize_ticket(ticket_document)), 201

    @app.route("/api/tickets", methods=["GET"])
    @jwt_required()
    def list_tickets():
        _, staff_error = require_staff_user()
        if staff_error:
            return staff_error

        query: Dict[str, object] = {}
        status = clean_text(request.args.get("status")).lower()
        if status:
            query["status"] = status
        tickets = db.tickets.find(query).sort([("created_at", -1), ("_id", -1)])
        return jsonify([serialize_ticket(ticket) for ticket in tickets])

    @app.route("/api/tickets/user/<user_id>", methods=["GET"])
    @jwt_required()
    def list_user_tickets(user_id: str):
        current_user = load_current_user()
        if str(current_user["_id"]) != user_id and get_user_role(current_user) not in STAFF_ROLES:
            return jsonify({"message": "You can only view your own tickets."}), 403

        tickets = db.tickets.find({"user": user_id}).sort([("created_at", -1), ("_id", -1)])
        return jsonify([serialize_ticket(ticket) for ticket in tickets])

    @app.route("/api/tickets/<ticket_id>", methods=["GET"])
    def get_ticket(ticket_id: str):
        return jsonify(serialize_ticket(fetch_ticket_or_404(ticket_id)))

    @app.route("/api/tickets/<ticket_id>/reply", methods=["PUT"])
    @jwt_required()
    def reply_to_ticket(ticket_id: str):
        _, staff_error = require_staff_user()
        if staff_error:
            return staff_error

        payload = json_payload()
        reply_text = clean_text(payload.get("message") or payload.get("reply"))
        if not reply_text:
            return jsonify({"message": "A reply message is required"}), 400

        status = clean_text(payload.get("status")).lower() or "in-progress"
        if status not in TICKET_STATUSES:
            return jsonify({"message": "Invalid status"}), 400

        ticket_document = fetch_ticket_or_404(ticket_id)
        timestamp = utcnow()
        db.tickets.update_one(
            {"_id": ticket_document["_id"]},
            {
                "$set": {
                    "admin_reply": reply_text,
                    "admin_replied_at": timestamp,
                    "status": status,
                    "updated_at": timestamp,
                }
            },
        )
        ticket_document = db.tickets.find_one({"_id": ticket_document["_id"]})

        email_subject, html_body = build_ticket_reply_email(
            ticket_document.get("name", ""), reply_text
        )
        deliver_email(
            ticket_document.get("email", ""),
            email_subject,
            html_body,
            context="Ticket reply",
        )
        return jsonify(serialize_ticket(ticket_document))

    @app.route("/api/tickets/<ticket_id>/status", methods=["PUT"])
    @jwt_required()
    def update_ticket_status(ticket_id: str):
        _, staff_error = require_staff_user()
        if staff_error:
            return staff_error

        payload = json_payload()
        status = clean_text(payload.get("status")).lower()
        if status not in TICKET_STATUSES:
            return jsonify({"message": "Invalid status"}), 400

        updates: Dict[str, object] = {"status": status, "updated_at": utcnow()}
        priority = clean_text(payload.get("priority")).lower()
        if priority:
            if priority not in TICKET_PRIORITIES:
                return jsonify({"message": "Invalid priority"}), 400
            updates["priority"] = priority

        ticket_document = fetch_ticket_or_404(ticket_id)
        db.tickets.update_one({"_id": ticket_document["_id"]}, {"$set": updates})
        return jsonify(serialize_ticket(db.tickets.find_one({"_id": ticket_document["_id"]})))

    # Newsletter
    @app.route("/api/newsletter/send-otp", methods=["POST"])
    def send_newsletter_otp():
        email = normalize_email(json_payload().get("email"))
        if not email:
            return jsonify({"message": "Email is required"}), 400
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        issue_otp(f"newsletter:{email}", email, "newsletter")
        return jsonify(
            {
                "message": "OTP sent to email",
                "email": email,
                "expiresInSeconds": otp_ttl_seconds,
                "otpLength": OTP_CODE_LENGTH,
            }
        )

    @app.route("/api/newsletter/verify", methods=["POST"])
    def verify_newsletter_otp():
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        otp = clean_text(payload.get("otp"))

        if not email or not otp:
            return jsonify({"message": "Email and OTP are required"}), 400

        if not consume_otp(f"newsletter:{email}", otp):
            return jsonify({"message": "Invalid or expired OTP"}), 400

        user = db.users.find_one({"email": email})
        if user:
            db.users.update_one(
                {"_id": user["_id"]}, {"$set": {"is_newsletter_subscribed": True}}
            )
        else:
            db.users.insert_one(
                {
                    "name": email.split("@")[0],
                    "email": email,
                    "password": hash_password(secrets.token_urlsafe(24)),
                    "role": "user",
                    "phone": "",
                    "address": "",
                    "is_active": True,
                    "is_newsletter_subscribed": True,
                    "created_at": utcnow(),
                }
            )

        app.logger.info("Newsletter subscription confirmed for %s", email)
        return jsonify({"message": "Successfully subscribed to newsletter", "email": email})

    @app.route("/api/newsletter/subscribers", methods=["GET"])
    @jwt_required()
    def list_newsletter_subscribers():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        subscribers = [
            {
                "id": str(user["_id"]),
                "email": user.get("email", ""),
                "name": user.get("name", ""),
            }
            for user in db.users.find(
                {"is_newsletter_subscribed": True}, {"email": 1, "name": 1}
            )
        ]
        return jsonify({"count": len(subscribers), "subscribers": subscribers})

    @app.route("/api/newsletter/promos", methods=["POST"])
    @jwt_required()
    def create_promo():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = json_payload()
        title = clean_text(payload.get("title"))
        discount_code = clean_text(payload.get("discountCode")).upper()
        if not title or not discount_code:
            return jsonify({"message": "Title and discount code are required"}), 400

        discount_percent = parse_discount(payload.get("discountPercent") or 0)
        valid_till = None
        if payload.get("validTill"):
            valid_till = parse_iso_date(payload.get("validTill"), end_of_day=True)
            if not valid_till:
                return jsonify({"message": "validTill must be an ISO date"}), 400

        promo_document = {
            "title": title,
            "description": clean_text(payload.get("description")),
            "discount_code": discount_code,
            "discount_percent": discount_percent,
            "valid_till": valid_till,
            "created_at": utcnow(),
        }
        promo_document["_id"] = db.promos.insert_one(promo_document).inserted_id
        return jsonify({"message": "Promo created", "promo": serialize_promo(promo_document)}), 201

    @app.route("/api/newsletter/promos", methods=["GET"])
    def list_promos():
        now = utcnow()
        promos = [
            serialize_promo(promo)
            for promo in db.promos.find().sort([("created_at", -1), ("_id", -1)])
            if not promo.get("valid_till") or promo["valid_till"] >= now
        ]
        return jsonify(promos)

    @app.route("/api/newsletter/broadcast", methods=["POST"])
    @jwt_required()
    def broadcast_newsletter():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = json_payload()
        subject = clean_text(payload.get("subject"))
        message = str(payload.get("message") or "").strip()
        if not subject or not message:
            return jsonify({"message": "Subject and message are required"}), 400

        email_subject, html_body = build_broadcast_email(subject, message)
        recipients = [
            user.get("email")
            for user in db.users.find({"is_newsletter_subscribed": True}, {"email": 1})
            if user.get("email")
        ]
        failed = 0
        for recipient in recipients:
            if not deliver_email(recipient, email_subject, html_body, message, context="Broadcast"):
                failed += 1

        app.logger.info(
            "Broadcast %r sent to %d subscribers (%d failed)", subject, len(recipients), failed
        )
        return jsonify(
            {
                "message": "Broadcast sent",
                "recipientCount": len(recipients),
                "failedCount": failed,
                "subject": subject,
                "type": clean_text(payload.get("type")) or "general",
            }
        )

    # Themes
    @app.route("/api/themes", methods=["GET"])
    def list_themes():
        ensure_default_theme()
        themes = {
            theme["theme_id"]: serialize_theme(theme)
            for theme in db.themes.find().sort("theme_id", 1)
        }
        return jsonify(themes)

    @app.route("/api/themes/active", methods=["GET"])
    def get_active_theme():
        ensure_default_theme()
        theme_document = db.themes.find_one({"is_active": True}) or db.themes.find_one(
            {"theme_id": DEFAULT_THEME_ID}
        )
        return jsonify(serialize_theme(theme_document))

    @app.route("/api/themes/<theme_id>", methods=["GET"])
    def get_theme(theme_id: str):
        return jsonify(serialize_theme(fetch_theme_or_404(theme_id)))

    @app.route("/api/themes", methods=["POST"])
    @jwt_required()
    def save_theme():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = json_payload()
        theme_id = clean_text(payload.get("id"))
        name = clean_text(payload.get("name"))
        if not theme_id or not name:
            return jsonify({"message": "Theme ID and name are required"}), 400

        ensure_default_theme()
        theme_fields = {
            "theme_id": theme_id,
            "name": name,
            "primary_color": clean_text(payload.get("primaryColor")) or DEFAULT_THEME["primary_color"],
            "secondary_color": clean_text(payload.get("secondaryColor")) or DEFAULT_THEME["secondary_color"],
            "accent_color": clean_text(payload.get("accentColor")) or DEFAULT_THEME["accent_color"],
            "enable_snow": parse_bool(payload.get("enableSnow")),
            "enable_particles": parse_bool(payload.get("enableParticles")),
            "background_image": clean_text(payload.get("backgroundImage")),
            "description": clean_text(payload.get("description")) or f"{name} themed store",
            "updated_at": utcnow(),
        }
        db.themes.update_one(
            {"theme_id": theme_id},
            {"$set": theme_fields, "$setOnInsert": {"is_active": False}},
            upsert=True,
        )
        theme_document = db.themes.find_one({"theme_id": theme_id})
        return jsonify({"message": "Theme saved successfully", "theme": serialize_theme(theme_document)}), 201

    @app.route("/api/themes/<theme_id>", methods=["DELETE"])
    @jwt_required()
    def delete_theme(theme_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        if theme_id == DEFAULT_THEME_ID:
            return jsonify({"message": "Cannot delete default theme"}), 400

        theme_document = fetch_theme_or_404(theme_id)
        db.themes.delete_one({"_id": theme_document["_id"]})
        if theme_document.get("is_active"):
            db.themes.update_one({"theme_id": DEFAULT_THEME_ID}, {"$set": {"is_active": True}})
        return jsonify({"message": "Theme deleted successfully"})

    @app.route("/api/themes/<theme_id>/activate", methods=["POST"])
    @jwt_required()
    def activate_theme(theme_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        theme_document = fetch_theme_or_404(theme_id)
        db.themes.update_many({"is_active": True}, {"$set": {"is_active": False}})
        db.themes.update_one(
            {"_id": theme_document["_id"]},
            {"$set": {"is_active": True, "updated_at": utcnow()}},
        )
        theme_document = db.themes.find_one({"_id": theme_document["_id"]})
        return jsonify(
            {"message": f"Theme {theme_id} activated", "theme": serialize_theme(theme_document)}
        )

    # Seasonal mode
    @app.route("/api/christmas/status", methods=["GET"])
    def get_christmas_status():
        return jsonify(serialize_christmas_mode(get_or_create_christmas_mode()))

    @app.route("/api/christmas/toggle", methods=["POST"])
    @jwt_required()
    def toggle_christmas_mode():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = json_payload()
        mode_document = get_or_create_christmas_mode()
        updates: Dict[str, object] = {}
        if payload.get("enabled") is not None:
            updates["enabled"] = parse_bool(payload.get("enabled"))
        if payload.get("discount") is not None:
            updates["discount"] = parse_discount(payload.get("discount"))
        if payload.get("snowflakesEnabled") is not None:
            updates["snowflakes_enabled"] = parse_bool(payload.get("snowflakesEnabled"))
        updates["updated_by"] = normalize_email(admin_user.get("email"))
        updates["updated_at"] = utcnow()

        db.christmas_mode.update_one({"_id": mode_document["_id"]}, {"$set": updates})
        mode_document = db.christmas_mode.find_one({"_id": mode_document["_id"]})
        return jsonify(
            {"message": "Christmas mode updated", "mode": serialize_christmas_mode(mode_document)}
        )

    @app.route("/api/christmas/discount", methods=["PUT"])
    @jwt_required()
    def update_christmas_discount():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        discount = parse_discount(json_payload().get("discount"))
        mode_document = get_or_create_christmas_mode()
        db.christmas_mode.update_one(
            {"_id": mode_document["_id"]},
            {
                "$set": {
                    "discount": discount,
                    "updated_by": normalize_email(admin_user.get("email")),
                    "updated_at": utcnow(),
                }
            },
        )
        return jsonify({"message": "Discount updated", "discount": discount})

    return app
