import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from artpero.config import config_by_name
from artpero.errors import DomainError
from artpero.extensions import db, migrate, login_manager, csrf, limiter

logger = logging.getLogger(__name__)


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from artpero import models  # noqa: F401

    # --- Register blueprints ---
    from artpero.blueprints.auth import auth_bp
    from artpero.blueprints.events import events_bp
    from artpero.blueprints.products import products_bp
    from artpero.blueprints.orders import orders_bp
    from artpero.blueprints.members import members_bp
    from artpero.blueprints.webhooks import webhooks_bp
    from artpero.blueprints.admin import admin_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(members_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)

    # Exempt webhooks from CSRF: the raw body is needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # --- Error handlers (JSON API) ---
    @app.errorhandler(DomainError)
    def domain_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        code = (e.name or "error").lower().replace(" ", "_")
        return jsonify({"error": e.description, "code": code}), e.code

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f"Unhandled error: {getattr(e, 'original_exception', e)}")
        return jsonify({"error": "Internal server error", "code": "internal"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=(self)"
        )
        # JSON only: nothing here should ever load or be framed
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


# Product catalog sold on the shop page. Prices in cents.
CATALOG = [
    {
        "slug": "abonnement-standard",
        "name": "Abonnement Standard",
        "description": "Accès à un événement par mois.",
        "category": "SUBSCRIPTION",
        "price_cents": 8500,
        "duration_months": 1,
        "events_included": 1,
    },
    {
        "slug": "abonnement-premium",
        "name": "Abonnement Premium",
        "description": "Trois mois d'événements.",
        "category": "SUBSCRIPTION",
        "price_cents": 24000,
        "duration_months": 3,
        "events_included": 3,
    },
    {
        "slug": "abonnement-elite",
        "name": "Abonnement Élite",
        "description": "Six mois d'événements.",
        "category": "SUBSCRIPTION",
        "price_cents": 45600,
        "duration_months": 6,
        "events_included": 6,
    },
    {
        "slug": "abonnement-prestige",
        "name": "Abonnement Prestige",
        "description": "Une année complète au club.",
        "category": "SUBSCRIPTION",
        "price_cents": 88800,
        "duration_months": 12,
        "events_included": 12,
    },
    {
        "slug": "entree-decouverte",
        "name": "Entrée Découverte",
        "description": "Une soirée pour découvrir le club.",
        "category": "ENTRY",
        "price_cents": 4900,
        "events_included": 1,
    },
    {
        "slug": "entree-guest",
        "name": "Entrée Guest",
        "description": "Invitez une personne à un événement.",
        "category": "ENTRY",
        "price_cents": 3900,
        "events_included": 1,
    },
    {
        "slug": "artpero-gift",
        "name": "Carte cadeau Art'Péro",
        "description": "Offrez une soirée au club.",
        "category": "GIFT_CARD",
        "price_cents": 5500,
        "events_included": 1,
        "validity_months": 6,
    },
    {
        "slug": "artpero-experience",
        "name": "Carte cadeau Expérience",
        "description": "Offrez deux soirées au club.",
        "category": "GIFT_CARD",
        "price_cents": 9500,
        "events_included": 2,
        "validity_months": 6,
    },
]


def seed_catalog():
    """Insert or update CATALOG products by slug. Returns (created, updated)."""
    from artpero.models.catalog import Product

    created = updated = 0
    for item in CATALOG:
        product = Product.query.filter_by(slug=item["slug"]).first()
        if product is None:
            product = Product(slug=item["slug"])
            db.session.add(product)
            created += 1
        else:
            updated += 1
        for key, value in item.items():
            setattr(product, key, value)
        product.is_active = True
    db.session.commit()
    return created, updated


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@lartpero.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create the admin user.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from artpero.models.user import User

        email = email.lower().strip()
        existing = User.query.filter_by(email=email).first()
        if existing:
            click.echo(f"Admin user already exists: {email}")
            return

        admin = User(
            email=email,
            password_hash=generate_password_hash(password),
            first_name="Admin",
            is_admin=True,
        )
        db.session.add(admin)
        db.session.commit()
        click.echo(f"Created admin user: {email}")

    @app.cli.command("seed-catalog")
    def seed_catalog_command():
        """Create or refresh the shop products (subscriptions, entries, gift cards).

        Usage:
            flask seed-catalog
        """
        created, updated = seed_catalog()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Catalog seeded")
        click.echo("=" * 60)
        for item in CATALOG:
            click.echo(
                f"  {item['slug']:<24} {item['category']:<13} "
                f"{item['price_cents'] / 100:>8.2f} EUR"
            )
        click.echo(f"  created={created} updated={updated}")
        click.echo("=" * 60)
