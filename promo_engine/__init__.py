import click
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from config import config

db = SQLAlchemy()


def create_app(config_name='default', overrides=None):
    """Application factory — creates and configures the Flask app."""
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if overrides:
        # Applied before db.init_app so engine options can be swapped (tests).
        app.config.update(overrides)

    # ── Logging ───────────────────────────────────────────────────
    from promo_engine.utils.logging import setup_logging
    setup_logging(app)

    # ── Extensions ────────────────────────────────────────────────
    db.init_app(app)

    # ── Blueprints ────────────────────────────────────────────────
    from promo_engine.promotions import promotions as promotions_blueprint
    app.register_blueprint(promotions_blueprint, url_prefix='/promotions')

    # ── Error Handlers ────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return jsonify(error={'code': 'NOT_FOUND', 'message': 'Resource not found.'}), 404

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify(error={'code': 'SERVER_ERROR', 'message': 'Internal server error.'}), 500

    # ── CLI Commands ──────────────────────────────────────────────
    register_commands(app)

    return app


def register_commands(app):
    """Register custom Flask CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all promotion tables."""
        db.create_all()
        click.echo('✅  Database tables created.')

    @app.cli.command('check-catalog')
    def check_catalog():
        """Validate every active promotion and list integrity errors."""
        from promo_engine.promotions.catalog import PromotionCatalog

        snapshot = PromotionCatalog(db.session, strict=False).snapshot()
        click.echo(f'{len(snapshot.rules)} promotion(s) loaded.')
        if not snapshot.rejected:
            click.echo('✅  Catalog is clean.')
            return
        for exc in snapshot.rejected:
            click.echo(f'❌  {exc}')
        raise SystemExit(1)

    @app.cli.command('show-usage')
    def show_usage():
        """Show usage counters and redemption totals per promotion (diagnostic)."""
        from promo_engine.promotions.models import Promotion
        from promo_engine.promotions.ledger import UsageLedger

        summary = {row.promotion_id: row for row in UsageLedger(db.session).usage_summary()}
        promos = Promotion.query.order_by(Promotion.id).all()
        if not promos:
            click.echo('No promotions found. Run flask seed-demo first.')
            return
        click.echo(f'{"ID":<5} {"Name":<32} {"Used":<12} {"Discount given"}')
        click.echo('─' * 65)
        for promo in promos:
            limit = promo.usage_limit if promo.usage_limit is not None else '∞'
            row = summary.get(promo.id)
            given = row.total_discount if row else '0.00'
            click.echo(f'{promo.id:<5} {promo.name[:32]:<32} {f"{promo.usage_count}/{limit}":<12} {given}')

    @app.cli.command('seed-demo')
    def seed_demo():
        """Populate the database with a demo restaurant catalog."""
        from promo_engine.promotions.demo import seed_demo_catalog

        click.echo("🌱 Seeding demo promotions...")
        db.create_all()
        created = seed_demo_catalog(db.session)
        if created:
            click.echo(f"✅ {created} promotion(s) created.")
        else:
            click.echo("ℹ️   Promotions already exist, nothing seeded.")

    return app
