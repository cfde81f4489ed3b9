import os
import logging

import click
from flask import Flask, jsonify

from app.config import config_by_name
from app.extensions import db, migrate, limiter, signing_keys


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
    limiter.init_app(app)
    signing_keys.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.webhooks import webhooks_bp
    from app.blueprints.kiosk import kiosk_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(kiosk_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "rate_limited", "message": str(e.description)}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "no-referrer"
        # JSON API only: nothing may be loaded or framed
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Redemption results and webhook acks must never be cached
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    def _date_option(f):
        return click.option(
            "--date", "date_str", default=None,
            help="Service date YYYY-MM-DD (default: today in SERVICE_TIMEZONE).",
        )(f)

    @app.cli.command("issue-entitlements")
    @_date_option
    @click.option("--dry-run", is_flag=True, help="Count eligible customers without writing.")
    def issue_entitlements_cmd(date_str, dry_run):
        """Create today's entitlement rows for every active subscriber.

        Usage:
            flask issue-entitlements
            flask issue-entitlements --date 2026-03-02 --dry-run
        """
        from app.services.entitlement_service import issue_entitlements
        from app.services.service_calendar import parse_service_date

        service_date = parse_service_date(date_str)
        summary = issue_entitlements(service_date, dry_run=dry_run)
        _echo_summary("Entitlements", summary, dry_run)

    @app.cli.command("issue-tokens")
    @_date_option
    @click.option("--dry-run", is_flag=True, help="Count tokens that would be issued without writing.")
    def issue_tokens_cmd(date_str, dry_run):
        """Mint and deliver today's meal tokens.

        Usage:
            flask issue-tokens
            flask issue-tokens --date 2026-03-02
        """
        from app.services.service_calendar import parse_service_date
        from app.services.token_service import issue_daily_tokens

        service_date = parse_service_date(date_str)
        summary = issue_daily_tokens(service_date, dry_run=dry_run)
        _echo_summary("Tokens", summary, dry_run)

    @app.cli.command("run-daily")
    @_date_option
    def run_daily_cmd(date_str):
        """Issue entitlements, then tokens, for one service date (cron entry point)."""
        from app.services.entitlement_service import issue_entitlements
        from app.services.service_calendar import parse_service_date
        from app.services.token_service import issue_daily_tokens

        service_date = parse_service_date(date_str)
        _echo_summary("Entitlements", issue_entitlements(service_date), False)
        _echo_summary("Tokens", issue_daily_tokens(service_date), False)

    @app.cli.command("retry-notifications")
    def retry_notifications_cmd():
        """Resend customer notifications whose retry backoff has elapsed."""
        from app.services.notification_service import retry_due_notifications

        sent, failing = retry_due_notifications()
        click.echo(f"Retried notifications: {sent} sent, {failing} still failing")

    @app.cli.command("apply-skip")
    @click.argument("customer_id")
    @click.option("--date", "date_str", required=True, help="Date to skip, YYYY-MM-DD.")
    @click.option("--source", type=click.Choice(["admin", "telegram"]), default="admin")
    def apply_skip_cmd(customer_id, date_str, source):
        """Record a skip for a customer and lower any existing entitlement."""
        from app.services.entitlement_service import apply_skip
        from app.services.service_calendar import parse_service_date

        lowered = apply_skip(customer_id, parse_service_date(date_str), source=source)
        click.echo(f"Skip recorded for {customer_id} on {date_str}"
                   + (" (existing entitlement lowered)" if lowered else ""))

    @app.cli.command("create-kiosk-session")
    @click.argument("kiosk_id")
    @click.option("--location", default=None, help="Human-readable kiosk location.")
    @click.option("--hours", type=int, default=None, help="Session lifetime (default KIOSK_SESSION_HOURS).")
    def create_kiosk_session_cmd(kiosk_id, location, hours):
        """Mint a device assertion for a kiosk and print it."""
        from app.services.kiosk_service import create_kiosk_session

        token, session = create_kiosk_session(kiosk_id, location=location, hours=hours)

        click.echo("")
        click.echo("=" * 60)
        click.echo("Kiosk session created!")
        click.echo("=" * 60)
        click.echo(f"  Kiosk:     {kiosk_id}")
        click.echo(f"  Session:   {session.id}")
        click.echo(f"  Expires:   {session.expires_at.isoformat()}")
        click.echo("")
        click.echo("Configure the kiosk with this bearer token:")
        click.echo(f"  {token}")
        click.echo("=" * 60)

    @app.cli.command("revoke-kiosk-session")
    @click.option("--session-id", default=None, help="Revoke one session.")
    @click.option("--kiosk-id", default=None, help="Revoke every live session of a kiosk.")
    def revoke_kiosk_session_cmd(session_id, kiosk_id):
        """Revoke kiosk sessions before they expire."""
        from app.services.kiosk_service import revoke_kiosk_sessions

        if not session_id and not kiosk_id:
            raise click.UsageError("Pass --session-id or --kiosk-id.")
        count = revoke_kiosk_sessions(session_id=session_id, kiosk_id=kiosk_id)
        click.echo(f"Revoked {count} kiosk session(s)")

    @app.cli.command("erase-customer")
    @click.argument("customer_id")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    def erase_customer_cmd(customer_id, yes):
        """Scrub a customer's personal data (GDPR erasure). Keeps the audit trail."""
        from app.services.audit_service import erase_customer

        if not yes:
            click.confirm(f"Erase personal data for customer {customer_id}?", abort=True)
        try:
            count = erase_customer(customer_id)
        except ValueError as e:
            raise click.ClickException(str(e))
        click.echo(f"Customer {customer_id} erased; {count} audit entries anonymized")

    @app.cli.command("webhook-report")
    @click.option("--limit", type=int, default=50, help="Maximum events to list.")
    def webhook_report_cmd(limit):
        """List failed webhook events, marking those that exhausted their retries."""
        from app.models.webhook_event import WebhookEvent

        max_attempts = app.config.get("WEBHOOK_MAX_ATTEMPTS", 3)
        events = (
            WebhookEvent.query
            .filter_by(status=WebhookEvent.FAILED)
            .order_by(WebhookEvent.last_attempted_at.desc())
            .limit(limit)
            .all()
        )
        if not events:
            click.echo("No failed webhook events.")
            return

        for evt in events:
            marker = "EXHAUSTED" if evt.attempts >= max_attempts else "retrying"
            click.echo(
                f"[{marker}] {evt.source}:{evt.event_id} {evt.event_type} "
                f"attempts={evt.attempts} last={evt.last_attempted_at} "
                f"error={(evt.error_message or '')[:80]}"
            )


def _echo_summary(label, summary, dry_run):
    prefix = "[DRY RUN] " if dry_run else ""
    if not summary.get("service_day", True):
        click.echo(f"{prefix}{label}: {summary['service_date']} is not a service day, nothing to do")
        return
    details = ", ".join(
        f"{k}={len(v) if isinstance(v, list) else v}"
        for k, v in summary.items()
        if k not in ("service_date", "service_day")
    )
    click.echo(f"{prefix}{label} for {summary['service_date']}: {details}")
    for err in summary.get("errors", [])[:10]:
        click.echo(f"  ERROR {err}")
