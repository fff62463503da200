from subsync.routes.billing import billing_bp
from subsync.routes.consent import consent_bp
from subsync.routes.health import health_bp
from subsync.routes.webhook import webhook_bp


def register_blueprints(app):
    for bp in (webhook_bp, consent_bp, billing_bp, health_bp):
        app.register_blueprint(bp)
