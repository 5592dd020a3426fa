"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints and attaches
the ImportManager that owns in-flight PhantomBuster imports.
"""
import os
from flask import Flask, request, session, redirect, jsonify, render_template_string


LOGIN_PAGE = '''
<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Login — Lead CRM</title></head>
<body>
    <h1>Lead CRM</h1>
    {% if error %}<p>Wrong password</p>{% endif %}
    <form method="POST" action="/login">
        <input type="password" name="password" autofocus placeholder="Password">
        <button type="submit">Log in</button>
    </form>
</body>
</html>
'''

OPEN_PATHS = {'/health', '/login'}


def create_app(config_overrides=None):
    """Create and configure the Flask application."""
    from leadcrm.config import AUTO_CREATE_SCHEMA, DASHBOARD_PASSWORD
    from leadcrm.logging_config import configure_logging

    app = Flask(__name__)
    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')
    app.config['DASHBOARD_PASSWORD'] = DASHBOARD_PASSWORD
    app.config['AUTO_CREATE_SCHEMA'] = AUTO_CREATE_SCHEMA
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app)

    # ── Simple password auth ────────────────────────────────────────────
    @app.before_request
    def require_login():
        password = app.config.get('DASHBOARD_PASSWORD')
        if not password:
            return  # no password set, open access for local dev
        if request.path in OPEN_PATHS:
            return
        if session.get('authenticated'):
            return
        if request.headers.get('X-Dashboard-Password') == password:
            return
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Authentication required'}), 401
        return redirect('/login')

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        if request.method == 'POST':
            if request.form.get('password') == app.config.get('DASHBOARD_PASSWORD'):
                session['authenticated'] = True
                return redirect('/api/leads')
            return render_template_string(LOGIN_PAGE, error=True), 401
        return render_template_string(LOGIN_PAGE, error=False)

    @app.route('/logout')
    def logout():
        session.clear()
        return redirect('/login')

    # Register blueprints
    from leadcrm.routes.health import bp as health_bp
    from leadcrm.routes.imports import bp as imports_bp
    from leadcrm.routes.leads import bp as leads_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(imports_bp)
    app.register_blueprint(leads_bp)

    # Initialize circuit breakers for the PhantomBuster API
    from leadcrm.extensions import redis_client
    from leadcrm.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Models must be imported so Base.metadata knows every table
    from leadcrm.database import import_models, init_db
    import_models()
    if app.config['AUTO_CREATE_SCHEMA']:
        init_db()

    from leadcrm.jobs.manager import ImportManager
    app.extensions['import_manager'] = ImportManager()

    return app
