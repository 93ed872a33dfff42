"""
Evernote Portfolio - Flask Application
Local web host for authorizing Evernote and exporting pages as notes.
"""

import os
import uuid
import logging
from typing import Dict

from flask import Flask, request, jsonify, redirect, url_for, session
from flask_cors import CORS

from evernote_portfolio.evernote_auth import (
    ConfigurationError,
    AuthorizationDenied,
    NoActiveSession,
    PortfolioError,
    RemoteTransferFailure,
)
from evernote_portfolio.evernote_client import (
    EvernoteClient,
    get_api_host,
    get_settings_path,
    load_settings,
    save_settings,
)
from evernote_portfolio.exporter import STAGE_CONFIG, EvernotePortfolio, TempFileStager
from evernote_portfolio.preference_store import PreferenceStore

# ============================================================================
# App Configuration
# ============================================================================
app = Flask(__name__)
app.secret_key = os.environ.get('EVERNOTE_PORTFOLIO_SECRET_KEY') or os.urandom(24)
CORS(app)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s'
)
logger = logging.getLogger(__name__)

# Global state
preference_store = PreferenceStore(load_settings().get('preferences_file'))
_clients: Dict[str, EvernoteClient] = {}

ERROR_STATUS = {
    ConfigurationError: 503,
    AuthorizationDenied: 403,
    NoActiveSession: 401,
    RemoteTransferFailure: 502,
}

# ============================================================================
# Helper Functions
# ============================================================================

def get_user_id() -> str:
    """Per-browser user id kept in the Flask session."""
    if 'user_id' not in session:
        session['user_id'] = uuid.uuid4().hex
    return session['user_id']


def get_client(api_host: str) -> EvernoteClient:
    """One client (and so one set of store connections) per API host."""
    if api_host not in _clients:
        _clients[api_host] = EvernoteClient(api_host)
    return _clients[api_host]


def get_portfolio() -> EvernotePortfolio:
    """Build the plugin for the current user from the current settings."""
    settings = load_settings()
    callback_url = settings.get('callback_url') or url_for('auth_callback', _external=True)
    return EvernotePortfolio(settings, preference_store, get_user_id(),
                             client=get_client(get_api_host(settings)),
                             callback_url=callback_url)


@app.errorhandler(PortfolioError)
def handle_portfolio_error(error: PortfolioError):
    status = ERROR_STATUS.get(type(error), 500)
    logger.warning(f"{type(error).__name__}: {error}")
    return jsonify({'error': str(error), 'code': error.code}), status


# ============================================================================
# Routes - Pages
# ============================================================================

@app.route('/')
def index():
    """Plugin status."""
    portfolio = get_portfolio()
    problem = portfolio.sanity_check()
    return jsonify({
        'plugin': portfolio.get_name(),
        'configured': problem is None,
        'problem': problem,
        'state': portfolio.auth.state.value,
        'formats': portfolio.supported_formats()
    })


# ============================================================================
# Routes - Authentication
# ============================================================================

@app.route('/auth/login')
def auth_login():
    """Start OAuth flow (request token, then redirect to Evernote)."""
    portfolio = get_portfolio()
    authorize_url = portfolio.steal_control(STAGE_CONFIG)
    if authorize_url:
        return redirect(authorize_url)
    return redirect(url_for('api_export_config'))


@app.route('/auth/callback')
def auth_callback():
    """OAuth callback handler - exchange the verifier for an access token."""
    portfolio = get_portfolio()
    credential = portfolio.post_control(STAGE_CONFIG, request.args.to_dict())
    logger.info(f"Signed in Evernote user {credential.user_id}")
    return redirect(url_for('api_export_config'))


@app.route('/auth/status')
def auth_status():
    """Check authentication status."""
    portfolio = get_portfolio()
    credential = portfolio.auth.current_credential()
    if credential:
        return jsonify({
            'authenticated': True,
            'user': portfolio.get_username(),
            'credential': credential.to_dict()
        })
    return jsonify({'authenticated': False, 'state': portfolio.auth.state.value})


@app.route('/auth/signin-another')
def auth_signin_another():
    """Forget the current Evernote account and start over."""
    get_portfolio().sign_in_another()
    return redirect(url_for('auth_login'))


# ============================================================================
# Routes - Settings API
# ============================================================================

@app.route('/api/settings', methods=['GET'])
def api_get_settings():
    """Get current settings (without sensitive data)."""
    settings = load_settings()
    if settings.get('consumer_secret'):
        settings['consumer_secret'] = '********'
    return jsonify(settings)


@app.route('/api/settings', methods=['POST'])
def api_save_settings():
    """Save the consumer key and secret."""
    data = request.json or {}

    consumer_key = (data.get('consumer_key') or '').strip()
    consumer_secret = (data.get('consumer_secret') or '').strip()
    sandbox = bool(data.get('sandbox', True))

    if not consumer_key or not consumer_secret:
        return jsonify({'error': 'Consumer key and secret are required'}), 400

    extra = {k: data[k] for k in ('preferences_file', 'callback_url') if data.get(k)}
    save_settings(get_settings_path(), consumer_key, consumer_secret, sandbox, **extra)

    return jsonify({'success': True, 'message': 'Settings saved successfully'})


# ============================================================================
# Routes - Export API
# ============================================================================

@app.route('/api/export/config')
def api_export_config():
    """Export form: account name, default title and notebook choices."""
    return jsonify(get_portfolio().config_form())


@app.route('/api/export/summary', methods=['POST'])
def api_export_summary():
    """Summary shown before the user confirms the export."""
    data = request.json or {}
    export_config = {k: data.get(k, '') for k in EvernotePortfolio.get_allowed_export_config()}
    return jsonify(get_portfolio().export_summary(export_config))


@app.route('/api/export/page', methods=['POST'])
def api_export_page():
    """Export a single HTML page as an Evernote note."""
    data = request.json or {}
    content = data.get('content', '')
    filename = data.get('filename') or 'page.html'
    export_config = {k: data.get(k, '') for k in EvernotePortfolio.get_allowed_export_config()}

    if not content:
        return jsonify({'error': 'content is required'}), 400

    portfolio = get_portfolio()
    portfolio.prepare_package()

    with TempFileStager() as stager:
        stager.add_file(filename, content.encode('utf-8'))
        try:
            note_guid = portfolio.send_package(stager.get_tempfiles(), export_config)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400

    return jsonify({
        'success': True,
        'note_guid': note_guid,
        'message': f"Exported '{export_config['notetitle']}' to Evernote"
    })


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Run the web application."""
    port = int(os.environ.get('PORT', 8080))

    print("=" * 60)
    print("Evernote Portfolio")
    print("=" * 60)
    print(f"Starting server on http://localhost:{port}")
    print("Press Ctrl+C to stop")
    print("=" * 60)

    if os.environ.get('FLASK_ENV') == 'production':
        from waitress import serve
        serve(app, host='127.0.0.1', port=port)
    else:
        app.run(host='127.0.0.1', port=port, debug=False, threaded=True)


if __name__ == '__main__':
    main()
