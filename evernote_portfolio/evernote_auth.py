"""
Evernote OAuth 1.0a authorization for the portfolio plugin.
Handles the three-legged handshake and persists its state per user.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import requests
from requests_oauthlib import OAuth1Session
from requests_oauthlib.oauth1_session import TokenMissing, TokenRequestDenied

from evernote_portfolio.preference_store import PreferenceStore

# ============================================================================
# Constants
# ============================================================================
SANDBOX_HOST = "https://sandbox.evernote.com"
PRODUCTION_HOST = "https://www.evernote.com"
SETTING_PREFIX = "evernote_"

MESSAGES = {
    'pluginname': 'Evernote',
    'consumerkey': 'Consumer Key',
    'secret': 'Consumer Secret',
    'defaultnotetitle': 'Exported page',
    'defaultnotebook': '{} (Default)',
    'signinanother': 'Sign in as another Evernote user',
    'noauthtoken': ('An authentication token has not been received from Evernote. '
                    'Please ensure you are allowing access to your Evernote account'),
    'nooauthcredentials': 'OAuth credentials required.',
    'nopermission': 'Access to your Evernote account was not granted.',
    'nosessiontoken': 'A session token does not exist preventing export to Evernote.',
    'sendfailed': 'The file {} failed to transfer to Evernote',
}

logger = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================
class PortfolioError(Exception):
    """Base class for errors surfaced by the Evernote portfolio."""

    code = ''

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or MESSAGES.get(self.code, self.code))


class ConfigurationError(PortfolioError):
    """Consumer key/secret missing or rejected. Fatal until an admin fixes it."""

    code = 'nooauthcredentials'


class AuthorizationDenied(PortfolioError):
    """User declined access, or the callback was malformed."""

    code = 'nopermission'


class NoActiveSession(PortfolioError):
    """Export attempted without a valid access token."""

    code = 'nosessiontoken'


class RemoteTransferFailure(PortfolioError):
    """The note store refused or failed to create the note."""

    code = 'sendfailed'

    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(MESSAGES['sendfailed'].format(filename))


# ============================================================================
# Data Classes
# ============================================================================
class AuthState(Enum):
    UNAUTHENTICATED = 'unauthenticated'
    AWAITING_USER_APPROVAL = 'awaiting_user_approval'
    AWAITING_CALLBACK = 'awaiting_callback'
    AUTHENTICATED = 'authenticated'


@dataclass
class AuthorizationRequest:
    """Result of the request-token step: where to send the user."""
    authorize_url: str
    oauth_token_secret: str


@dataclass
class Credential:
    """Access credentials persisted after a successful exchange."""
    access_token: str
    note_store_url: str
    user_id: str = ""
    token_secret: str = ""

    def to_dict(self) -> Dict:
        return {
            'note_store_url': self.note_store_url,
            'user_id': self.user_id,
        }


# ============================================================================
# Authorization Flow
# ============================================================================
class EvernoteAuth:
    """Three-legged OAuth 1.0a against Evernote, state kept in a PreferenceStore.

    The handshake spans two page loads, so no handshake state lives on the
    instance: the request-token secret is written to the user's preferences
    before the redirect and read back when Evernote calls us back.
    """

    def __init__(self, preferences: PreferenceStore, user_id: str,
                 api_host: str = SANDBOX_HOST,
                 consumer_key: str = "", consumer_secret: str = ""):
        self.preferences = preferences
        self.user_id = user_id
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.api_host = api_host.rstrip('/')

    @property
    def request_token_url(self) -> str:
        return f"{self.api_host}/oauth"

    @property
    def access_token_url(self) -> str:
        return f"{self.api_host}/oauth"

    @property
    def authorize_url(self) -> str:
        return f"{self.api_host}/OAuth.action"

    def _get(self, field: str, default=None):
        return self.preferences.get(self.user_id, SETTING_PREFIX + field, default)

    def _set(self, field: str, value):
        self.preferences.set(self.user_id, SETTING_PREFIX + field, value)

    @property
    def state(self) -> AuthState:
        """Current position in the handshake, derived from persisted fields."""
        if self._get('accesstoken') and self._get('notestoreurl'):
            return AuthState.AUTHENTICATED
        if self._get('tokensecret'):
            if self._get('oauthtoken'):
                return AuthState.AWAITING_CALLBACK
            return AuthState.AWAITING_USER_APPROVAL
        return AuthState.UNAUTHENTICATED

    def begin_authorization(self, consumer_key: str, consumer_secret: str,
                            callback_url: str) -> Optional[AuthorizationRequest]:
        """Fetch a request token and return where to redirect the user.

        Returns None when the user already holds an access token. When a
        request is already pending, the stored one is returned instead of
        issuing a new token.
        """
        if not consumer_key or not consumer_secret:
            raise ConfigurationError()
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret

        if self.state == AuthState.AUTHENTICATED:
            logger.debug("User already authenticated, no redirect needed")
            return None

        pending_secret = self._get('tokensecret')
        pending_url = self._get('authorizeurl')
        if pending_secret and pending_url:
            logger.info("Authorization already pending, reusing request token")
            return AuthorizationRequest(authorize_url=pending_url,
                                        oauth_token_secret=pending_secret)

        oauth = OAuth1Session(consumer_key, client_secret=consumer_secret,
                              callback_uri=callback_url)
        try:
            result = oauth.fetch_request_token(self.request_token_url)
        except (TokenRequestDenied, TokenMissing) as e:
            logger.error(f"Request token rejected: {e}")
            raise ConfigurationError('Evernote rejected the consumer key and secret.') from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request token call failed: {e}")
            raise

        authorize_url = oauth.authorization_url(self.authorize_url)
        request = AuthorizationRequest(authorize_url=authorize_url,
                                       oauth_token_secret=result['oauth_token_secret'])

        self._set('tokensecret', request.oauth_token_secret)
        self._set('authorizeurl', request.authorize_url)
        self._set('accesstoken', '')
        logger.info("Request token obtained, awaiting user approval")
        return request

    def complete_authorization(self, oauth_token: str, oauth_verifier: str) -> Credential:
        """Exchange the approved request token for an access token."""
        secret = self._get('tokensecret', '')

        if not oauth_verifier or not secret:
            logger.warning("Authorization callback without verifier or pending secret")
            self._clear_pending()
            raise AuthorizationDenied()

        if not self.consumer_key or not self.consumer_secret:
            raise ConfigurationError()

        self._set('oauthtoken', oauth_token)

        oauth = OAuth1Session(self.consumer_key, client_secret=self.consumer_secret,
                              resource_owner_key=oauth_token,
                              resource_owner_secret=secret,
                              verifier=oauth_verifier)
        try:
            access = oauth.fetch_access_token(self.access_token_url)
        except (TokenRequestDenied, TokenMissing) as e:
            logger.error(f"Access token exchange failed: {e}")
            self._clear_pending()
            raise AuthorizationDenied() from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Access token call failed: {e}")
            self._clear_pending()
            raise

        credential = Credential(
            access_token=access['oauth_token'],
            note_store_url=access.get('edam_noteStoreUrl', ''),
            user_id=str(access.get('edam_userId', '')),
        )
        self._set('accesstoken', credential.access_token)
        self._set('notestoreurl', credential.note_store_url)
        self._set('userid', credential.user_id)
        self._clear_pending()
        logger.info(f"Authorized Evernote user {credential.user_id}")
        return credential

    def current_credential(self) -> Optional[Credential]:
        """Stored credential, or None if the user has not authorized."""
        access_token = self._get('accesstoken')
        note_store_url = self._get('notestoreurl')
        if not access_token or not note_store_url:
            return None
        return Credential(access_token=access_token,
                          note_store_url=note_store_url,
                          user_id=self._get('userid', ''))

    def reset_credential(self):
        """Forget everything, e.g. to sign in as a different Evernote user."""
        self.preferences.clear_user(self.user_id, prefix=SETTING_PREFIX)
        logger.info("Evernote credentials reset")

    def _clear_pending(self):
        self._set('tokensecret', '')
        self._set('authorizeurl', '')
        self._set('oauthtoken', '')
