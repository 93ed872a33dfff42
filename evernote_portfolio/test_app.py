#!/usr/bin/env python3
"""
Integration tests for the Flask host routes.
"""

import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from evernote_portfolio import app as app_module
from evernote_portfolio.evernote_client import Notebook
from evernote_portfolio.preference_store import PreferenceStore

SETTINGS = {'consumer_key': 'key', 'consumer_secret': 'secret',
            'callback_url': 'http://localhost:8080/auth/callback'}
NOTE_STORE = 'https://sandbox.evernote.com/shard/s1/notestore'


class AppTestCase(unittest.TestCase):
    """Shared fixture: Flask test client with patched settings and client."""

    settings = SETTINGS

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.prefs = PreferenceStore(Path(self.temp_dir) / 'prefs.json')

        self.evernote = Mock()
        self.evernote.list_notebooks.return_value = [
            Notebook(guid='nb-home', name='Personal', is_default=True),
        ]
        self.evernote.get_user.return_value = Mock(username='jdoe')
        self.evernote.create_note.return_value = 'note-1'

        for target, value in (
            ('preference_store', self.prefs),
            ('load_settings', Mock(return_value=dict(self.settings))),
            ('get_client', Mock(return_value=self.evernote)),
        ):
            patcher = patch.object(app_module, target, value)
            patcher.start()
            self.addCleanup(patcher.stop)

        app_module.app.testing = True
        self.client = app_module.app.test_client()
        with self.client.session_transaction() as sess:
            sess['user_id'] = 'user-1'

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def sign_in(self):
        self.prefs.set('user-1', 'evernote_accesstoken', 'tok')
        self.prefs.set('user-1', 'evernote_notestoreurl', NOTE_STORE)


class TestUnconfigured(AppTestCase):
    """Routes when no consumer credentials are set."""

    settings = {}

    def test_index_reports_problem(self):
        """Should report the missing OAuth credentials."""
        response = self.client.get('/')
        data = response.get_json()
        self.assertFalse(data['configured'])
        self.assertEqual(data['problem'], 'nooauthcredentials')

    def test_login_is_refused(self):
        """Should answer 503 with the configuration error."""
        response = self.client.get('/auth/login')
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.get_json()['code'], 'nooauthcredentials')


class TestAuthRoutes(AppTestCase):
    """Tests for the OAuth routes."""

    @patch('evernote_portfolio.evernote_auth.OAuth1Session')
    def test_login_redirects_to_evernote(self, mock_session_cls):
        """Should redirect to the Evernote authorize URL."""
        session = mock_session_cls.return_value
        session.fetch_request_token.return_value = {'oauth_token': 't', 'oauth_token_secret': 's'}
        session.authorization_url.return_value = 'https://sandbox.evernote.com/OAuth.action?oauth_token=t'

        response = self.client.get('/auth/login')

        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers['Location'],
                         'https://sandbox.evernote.com/OAuth.action?oauth_token=t')
        mock_session_cls.assert_called_once_with('key', client_secret='secret',
                                                 callback_uri='http://localhost:8080/auth/callback')
        self.assertEqual(self.prefs.get('user-1', 'evernote_tokensecret'), 's')

    def test_login_when_signed_in(self):
        """Should skip Evernote and go to the export form."""
        self.sign_in()
        response = self.client.get('/auth/login')
        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers['Location'].endswith('/api/export/config'))

    @patch('evernote_portfolio.evernote_auth.OAuth1Session')
    def test_callback_without_verifier(self, mock_session_cls):
        """Should answer 403 and clear the pending secret."""
        self.prefs.set('user-1', 'evernote_tokensecret', 's')

        response = self.client.get('/auth/callback?oauth_token=t')

        self.assertEqual(response.status_code, 403)
        self.assertIsNone(self.prefs.get('user-1', 'evernote_tokensecret'))
        mock_session_cls.assert_not_called()

    @patch('evernote_portfolio.evernote_auth.OAuth1Session')
    def test_callback_stores_credential(self, mock_session_cls):
        """Should exchange the verifier and redirect to the export form."""
        self.prefs.set('user-1', 'evernote_tokensecret', 's')
        mock_session_cls.return_value.fetch_access_token.return_value = {
            'oauth_token': 'tok', 'edam_noteStoreUrl': NOTE_STORE, 'edam_userId': '7'}

        response = self.client.get('/auth/callback?oauth_token=t&oauth_verifier=v')

        self.assertEqual(response.status_code, 302)
        self.assertEqual(self.prefs.get('user-1', 'evernote_accesstoken'), 'tok')

    def test_status(self):
        """Should report the signed-in user."""
        self.assertFalse(self.client.get('/auth/status').get_json()['authenticated'])

        self.sign_in()
        data = self.client.get('/auth/status').get_json()
        self.assertTrue(data['authenticated'])
        self.assertEqual(data['user'], 'jdoe')

    def test_signin_another(self):
        """Should clear the credential and restart the login."""
        self.sign_in()
        response = self.client.get('/auth/signin-another')
        self.assertEqual(response.status_code, 302)
        self.assertIsNone(self.prefs.get('user-1', 'evernote_accesstoken'))


class TestSettingsRoutes(AppTestCase):
    """Tests for the admin settings API."""

    def test_get_masks_secret(self):
        """Should never return the consumer secret."""
        data = self.client.get('/api/settings').get_json()
        self.assertEqual(data['consumer_key'], 'key')
        self.assertEqual(data['consumer_secret'], '********')

    def test_save_requires_both_fields(self):
        """Should reject a missing consumer secret."""
        response = self.client.post('/api/settings', json={'consumer_key': 'key'})
        self.assertEqual(response.status_code, 400)

    @patch.object(app_module, 'save_settings')
    def test_save(self, mock_save):
        """Should save the consumer key and secret."""
        with patch.object(app_module, 'get_settings_path', return_value=Path('/tmp/s.json')):
            response = self.client.post('/api/settings', json={
                'consumer_key': ' key ', 'consumer_secret': 'secret', 'sandbox': False})

        self.assertEqual(response.status_code, 200)
        mock_save.assert_called_once_with(Path('/tmp/s.json'), 'key', 'secret', False)


class TestExportRoutes(AppTestCase):
    """Tests for the export API."""

    def test_config_requires_session(self):
        """Should answer 401 before authorization."""
        response = self.client.get('/api/export/config')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()['code'], 'nosessiontoken')

    def test_config(self):
        """Should list the notebooks and the default title."""
        self.sign_in()
        data = self.client.get('/api/export/config').get_json()
        self.assertEqual(data['notebooks'], {'nb-home': 'Personal (Default)'})
        self.assertEqual(data['default_notebook'], 'nb-home')

    def test_summary(self):
        """Should summarize the pending export."""
        self.sign_in()
        data = self.client.post('/api/export/summary',
                                json={'notetitle': 'Essay', 'notebook': 'nb-home'}).get_json()
        self.assertEqual(data['Notebook'], 'Personal (Default)')

    def test_export_page(self):
        """Should create the note from the posted HTML."""
        self.sign_in()

        response = self.client.post('/api/export/page', json={
            'notetitle': 'Essay',
            'notebook': 'nb-home',
            'content': '<p class="x">Hello</p>',
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['note_guid'], 'note-1')
        draft = self.evernote.create_note.call_args[0][2]
        self.assertTrue(draft.body_markup.endswith('<en-note><p>Hello</p></en-note>'))

    def test_export_page_requires_content(self):
        """Should reject an empty page."""
        self.sign_in()
        response = self.client.post('/api/export/page', json={'notetitle': 'T', 'notebook': 'nb-home'})
        self.assertEqual(response.status_code, 400)

    def test_export_page_unknown_notebook(self):
        """Should answer 400 for a notebook that was not offered."""
        self.sign_in()
        response = self.client.post('/api/export/page', json={
            'notetitle': 'T', 'notebook': 'nb-other', 'content': '<p>x</p>'})
        self.assertEqual(response.status_code, 400)
        self.evernote.create_note.assert_not_called()

    def test_export_page_remote_failure(self):
        """Should answer 502 naming the file."""
        self.sign_in()
        self.evernote.create_note.side_effect = RuntimeError('boom')

        response = self.client.post('/api/export/page', json={
            'notetitle': 'T', 'notebook': 'nb-home', 'content': '<p>x</p>', 'filename': 'essay.html'})

        self.assertEqual(response.status_code, 502)
        self.assertIn('essay.html', response.get_json()['error'])


if __name__ == '__main__':
    unittest.main()
