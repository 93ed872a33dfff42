"""
Evernote Portfolio Exporter - Export Logic
Pushes a captured HTML page into the user's Evernote account as a note.
"""

import shutil
import logging
import mimetypes
import tempfile
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from evernote_portfolio.enml_converter import EnmlConverter, normalize_note_title
from evernote_portfolio.evernote_auth import (
    MESSAGES,
    EvernoteAuth,
    Credential,
    NoActiveSession,
    RemoteTransferFailure,
)
from evernote_portfolio.evernote_client import EvernoteClient, NoteDraft, get_api_host
from evernote_portfolio.preference_store import PreferenceStore

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================
STAGE_CONFIG = 'config'
FORMAT_PLAINHTML = 'plainhtml'
DEFAULT_CALLBACK_URL = 'http://localhost:8080/auth/callback'


# ============================================================================
# Data Classes
# ============================================================================
@dataclass
class ExportFile:
    """A file staged by the host for export."""
    filename: str
    content: bytes
    filepath: str = '/'
    mimetype: str = ''

    @property
    def is_page_root(self) -> bool:
        return self.filepath == '/'

    def get_text(self) -> str:
        return self.content.decode('utf-8', errors='replace')


class TempFileStager:
    """Stage exported content in a temporary directory, like the host does."""

    def __init__(self, prefix: str = 'evernote_export_'):
        self.root = Path(tempfile.mkdtemp(prefix=prefix))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()

    def add_file(self, filename: str, content: bytes, filepath: str = '/') -> Path:
        """Write a file below the staging root. ``filepath`` is '/'-rooted."""
        name = Path(filename).name or 'page.html'
        target_dir = self.root / filepath.strip('/')
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / name
        target.write_bytes(content)
        return target

    def get_tempfiles(self) -> List[ExportFile]:
        """All staged files, root files first."""
        files = []
        for path in sorted(self.root.rglob('*'), key=lambda p: (len(p.parts), str(p))):
            if not path.is_file():
                continue
            relative_dir = path.parent.relative_to(self.root).as_posix()
            filepath = '/' if relative_dir == '.' else f'/{relative_dir}/'
            mimetype = mimetypes.guess_type(path.name)[0] or 'application/octet-stream'
            files.append(ExportFile(filename=path.name, content=path.read_bytes(),
                                    filepath=filepath, mimetype=mimetype))
        return files

    def cleanup(self):
        shutil.rmtree(self.root, ignore_errors=True)


# ============================================================================
# Evernote Portfolio
# ============================================================================
class EvernotePortfolio:
    """Portfolio plugin that sends an exported page to Evernote.

    The host drives it through a fixed set of calls:
    sanity_check, steal_control/post_control around the config stage,
    config_form, prepare_package and send_package.
    """

    def __init__(self, settings: Dict[str, Any], preferences: PreferenceStore, user_id: str,
                 client: EvernoteClient = None, converter: EnmlConverter = None,
                 callback_url: str = None):
        self.settings = settings
        api_host = get_api_host(settings)
        self.auth = EvernoteAuth(preferences, user_id, api_host,
                                 consumer_key=self.consumer_key,
                                 consumer_secret=self.consumer_secret)
        self.client = client or EvernoteClient(api_host)
        self.converter = converter or EnmlConverter()
        self.callback_url = callback_url or settings.get('callback_url') or DEFAULT_CALLBACK_URL
        self.default_notebook_guid: Optional[str] = None

    # ========================================================================
    # Plugin Capabilities
    # ========================================================================

    @staticmethod
    def get_name() -> str:
        return MESSAGES['pluginname']

    @staticmethod
    def supported_formats() -> List[str]:
        return [FORMAT_PLAINHTML]

    @staticmethod
    def allows_multiple_exports() -> bool:
        # One pending authorization per user cannot be told apart otherwise
        return False

    @staticmethod
    def allows_multiple_instances() -> bool:
        return False

    @staticmethod
    def has_export_config() -> bool:
        return True

    @staticmethod
    def get_allowed_config() -> List[str]:
        return ['consumer_key', 'consumer_secret']

    @staticmethod
    def get_allowed_export_config() -> List[str]:
        return ['notetitle', 'notebook']

    @staticmethod
    def expected_time(caller_time):
        return caller_time

    @property
    def consumer_key(self) -> str:
        return (self.settings.get('consumer_key') or '').strip()

    @property
    def consumer_secret(self) -> str:
        return (self.settings.get('consumer_secret') or '').strip()

    def sanity_check(self) -> Optional[str]:
        """Error code if the plugin cannot run, else None."""
        if not self.consumer_key or not self.consumer_secret:
            return 'nooauthcredentials'
        return None

    # ========================================================================
    # Authorization Stages
    # ========================================================================

    def steal_control(self, stage: str) -> Optional[str]:
        """First leg of OAuth. Returns the URL to redirect to, if any."""
        if stage != STAGE_CONFIG:
            return None
        request = self.auth.begin_authorization(self.consumer_key, self.consumer_secret,
                                                self.callback_url)
        return request.authorize_url if request else None

    def post_control(self, stage: str, params: Dict[str, str]) -> Optional[Credential]:
        """Second and third legs of OAuth: store the access credentials."""
        if stage != STAGE_CONFIG:
            return None
        return self.auth.complete_authorization(params.get('oauth_token', ''),
                                                params.get('oauth_verifier', ''))

    def sign_in_another(self):
        """Drop the stored credential so the next export re-authorizes."""
        self.auth.reset_credential()

    def _require_credential(self) -> Credential:
        credential = self.auth.current_credential()
        if credential is None:
            raise NoActiveSession()
        return credential

    # ========================================================================
    # Export Configuration
    # ========================================================================

    def get_username(self) -> str:
        credential = self._require_credential()
        return self.client.get_user(credential.access_token).username

    def list_notebooks(self) -> Dict[str, str]:
        """Notebook guid -> label, the default notebook marked as such."""
        credential = self._require_credential()
        choices = {}
        for notebook in self.client.list_notebooks(credential.access_token,
                                                   credential.note_store_url):
            if notebook.is_default:
                self.default_notebook_guid = notebook.guid
                choices[notebook.guid] = MESSAGES['defaultnotebook'].format(notebook.name)
            else:
                choices[notebook.guid] = notebook.name
        return choices

    def config_form(self) -> Dict[str, Any]:
        """Fields for the export configuration form."""
        notebooks = self.list_notebooks()
        return {
            'username': self.get_username(),
            'signin_another': MESSAGES['signinanother'],
            'notetitle': MESSAGES['defaultnotetitle'],
            'notebooks': notebooks,
            'default_notebook': self.default_notebook_guid,
            'required': self.get_allowed_export_config(),
        }

    def export_summary(self, export_config: Dict[str, str]) -> Dict[str, str]:
        notebooks = self.list_notebooks()
        return {
            'Evernote Username': self.get_username(),
            'Note Title': export_config.get('notetitle', ''),
            'Notebook': notebooks.get(export_config.get('notebook', ''), ''),
        }

    # ========================================================================
    # Sending
    # ========================================================================

    def prepare_package(self) -> bool:
        return True

    def send_package(self, files: List[ExportFile], export_config: Dict[str, str]) -> Optional[str]:
        """Convert the exported page and create the note. Returns the note guid."""
        credential = self._require_credential()

        if not (export_config.get('notetitle') or '').strip():
            raise ValueError('notetitle is required')
        title = normalize_note_title(export_config['notetitle'])

        notebook_guid = export_config.get('notebook')
        if not notebook_guid:
            raise ValueError('notebook is required')
        if notebook_guid not in self.list_notebooks():
            raise ValueError(f'Unknown notebook: {notebook_guid}')

        page = None
        for export_file in files:
            if export_file.is_page_root and export_file.mimetype == 'text/html':
                page = export_file
                break
            # Attachments are not sent yet
            logger.debug(f"Skipping {export_file.filepath}{export_file.filename} ({export_file.mimetype})")

        if page is None:
            raise ValueError('No HTML page to export')

        draft = NoteDraft(
            title=title,
            body_markup=self.converter.convert(page.get_text()),
            notebook_guid=notebook_guid,
            resources=[],
        )

        try:
            return self.client.create_note(credential.access_token,
                                           credential.note_store_url, draft)
        except Exception as e:
            logger.error(f"Failed to create note from {page.filename}: {e}")
            raise RemoteTransferFailure(page.filename) from e
