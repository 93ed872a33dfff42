"""
Evernote API client for the portfolio plugin.
Settings management plus memoized note store / user store Thrift clients.
"""

import sys
import json
import hashlib
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from evernote_portfolio.evernote_auth import PRODUCTION_HOST, SANDBOX_HOST

logger = logging.getLogger(__name__)


# ============================================================================
# Settings Management
# ============================================================================

def _get_settings_search_paths() -> List[Path]:
    """Get list of paths to search for settings.json."""
    paths = []

    # If running as frozen exe
    if getattr(sys, 'frozen', False):
        exe_dir = Path(sys.executable).parent
        paths.append(exe_dir / 'settings.json')

    script_dir = Path(__file__).parent
    paths.append(script_dir / 'settings.json')

    # Project root
    paths.append(script_dir.parent / 'settings.json')

    return paths


def get_settings_path() -> Path:
    """Get settings.json path - checks multiple locations.

    Returns the first existing settings.json found, or the default
    location in the package directory if none exists.
    """
    for path in _get_settings_search_paths():
        if path.exists():
            logger.info(f"Found settings at: {path}")
            return path

    return Path(__file__).parent / 'settings.json'


def load_settings(settings_path: Path = None) -> Dict[str, Any]:
    """Load settings from JSON file.

    Flat format:
        consumer_key, consumer_secret - Evernote API key (both required)
        sandbox - use sandbox.evernote.com (default True)
        preferences_file - where per-user OAuth state is kept
        callback_url - absolute URL Evernote redirects back to
    """
    if settings_path is None:
        settings_path = get_settings_path()

    if not settings_path.exists():
        logger.info("No settings.json found - will use defaults")
        return {}

    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            settings = json.load(f)
        logger.info(f"Loaded settings from: {settings_path}")
        if not isinstance(settings, dict):
            logger.warning("settings.json is not an object - ignoring")
            return {}
        return settings
    except Exception as e:
        logger.warning(f"Could not load settings.json: {e}")
        return {}


def save_settings(settings_path: Path, consumer_key: str, consumer_secret: str,
                  sandbox: bool = True, **extra):
    """Save settings to JSON file (flat format)."""
    settings = {
        "consumer_key": consumer_key,
        "consumer_secret": consumer_secret,
        "sandbox": sandbox,
    }
    settings.update(extra)

    settings_path.parent.mkdir(parents=True, exist_ok=True)

    with open(settings_path, 'w', encoding='utf-8') as f:
        json.dump(settings, f, indent=4)

    logger.info(f"Settings saved to: {settings_path}")


def get_api_host(settings: Dict[str, Any]) -> str:
    """Sandbox and production differ only by base URL."""
    if settings.get('sandbox', True):
        return SANDBOX_HOST
    return PRODUCTION_HOST


# ============================================================================
# Data Classes
# ============================================================================
@dataclass
class Notebook:
    """Notebook information for UI display."""
    guid: str
    name: str
    is_default: bool = False


@dataclass
class Resource:
    """Attachment sent along with a note."""
    data: bytes
    mime_type: str
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NoteDraft:
    """A note ready to be submitted to the note store."""
    title: str
    body_markup: str
    notebook_guid: str
    resources: List[Resource] = field(default_factory=list)


# ============================================================================
# Thrift Store Factory
# ============================================================================

def normalize_store_url(url: str) -> str:
    """Make the port explicit: 443 for https, 80 for anything else."""
    parts = urlparse(url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"Invalid store URL: {url!r}")
    port = parts.port or (443 if parts.scheme == 'https' else 80)
    netloc = f"{parts.hostname}:{port}"
    return urlunparse((parts.scheme, netloc, parts.path or '/', '', parts.query, ''))


def connect_store(kind: str, url: str):
    """Open a Thrift binary-protocol client for a note store or user store."""
    from thrift.protocol import TBinaryProtocol
    from thrift.transport import THttpClient

    if kind == 'note':
        from evernote.edam.notestore import NoteStore as service
    elif kind == 'user':
        from evernote.edam.userstore import UserStore as service
    else:
        raise ValueError(f"Unknown store kind: {kind}")

    transport = THttpClient.THttpClient(url)
    protocol = TBinaryProtocol.TBinaryProtocol(transport)
    return service.Client(protocol)


class StoreFactory:
    """Build each store client once per endpoint URL and reuse it."""

    def __init__(self, connector: Callable[[str, str], Any] = None):
        self._connector = connector or connect_store
        self._stores: Dict[tuple, Any] = {}

    def note_store(self, url: str):
        return self._get('note', url)

    def user_store(self, url: str):
        return self._get('user', url)

    def _get(self, kind: str, url: str):
        key = (kind, normalize_store_url(url))
        if key not in self._stores:
            logger.debug(f"Connecting {kind} store at {key[1]}")
            self._stores[key] = self._connector(kind, key[1])
        return self._stores[key]


# ============================================================================
# Evernote Client
# ============================================================================
class EvernoteClient:
    """Narrow wrapper over the Evernote note store and user store."""

    def __init__(self, api_host: str = SANDBOX_HOST, store_factory: StoreFactory = None):
        self.api_host = api_host.rstrip('/')
        self.stores = store_factory or StoreFactory()

    @property
    def user_store_url(self) -> str:
        return f"{self.api_host}/edam/user"

    def get_user(self, access_token: str):
        """Get the authenticated Evernote user (has ``username``)."""
        return self.stores.user_store(self.user_store_url).getUser(access_token)

    def list_notebooks(self, access_token: str, note_store_url: str) -> List[Notebook]:
        """Get all notebooks of the user."""
        notebooks = self.stores.note_store(note_store_url).listNotebooks(access_token) or []
        result = [
            Notebook(guid=nb.guid, name=nb.name, is_default=bool(nb.defaultNotebook))
            for nb in notebooks
        ]
        logger.info(f"Fetched {len(result)} notebooks")
        return result

    def create_note(self, access_token: str, note_store_url: str, draft: NoteDraft) -> Optional[str]:
        """Submit a note. Returns the guid Evernote assigned to it."""
        note = to_edam_note(draft)
        created = self.stores.note_store(note_store_url).createNote(access_token, note)
        guid = getattr(created, 'guid', None)
        logger.info(f"Created note '{draft.title}' ({guid})")
        return guid


def to_edam_note(draft: NoteDraft):
    """Convert a NoteDraft into the Thrift Note type."""
    from evernote.edam.type import ttypes as Types

    note = Types.Note()
    note.title = draft.title
    note.content = draft.body_markup
    note.notebookGuid = draft.notebook_guid
    note.resources = []
    for resource in draft.resources:
        data = Types.Data()
        data.body = resource.data
        data.size = len(resource.data)
        data.bodyHash = hashlib.md5(resource.data).digest()
        note.resources.append(Types.Resource(
            data=data,
            mime=resource.mime_type,
            attributes=Types.ResourceAttributes(**resource.attributes),
        ))
    return note
