"""
Evernote Portfolio - push exported pages into Evernote as notes.

Modules:
    - evernote_auth: OAuth 1.0a handshake and error types
    - enml_converter: HTML to ENML conversion
    - evernote_client: settings and note store / user store access
    - exporter: the portfolio plugin driven by the host
    - preference_store: per-user persisted OAuth state
    - app: Flask host
"""

__version__ = "1.0.0"
