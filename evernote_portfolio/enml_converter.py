"""
HTML to ENML (Evernote Markup Language) conversion.
Strips tags and attributes Evernote rejects and wraps the result in an en-note.
"""

import re
import html
import logging
from typing import Optional

from bs4 import BeautifulSoup, Comment, Declaration, Doctype, ProcessingInstruction, Tag

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================
ENML_PROLOG = ('<?xml version="1.0" encoding="UTF-8"?>'
               '<!DOCTYPE en-note SYSTEM "http://xml.evernote.com/pub/enml2.dtd">')

ALLOWED_TAGS = frozenset({
    'a', 'abbr', 'acronym', 'address', 'area', 'b', 'bdo', 'big', 'blockquote',
    'br', 'caption', 'center', 'cite', 'code', 'col', 'colgroup', 'dd', 'del',
    'dfn', 'div', 'dl', 'dt', 'em', 'font', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'hr', 'i', 'img', 'ins', 'kbd', 'li', 'map', 'ol', 'p', 'pre', 'q', 's',
    'samp', 'small', 'span', 'strike', 'strong', 'sub', 'sup', 'table', 'tbody',
    'td', 'tfoot', 'th', 'thead', 'title', 'tr', 'tt', 'u', 'ul', 'var', 'xmp',
})

# Removed together with their text
DROPPED_WITH_CONTENT = frozenset({'script', 'style'})

DISALLOWED_ATTRIBUTES = (
    'class', 'id', 'onclick', 'ondblclick', 'accesskey', 'data', 'dynsrc', 'tabindex',
)

MAX_TITLE_LENGTH = 255
DEFAULT_NOTE_TITLE = 'Exported page'

# Known upstream quirk
MALFORMED_BREAK = '<br/ >'

# Synthetic wrapper built after parsing, so input cannot close it
ROOT_TAG = 'enml-fragment'

_XML_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_.\-]*$')
_XML_ILLEGAL_CHARS = re.compile('[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]')


# ============================================================================
# Converter
# ============================================================================
class EnmlConverter:
    """Convert captured HTML into an ENML document.

    Tags outside ALLOWED_TAGS are unwrapped (their text is kept), script and
    style blocks are dropped entirely, and DISALLOWED_ATTRIBUTES are removed
    from every remaining element.
    """

    def __init__(self, parser: str = 'html.parser'):
        self.parser = parser

    def convert(self, html_content: Optional[str]) -> str:
        """Convert an HTML string to a complete ENML document."""
        return self.wrap(self.convert_body(html_content))

    def convert_body(self, html_content: Optional[str]) -> str:
        """Sanitized en-note body, without prolog or en-note wrapper."""
        if not html_content:
            return ''

        html_content = _XML_ILLEGAL_CHARS.sub('', html_content)
        html_content = html_content.replace(MALFORMED_BREAK, '')

        try:
            soup = BeautifulSoup(html_content, self.parser)
            root = soup.new_tag(ROOT_TAG)
            for node in list(soup.contents):
                root.append(node)
            soup.append(root)

            self._strip_tags(root)
            self._strip_attributes(root)
            # Character references are decoded by the parser
            return _XML_ILLEGAL_CHARS.sub('', root.decode_contents())
        except Exception as e:
            # Best effort: keep the text rather than fail the export
            logger.warning(f"HTML parse failed, falling back to plain text: {e}")
            return html.escape(re.sub(r'<[^>]*>', '', html_content), quote=False)

    def wrap(self, body: str) -> str:
        """Wrap an ENML body in the prolog, doctype and en-note root."""
        return f'{ENML_PROLOG}<en-note>{body}</en-note>'

    def _strip_tags(self, root: Tag):
        """Remove markup Evernote does not accept, keeping text where possible."""
        for node in root.find_all(string=lambda s: isinstance(
                s, (Comment, Declaration, Doctype, ProcessingInstruction))):
            node.extract()

        for tag in root.find_all(sorted(DROPPED_WITH_CONTENT)):
            tag.decompose()

        for tag in root.find_all(True):
            if tag.name not in ALLOWED_TAGS:
                tag.unwrap()

    def _strip_attributes(self, element: Tag):
        """Post-order: children first, then the element's own attributes."""
        for child in element.children:
            if isinstance(child, Tag):
                self._strip_attributes(child)

        for attribute in DISALLOWED_ATTRIBUTES:
            if attribute in element.attrs:
                del element.attrs[attribute]

        for attribute in list(element.attrs):
            if not _XML_NAME.match(attribute):
                del element.attrs[attribute]


def html_to_enml(html_content: Optional[str]) -> str:
    """Module-level shortcut for EnmlConverter().convert()."""
    return EnmlConverter().convert(html_content)


def normalize_note_title(title: Optional[str], default: str = DEFAULT_NOTE_TITLE) -> str:
    """Evernote titles: one line, no surrounding whitespace, at most 255 chars."""
    title = re.sub(r'\s+', ' ', title or '').strip()
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].rstrip()
    return title or default
