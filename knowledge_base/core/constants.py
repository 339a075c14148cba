"""
knowledge_base/core/constants.py

Application-wide fixed constants.

These are part of the system's contract and are NOT configurable via
environment variables.
"""

# ── Accepted uploads ───────────────────────────────────────────────────────────

#: Extensions decoded directly as text.
TEXT_EXTENSIONS: frozenset = frozenset({".txt", ".md", ".markdown", ".csv", ".json", ".log"})

#: Extension handed to the PDF decoder.
PDF_EXTENSION: str = ".pdf"

#: MIME types accepted alongside the extensions above.
TEXT_MIME_PREFIX: str = "text/"
PDF_CONTENT_TYPE: str = "application/pdf"
JSON_CONTENT_TYPE: str = "application/json"

# ── Document / chunk vocabulary ────────────────────────────────────────────────

SOURCE_TYPES: tuple = ("file", "url", "text", "conversation")

#: Separator between document id and chunk index in a vector id.
VECTOR_ID_SEPARATOR: str = ":"

# ── Persistence namespaces ─────────────────────────────────────────────────────

NS_COLLECTIONS: str = "collections"
NS_DOCUMENTS: str = "documents"
NS_CHUNKS: str = "chunks"
NS_SETTINGS: str = "settings"
NS_HISTORY: str = "conversations"
NS_SEARCH_HISTORY: str = "search_history"
NS_SESSIONS: str = "api_sessions"

#: Setting key toggling the session recorder.
SESSIONS_ENABLED_SETTING_KEY: str = "api-session-history-enabled"

ALL_NAMESPACES: tuple = (
    NS_COLLECTIONS,
    NS_DOCUMENTS,
    NS_CHUNKS,
    NS_SETTINGS,
    NS_HISTORY,
    NS_SEARCH_HISTORY,
    NS_SESSIONS,
)
