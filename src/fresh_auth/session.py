"""Agent session persistence.

The agent session is an opaque identifier issued by the broker at login. It is
stored as a single line of text (older clients wrote a small JSON object) in a
file only the owning user can read. Several locations are checked in a fixed
order so sessions written by earlier clients keep working.
"""

import json
import logging
import os
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Field names historical clients used for the session id in JSON files
SESSION_ID_FIELDS = ("agentSessionId", "agentSession", "session")

SESSION_FILE_MODE = 0o600


def parse_session_text(raw: str) -> Optional[str]:
    """Extract a session id from the contents of a session file.

    JSON objects are searched for the known field names. Anything that is not
    JSON is taken verbatim (trimmed) as the id.

    Returns:
        The session id, or None if the text is empty or a JSON object without
        a usable id.
    """
    text = raw.strip()
    if not text:
        return None

    try:
        parsed = json.loads(text)
    except ValueError:
        return text

    if not isinstance(parsed, dict):
        # Bare JSON scalars (e.g. a numeric id) are still just ids
        return text

    for field_name in SESSION_ID_FIELDS:
        value = parsed.get(field_name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class SessionStore:
    """Reads, writes and clears the agent session file.

    Args:
        primary: File written by `save()`; checked first by `load()`.
        legacy: Fallback files, checked in order after the primary.
    """

    def __init__(self, primary: Path, legacy: Iterable[Path] = ()):
        self.primary = Path(primary)
        self.legacy = [Path(p) for p in legacy]

    @classmethod
    def from_settings(cls, settings) -> "SessionStore":
        return cls(settings.agent_session_file, settings.legacy_session_files)

    @property
    def candidates(self) -> list[Path]:
        return [self.primary, *self.legacy]

    def load(self) -> Optional[str]:
        """Return the first non-empty session id found, or None.

        Missing, unreadable and malformed files are skipped; this never raises.
        """
        for path in self.candidates:
            try:
                if not path.is_file():
                    continue
                raw = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Skipping unreadable session file {path}: {e}")
                continue

            session_id = parse_session_text(raw)
            if session_id:
                return session_id
        return None

    def save(self, session_id: str) -> Path:
        """Write the session id to the primary file with owner-only permissions."""
        self.primary.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.primary, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SESSION_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{session_id.strip()}\n")
        # O_CREAT's mode does not apply to a file that already existed
        os.chmod(self.primary, SESSION_FILE_MODE)
        return self.primary

    def clear(self) -> None:
        """Delete the primary and every legacy session file that exists."""
        for path in self.candidates:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove session file {path}: {e}")
