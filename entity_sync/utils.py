"""
Shared utility functions for the entity sync engine.

Consolidates the JSON I/O helpers, the clock helper, and the single
value-flattening rule used whenever raw panel values (strings, numbers,
lists, nested mappings) have to become field strings.

All JSON writes use atomic temp-file-then-os.replace() to prevent
data corruption from crashes or concurrent access.
"""

import hashlib
import json
import logging
import os
import re
import secrets
import tempfile
import unicodedata
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# JSON I/O (atomic writes)
# ---------------------------------------------------------------------------

def safe_read_json(path, default=None):
    """Return the parsed JSON at *path*, or *default* if it is missing or corrupt.

    Corrupt files are logged at WARNING; missing files are silent.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except (json.JSONDecodeError, OSError):
        logger.warning("Could not read JSON file %s; using default", path)
        return default


def safe_write_json(path, data, *, indent=2):
    """Atomically write *data* as JSON (UTF-8, non-ASCII kept) to *path*.

    Writes a temp file beside the target and swaps it in with
    ``os.replace()``, creating parent directories as needed.
    """
    path = str(path)
    parent = os.path.dirname(path)
    os.makedirs(parent, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=indent, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Time and identifiers
# ---------------------------------------------------------------------------

def now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def slugify(text: str) -> str:
    """Convert a human-readable name to a URL-friendly slug.

    Examples:
        "Aria Windrunner"   -> "aria-windrunner"
        "The Iron Compact"  -> "the-iron-compact"
        "阿丽雅"             -> ""
    """
    text = unicodedata.normalize("NFKD", text)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return re.sub(r"-+", "-", text).strip("-")


def generate_entity_id(name: str, prefix: str = "entity") -> str:
    """Generate a stable entity ID in the format ``slugified-name-XXXXXXXX``.

    Names without any ASCII content (common for localized AI output) fall
    back to *prefix*, so a Chinese-named NPC gets ``npc-1a2b3c4d``.
    """
    slug = slugify(name) or prefix
    return f"{slug}-{secrets.token_hex(4)}"


def safe_filename(value: str) -> str:
    """Map an arbitrary conversation id to a collision-free file stem."""
    stem = re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("._")[:60] or "chat"
    digest = hashlib.sha1(value.encode("utf-8")).hexdigest()[:8]
    return f"{stem}-{digest}"


# ---------------------------------------------------------------------------
# Value flattening
# ---------------------------------------------------------------------------

def flatten_value(value) -> str:
    """Flatten a raw panel value into the string stored in an entity field.

    This is the only stringification rule in the engine:

    - ``None`` becomes ``""``
    - strings are stripped
    - booleans become ``"true"`` / ``"false"``
    - numbers use ``str()``; integral floats drop the trailing ``.0``
    - lists join their non-empty flattened items with ``", "``
    - mappings join ``"key: value"`` pairs (non-empty values only) with ``"; "``
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        items = (flatten_value(v) for v in value)
        return ", ".join(item for item in items if item)
    if isinstance(value, dict):
        parts = []
        for sub_key, sub_val in value.items():
            flat = flatten_value(sub_val)
            if flat:
                parts.append(f"{sub_key}: {flat}")
        return "; ".join(parts)
    return str(value).strip()
