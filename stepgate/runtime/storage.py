"""
storage.py - Disk I/O helpers for sessions and their events.

The storage layout is:

    .stepgate/sessions/
      <session_id>/
        session.json       # ExecutionSession serialized (durable cursor)
        events.jsonl       # newline-delimited SessionEvent objects

Usage:
    from stepgate.runtime.storage import (
        write_session, read_session, list_sessions, find_latest_session,
        append_event, read_events,
    )
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from stepgate.config.runtime_config import get_sessions_dir

from .types import (
    ExecutionSession,
    SessionEvent,
    SessionId,
    WorkItemRef,
    session_event_from_dict,
    session_event_to_dict,
    session_from_dict,
    session_to_dict,
)

# Module logger
logger = logging.getLogger(__name__)

# File names
SESSION_FILE = "session.json"
EVENTS_FILE = "events.jsonl"

# -----------------------------------------------------------------------------
# Per-session locking for thread safety
# -----------------------------------------------------------------------------
# Parallel sessions run in worker threads and the API reads while they write.
# Locking is in-process only.

_SESSION_LOCKS: Dict[SessionId, threading.Lock] = {}
_SESSION_LOCKS_LOCK = threading.Lock()

_session_sequences: Dict[str, int] = {}
_seq_lock = threading.Lock()


def _resolve_dir(sessions_dir: Optional[Path]) -> Path:
    return Path(sessions_dir) if sessions_dir is not None else get_sessions_dir()


def _get_session_lock(session_id: SessionId) -> threading.Lock:
    """Get or create a lock for a specific session ID."""
    with _SESSION_LOCKS_LOCK:
        lock = _SESSION_LOCKS.get(session_id)
        if lock is None:
            lock = threading.Lock()
            _SESSION_LOCKS[session_id] = lock
        return lock


def _next_seq(session_id: str) -> int:
    """Get the next monotonic sequence number for a session (starting at 1)."""
    with _seq_lock:
        seq = _session_sequences.get(session_id, 0) + 1
        _session_sequences[session_id] = seq
        return seq


def _init_seq_from_disk(session_id: str, session_dir: Path) -> None:
    """Continue the sequence counter from existing events after a restart."""
    events_file = session_dir / EVENTS_FILE
    if not events_file.exists():
        return

    max_seq = 0
    try:
        with open(events_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    try:
                        max_seq = max(max_seq, json.loads(line).get("seq", 0))
                    except json.JSONDecodeError:
                        continue
    except OSError:
        return

    with _seq_lock:
        if max_seq > _session_sequences.get(session_id, 0):
            _session_sequences[session_id] = max_seq
            logger.debug("Recovered sequence counter for session '%s': max_seq=%d", session_id, max_seq)


def release_session(session_id: SessionId) -> None:
    """Drop the in-process lock and sequence counter of a session that stopped.

    A later append for the same session recovers its sequence from disk.
    """
    with _SESSION_LOCKS_LOCK:
        _SESSION_LOCKS.pop(session_id, None)
    with _seq_lock:
        _session_sequences.pop(session_id, None)


# -----------------------------------------------------------------------------
# Atomic File I/O Helpers
# -----------------------------------------------------------------------------


def _atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON data to a file atomically (temp file + os.replace)."""
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.name + ".", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _load_json_safe(path: Path) -> Optional[Dict[str, Any]]:
    """Load a JSON object, returning None (with a warning) if corrupt."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------


def get_session_path(session_id: SessionId, sessions_dir: Optional[Path] = None) -> Path:
    return _resolve_dir(sessions_dir) / session_id


def session_exists(session_id: SessionId, sessions_dir: Optional[Path] = None) -> bool:
    return (get_session_path(session_id, sessions_dir) / SESSION_FILE).exists()


def write_session(session: ExecutionSession, sessions_dir: Optional[Path] = None) -> Path:
    """Persist a session atomically.

    Args:
        session: The session to write.
        sessions_dir: Base directory. Defaults to the configured sessions dir.

    Returns:
        Path of the written session.json.
    """
    session.touch()
    path = get_session_path(session.session_id, sessions_dir) / SESSION_FILE
    with _get_session_lock(session.session_id):
        _atomic_write_json(path, session_to_dict(session))
    return path


def read_session(session_id: SessionId, sessions_dir: Optional[Path] = None) -> Optional[ExecutionSession]:
    """Load a session, or None if it is missing or unreadable."""
    data = _load_json_safe(get_session_path(session_id, sessions_dir) / SESSION_FILE)
    if data is None:
        return None
    try:
        return session_from_dict(data)
    except (KeyError, ValueError, TypeError) as e:
        logger.warning("Session '%s' is malformed: %s", session_id, e)
        return None


def list_sessions(sessions_dir: Optional[Path] = None) -> List[SessionId]:
    """List session IDs with a session.json, sorted chronologically."""
    base = _resolve_dir(sessions_dir)
    if not base.exists():
        return []
    return sorted(entry.name for entry in base.iterdir() if entry.is_dir() and (entry / SESSION_FILE).exists())


def find_latest_session(
    agent_name: str,
    work_item: WorkItemRef,
    sessions_dir: Optional[Path] = None,
) -> Optional[ExecutionSession]:
    """Most recent session for an agent and work-item, if any.

    Session IDs embed their creation time, so the last one in sorted order
    is the newest.
    """
    for session_id in reversed(list_sessions(sessions_dir)):
        session = read_session(session_id, sessions_dir)
        if session is None:
            continue
        if session.agent_name == agent_name and session.work_item.key == work_item.key:
            return session
    return None


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


def append_event(event: SessionEvent, sessions_dir: Optional[Path] = None) -> None:
    """Append a SessionEvent to events.jsonl, assigning its seq.

    Event logging is non-critical: I/O and serialization failures are
    logged and swallowed so they never abort a session.
    """
    session_dir = get_session_path(event.session_id, sessions_dir)
    with _get_session_lock(event.session_id):
        events_path = session_dir / EVENTS_FILE
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            if event.session_id not in _session_sequences:
                _init_seq_from_disk(event.session_id, session_dir)
            event.seq = _next_seq(event.session_id)
            line = json.dumps(session_event_to_dict(event), ensure_ascii=False)
            with open(events_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        except OSError as e:
            logger.warning("Failed to append event for session '%s' at %s: %s", event.session_id, events_path, e)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize event for session '%s': %s", event.session_id, e)


def read_events(session_id: SessionId, sessions_dir: Optional[Path] = None) -> List[SessionEvent]:
    """Read all events for a session, skipping malformed lines."""
    events_path = get_session_path(session_id, sessions_dir) / EVENTS_FILE
    if not events_path.exists():
        return []

    events: List[SessionEvent] = []
    try:
        with open(events_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(session_event_from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    continue
    except OSError:
        return []
    return events
