import json
import threading
from pathlib import Path
from typing import Any, Dict, Mapping


class SessionStore:
    """
    JSON file holding serialized PRKE sessions by pair key.

    Every write replaces the file through a temporary sibling, so a reader
    never sees a half-written table. One store object serializes its own
    read-modify-write cycles; sharing the file between processes is not
    supported.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()
        if not self.path.exists():
            self._write({})

    def _read(self) -> Dict[str, Dict[str, Any]]:
        return json.loads(self.path.read_text(encoding="utf-8"))["sessions"]

    def _write(self, sessions: Mapping[str, Dict[str, Any]]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps({"sessions": dict(sessions)}, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def get_session(self, session_id: str) -> Dict[str, Any] | None:
        with self._lock:
            return self._read().get(session_id)

    def put_session(self, session_id: str, session_blob: Dict[str, Any]) -> None:
        self.put_sessions({session_id: session_blob})

    def put_sessions(self, blobs: Mapping[str, Dict[str, Any]], replace: bool = False) -> None:
        """
        Write many sessions with a single file rewrite.

        Args:
            blobs: Serialized sessions by pair key
            replace: Drop every stored session not in blobs
        """
        with self._lock:
            sessions = {} if replace else self._read()
            sessions.update(blobs)
            self._write(sessions)

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            sessions = self._read()
            removed = sessions.pop(session_id, None)
            if removed is not None:
                self._write(sessions)
        return removed is not None

    def all_sessions(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return self._read()
