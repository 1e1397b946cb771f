import threading
from typing import Dict, Optional

from prke import PRKEProtocol, PRKESettings


# one protocol state per hosted node; nodes never share a session table
class NodeRegistry:
    def __init__(self, settings: Optional[PRKESettings] = None):
        self.settings = settings or PRKESettings.from_env()
        self._nodes: Dict[str, PRKEProtocol] = {}
        self._lock = threading.Lock()

    def get(self, node_id: str) -> Optional[PRKEProtocol]:
        with self._lock:
            return self._nodes.get(node_id)

    def get_or_create(self, node_id: str) -> PRKEProtocol:
        with self._lock:
            protocol = self._nodes.get(node_id)
            if protocol is None:
                protocol = PRKEProtocol(self.settings)
                self._nodes[node_id] = protocol
            return protocol
