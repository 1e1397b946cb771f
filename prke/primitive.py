import base64

from cryptography.hazmat.primitives import hashes


DIGEST_SIZE = 32


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("utf-8")

def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("utf-8"))

def hash_bytes(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()

def hash_string(s: str) -> bytes:
    return hash_bytes(s.encode("utf-8"))

def id_block(node_id: str) -> bytes:
    """First 8 bytes of the node id digest, used in key derivation."""
    return hash_string(node_id)[:8]

def seed_from_id(node_id: str) -> int:
    return int.from_bytes(hash_string(node_id)[:8], "big")
