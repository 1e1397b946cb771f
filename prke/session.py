"""
PRKE session state and the messages exchanged between nodes.

Key types:
- PrimeFieldElement: an integer together with the modulus it is reduced under
- PRKESession: per-(node, peer) exchange state
- ExchangeOffer: the public material a node sends to a peer
- RotationMessage: the coordination message of a session refresh
- FragmentExchange: one leg of a multi-party exchange
- JSON persistence: every type has to_dict / from_dict
"""

import threading
from dataclasses import dataclass, field
from typing import List, Optional

from .primitive import b64e, b64d
from .wire import (
    encode_field_element, decode_field_element,
    encode_pattern, decode_pattern,
)

FIELD_PRIME = 2147483647  # 2^31 - 1 (Mersenne prime)
GENERATOR = 3


@dataclass(frozen=True)
class PrimeFieldElement:
    value: int
    modulus: int

    def __post_init__(self):
        if self.modulus > 0:
            object.__setattr__(self, "value", self.value % self.modulus)

    def to_b64(self) -> str:
        return b64e(encode_field_element(self.value, self.modulus))

    @staticmethod
    def from_b64(s: str) -> "PrimeFieldElement":
        value, modulus = decode_field_element(b64d(s))
        return PrimeFieldElement(value, modulus)


def pattern_to_b64(pattern: List[int]) -> str:
    return b64e(encode_pattern(pattern))

def pattern_from_b64(s: str) -> List[int]:
    return decode_pattern(b64d(s))


@dataclass
class ExchangeOffer:
    """
    Public half of a session, safe to hand to any transport.

    Attributes:
        node_id: Sender's node identifier
        public_resonance: Sender's public resonance value
        resonance_pattern: Sender's resonance pattern (re-derived and checked by the receiver)
    """
    node_id: str
    public_resonance: PrimeFieldElement
    resonance_pattern: List[int]

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict."""
        return {
            "node_id": self.node_id,
            "public_resonance": self.public_resonance.to_b64(),
            "resonance_pattern": pattern_to_b64(self.resonance_pattern),
        }

    @staticmethod
    def from_dict(d: dict) -> "ExchangeOffer":
        """Deserialize from JSON-compatible dict."""
        return ExchangeOffer(
            node_id=d["node_id"],
            public_resonance=PrimeFieldElement.from_b64(d["public_resonance"]),
            resonance_pattern=pattern_from_b64(d["resonance_pattern"]),
        )


@dataclass
class RotationMessage:
    """
    Sent by each side of a refresh so both peers rotate in lockstep.

    Attributes:
        node_id: Node that rotated
        peer_id: Node the rotation is meant for
        epoch: Rotation number this message completes (previous epoch + 1)
        public_resonance: Public resonance of the rotated private prime
    """
    node_id: str
    peer_id: str
    epoch: int
    public_resonance: PrimeFieldElement

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "peer_id": self.peer_id,
            "epoch": self.epoch,
            "public_resonance": self.public_resonance.to_b64(),
        }

    @staticmethod
    def from_dict(d: dict) -> "RotationMessage":
        return RotationMessage(
            node_id=d["node_id"],
            peer_id=d["peer_id"],
            epoch=d["epoch"],
            public_resonance=PrimeFieldElement.from_b64(d["public_resonance"]),
        )


@dataclass
class FragmentExchange:
    """Result of one pairwise exchange inside a multi-party exchange."""
    participant_id: str
    index: int            # x coordinate of the fragment (1-based)
    offer: ExchangeOffer  # must reach the participant for it to derive the same key
    session_key: bytes


@dataclass
class PRKESession:
    """
    State of a PRKE exchange owned by one node.

    The node's own identity session (created by init_session) holds the
    secret prime published in its offer; pair sessions are forked from it
    on first exchange with a peer.

    Attributes:
        node_id: Owning node's identifier
        private_prime: Secret safe prime; never part of an ExchangeOffer
        resonance_pattern: Deterministic primes derived from node_id
        public_resonance: Holographic encoding of private_prime
        session_key: 32-byte key, None until an exchange completes
        entanglement_strength: Trust score in [0, 1], 0.0 until an exchange completes
        peer_id / peer_public_resonance / peer_pattern: Verified peer material
        rotation_epoch: Number of completed refreshes
        pending_prime: Rotated prime waiting for the peer's RotationMessage
    """
    node_id: str
    private_prime: int = 0
    resonance_pattern: List[int] = field(default_factory=list)
    public_resonance: PrimeFieldElement = field(default_factory=lambda: PrimeFieldElement(0, 0))
    session_key: Optional[bytes] = None
    entanglement_strength: float = 0.0
    peer_id: Optional[str] = None
    peer_public_resonance: Optional[PrimeFieldElement] = None
    peer_pattern: List[int] = field(default_factory=list)
    rotation_epoch: int = 0
    pending_prime: Optional[int] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def offer(self) -> ExchangeOffer:
        return ExchangeOffer(
            node_id=self.node_id,
            public_resonance=self.public_resonance,
            resonance_pattern=list(self.resonance_pattern),
        )

    def fork(self) -> "PRKESession":
        """Copy of the local secret material, without any peer state."""
        return PRKESession(
            node_id=self.node_id,
            private_prime=self.private_prime,
            resonance_pattern=list(self.resonance_pattern),
            public_resonance=self.public_resonance,
        )

    def to_dict(self) -> dict:
        """Serialize state to JSON-compatible dict."""
        return {
            "node_id": self.node_id,
            "private_prime": self.private_prime,
            "resonance_pattern": list(self.resonance_pattern),
            "public_resonance": [self.public_resonance.value, self.public_resonance.modulus],
            "session_key_b64": b64e(self.session_key) if self.session_key is not None else None,
            "entanglement_strength": self.entanglement_strength,
            "peer_id": self.peer_id,
            "peer_public_resonance": (
                [self.peer_public_resonance.value, self.peer_public_resonance.modulus]
                if self.peer_public_resonance is not None else None
            ),
            "peer_pattern": list(self.peer_pattern),
            "rotation_epoch": self.rotation_epoch,
            "pending_prime": self.pending_prime,
        }

    @staticmethod
    def from_dict(d: dict) -> "PRKESession":
        """Deserialize state from JSON-compatible dict."""
        key_b64 = d.get("session_key_b64")
        peer_pub = d.get("peer_public_resonance")
        return PRKESession(
            node_id=d["node_id"],
            private_prime=d["private_prime"],
            resonance_pattern=list(d["resonance_pattern"]),
            public_resonance=PrimeFieldElement(*d["public_resonance"]),
            session_key=b64d(key_b64) if key_b64 is not None else None,
            entanglement_strength=d.get("entanglement_strength", 0.0),
            peer_id=d.get("peer_id"),
            peer_public_resonance=PrimeFieldElement(*peer_pub) if peer_pub is not None else None,
            peer_pattern=list(d.get("peer_pattern", [])),
            rotation_epoch=d.get("rotation_epoch", 0),
            pending_prime=d.get("pending_prime"),
        )
