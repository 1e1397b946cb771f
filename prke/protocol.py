"""
Prime Resonance Key Exchange (PRKE) engine.

A node publishes a public resonance value (g^private mod p, multiplied by
powers of its resonance pattern) together with the pattern itself. The
pattern is derived from the node id alone, so a receiver re-derives it and
compares before doing anything else; that comparison is the protocol's
only authentication step.

Key derivation:
- shared = recovered_peer_base ^ private_prime mod p
- holographic mixing with next_prime(local[i] * peer[i]) per index
- key = SHA256(shared (8 bytes LE) || H(id_a)[:8] || H(id_b)[:8]),
  with (id_a, id_b) sorted so both sides hash the same preimage

A PRKEProtocol instance holds the session table of ONE local node. There is
no process-wide instance; callers create and pass their own.
"""

import logging
import math
import threading
from typing import Dict, List, Mapping, Optional, Sequence

from .config import PRKESettings
from .errors import (
    PatternVerificationFailed,
    PRKEError,
    PrimeSearchExhausted,
    SessionNotFound,
    WireFormatError,
)
from .fragments import generate_holographic_fragments
from .keystore import SessionStore
from .modmath import (
    LCGStream,
    generate_prime,
    is_safe_prime,
    mod_exp,
    mod_inverse,
    next_prime,
    prime_factorize,
)
from .primitive import hash_bytes, id_block, seed_from_id
from .session import (
    FIELD_PRIME,
    GENERATOR,
    ExchangeOffer,
    FragmentExchange,
    PRKESession,
    PrimeFieldElement,
    RotationMessage,
)

logger = logging.getLogger(__name__)


def get_session_id(node1: str, node2: str) -> str:
    """Order-independent key for a node pair."""
    return f"{node1}-{node2}" if node1 < node2 else f"{node2}-{node1}"


class PRKEProtocol:
    FIELD_PRIME = FIELD_PRIME
    GENERATOR = GENERATOR

    MIN_RESONANCE_LENGTH = 8
    MAX_RESONANCE_LENGTH = 16

    PRIVATE_PRIME_BITS = (20, 30)
    PATTERN_PRIME_BITS = (10, 20)

    def __init__(self, settings: Optional[PRKESettings] = None, rng=None):
        """
        Args:
            settings: Search caps and thresholds; read from the environment if omitted
            rng: Random source for private primes and fragment coefficients
                 (anything with randrange); SystemRandom if omitted
        """
        self.settings = settings or PRKESettings.from_env()
        self.rng = rng
        self.sessions: Dict[str, PRKESession] = {}
        self.node_resonances: Dict[str, List[int]] = {}  # cache only, never trusted
        self._table_lock = threading.Lock()

    # ============================================
    # Session table
    # ============================================

    def init_session(self, node_id: str) -> PRKESession:
        """Create the node's identity session: private prime, pattern, public resonance."""
        session = PRKESession(node_id=node_id)
        session.private_prime = self.generate_private_prime()
        session.resonance_pattern = self.generate_resonance_pattern(node_id)
        session.public_resonance = self.compute_public_resonance(
            session.private_prime, session.resonance_pattern
        )

        with self._table_lock:
            self.sessions[get_session_id(node_id, node_id)] = session
        logger.info("Initialized PRKE session for %s (pattern length %d)",
                    node_id, len(session.resonance_pattern))
        return session

    def get_session(self, local_node_id: str, peer_node_id: str) -> Optional[PRKESession]:
        with self._table_lock:
            return self.sessions.get(get_session_id(local_node_id, peer_node_id))

    def remove_session(self, local_node_id: str, peer_node_id: str) -> bool:
        with self._table_lock:
            removed = self.sessions.pop(get_session_id(local_node_id, peer_node_id), None)
        return removed is not None

    def _pair_session(self, local_node_id: str, peer_node_id: str) -> PRKESession:
        """Pair session for (local, peer), forked from the identity session on first use."""
        sid = get_session_id(local_node_id, peer_node_id)
        with self._table_lock:
            session = self.sessions.get(sid)
            if session is None:
                identity = self.sessions.get(get_session_id(local_node_id, local_node_id))
                if identity is None:
                    raise SessionNotFound(local_node_id, peer_node_id)
                session = identity.fork()
                self.sessions[sid] = session
        if session.node_id != local_node_id:
            raise SessionNotFound(local_node_id, peer_node_id)
        return session

    def _discard_unestablished(self, local_node_id: str, peer_node_id: str, session: PRKESession) -> None:
        """Drop a pair session that never got a key, if it is still the one in the table."""
        sid = get_session_id(local_node_id, peer_node_id)
        with self._table_lock:
            if self.sessions.get(sid) is session and session.session_key is None:
                del self.sessions[sid]

    # ============================================
    # Secret material
    # ============================================

    def generate_private_prime(self) -> int:
        """Safe prime with bit length in PRIVATE_PRIME_BITS."""
        min_bits, max_bits = self.PRIVATE_PRIME_BITS
        attempts = self.settings.max_prime_attempts
        for attempt in range(1, attempts + 1):
            prime = generate_prime(min_bits, max_bits, rng=self.rng, max_attempts=attempts)
            if is_safe_prime(prime):
                logger.debug("Safe prime found after %d draws", attempt)
                return prime
        raise PrimeSearchExhausted("safe prime search", attempts)

    def generate_resonance_pattern(self, node_id: str) -> List[int]:
        """
        Deterministic resonance pattern for node_id.

        The seed is the first 8 bytes of SHA256(node_id), big-endian. The
        length is 8 + seed % 8, and every prime is drawn from the LCG stream
        started at that seed, so any node can re-derive any other node's
        pattern from its id.
        """
        seed = seed_from_id(node_id)
        span = self.MAX_RESONANCE_LENGTH - self.MIN_RESONANCE_LENGTH
        length = self.MIN_RESONANCE_LENGTH + seed % span

        stream = LCGStream(seed)
        min_bits, max_bits = self.PATTERN_PRIME_BITS
        pattern = []
        for _ in range(length):
            stream.advance()
            pattern.append(generate_prime(
                min_bits, max_bits, rng=stream, max_attempts=self.settings.max_prime_attempts,
            ))

        with self._table_lock:
            self.node_resonances[node_id] = pattern
        return list(pattern)

    def verify_resonance_pattern(self, node_id: str, pattern: Sequence[int]) -> bool:
        return list(pattern) == self.generate_resonance_pattern(node_id)

    @classmethod
    def compute_public_resonance(cls, private_prime: int, pattern: Sequence[int]) -> PrimeFieldElement:
        """g^private mod p, then multiplied by pattern[i]^(i+1) for each index."""
        resonance = mod_exp(cls.GENERATOR, private_prime, cls.FIELD_PRIME)
        for i, prime in enumerate(pattern):
            factor = mod_exp(prime, i + 1, cls.FIELD_PRIME)
            resonance = (resonance * factor) % cls.FIELD_PRIME
        return PrimeFieldElement(resonance, cls.FIELD_PRIME)

    @classmethod
    def check_field_element(cls, element: PrimeFieldElement) -> None:
        """Public resonance values only ever live in the field mod FIELD_PRIME."""
        if element.modulus != cls.FIELD_PRIME:
            raise WireFormatError(
                f"Public resonance modulus {element.modulus} is not {cls.FIELD_PRIME}"
            )

    @classmethod
    def recover_base(cls, public_resonance: PrimeFieldElement, pattern: Sequence[int]) -> int:
        """Undo compute_public_resonance's pattern factors, last index first."""
        base = public_resonance.value
        for i in range(len(pattern) - 1, -1, -1):
            factor = mod_exp(pattern[i], i + 1, cls.FIELD_PRIME)
            base = (base * mod_inverse(factor, cls.FIELD_PRIME)) % cls.FIELD_PRIME
        return base

    # ============================================
    # Exchange
    # ============================================

    def mix_resonance_patterns(self, pattern1: Sequence[int], pattern2: Sequence[int]) -> List[int]:
        mixed = []
        for i in range(max(len(pattern1), len(pattern2))):
            p1 = pattern1[i] if i < len(pattern1) else 1
            p2 = pattern2[i] if i < len(pattern2) else 1
            mixed.append(next_prime(p1 * p2, self.settings.max_next_prime_steps))
        return mixed

    def compute_shared_secret(
        self,
        private_prime: int,
        local_pattern: Sequence[int],
        peer_resonance: PrimeFieldElement,
        peer_pattern: Sequence[int],
    ) -> int:
        peer_base = self.recover_base(peer_resonance, peer_pattern)
        shared = mod_exp(peer_base, private_prime, self.FIELD_PRIME)

        for i, prime in enumerate(self.mix_resonance_patterns(local_pattern, peer_pattern)):
            shared = (shared * prime + (i + 1)) % self.FIELD_PRIME
        return shared

    @staticmethod
    def derive_session_key(shared_secret: int, local_node_id: str, peer_node_id: str) -> bytes:
        first, second = sorted((local_node_id, peer_node_id))
        data = shared_secret.to_bytes(8, "little") + id_block(first) + id_block(second)
        return hash_bytes(data)

    def process_exchange(
        self,
        local_node_id: str,
        peer_node_id: str,
        peer_public_resonance: PrimeFieldElement,
        peer_resonance_pattern: Sequence[int],
    ) -> Optional[bytes]:
        """
        Derive the session key with a peer from its public offer.

        Returns:
            The 32-byte session key, or None when there is no local session
            or the peer's pattern does not match its id. None means the
            exchange did not happen; nothing on the session was changed.

        Raises:
            ValueError: Exchange with itself
            WireFormatError: Peer resonance not reduced mod FIELD_PRIME
            PrimeSearchExhausted: Pattern mixing ran out of steps; no pair
                session is left behind
        """
        try:
            return self._exchange(
                local_node_id, peer_node_id, peer_public_resonance, list(peer_resonance_pattern)
            )
        except (SessionNotFound, PatternVerificationFailed) as exc:
            logger.warning("Exchange %s -> %s rejected: %s", local_node_id, peer_node_id, exc)
            return None

    def accept_offer(self, local_node_id: str, offer: ExchangeOffer) -> Optional[bytes]:
        return self.process_exchange(
            local_node_id, offer.node_id, offer.public_resonance, offer.resonance_pattern
        )

    def _exchange(
        self,
        local_node_id: str,
        peer_node_id: str,
        peer_public_resonance: PrimeFieldElement,
        peer_pattern: List[int],
    ) -> Optional[bytes]:
        if local_node_id == peer_node_id:
            raise ValueError("A node cannot run an exchange with itself")
        self.check_field_element(peer_public_resonance)

        if (self.get_session(local_node_id, peer_node_id) is None
                and self.get_session(local_node_id, local_node_id) is None):
            raise SessionNotFound(local_node_id, peer_node_id)
        if not self.verify_resonance_pattern(peer_node_id, peer_pattern):
            raise PatternVerificationFailed(peer_node_id)

        session = self._pair_session(local_node_id, peer_node_id)
        with session.lock:
            if session.session_key is not None:
                if (session.peer_public_resonance == peer_public_resonance
                        and session.peer_pattern == peer_pattern):
                    return session.session_key
                logger.warning("Session %s already established; refresh or remove it first",
                               get_session_id(local_node_id, peer_node_id))
                return None

            try:
                shared = self.compute_shared_secret(
                    session.private_prime, session.resonance_pattern,
                    peer_public_resonance, peer_pattern,
                )
            except PRKEError:
                self._discard_unestablished(local_node_id, peer_node_id, session)
                raise
            key = self.derive_session_key(shared, local_node_id, peer_node_id)
            strength = self.calculate_entanglement_strength(session.resonance_pattern, peer_pattern)

            session.session_key = key
            session.entanglement_strength = strength
            session.peer_id = peer_node_id
            session.peer_public_resonance = peer_public_resonance
            session.peer_pattern = peer_pattern

        logger.info("Established session %s (entanglement=%.3f)",
                    get_session_id(local_node_id, peer_node_id), strength)
        return key

    # ============================================
    # Entanglement
    # ============================================

    @staticmethod
    def calculate_entanglement_strength(pattern1: Sequence[int], pattern2: Sequence[int]) -> float:
        """
        tanh(2 * common / total) over the prime factors of both patterns.

        `common` counts equal factor pairs between elements at the same
        index; `total` is the number of factors across both patterns.
        """
        common_factors = 0
        total_factors = 0

        for i in range(max(len(pattern1), len(pattern2))):
            factors1 = prime_factorize(pattern1[i]) if i < len(pattern1) else []
            factors2 = prime_factorize(pattern2[i]) if i < len(pattern2) else []
            total_factors += len(factors1) + len(factors2)
            for f1 in factors1:
                common_factors += sum(1 for f2 in factors2 if f1 == f2)

        if total_factors == 0:
            return 0.0
        return math.tanh(2.0 * common_factors / total_factors)

    def can_establish_secure_connection(
        self,
        node1: str,
        node2: str,
        min_entanglement: Optional[float] = None,
    ) -> bool:
        if min_entanglement is None:
            min_entanglement = self.settings.entanglement_threshold
        session = self.get_session(node1, node2)
        if session is None:
            return False
        return session.entanglement_strength >= min_entanglement

    # ============================================
    # Multi-party
    # ============================================

    def create_multi_party_exchange(
        self,
        local_node_id: str,
        participants: Mapping[str, ExchangeOffer],
    ) -> Dict[str, FragmentExchange]:
        """
        Run one pairwise exchange per participant, each with its own
        fragment of the local private prime as the private exponent.

        Every returned FragmentExchange carries the fragment's offer; the
        participant has to run process_exchange with it to end up with the
        same key. Participants whose exchange is rejected, and participants
        that already hold an established session with this node, are left
        out. An established session only changes through refresh.

        Raises:
            ValueError: local_node_id is one of the participants
            WireFormatError: A participant's resonance is not reduced mod FIELD_PRIME
        """
        if local_node_id in participants:
            raise ValueError("A node cannot take part in its own multi-party exchange")
        for offer in participants.values():
            self.check_field_element(offer.public_resonance)

        identity = self.get_session(local_node_id, local_node_id)
        if identity is None:
            identity = self.init_session(local_node_id)

        fragments = generate_holographic_fragments(
            identity.private_prime, len(participants),
            rng=self.rng, max_attempts=self.settings.max_prime_attempts,
        )

        results = {}
        for index, (participant_id, offer) in enumerate(participants.items(), start=1):
            fragment = fragments[index - 1]
            fragment_session = PRKESession(
                node_id=local_node_id,
                private_prime=fragment,
                resonance_pattern=list(identity.resonance_pattern),
                public_resonance=self.compute_public_resonance(fragment, identity.resonance_pattern),
            )
            sid = get_session_id(local_node_id, participant_id)
            with self._table_lock:
                existing = self.sessions.get(sid)
                if existing is None or existing.session_key is None:
                    self.sessions[sid] = fragment_session
            if existing is not None and existing.session_key is not None:
                logger.warning("Session %s already established; left out of multi-party exchange", sid)
                continue

            key = self.process_exchange(
                local_node_id, participant_id, offer.public_resonance, offer.resonance_pattern
            )
            if key is None:
                self._discard_unestablished(local_node_id, participant_id, fragment_session)
                continue
            results[participant_id] = FragmentExchange(
                participant_id=participant_id,
                index=index,
                offer=fragment_session.offer(),
                session_key=key,
            )

        logger.info("Multi-party exchange for %s: %d of %d participants",
                    local_node_id, len(results), len(participants))
        return results

    # ============================================
    # Refresh (rotation)
    # ============================================

    @staticmethod
    def rotation_angle(session_key: bytes) -> float:
        """Mean of the first 8 key bytes (each / 255), scaled to [0, 2*pi]."""
        return sum(b / 255.0 for b in session_key[:8]) / 8.0 * 2.0 * math.pi

    def quantum_rotate_prime(self, prime: int, angle: float) -> int:
        """
        Rotate (prime, 0) by angle and take the next prime at or above
        |real| + |imag|, reduced mod p.

        The Euclidean magnitude of the rotated point is the prime itself, so
        the L1 magnitude is used to actually move the value. The result is
        never the input prime.
        """
        real = prime * math.cos(angle)
        imag = prime * math.sin(angle)
        rotated = int(abs(real) + abs(imag)) % self.FIELD_PRIME
        new_prime = next_prime(rotated, self.settings.max_next_prime_steps)
        if new_prime == prime:
            new_prime = next_prime(prime + 1, self.settings.max_next_prime_steps)
        return new_prime

    def rotate_session(self, local_node_id: str, peer_node_id: str) -> Optional[RotationMessage]:
        """
        First half of a refresh: rotate the local prime and return the
        message the peer needs. The session key is unchanged until
        refresh_session_key() receives the peer's own RotationMessage.
        """
        session = self.get_session(local_node_id, peer_node_id)
        if session is None or session.session_key is None or local_node_id == peer_node_id:
            logger.warning("Cannot rotate %s -> %s: no established session",
                           local_node_id, peer_node_id)
            return None

        with session.lock:
            if session.pending_prime is None:
                angle = self.rotation_angle(session.session_key)
                session.pending_prime = self.quantum_rotate_prime(session.private_prime, angle)
            return RotationMessage(
                node_id=local_node_id,
                peer_id=peer_node_id,
                epoch=session.rotation_epoch + 1,
                public_resonance=self.compute_public_resonance(
                    session.pending_prime, session.resonance_pattern
                ),
            )

    def refresh_session_key(
        self,
        local_node_id: str,
        peer_node_id: str,
        peer_rotation: RotationMessage,
    ) -> Optional[bytes]:
        """
        Second half of a refresh: commit the rotated prime and derive the
        new key against the peer's rotated public resonance.

        Returns None (and leaves the session untouched) when there is no
        established session or the message is not the peer's next rotation.

        Raises:
            WireFormatError: Rotated resonance not reduced mod FIELD_PRIME
        """
        self.check_field_element(peer_rotation.public_resonance)
        session = self.get_session(local_node_id, peer_node_id)
        if session is None or session.session_key is None or session.peer_id != peer_node_id:
            logger.warning("Cannot refresh %s -> %s: no established session",
                           local_node_id, peer_node_id)
            return None

        with session.lock:
            expected_epoch = session.rotation_epoch + 1
            if (peer_rotation.node_id != peer_node_id
                    or peer_rotation.peer_id != local_node_id
                    or peer_rotation.epoch != expected_epoch):
                logger.warning("Rotation message %s -> %s epoch %d does not match expected epoch %d",
                               peer_rotation.node_id, peer_rotation.peer_id,
                               peer_rotation.epoch, expected_epoch)
                return None

            if session.pending_prime is None:
                self.rotate_session(local_node_id, peer_node_id)
            new_prime = session.pending_prime

            shared = self.compute_shared_secret(
                new_prime, session.resonance_pattern,
                peer_rotation.public_resonance, session.peer_pattern,
            )

            session.private_prime = new_prime
            session.public_resonance = self.compute_public_resonance(new_prime, session.resonance_pattern)
            session.peer_public_resonance = peer_rotation.public_resonance
            session.session_key = self.derive_session_key(shared, local_node_id, peer_node_id)
            session.rotation_epoch = expected_epoch
            session.pending_prime = None
            key = session.session_key

        logger.info("Refreshed session %s to epoch %d",
                    get_session_id(local_node_id, peer_node_id), expected_epoch)
        return key

    # ============================================
    # Persistence
    # ============================================

    def persist(self, store: SessionStore) -> None:
        """Write the whole session table; sessions removed here disappear from the store too."""
        with self._table_lock:
            sessions = list(self.sessions.items())
        snapshot = {}
        for sid, session in sessions:
            with session.lock:
                snapshot[sid] = session.to_dict()
        store.put_sessions(snapshot, replace=True)

    def restore(self, store: SessionStore) -> int:
        loaded = {sid: PRKESession.from_dict(blob) for sid, blob in store.all_sessions().items()}
        with self._table_lock:
            self.sessions.update(loaded)
        return len(loaded)
