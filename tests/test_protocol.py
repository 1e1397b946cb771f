"""
PRKE Protocol Tests

Comprehensive tests of the key exchange engine:
1. Private primes are safe primes
2. Resonance patterns are deterministic per node id
3. The holographic transform round-trips
4. alice and bob derive identical 32-byte keys
5. Pattern verification rejects forged offers
6. Entanglement strength bounds and the secure-connection gate
7. Multi-party exchange with holographic fragments
8. Coordinated session refresh
9. Concurrent exchange and refresh on one pair key
"""

import math
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from prke import (
    FIELD_PRIME,
    GENERATOR,
    ExchangeOffer,
    PRKEProtocol,
    PRKESettings,
    PrimeFieldElement,
    PrimeSearchExhausted,
    RotationMessage,
    SessionStore,
    WireFormatError,
    get_session_id,
    is_prime,
)


def make_protocol(seed=None, **overrides):
    rng = random.Random(seed) if seed is not None else None
    return PRKEProtocol(PRKESettings(**overrides), rng=rng)


class FixedRandom:
    def __init__(self, value):
        self.value = value

    def randrange(self, start, stop):
        return self.value


@pytest.fixture
def alice_bob():
    """Two nodes, each with its own protocol state, after init_session."""
    alice = make_protocol(1)
    bob = make_protocol(2)
    alice.init_session("alice")
    bob.init_session("bob")
    return alice, bob


@pytest.fixture
def established(alice_bob):
    alice, bob = alice_bob
    key_a = alice.accept_offer("alice", bob.get_session("bob", "bob").offer())
    key_b = bob.accept_offer("bob", alice.get_session("alice", "alice").offer())
    return alice, bob, key_a, key_b


class TestSessionIds:

    def test_order_independent(self):
        assert get_session_id("alice", "bob") == get_session_id("bob", "alice") == "alice-bob"

    def test_identity_session(self):
        assert get_session_id("alice", "alice") == "alice-alice"


class TestPrivatePrime:

    def test_safe_prime_property(self):
        protocol = make_protocol(5)
        for _ in range(10):
            p = protocol.generate_private_prime()
            assert is_prime(p)
            assert is_prime((p - 1) // 2)
            assert 20 <= p.bit_length() < 30

    def test_safe_prime_search_is_bounded(self):
        # 2^19 | 1 = 524289 = 3 * 174763, never prime
        protocol = PRKEProtocol(PRKESettings(max_prime_attempts=3), rng=FixedRandom(1 << 19))
        with pytest.raises(PrimeSearchExhausted):
            protocol.generate_private_prime()


class TestResonancePattern:

    def test_deterministic(self):
        a = make_protocol(1).generate_resonance_pattern("alice")
        b = make_protocol(2).generate_resonance_pattern("alice")
        assert a == b

    def test_shape(self):
        protocol = make_protocol()
        for node_id in ("alice", "bob", "carol", "node-42", ""):
            pattern = protocol.generate_resonance_pattern(node_id)
            assert 8 <= len(pattern) < 16
            for p in pattern:
                assert is_prime(p)
                assert 10 <= p.bit_length() < 20

    def test_differs_between_nodes(self):
        protocol = make_protocol()
        assert protocol.generate_resonance_pattern("alice") != protocol.generate_resonance_pattern("bob")

    def test_cache_updated(self):
        protocol = make_protocol()
        pattern = protocol.generate_resonance_pattern("alice")
        assert protocol.node_resonances["alice"] == pattern

    def test_verification(self):
        protocol = make_protocol()
        pattern = protocol.generate_resonance_pattern("alice")
        assert protocol.verify_resonance_pattern("alice", pattern)
        assert not protocol.verify_resonance_pattern("alice", pattern[:-1])
        assert not protocol.verify_resonance_pattern("alice", list(reversed(pattern)))
        assert not protocol.verify_resonance_pattern("bob", pattern)


class TestHolographicTransform:

    def test_round_trip(self):
        protocol = make_protocol(3)
        for node_id in ("alice", "bob", "carol"):
            p = protocol.generate_private_prime()
            pattern = protocol.generate_resonance_pattern(node_id)
            public = protocol.compute_public_resonance(p, pattern)
            assert public.modulus == FIELD_PRIME
            assert protocol.recover_base(public, pattern) == pow(GENERATOR, p, FIELD_PRIME)

    def test_empty_pattern_is_plain_dh(self):
        public = PRKEProtocol.compute_public_resonance(1000003, [])
        assert public.value == pow(GENERATOR, 1000003, FIELD_PRIME)

    def test_known_small_case(self):
        # 3^5 * 7^1 * 11^2
        public = PRKEProtocol.compute_public_resonance(5, [7, 11])
        assert public.value == 243 * 7 * 121 % FIELD_PRIME


class TestExchange:

    def test_init_session(self, alice_bob):
        alice, _ = alice_bob
        session = alice.get_session("alice", "alice")
        assert session.node_id == "alice"
        assert session.session_key is None
        assert session.entanglement_strength == 0.0
        assert session.public_resonance == alice.compute_public_resonance(
            session.private_prime, session.resonance_pattern
        )

    def test_alice_bob_derive_same_key(self, established):
        _, _, key_a, key_b = established
        assert key_a is not None
        assert key_a == key_b
        assert len(key_a) == 32

    def test_session_state_after_exchange(self, established):
        alice, bob, key_a, _ = established
        session = alice.get_session("alice", "bob")
        assert session.session_key == key_a
        assert session.peer_id == "bob"
        assert session.peer_pattern == bob.get_session("bob", "bob").resonance_pattern
        assert session.private_prime == alice.get_session("alice", "alice").private_prime
        # identity session keeps no peer state
        assert alice.get_session("alice", "alice").session_key is None

    def test_key_depends_on_secret(self, alice_bob):
        alice, bob = alice_bob
        bob_offer = bob.get_session("bob", "bob").offer()
        key_1 = alice.accept_offer("alice", bob_offer)

        other_alice = make_protocol(99)
        other_alice.init_session("alice")
        key_2 = other_alice.accept_offer("alice", bob_offer)
        assert key_1 != key_2

    def test_derive_session_key_is_order_independent(self):
        k1 = PRKEProtocol.derive_session_key(123456, "alice", "bob")
        k2 = PRKEProtocol.derive_session_key(123456, "bob", "alice")
        assert k1 == k2
        assert PRKEProtocol.derive_session_key(123457, "alice", "bob") != k1

    def test_mixing_is_symmetric_and_padded(self):
        protocol = make_protocol()
        assert protocol.mix_resonance_patterns([3, 5], [7]) == protocol.mix_resonance_patterns([7], [3, 5])
        # 3*7 = 21 -> 23, 5*1 = 5 -> 5
        assert protocol.mix_resonance_patterns([3, 5], [7]) == [23, 5]

    def test_repeated_exchange_is_idempotent(self, established):
        alice, bob, key_a, _ = established
        again = alice.accept_offer("alice", bob.get_session("bob", "bob").offer())
        assert again == key_a

    def test_established_session_rejects_new_material(self, established):
        alice, bob, key_a, _ = established
        offer = bob.get_session("bob", "bob").offer()
        offer.public_resonance = PrimeFieldElement(offer.public_resonance.value + 1, FIELD_PRIME)
        assert alice.accept_offer("alice", offer) is None
        assert alice.get_session("alice", "bob").session_key == key_a

    def test_no_local_session(self, alice_bob):
        _, bob = alice_bob
        stranger = make_protocol()
        offer = bob.get_session("bob", "bob").offer()
        assert stranger.process_exchange("alice", "bob", offer.public_resonance, offer.resonance_pattern) is None

    def test_forged_pattern_rejected(self, alice_bob):
        alice, bob = alice_bob
        offer = bob.get_session("bob", "bob").offer()
        forged = list(offer.resonance_pattern)
        forged[0] = forged[1]
        assert alice.process_exchange("alice", "bob", offer.public_resonance, forged) is None
        assert alice.get_session("alice", "bob") is None

    def test_impersonation_rejected(self, alice_bob):
        alice, bob = alice_bob
        offer = bob.get_session("bob", "bob").offer()
        # bob's material presented as mallory's
        assert alice.process_exchange("alice", "mallory", offer.public_resonance, offer.resonance_pattern) is None

    def test_exchange_with_self_rejected(self, alice_bob):
        alice, _ = alice_bob
        offer = alice.get_session("alice", "alice").offer()
        with pytest.raises(ValueError):
            alice.accept_offer("alice", offer)

    def test_remove_session(self, established):
        alice, _, _, _ = established
        assert alice.remove_session("bob", "alice")
        assert alice.get_session("alice", "bob") is None
        assert not alice.remove_session("alice", "bob")

    def test_foreign_modulus_rejected(self, alice_bob):
        """Public resonance over any modulus but FIELD_PRIME never yields a key."""
        alice, bob = alice_bob
        pattern = bob.get_session("bob", "bob").resonance_pattern
        with pytest.raises(WireFormatError):
            alice.process_exchange("alice", "bob", PrimeFieldElement(3, 5), pattern)
        assert alice.get_session("alice", "bob") is None

    def test_failed_derivation_leaves_no_session(self):
        """An exhausted prime search during mixing does not leave a keyless pair session."""
        alice = make_protocol(1, max_next_prime_steps=1)
        bob = make_protocol(2)
        alice.init_session("alice")
        offer = bob.init_session("bob").offer()

        with pytest.raises(PrimeSearchExhausted):
            alice.accept_offer("alice", offer)
        assert alice.get_session("alice", "bob") is None
        assert alice.get_session("alice", "alice").session_key is None


class TestEntanglement:

    def test_no_factors(self):
        assert PRKEProtocol.calculate_entanglement_strength([], []) == 0.0
        assert PRKEProtocol.calculate_entanglement_strength([1, 1], [1]) == 0.0

    def test_disjoint(self):
        assert PRKEProtocol.calculate_entanglement_strength([3, 5, 7], [11, 13, 17]) == 0.0

    def test_identical_prime_patterns(self):
        pattern = [1031, 2053, 4099, 8209]
        strength = PRKEProtocol.calculate_entanglement_strength(pattern, pattern)
        assert strength == pytest.approx(math.tanh(1.0))
        assert strength < 1.0

    def test_shared_small_factors(self):
        # [2, 2] vs [2, 2]: 4 equal pairs over 4 factors
        assert PRKEProtocol.calculate_entanglement_strength([4], [4]) == pytest.approx(math.tanh(2.0))

    def test_bounds(self):
        rng = random.Random(0)
        for _ in range(50):
            p1 = [rng.randrange(1, 5000) for _ in range(rng.randrange(0, 16))]
            p2 = [rng.randrange(1, 5000) for _ in range(rng.randrange(0, 16))]
            strength = PRKEProtocol.calculate_entanglement_strength(p1, p2)
            assert 0.0 <= strength < 1.0

    def test_symmetric(self):
        p1 = [12, 30, 7]
        p2 = [18, 5]
        assert (PRKEProtocol.calculate_entanglement_strength(p1, p2)
                == PRKEProtocol.calculate_entanglement_strength(p2, p1))

    def test_both_sides_agree(self, established):
        alice, bob, _, _ = established
        assert (alice.get_session("alice", "bob").entanglement_strength
                == bob.get_session("bob", "alice").entanglement_strength)

    def test_secure_connection_gate(self, established):
        alice, _, _, _ = established
        strength = alice.get_session("alice", "bob").entanglement_strength
        # alice's and bob's patterns share no factors at matching positions
        assert strength < 0.7
        assert not alice.can_establish_secure_connection("alice", "bob", 0.7)
        assert alice.can_establish_secure_connection("alice", "bob", strength)
        assert alice.can_establish_secure_connection("alice", "bob", 0.0)

    def test_secure_connection_with_strong_session(self, established):
        alice, _, _, _ = established
        alice.get_session("alice", "bob").entanglement_strength = math.tanh(1.0)
        assert alice.can_establish_secure_connection("alice", "bob", 0.7)
        assert alice.can_establish_secure_connection("bob", "alice")

    def test_secure_connection_without_session(self, alice_bob):
        alice, _ = alice_bob
        assert not alice.can_establish_secure_connection("alice", "carol", 0.0)


class TestMultiParty:

    def test_participants_derive_fragment_keys(self):
        carol = make_protocol(10)
        alice = make_protocol(11)
        bob = make_protocol(12)
        participants = {
            "alice": alice.init_session("alice").offer(),
            "bob": bob.init_session("bob").offer(),
        }

        legs = carol.create_multi_party_exchange("carol", participants)
        assert set(legs) == {"alice", "bob"}
        assert [legs["alice"].index, legs["bob"].index] == [1, 2]
        assert legs["alice"].session_key != legs["bob"].session_key

        for node_id, protocol in (("alice", alice), ("bob", bob)):
            leg = legs[node_id]
            assert leg.offer.node_id == "carol"
            assert protocol.accept_offer(node_id, leg.offer) == leg.session_key

    def test_fragment_sessions_use_fragments(self):
        carol = make_protocol(10)
        alice = make_protocol(11)
        participants = {"alice": alice.init_session("alice").offer()}

        legs = carol.create_multi_party_exchange("carol", participants)
        identity = carol.get_session("carol", "carol")
        pair = carol.get_session("carol", "alice")
        # a single participant gets the constant polynomial, i.e. the secret itself
        assert pair.private_prime == identity.private_prime
        assert legs["alice"].offer.public_resonance == identity.public_resonance

    def test_fragments_reconstruct_private_prime(self):
        from prke import reconstruct_secret

        carol = make_protocol(10)
        participants = {}
        peers = {}
        for i, name in enumerate(("alice", "bob", "dave")):
            peers[name] = make_protocol(20 + i)
            participants[name] = peers[name].init_session(name).offer()

        legs = carol.create_multi_party_exchange("carol", participants)
        points = [(leg.index, carol.get_session("carol", pid).private_prime) for pid, leg in legs.items()]
        assert reconstruct_secret(points) == carol.get_session("carol", "carol").private_prime

    def test_forged_participant_left_out(self):
        carol = make_protocol(10)
        alice = make_protocol(11)
        bob = make_protocol(12)
        bob_offer = bob.init_session("bob").offer()
        participants = {
            "alice": alice.init_session("alice").offer(),
            "mallory": ExchangeOffer("mallory", bob_offer.public_resonance, bob_offer.resonance_pattern),
        }
        legs = carol.create_multi_party_exchange("carol", participants)
        assert set(legs) == {"alice"}
        assert carol.get_session("carol", "mallory") is None

    def test_established_participant_keeps_key(self):
        """A participant already paired with the initiator is skipped, not re-keyed."""
        carol = make_protocol(10)
        alice = make_protocol(11)
        bob = make_protocol(12)
        carol_offer = carol.init_session("carol").offer()
        alice_offer = alice.init_session("alice").offer()
        key = carol.accept_offer("carol", alice_offer)
        assert alice.accept_offer("alice", carol_offer) == key

        legs = carol.create_multi_party_exchange(
            "carol", {"bob": bob.init_session("bob").offer(), "alice": alice_offer}
        )
        assert set(legs) == {"bob"}
        assert carol.get_session("carol", "alice").session_key == key
        assert alice.get_session("alice", "carol").session_key == key

    def test_initiator_as_participant_rejected(self):
        """The initiator listed as its own participant fails before the table is touched."""
        carol = make_protocol(10)
        alice = make_protocol(11)
        identity = carol.init_session("carol")
        prime = identity.private_prime

        with pytest.raises(ValueError):
            carol.create_multi_party_exchange(
                "carol", {"carol": identity.offer(), "alice": alice.init_session("alice").offer()}
            )
        assert carol.get_session("carol", "carol") is identity
        assert identity.private_prime == prime
        assert carol.get_session("carol", "alice") is None

    def test_foreign_modulus_participant_rejected(self):
        carol = make_protocol(10)
        alice = make_protocol(11)
        offer = alice.init_session("alice").offer()
        offer.public_resonance = PrimeFieldElement(3, 5)

        with pytest.raises(WireFormatError):
            carol.create_multi_party_exchange("carol", {"alice": offer})
        assert carol.get_session("carol", "alice") is None


class TestRefresh:

    def test_refresh_in_lockstep(self, established):
        alice, bob, old_key, _ = established
        rot_a = alice.rotate_session("alice", "bob")
        rot_b = bob.rotate_session("bob", "alice")
        assert rot_a.epoch == rot_b.epoch == 1

        new_a = alice.refresh_session_key("alice", "bob", rot_b)
        new_b = bob.refresh_session_key("bob", "alice", rot_a)
        assert new_a == new_b
        assert new_a != old_key
        assert len(new_a) == 32
        assert alice.get_session("alice", "bob").rotation_epoch == 1

    def test_two_rounds(self, established):
        alice, bob, _, _ = established
        keys = []
        for _ in range(2):
            rot_a = alice.rotate_session("alice", "bob")
            rot_b = bob.rotate_session("bob", "alice")
            key_a = alice.refresh_session_key("alice", "bob", rot_b)
            key_b = bob.refresh_session_key("bob", "alice", rot_a)
            assert key_a == key_b
            keys.append(key_a)
        assert keys[0] != keys[1]
        assert bob.get_session("bob", "alice").rotation_epoch == 2

    def test_rotation_alone_keeps_key(self, established):
        alice, _, old_key, _ = established
        session = alice.get_session("alice", "bob")
        old_prime = session.private_prime
        first = alice.rotate_session("alice", "bob")
        second = alice.rotate_session("alice", "bob")
        assert first == second
        assert session.session_key == old_key
        assert session.private_prime == old_prime
        assert session.pending_prime is not None and session.pending_prime != old_prime

    def test_refresh_without_local_rotation(self, established):
        alice, bob, _, _ = established
        rot_b = bob.rotate_session("bob", "alice")
        new_a = alice.refresh_session_key("alice", "bob", rot_b)
        new_b = bob.refresh_session_key("bob", "alice", RotationMessage(
            node_id="alice", peer_id="bob", epoch=1,
            public_resonance=alice.get_session("alice", "bob").public_resonance,
        ))
        assert new_a == new_b

    def test_rotated_prime_is_prime(self):
        protocol = make_protocol()
        for angle in (0.0, 0.5, math.pi / 2, math.pi, 4.0):
            rotated = protocol.quantum_rotate_prime(1000003, angle)
            assert is_prime(rotated)
            assert rotated != 1000003

    def test_rotation_angle(self):
        assert PRKEProtocol.rotation_angle(bytes(32)) == 0.0
        assert PRKEProtocol.rotation_angle(b"\xff" * 32) == pytest.approx(2 * math.pi)

    def test_wrong_epoch_rejected(self, established):
        alice, bob, old_key, _ = established
        rot_b = bob.rotate_session("bob", "alice")
        rot_b.epoch = 2
        assert alice.refresh_session_key("alice", "bob", rot_b) is None
        assert alice.get_session("alice", "bob").session_key == old_key

    def test_foreign_modulus_rotation_rejected(self, established):
        alice, bob, old_key, _ = established
        rot_b = bob.rotate_session("bob", "alice")
        rot_b.public_resonance = PrimeFieldElement(3, 5)
        with pytest.raises(WireFormatError):
            alice.refresh_session_key("alice", "bob", rot_b)
        session = alice.get_session("alice", "bob")
        assert session.session_key == old_key
        assert session.rotation_epoch == 0

    def test_wrong_sender_rejected(self, established):
        alice, bob, _, _ = established
        rot_b = bob.rotate_session("bob", "alice")
        rot_b.node_id = "mallory"
        assert alice.refresh_session_key("alice", "bob", rot_b) is None

    def test_rotate_requires_established_session(self, alice_bob):
        alice, _ = alice_bob
        assert alice.rotate_session("alice", "bob") is None
        assert alice.rotate_session("alice", "alice") is None


class TestPersistence:

    def test_persist_and_restore(self, established, tmp_path):
        alice, _, key_a, _ = established
        store = SessionStore(str(tmp_path / "sessions.json"))
        alice.persist(store)

        restored = make_protocol()
        assert restored.restore(store) == 2
        assert restored.get_session("alice", "bob") == alice.get_session("alice", "bob")
        assert restored.get_session("alice", "bob").session_key == key_a
        assert restored.can_establish_secure_connection("alice", "bob", 0.0)

    def test_persist_writes_current_table(self, established, tmp_path):
        """A removed session does not come back from the store."""
        alice, _, _, _ = established
        store = SessionStore(str(tmp_path / "sessions.json"))
        alice.persist(store)
        alice.remove_session("alice", "bob")
        alice.persist(store)

        assert set(store.all_sessions()) == {get_session_id("alice", "alice")}


class TestConcurrency:

    def test_racing_exchanges_share_one_key(self, alice_bob):
        """Concurrent exchanges with the same offer settle on one pair session."""
        alice, bob = alice_bob
        offer = bob.get_session("bob", "bob").offer()

        with ThreadPoolExecutor(max_workers=8) as pool:
            keys = list(pool.map(lambda _: alice.accept_offer("alice", offer), range(32)))

        assert len(set(keys)) == 1
        assert len(keys[0]) == 32
        session = alice.get_session("alice", "bob")
        assert session.session_key == keys[0]
        assert session.peer_public_resonance == offer.public_resonance
        assert session.rotation_epoch == 0
        assert bob.accept_offer("bob", alice.get_session("alice", "alice").offer()) == keys[0]

    def test_racing_refreshes_commit_once(self, established):
        """Replays of one rotation message racing each other advance the epoch once."""
        alice, bob, old_key, _ = established
        rot_a = alice.rotate_session("alice", "bob")
        rot_b = bob.rotate_session("bob", "alice")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: alice.refresh_session_key("alice", "bob", rot_b), range(32)
            ))

        new_keys = [key for key in results if key is not None]
        assert len(new_keys) == 1
        session = alice.get_session("alice", "bob")
        assert session.rotation_epoch == 1
        assert session.pending_prime is None
        assert session.session_key == new_keys[0] != old_key
        assert bob.refresh_session_key("bob", "alice", rot_a) == new_keys[0]
