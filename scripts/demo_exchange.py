#!/usr/bin/env python3
"""
PRKE Demonstration

Runs the whole protocol between in-process nodes:
1. alice and bob initialize sessions and trade offers (serialized as JSON)
2. both derive the same session key
3. both rotate and refresh the key in lockstep
4. carol splits her secret across alice and bob (multi-party exchange)
"""

import json

from prke import ExchangeOffer, PRKEProtocol, RotationMessage, configure_logging, PRKESettings


def wire(obj) -> dict:
    """Simulate a transport: JSON encode and decode."""
    return json.loads(json.dumps(obj.to_dict()))


def demo():
    settings = PRKESettings.from_env()
    configure_logging(settings)

    print("=" * 60)
    print("STEP 1: alice and bob initialize")
    print("=" * 60)
    alice = PRKEProtocol(settings)
    bob = PRKEProtocol(settings)
    alice_offer = alice.init_session("alice").offer()
    bob_offer = bob.init_session("bob").offer()
    print(f"alice pattern length: {len(alice_offer.resonance_pattern)}")
    print(f"bob pattern length:   {len(bob_offer.resonance_pattern)}")
    print()

    print("=" * 60)
    print("STEP 2: exchange")
    print("=" * 60)
    key_a = alice.accept_offer("alice", ExchangeOffer.from_dict(wire(bob_offer)))
    key_b = bob.accept_offer("bob", ExchangeOffer.from_dict(wire(alice_offer)))
    print(f"alice key: {key_a.hex()}")
    print(f"bob key:   {key_b.hex()}")
    assert key_a == key_b
    print("✓ Keys match")
    print(f"entanglement: {alice.get_session('alice', 'bob').entanglement_strength:.4f}")
    print(f"secure at 0.7: {alice.can_establish_secure_connection('alice', 'bob', 0.7)}")
    print()

    print("=" * 60)
    print("STEP 3: refresh")
    print("=" * 60)
    rot_a = alice.rotate_session("alice", "bob")
    rot_b = bob.rotate_session("bob", "alice")
    new_a = alice.refresh_session_key("alice", "bob", RotationMessage.from_dict(wire(rot_b)))
    new_b = bob.refresh_session_key("bob", "alice", RotationMessage.from_dict(wire(rot_a)))
    print(f"alice key (epoch 1): {new_a.hex()}")
    print(f"bob key (epoch 1):   {new_b.hex()}")
    assert new_a == new_b and new_a != key_a
    print("✓ Refreshed keys match")
    print()

    print("=" * 60)
    print("STEP 4: carol -> {alice, bob} multi-party")
    print("=" * 60)
    carol = PRKEProtocol(settings)
    alice2 = PRKEProtocol(settings)
    bob2 = PRKEProtocol(settings)
    participants = {
        "alice": alice2.init_session("alice").offer(),
        "bob": bob2.init_session("bob").offer(),
    }
    legs = carol.create_multi_party_exchange("carol", participants)
    for peer, proto in (("alice", alice2), ("bob", bob2)):
        leg = legs[peer]
        peer_key = proto.accept_offer(peer, leg.offer)
        print(f"fragment {leg.index} -> {peer}: {'match' if peer_key == leg.session_key else 'MISMATCH'}")
    print()


if __name__ == "__main__":
    demo()
