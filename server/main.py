import logging
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from prke import (
    ExchangeOffer,
    PRKESettings,
    RotationMessage,
    b64e,
    configure_logging,
    get_session_id,
)
from .registry import NodeRegistry
from .schemas import (
    OfferIn, OfferOut, ExchangeOut, SecureOut,
    RotationIn, RotationOut, MultiPartyIn, FragmentOut,
)

logger = logging.getLogger(__name__)


def get_registry(request: Request) -> NodeRegistry:
    return request.app.state.registry


def _require_node(registry: NodeRegistry, node_id: str):
    protocol = registry.get(node_id)
    if protocol is None or protocol.get_session(node_id, node_id) is None:
        raise HTTPException(404, "Node has no PRKE session")
    return protocol


def _decode_offer(data: OfferIn) -> ExchangeOffer:
    try:
        return ExchangeOffer.from_dict(data.model_dump())
    except ValueError as exc:
        raise HTTPException(422, f"Malformed offer: {exc}")


def _offer_out(offer: ExchangeOffer) -> OfferOut:
    return OfferOut(**offer.to_dict())


def create_app(settings: Optional[PRKESettings] = None) -> FastAPI:
    settings = settings or PRKESettings.from_env()
    configure_logging(settings)

    app = FastAPI(title="PRKE relay")
    app.state.registry = NodeRegistry(settings)

    # ---- CORS ----
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---- SESSIONS ----

    @app.post("/nodes/{node_id}/sessions", response_model=OfferOut)
    def init_session(node_id: str, registry: NodeRegistry = Depends(get_registry)):
        protocol = registry.get_or_create(node_id)
        session = protocol.init_session(node_id)
        return _offer_out(session.offer())

    @app.get("/nodes/{node_id}/offer", response_model=OfferOut)
    def get_offer(node_id: str, registry: NodeRegistry = Depends(get_registry)):
        protocol = _require_node(registry, node_id)
        return _offer_out(protocol.get_session(node_id, node_id).offer())

    @app.delete("/nodes/{node_id}/peers/{peer_id}")
    def remove_session(node_id: str, peer_id: str, registry: NodeRegistry = Depends(get_registry)):
        protocol = _require_node(registry, node_id)
        if not protocol.remove_session(node_id, peer_id):
            raise HTTPException(404, "Session not found")
        return {"status": "ok"}

    # ---- EXCHANGE ----

    @app.post("/nodes/{node_id}/exchange", response_model=ExchangeOut)
    def exchange(node_id: str, data: OfferIn, registry: NodeRegistry = Depends(get_registry)):
        protocol = _require_node(registry, node_id)
        offer = _decode_offer(data)
        if offer.node_id == node_id:
            raise HTTPException(422, "A node cannot exchange with itself")

        try:
            key = protocol.accept_offer(node_id, offer)
        except ValueError as exc:
            raise HTTPException(422, str(exc))
        if key is None:
            # the only remaining failure is pattern verification (or a re-exchange with new material)
            raise HTTPException(403, "Peer resonance pattern rejected")

        session = protocol.get_session(node_id, offer.node_id)
        return ExchangeOut(
            session_id=get_session_id(node_id, offer.node_id),
            session_key_b64=b64e(key),
            entanglement_strength=session.entanglement_strength,
            rotation_epoch=session.rotation_epoch,
        )

    @app.get("/nodes/{node_id}/peers/{peer_id}/secure", response_model=SecureOut)
    def secure(
        node_id: str,
        peer_id: str,
        min_entanglement: Optional[float] = Query(default=None, ge=0.0, le=1.0),
        registry: NodeRegistry = Depends(get_registry),
    ):
        protocol = _require_node(registry, node_id)
        session = protocol.get_session(node_id, peer_id)
        return SecureOut(
            session_id=get_session_id(node_id, peer_id),
            secure=protocol.can_establish_secure_connection(node_id, peer_id, min_entanglement),
            entanglement_strength=session.entanglement_strength if session else None,
        )

    # ---- REFRESH ----

    @app.post("/nodes/{node_id}/peers/{peer_id}/rotate", response_model=RotationOut)
    def rotate(node_id: str, peer_id: str, registry: NodeRegistry = Depends(get_registry)):
        protocol = _require_node(registry, node_id)
        message = protocol.rotate_session(node_id, peer_id)
        if message is None:
            raise HTTPException(409, "Session is not established")
        return RotationOut(**message.to_dict())

    @app.post("/nodes/{node_id}/refresh", response_model=ExchangeOut)
    def refresh(node_id: str, data: RotationIn, registry: NodeRegistry = Depends(get_registry)):
        protocol = _require_node(registry, node_id)
        try:
            message = RotationMessage.from_dict(data.model_dump())
        except ValueError as exc:
            raise HTTPException(422, f"Malformed rotation message: {exc}")

        try:
            key = protocol.refresh_session_key(node_id, message.node_id, message)
        except ValueError as exc:
            raise HTTPException(422, str(exc))
        if key is None:
            raise HTTPException(409, "Rotation message does not match the session")

        session = protocol.get_session(node_id, message.node_id)
        return ExchangeOut(
            session_id=get_session_id(node_id, message.node_id),
            session_key_b64=b64e(key),
            entanglement_strength=session.entanglement_strength,
            rotation_epoch=session.rotation_epoch,
        )

    # ---- MULTI-PARTY ----

    @app.post("/nodes/{node_id}/multi-party", response_model=List[FragmentOut])
    def multi_party(node_id: str, data: MultiPartyIn, registry: NodeRegistry = Depends(get_registry)):
        if not data.participants:
            raise HTTPException(422, "At least one participant is required")
        protocol = registry.get_or_create(node_id)
        offers = {}
        for p in data.participants:
            offer = _decode_offer(p)
            if offer.node_id == node_id:
                raise HTTPException(422, "A node cannot exchange with itself")
            offers[offer.node_id] = offer

        try:
            results = protocol.create_multi_party_exchange(node_id, offers)
        except ValueError as exc:
            raise HTTPException(422, str(exc))
        return [
            FragmentOut(
                participant_id=r.participant_id,
                index=r.index,
                offer=_offer_out(r.offer),
                session_key_b64=b64e(r.session_key),
            )
            for r in results.values()
        ]

    logger.info("PRKE relay ready")
    return app


app = create_app()
