from pydantic import BaseModel, Field
from typing import List, Optional

# public offer (same layout as ExchangeOffer.to_dict)
class OfferIn(BaseModel):
    node_id: str
    public_resonance: str   # base64, 16 bytes big-endian (value || modulus)
    resonance_pattern: str  # base64, 2-byte count + 8 bytes per prime

class OfferOut(BaseModel):
    node_id: str
    public_resonance: str
    resonance_pattern: str

class ExchangeOut(BaseModel):
    session_id: str
    session_key_b64: str
    entanglement_strength: float
    rotation_epoch: int = 0

class SecureOut(BaseModel):
    session_id: str
    secure: bool
    entanglement_strength: Optional[float] = None

class RotationIn(BaseModel):
    node_id: str
    peer_id: str
    epoch: int
    public_resonance: str

class RotationOut(BaseModel):
    node_id: str
    peer_id: str
    epoch: int
    public_resonance: str

class MultiPartyIn(BaseModel):
    participants: List[OfferIn] = Field(default_factory=list)

class FragmentOut(BaseModel):
    participant_id: str
    index: int
    offer: OfferOut
    session_key_b64: str
