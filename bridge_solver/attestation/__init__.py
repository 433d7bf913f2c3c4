from .codec import CodecError, FulfillmentPayload, Vaa, decode_fulfillment_payload, decode_vaa
from .fetcher import AttestationFetcher, AttestationResult, AttestationStage
from .guardian import GuardianApiClient

__all__ = [
    "AttestationFetcher",
    "AttestationResult",
    "AttestationStage",
    "CodecError",
    "FulfillmentPayload",
    "GuardianApiClient",
    "Vaa",
    "decode_fulfillment_payload",
    "decode_vaa",
]
