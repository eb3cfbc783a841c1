"""
U2F Demo CLI - enrollment and authentication ceremonies against a U2F relying party.
"""

__version__ = "0.1.0"

from .ceremony import (
    Ceremony,
    CeremonyKind,
    CeremonyListener,
    CeremonyOrchestrator,
    CeremonyState,
    DEFAULT_TIMEOUT_SECONDS,
)
from .cli import main, get_device, RP_URL
from .correlator import RequestCorrelator
from .errors import (
    Category,
    CeremonyError,
    DeviceError,
    ErrorCode,
    Failure,
    ProtocolError,
    StaleResponse,
    Success,
    TransportError,
    U2fDemoError,
    UnboundKeyError,
    is_device_error,
    translate_error,
)
from .gateway import DeviceGateway, DirectGateway, IndirectGateway, select_gateway
from .relying_party import HttpRelyingParty, RelyingParty

__all__ = [
    "main",
    "get_device",
    "RP_URL",
    "Ceremony",
    "CeremonyKind",
    "CeremonyListener",
    "CeremonyOrchestrator",
    "CeremonyState",
    "DEFAULT_TIMEOUT_SECONDS",
    "RequestCorrelator",
    "Category",
    "CeremonyError",
    "DeviceError",
    "ErrorCode",
    "Failure",
    "ProtocolError",
    "StaleResponse",
    "Success",
    "TransportError",
    "U2fDemoError",
    "UnboundKeyError",
    "is_device_error",
    "translate_error",
    "DeviceGateway",
    "DirectGateway",
    "IndirectGateway",
    "select_gateway",
    "HttpRelyingParty",
    "RelyingParty",
]
