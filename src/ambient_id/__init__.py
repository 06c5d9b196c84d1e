"""The `ambient-id` APIs."""

__version__ = "0.1.0"

from ._impl import (
    DEFAULT_TIMEOUT,
    AgentFailed,
    AgentNotFound,
    AmbientCredentialError,
    Credential,
    EmptyOutput,
    Environment,
    InconsistentEnvironment,
    MalformedResponse,
    NoAmbientCredential,
    PlatformKind,
    ProcessError,
    RetrievalError,
    RetrievalTimeout,
    TokenNotFound,
    TransportError,
    UnexpectedStatus,
    detect_credential,
    encode_audience,
    resolve,
)

__all__ = [
    "DEFAULT_TIMEOUT",
    "AgentFailed",
    "AgentNotFound",
    "AmbientCredentialError",
    "Credential",
    "EmptyOutput",
    "Environment",
    "InconsistentEnvironment",
    "MalformedResponse",
    "NoAmbientCredential",
    "PlatformKind",
    "ProcessError",
    "RetrievalError",
    "RetrievalTimeout",
    "TokenNotFound",
    "TransportError",
    "UnexpectedStatus",
    "detect_credential",
    "encode_audience",
    "resolve",
]
