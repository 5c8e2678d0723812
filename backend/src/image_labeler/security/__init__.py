"""Security boundary: least-privilege grants and the capabilities built from them"""

from .grant import Action, CapabilityGrant, TemporaryCredentials, PROCESSING_UNIT_ACTIONS
from .issuer import GrantIssuer, StaticGrantIssuer, StsGrantIssuer, session_name_for
from .capabilities import (
    AwsCapabilityProvider,
    BucketReader,
    CapabilityProvider,
    ClassifierInvoker,
    GrantedCapabilities,
)

__all__ = [
    "Action",
    "CapabilityGrant",
    "TemporaryCredentials",
    "PROCESSING_UNIT_ACTIONS",
    "GrantIssuer",
    "StaticGrantIssuer",
    "StsGrantIssuer",
    "session_name_for",
    "AwsCapabilityProvider",
    "BucketReader",
    "CapabilityProvider",
    "ClassifierInvoker",
    "GrantedCapabilities",
]
