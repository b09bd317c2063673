"""
FHIR Integration Package

Resource models, error types and the SQLAlchemy-backed resource store used by
the subscription lifecycle services.

Usage:
    from fhir_gateway.integrations.fhir import ResourceStore, SubscriptionStatus

    store = ResourceStore()
    with transaction(db):
        subscription = store.create(db, {"resourceType": "Subscription", ...})
"""

from .errors import (
    FHIRError,
    InvalidResourceError,
    PreconditionFailedError,
    ResourceNotFoundError,
    UnprocessableResourceError,
    fhir_error_handler,
    operation_outcome,
)
from .fhir_models import (
    FHIR_JSON,
    HANDSHAKE_PENDING_STATUSES,
    HEARTBEAT_PERIOD_EXTENSION,
    NOTIFICATION_BUNDLE_PROFILE,
    SUBSCRIPTION_STATUS_PROFILE,
    ChannelType,
    FHIRResourceType,
    FHIRSubscription,
    PatientLinkType,
    RestOperation,
    SubscriptionStatus,
    add_tag,
    criteria_topic,
    find_identifier_by_type,
    get_tags,
    parse_reference,
    remove_tag,
)
from .resource_store import PreStorageHook, ResourceStore

__all__ = [
    # Errors
    "FHIRError",
    "InvalidResourceError",
    "PreconditionFailedError",
    "ResourceNotFoundError",
    "UnprocessableResourceError",
    "fhir_error_handler",
    "operation_outcome",
    # Models
    "FHIR_JSON",
    "HANDSHAKE_PENDING_STATUSES",
    "HEARTBEAT_PERIOD_EXTENSION",
    "NOTIFICATION_BUNDLE_PROFILE",
    "SUBSCRIPTION_STATUS_PROFILE",
    "ChannelType",
    "FHIRResourceType",
    "FHIRSubscription",
    "PatientLinkType",
    "RestOperation",
    "SubscriptionStatus",
    "add_tag",
    "criteria_topic",
    "find_identifier_by_type",
    "get_tags",
    "parse_reference",
    "remove_tag",
    # Store
    "PreStorageHook",
    "ResourceStore",
]
