"""
FHIR R4 Resource Models

Enums, canonical URLs and lightweight helpers for the FHIR JSON resources the
subscription lifecycle works with. Resources are kept as plain FHIR JSON
dicts; the dataclasses here are read-only views for the fields we care about.

Supported Resources:
- Subscription (R4 with the subscriptions backport conventions)
- Patient (identifiers and links, for $patient-merge)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# ==============================================================================
# Canonical URLs
# ==============================================================================

HEARTBEAT_PERIOD_EXTENSION = (
    "http://hl7.org/fhir/uv/subscriptions-backport/StructureDefinition/backport-heartbeat-period"
)
NOTIFICATION_BUNDLE_PROFILE = (
    "http://hl7.org/fhir/uv/subscriptions-backport/StructureDefinition/backport-subscription-notification-r4"
)
SUBSCRIPTION_STATUS_PROFILE = (
    "http://hl7.org/fhir/uv/subscriptions-backport/StructureDefinition/backport-subscription-status-r4"
)

FHIR_JSON = "application/fhir+json"


# ==============================================================================
# Enums
# ==============================================================================


class FHIRResourceType(str, Enum):
    """Resource types with lifecycle behaviour in this service"""

    SUBSCRIPTION = "Subscription"
    PATIENT = "Patient"
    PARAMETERS = "Parameters"
    BUNDLE = "Bundle"
    OPERATION_OUTCOME = "OperationOutcome"


class SubscriptionStatus(str, Enum):
    """R4 Subscription.status (``off`` is the dormant state during a handshake)"""

    REQUESTED = "requested"
    OFF = "off"
    ACTIVE = "active"
    ERROR = "error"


# Statuses a pending handshake may still act on
HANDSHAKE_PENDING_STATUSES = frozenset({SubscriptionStatus.OFF.value, SubscriptionStatus.REQUESTED.value})


class ChannelType(str, Enum):
    """R4 Subscription.channel.type"""

    REST_HOOK = "rest-hook"
    WEBSOCKET = "websocket"
    EMAIL = "email"
    SMS = "sms"
    MESSAGE = "message"


class RestOperation(str, Enum):
    """REST interaction that triggered a notification"""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


class PatientLinkType(str, Enum):
    """Patient.link.type"""

    REPLACED_BY = "replaced-by"
    REPLACES = "replaces"
    REFER = "refer"
    SEEALSO = "seealso"


# ==============================================================================
# Base Classes
# ==============================================================================


@dataclass
class FHIRSubscription:
    """Read-only view over an R4 Subscription resource"""

    id: Optional[str]
    status: Optional[str]
    criteria: Optional[str]
    channel_type: Optional[str]
    endpoint: Optional[str]
    headers: List[str] = field(default_factory=list)
    channel_extensions: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "FHIRSubscription":
        channel = data.get("channel") or {}
        return cls(
            id=data.get("id"),
            status=data.get("status"),
            criteria=data.get("criteria"),
            channel_type=channel.get("type"),
            endpoint=channel.get("endpoint"),
            headers=list(channel.get("header") or []),
            channel_extensions=list(channel.get("extension") or []),
        )

    @property
    def has_rest_hook_endpoint(self) -> bool:
        """True when the channel is a rest-hook with a non-blank endpoint."""
        return (
            self.channel_type == ChannelType.REST_HOOK.value
            and self.endpoint is not None
            and bool(self.endpoint.strip())
        )

    @property
    def topic(self) -> Optional[str]:
        """The topic canonical this subscription listens on (see criteria_topic)."""
        return criteria_topic(self.criteria)

    def header_dict(self) -> Dict[str, str]:
        """channel.header entries ("Name: value") as a dict; malformed entries are ignored."""
        result: Dict[str, str] = {}
        for raw in self.headers:
            name, sep, value = raw.partition(":")
            if sep and name.strip():
                result[name.strip()] = value.strip()
        return result


# ==============================================================================
# Helpers
# ==============================================================================


def criteria_topic(criteria: Optional[str]) -> Optional[str]:
    """
    Topic canonical referenced by Subscription.criteria.

    Accepts both a bare canonical (``http://example.org/topic``) and the
    backport query form (``_topic=http://example.org/topic&...``). Any other
    query part is ignored.
    """
    if not criteria:
        return None
    base, _, query = criteria.strip().partition("?")
    params = query or (base if "=" in base else "")
    for part in params.split("&"):
        key, sep, value = part.partition("=")
        if sep and key == "_topic":
            return value or None
    if "=" in base:
        return None
    return base or None


def get_tags(resource: Dict[str, Any]) -> List[Dict[str, Any]]:
    """meta.tag entries of a resource (empty list if absent)."""
    return list((resource.get("meta") or {}).get("tag") or [])


def add_tag(resource: Dict[str, Any], system: str, code: str) -> None:
    """Append a (system, code) tag to meta.tag."""
    meta = resource.setdefault("meta", {})
    meta.setdefault("tag", []).append({"system": system, "code": code})


def remove_tag(resource: Dict[str, Any], system: str, code: str) -> bool:
    """Remove every meta.tag entry matching (system, code). Returns True if one was removed."""
    meta = resource.get("meta") or {}
    tags = meta.get("tag") or []
    kept = [t for t in tags if not (t.get("system") == system and t.get("code") == code)]
    if len(kept) == len(tags):
        return False
    if kept:
        meta["tag"] = kept
    else:
        meta.pop("tag", None)
    return True


def parse_reference(reference: Optional[str]) -> Tuple[str, str]:
    """
    Split a literal reference into (resourceType, id).

    Accepts relative (``Patient/123``), versioned (``Patient/123/_history/2``)
    and absolute (``http://host/fhir/Patient/123``) forms.

    Raises:
        ValueError: if the reference has no type/id pair
    """
    if not reference:
        raise ValueError("empty reference")
    parts = [p for p in reference.split("/") if p]
    if "_history" in parts:
        parts = parts[: parts.index("_history")]
    if len(parts) < 2:
        raise ValueError(f"not a literal reference: {reference!r}")
    return parts[-2], parts[-1]


def find_identifier_by_type(resource: Dict[str, Any], type_code: str) -> Optional[Dict[str, Any]]:
    """First identifier whose type.coding contains ``type_code`` (e.g. "MR")."""
    for identifier in resource.get("identifier") or []:
        codings = (identifier.get("type") or {}).get("coding") or []
        if any(c.get("code") == type_code for c in codings):
            return identifier
    return None
