"""
FHIR Resource Store

Transactional CRUD and search over FHIR JSON resources, backed by SQLAlchemy.

The store never commits: callers own the unit of work (``transaction(db)``).
Pre-storage hooks run synchronously inside ``create`` before the row is
written and may mutate the resource; they can attach post-commit work with
``register_after_commit``.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from fhir_gateway.models.fhir_resource import FhirResourceRecord, FhirResourceTag
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import InvalidResourceError, ResourceNotFoundError
from .fhir_models import get_tags

logger = structlog.get_logger(__name__)

PreStorageHook = Callable[[Dict[str, Any], Session], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_of(resource: Dict[str, Any]) -> Optional[str]:
    status = resource.get("status")
    return status if isinstance(status, str) else None


def _tag_rows(resource: Dict[str, Any]) -> List[FhirResourceTag]:
    return [
        FhirResourceTag(system=tag.get("system") or "", code=tag["code"]) for tag in get_tags(resource) if tag.get("code")
    ]


class ResourceStore:
    """
    DAO for FHIR resources.

    All reads return deep copies, so callers may mutate what they get back
    and pass it to ``update`` without touching the session state.
    """

    def __init__(self) -> None:
        self._pre_storage_hooks: List[PreStorageHook] = []

    def register_pre_storage_hook(self, hook: PreStorageHook) -> None:
        """Register a hook fired for every resource about to be created."""
        self._pre_storage_hooks.append(hook)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, db: Session, resource: Dict[str, Any]) -> Dict[str, Any]:
        """Persist a new resource; assigns id and version 1."""
        resource_type = resource.get("resourceType")
        if not resource_type:
            raise InvalidResourceError("resourceType is required")

        resource = copy.deepcopy(resource)
        resource["id"] = uuid.uuid4().hex

        for hook in self._pre_storage_hooks:
            hook(resource, db)

        now = _utcnow()
        meta = resource.setdefault("meta", {})
        meta["versionId"] = "1"
        meta["lastUpdated"] = now.isoformat()

        record = FhirResourceRecord(
            resource_type=resource_type,
            resource_id=resource["id"],
            version_id=1,
            status=_status_of(resource),
            content=copy.deepcopy(resource),
            created_at=now,
            last_updated=now,
        )
        record.tags = _tag_rows(resource)
        db.add(record)
        db.flush()

        logger.debug("resource_created", resource_type=resource_type, resource_id=resource["id"])
        return resource

    def update(self, db: Session, resource: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the current version of an existing resource; bumps the version."""
        resource_type = resource.get("resourceType")
        resource_id = resource.get("id")
        if not resource_type or not resource_id:
            raise InvalidResourceError("resourceType and id are required for update")

        record = self._get_record(db, resource_type, resource_id)
        resource = copy.deepcopy(resource)

        now = _utcnow()
        record.version_id += 1
        meta = resource.setdefault("meta", {})
        meta["versionId"] = str(record.version_id)
        meta["lastUpdated"] = now.isoformat()

        record.status = _status_of(resource)
        record.content = copy.deepcopy(resource)
        record.last_updated = now
        record.tags = _tag_rows(resource)
        db.flush()

        logger.debug(
            "resource_updated",
            resource_type=resource_type,
            resource_id=resource_id,
            version=record.version_id,
        )
        return resource

    def delete(self, db: Session, resource_type: str, resource_id: str) -> None:
        """Remove a resource."""
        record = self._get_record(db, resource_type, resource_id)
        db.delete(record)
        db.flush()
        logger.debug("resource_deleted", resource_type=resource_type, resource_id=resource_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, db: Session, resource_type: str, resource_id: str) -> Dict[str, Any]:
        """Current version of a resource; raises ResourceNotFoundError."""
        return copy.deepcopy(self._get_record(db, resource_type, resource_id).content)

    def search(
        self,
        db: Session,
        resource_type: str,
        tag: Optional[Tuple[str, str]] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Search resources of one type, oldest first.

        Args:
            db: Database session
            resource_type: FHIR resource type
            tag: Optional (system, code) pair that must be present in meta.tag
            status: Optional exact match on Resource.status
        """
        query = db.query(FhirResourceRecord).filter(FhirResourceRecord.resource_type == resource_type)
        if tag is not None:
            system, code = tag
            tagged = select(FhirResourceTag.resource_pk).where(
                FhirResourceTag.system == (system or ""),
                FhirResourceTag.code == code,
            )
            query = query.filter(FhirResourceRecord.pk.in_(tagged))
        if status is not None:
            query = query.filter(FhirResourceRecord.status == status)

        records = query.order_by(FhirResourceRecord.pk).all()
        return [copy.deepcopy(record.content) for record in records]

    def _get_record(self, db: Session, resource_type: str, resource_id: str) -> FhirResourceRecord:
        record = (
            db.query(FhirResourceRecord)
            .filter(
                FhirResourceRecord.resource_type == resource_type,
                FhirResourceRecord.resource_id == resource_id,
            )
            .first()
        )
        if record is None:
            raise ResourceNotFoundError(f"{resource_type}/{resource_id} not found")
        return record
