"""
Patient merge service

Implements ``$patient-merge``: the source Patient is deactivated and linked
to the target as ``replaced-by``, the target gets a ``replaces`` link carrying
the source's MR identifier, and the merge is announced on the patient-merge
topic once both updates are committed.
"""

from typing import Any, Dict

from fhir_gateway.core.database import transaction
from fhir_gateway.core.logging import get_logger
from fhir_gateway.integrations.fhir import (
    FHIRResourceType,
    InvalidResourceError,
    PatientLinkType,
    PreconditionFailedError,
    ResourceStore,
    RestOperation,
    find_identifier_by_type,
    operation_outcome,
    parse_reference,
)
from fhir_gateway.services.topic_notify_service import TopicNotifyService
from sqlalchemy.orm import Session

logger = get_logger(__name__)

MEDICAL_RECORD_TYPE_CODE = "MR"


class PatientMergeService:
    """Merges a source Patient into a target Patient."""

    def __init__(self, store: ResourceStore, notify_service: TopicNotifyService, merge_topic: str):
        self._store = store
        self._notify_service = notify_service
        self.merge_topic = merge_topic

    def merge(self, db: Session, source_ref: Dict[str, Any], target_ref: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge ``source_ref`` into ``target_ref``.

        Args:
            db: Database session (the merge runs in its own transaction on it)
            source_ref: FHIR Reference to the Patient being replaced
            target_ref: FHIR Reference to the surviving Patient

        Returns:
            OperationOutcome reporting success

        Raises:
            InvalidResourceError: a reference is not a Patient reference
            ResourceNotFoundError: a Patient does not exist
            PreconditionFailedError: the source has no MR identifier
        """
        source_id = self._patient_id(source_ref, "source-patient")
        target_id = self._patient_id(target_ref, "target-patient")
        if source_id == target_id:
            raise InvalidResourceError("source-patient and target-patient must differ")

        with transaction(db):
            source = self._store.read(db, FHIRResourceType.PATIENT.value, source_id)
            target = self._store.read(db, FHIRResourceType.PATIENT.value, target_id)

            pid = find_identifier_by_type(source, MEDICAL_RECORD_TYPE_CODE)
            if pid is None:
                raise PreconditionFailedError("Patients need a populated PID (Identifier.type = MR)")

            source["active"] = False
            source.setdefault("link", []).append(
                {"other": dict(target_ref), "type": PatientLinkType.REPLACED_BY.value}
            )
            target.setdefault("link", []).append(
                {"other": {"identifier": pid}, "type": PatientLinkType.REPLACES.value}
            )

            self._store.update(db, source)
            target = self._store.update(db, target)

        queued = self._notify_service.dispatch_event(self.merge_topic, [target], RestOperation.UPDATE)
        logger.info("patient_merged", source_id=source_id, target_id=target_id, notifications_queued=queued)

        return operation_outcome("information", "informational", "Patient merge successful")

    @staticmethod
    def _patient_id(reference: Dict[str, Any], name: str) -> str:
        try:
            resource_type, resource_id = parse_reference((reference or {}).get("reference"))
        except ValueError as e:
            raise InvalidResourceError(f"{name}: {e}")
        if resource_type != FHIRResourceType.PATIENT.value:
            raise InvalidResourceError(f"{name} must reference a Patient, got {resource_type}")
        return resource_id
