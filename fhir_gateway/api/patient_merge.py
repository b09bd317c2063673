"""
Patient $patient-merge operation endpoint
"""

import json
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request
from fhir_gateway.api.fhir_resources import fhir_response
from fhir_gateway.core.database import get_db
from fhir_gateway.core.dependencies import get_lifecycle
from fhir_gateway.integrations.fhir import FHIRResourceType, InvalidResourceError
from fhir_gateway.services.subscription_lifecycle import SubscriptionLifecycle
from sqlalchemy.orm import Session

router = APIRouter(prefix="/fhir", tags=["fhir-operations"])


def single_reference_param(parameters: Dict[str, Any], name: str) -> Dict[str, Any]:
    """The ``valueReference`` of the one parameter called ``name``; 400 unless exactly one."""
    found: List[Dict[str, Any]] = [p for p in parameters.get("parameter") or [] if p.get("name") == name]
    if len(found) != 1:
        raise InvalidResourceError(f"Parameter '{name}' must occur exactly once, found {len(found)}")
    reference = found[0].get("valueReference")
    if not isinstance(reference, dict) or not reference.get("reference"):
        raise InvalidResourceError(f"Parameter '{name}' must carry a valueReference with a reference")
    return reference


@router.post("/Patient/$patient-merge")
async def patient_merge(
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """
    Merge ``source-patient`` into ``target-patient``.

    Body: a Parameters resource with one ``source-patient`` and one
    ``target-patient`` valueReference.
    """
    try:
        parameters = json.loads(await request.body() or b"null")
    except ValueError:
        raise InvalidResourceError("Request body is not valid JSON")
    if not isinstance(parameters, dict) or parameters.get("resourceType") != FHIRResourceType.PARAMETERS.value:
        raise InvalidResourceError("Request body must be a Parameters resource")

    source = single_reference_param(parameters, "source-patient")
    target = single_reference_param(parameters, "target-patient")

    return fhir_response(lifecycle.patient_merge.merge(db, source, target))
