"""
FHIR REST endpoints

Minimal type-level and instance-level interactions over the resource store:
create, read, update, delete and search by ``_tag`` / ``status``.
Request and response bodies are FHIR JSON.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from fhir_gateway.core.database import get_db, transaction
from fhir_gateway.core.dependencies import get_lifecycle
from fhir_gateway.core.logging import get_logger
from fhir_gateway.integrations.fhir import (
    FHIR_JSON,
    FHIRResourceType,
    InvalidResourceError,
    SubscriptionStatus,
    UnprocessableResourceError,
)
from fhir_gateway.services.subscription_lifecycle import SubscriptionLifecycle
from sqlalchemy.orm import Session

router = APIRouter(prefix="/fhir", tags=["fhir"])
logger = get_logger(__name__)


def fhir_response(content: Dict[str, Any], status_code: int = status.HTTP_200_OK, headers=None) -> JSONResponse:
    return JSONResponse(content=content, status_code=status_code, media_type=FHIR_JSON, headers=headers)


async def read_resource_body(request: Request, resource_type: str) -> Dict[str, Any]:
    """Parse the request body as a FHIR resource of ``resource_type``."""
    try:
        body = json.loads(await request.body() or b"null")
    except ValueError:
        raise InvalidResourceError("Request body is not valid JSON")
    if not isinstance(body, dict):
        raise InvalidResourceError("Request body must be a FHIR resource")
    if body.get("resourceType") != resource_type:
        raise InvalidResourceError(
            f"resourceType {body.get('resourceType')!r} does not match endpoint type {resource_type!r}"
        )
    return body


def parse_tag_param(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """``_tag=system|code`` (or ``_tag=code``) as a (system, code) pair."""
    if not value:
        return None
    system, sep, code = value.partition("|")
    if not sep:
        system, code = "", system
    if not code:
        raise InvalidResourceError(f"Invalid _tag parameter: {value!r}")
    return system, code


@router.post("/{resource_type}")
async def create_resource(
    resource_type: str,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """
    Create a resource.

    A Subscription may only be submitted with status ``requested``; it is
    stored dormant and activated by the handshake.
    """
    resource = await read_resource_body(request, resource_type)

    if resource_type == FHIRResourceType.SUBSCRIPTION.value:
        submitted = resource.get("status")
        if submitted != SubscriptionStatus.REQUESTED.value:
            raise UnprocessableResourceError(
                f"Subscription status must be '{SubscriptionStatus.REQUESTED.value}' on create, got {submitted!r}"
            )

    with transaction(db):
        created = lifecycle.store.create(db, resource)

    logger.info("fhir_resource_created", resource_type=resource_type, resource_id=created["id"])
    location = f"{request.url_for('read_resource', resource_type=resource_type, resource_id=created['id'])}"
    return fhir_response(created, status.HTTP_201_CREATED, headers={"Location": location})


@router.get("/{resource_type}")
async def search_resources(
    resource_type: str,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """Search by ``_tag`` and/or ``status``; returns a searchset Bundle."""
    tag = parse_tag_param(request.query_params.get("_tag"))
    matches = lifecycle.store.search(db, resource_type, tag=tag, status=request.query_params.get("status"))

    base = str(request.base_url).rstrip("/")
    bundle = {
        "resourceType": FHIRResourceType.BUNDLE.value,
        "id": str(uuid.uuid4()),
        "meta": {"lastUpdated": datetime.now(timezone.utc).isoformat()},
        "type": "searchset",
        "total": len(matches),
        "entry": [
            {
                "fullUrl": f"{base}/fhir/{resource_type}/{resource['id']}",
                "resource": resource,
                "search": {"mode": "match"},
            }
            for resource in matches
        ],
    }
    return fhir_response(bundle)


@router.get("/{resource_type}/{resource_id}")
async def read_resource(
    resource_type: str,
    resource_id: str,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return fhir_response(lifecycle.store.read(db, resource_type, resource_id))


@router.put("/{resource_type}/{resource_id}")
async def update_resource(
    resource_type: str,
    resource_id: str,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """
    Replace an existing resource (update-as-create is not supported).

    A Subscription's status may be left as stored or set to ``requested``;
    off, active and error are only ever set by the handshake.
    """
    resource = await read_resource_body(request, resource_type)
    if resource.setdefault("id", resource_id) != resource_id:
        raise InvalidResourceError(f"Resource id {resource['id']!r} does not match URL id {resource_id!r}")

    with transaction(db):
        if resource_type == FHIRResourceType.SUBSCRIPTION.value:
            stored = lifecycle.store.read(db, resource_type, resource_id).get("status")
            submitted = resource.get("status")
            if submitted != stored and submitted != SubscriptionStatus.REQUESTED.value:
                raise UnprocessableResourceError(
                    f"Subscription status cannot be changed from {stored!r} to {submitted!r}"
                )
        updated = lifecycle.store.update(db, resource)

    logger.info(
        "fhir_resource_updated",
        resource_type=resource_type,
        resource_id=resource_id,
        version=updated["meta"]["versionId"],
    )
    return fhir_response(updated)


@router.delete("/{resource_type}/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    resource_type: str,
    resource_id: str,
    db: Session = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    with transaction(db):
        lifecycle.store.delete(db, resource_type, resource_id)

    logger.info("fhir_resource_deleted", resource_type=resource_type, resource_id=resource_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
