"""
FHIR resource storage models.

Resources are stored as their FHIR JSON document. Status and meta.tag are
denormalized into columns/rows so status and tag searches are indexed queries.
"""

import uuid
from datetime import datetime, timezone

from fhir_gateway.core.database import Base
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FhirResourceRecord(Base):
    """Current version of one FHIR resource."""

    __tablename__ = "fhir_resources"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    resource_type = Column(String(64), nullable=False, index=True)
    resource_id = Column(String(64), nullable=False, default=lambda: uuid.uuid4().hex)
    version_id = Column(Integer, nullable=False, default=1)

    # Denormalized Resource.status (Subscription, Observation, ...); NULL for types without one
    status = Column(String(32), nullable=True, index=True)

    content = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    tags = relationship(
        "FhirResourceTag",
        back_populates="resource",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (Index("ix_fhir_resources_type_id", "resource_type", "resource_id", unique=True),)

    def __repr__(self):
        return f"<FhirResourceRecord({self.resource_type}/{self.resource_id} v{self.version_id})>"


class FhirResourceTag(Base):
    """One meta.tag coding of a stored resource."""

    __tablename__ = "fhir_resource_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_pk = Column(Integer, ForeignKey("fhir_resources.pk", ondelete="CASCADE"), nullable=False, index=True)
    system = Column(String(255), nullable=False, default="")
    code = Column(String(255), nullable=False)

    resource = relationship("FhirResourceRecord", back_populates="tags")

    __table_args__ = (Index("ix_fhir_resource_tags_system_code", "system", "code"),)
