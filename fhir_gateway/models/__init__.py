"""Database models"""

from fhir_gateway.models.fhir_resource import FhirResourceRecord, FhirResourceTag

__all__ = ["FhirResourceRecord", "FhirResourceTag"]
