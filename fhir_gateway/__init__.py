"""
FHIR Subscription Gateway

Subscription lifecycle add-on for a FHIR R4 resource server: handshake before
activation, heartbeat notifications and notification-type aware payloads.
"""

__version__ = "0.1.0"
