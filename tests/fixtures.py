"""
Test Fixtures

Fixed topology for deterministic testing. All fixtures are explicit - no
random generation.

SERVICE_TO_SERVICE graph after approve_topology():

    A --> B --> C --> D
    A ----------> C

    A->B conf 0.8, B->C conf 0.9, A->C conf 0.5, C->D conf 0.7

A reads db.orders (database db.main); B produces topic.orders (broker kafka).
"""

from typing import Any, Dict, Optional

from archgraph.contracts.entities import CanonicalRelation, RelationSource, RelationType
from archgraph.engine import ArchGraphBackend, BackendConfig


WORKSPACE = "ws-test"

SVC_A = "urn:svc:a"
SVC_B = "urn:svc:b"
SVC_C = "urn:svc:c"
SVC_D = "urn:svc:d"

EP_B1 = "urn:svc:b/ep:get-orders"
EP_B2 = "urn:svc:b/ep:list-orders"
EP_C1 = "urn:svc:c/ep:charge"
EP_D1 = "urn:svc:d/ep:notify"

DB_MAIN = "urn:db:main"
TABLE_ORDERS = "urn:db:main/table:orders"
BROKER = "urn:broker:kafka"
TOPIC_ORDERS = "urn:broker:kafka/topic:orders"

DOMAIN_X = "urn:domain:checkout"
DOMAIN_Y = "urn:domain:fulfilment"


# =============================================================================
# BACKEND FIXTURES
# =============================================================================

def create_backend() -> ArchGraphBackend:
    """Fresh in-memory backend."""
    return ArchGraphBackend(BackendConfig())


def register_topology(backend: ArchGraphBackend, workspace_id: str = WORKSPACE) -> Dict[str, str]:
    """Register every fixture object. Returns urn -> internal id."""
    for urn in (SVC_A, SVC_B, SVC_C, SVC_D):
        backend.register_object(workspace_id, urn, "service")
    for urn, parent in ((EP_B1, SVC_B), (EP_B2, SVC_B), (EP_C1, SVC_C), (EP_D1, SVC_D)):
        backend.register_object(workspace_id, urn, "api_endpoint", parent=parent)
    backend.register_object(workspace_id, DB_MAIN, "database")
    backend.register_object(workspace_id, TABLE_ORDERS, "db_table", parent=DB_MAIN)
    backend.register_object(workspace_id, BROKER, "message_broker")
    backend.register_object(workspace_id, TOPIC_ORDERS, "topic", parent=BROKER)
    backend.register_object(workspace_id, DOMAIN_X, "domain")
    backend.register_object(workspace_id, DOMAIN_Y, "domain")

    urns = (
        SVC_A, SVC_B, SVC_C, SVC_D, EP_B1, EP_B2, EP_C1, EP_D1,
        DB_MAIN, TABLE_ORDERS, BROKER, TOPIC_ORDERS, DOMAIN_X, DOMAIN_Y,
    )
    return {urn: backend.resolve(workspace_id, urn) for urn in urns}


def relation_payload(
    from_urn: str,
    to_urn: str,
    relation_type: str,
    confidence: Optional[float] = None,
    source: Optional[str] = None,
    evidence: Optional[str] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"fromId": from_urn, "toId": to_urn, "type": relation_type}
    if confidence is not None:
        payload["confidence"] = confidence
    if source is not None:
        payload["source"] = source
    if evidence is not None:
        payload["evidence"] = evidence
    return payload


TOPOLOGY_RELATIONS = (
    relation_payload(SVC_B, EP_B1, "expose", 0.6),
    relation_payload(SVC_C, EP_C1, "expose", 1.0),
    relation_payload(SVC_D, EP_D1, "expose", 1.0),
    relation_payload(SVC_A, EP_B1, "call", 0.8),
    relation_payload(SVC_B, EP_C1, "call", 0.9),
    relation_payload(SVC_A, EP_C1, "call", 0.5),
    relation_payload(SVC_C, EP_D1, "call", 0.7),
    relation_payload(SVC_A, TABLE_ORDERS, "read", 0.9),
    relation_payload(SVC_B, TOPIC_ORDERS, "produce", 0.75),
)


def approve_topology(backend: ArchGraphBackend, workspace_id: str = WORKSPACE) -> Dict[str, str]:
    """Register objects, queue and bulk-approve TOPOLOGY_RELATIONS (one rebuild)."""
    ids = register_topology(backend, workspace_id)
    for payload in TOPOLOGY_RELATIONS:
        backend.create_change_request(workspace_id, "RELATION_UPSERT", payload, requested_by="fixture")
    result = backend.apply_bulk(workspace_id, None, "APPROVED", reviewed_by="reviewer")
    assert result.failed == ()
    assert result.rollup_version is not None
    return ids


def approve(backend: ArchGraphBackend, payload: Dict[str, Any], request_type: str = "RELATION_UPSERT",
            workspace_id: str = WORKSPACE):
    """Queue and approve one request; returns the ApplyOutcome."""
    request = backend.create_change_request(workspace_id, request_type, payload)
    return backend.apply_change_request(workspace_id, request.request_id, "APPROVED", reviewed_by="reviewer")


# =============================================================================
# PLAIN RECORD FIXTURES (no storage)
# =============================================================================

def canonical(
    subject_id: str,
    relation_type: RelationType,
    target_id: str,
    confidence: Optional[float] = None,
) -> CanonicalRelation:
    return CanonicalRelation(
        relation_id=f"rel_{subject_id}_{relation_type.value}_{target_id}",
        workspace_id=WORKSPACE,
        subject_id=subject_id,
        relation_type=relation_type,
        target_id=target_id,
        source=RelationSource.MANUAL,
        confidence=confidence,
    )
