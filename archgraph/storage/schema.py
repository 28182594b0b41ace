"""
Relational schema of the dependency graph store.

Every table is workspace-scoped. Statements are idempotent so the schema
can be applied on every open.
"""

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS objects (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        urn TEXT NOT NULL,
        object_type TEXT NOT NULL,
        name TEXT NOT NULL,
        granularity TEXT NOT NULL,
        parent_id TEXT,
        display_name TEXT,
        visibility TEXT NOT NULL DEFAULT 'VISIBLE',
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (workspace_id, urn)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_objects_parent ON objects (workspace_id, parent_id)",
    """
    CREATE TABLE IF NOT EXISTS object_relations (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        relation_type TEXT NOT NULL,
        subject_object_id TEXT NOT NULL,
        target_object_id TEXT NOT NULL,
        source TEXT NOT NULL,
        confidence REAL,
        evidence TEXT NOT NULL DEFAULT '[]',
        approved INTEGER NOT NULL DEFAULT 1,
        is_derived INTEGER NOT NULL DEFAULT 0,
        score_version TEXT,
        review_tag TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_object_relations_tuple
        ON object_relations (workspace_id, relation_type, subject_object_id, target_object_id, is_derived)
    """,
    "CREATE INDEX IF NOT EXISTS idx_object_relations_target ON object_relations (workspace_id, target_object_id)",
    """
    CREATE TABLE IF NOT EXISTS change_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workspace_id TEXT NOT NULL,
        request_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        requested_by TEXT,
        reviewed_by TEXT,
        reviewed_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_change_requests_status ON change_requests (workspace_id, status, id)",
    """
    CREATE TABLE IF NOT EXISTS rollup_generations (
        workspace_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        status TEXT NOT NULL,
        built_at TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (workspace_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS object_rollups (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        generation_version INTEGER NOT NULL,
        rollup_level TEXT NOT NULL,
        relation_type TEXT NOT NULL,
        subject_object_id TEXT NOT NULL,
        target_object_id TEXT NOT NULL,
        edge_weight INTEGER NOT NULL,
        confidence REAL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_object_rollups_generation
        ON object_rollups (workspace_id, generation_version, rollup_level)
    """,
    """
    CREATE TABLE IF NOT EXISTS object_domain_affinities (
        workspace_id TEXT NOT NULL,
        object_id TEXT NOT NULL,
        domain_id TEXT NOT NULL,
        affinity REAL NOT NULL,
        source TEXT NOT NULL DEFAULT 'MANUAL',
        PRIMARY KEY (workspace_id, object_id, domain_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS object_graph_stats (
        workspace_id TEXT NOT NULL,
        generation_version INTEGER NOT NULL,
        rollup_level TEXT NOT NULL,
        object_id TEXT NOT NULL,
        in_degree INTEGER NOT NULL,
        out_degree INTEGER NOT NULL,
        PRIMARY KEY (workspace_id, generation_version, rollup_level, object_id)
    )
    """,
)
