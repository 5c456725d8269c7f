"""Database schema definitions for trellis.

Contains the canonical SQL schema and the current schema version constant.
"""

from __future__ import annotations

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS work_item_types (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    organization_id TEXT,
    description     TEXT DEFAULT '',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    deleted_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_types_name ON work_item_types(name);

CREATE TABLE IF NOT EXISTS field_definitions (
    id                      TEXT PRIMARY KEY,
    type_id                 TEXT NOT NULL REFERENCES work_item_types(id),
    field_name              TEXT NOT NULL,
    field_label             TEXT NOT NULL,
    field_type              TEXT NOT NULL,
    field_options           TEXT DEFAULT '[]',
    default_value           TEXT,
    is_required_on_creation INTEGER NOT NULL DEFAULT 0,
    display_order           INTEGER NOT NULL DEFAULT 0,
    created_at              TEXT NOT NULL,
    deleted_at              TEXT,
    CHECK (field_type IN ('text', 'number', 'date', 'enum', 'boolean', 'user'))
);

CREATE INDEX IF NOT EXISTS idx_fields_type ON field_definitions(type_id);

CREATE TABLE IF NOT EXISTS status_definitions (
    id              TEXT PRIMARY KEY,
    type_id         TEXT NOT NULL REFERENCES work_item_types(id),
    name            TEXT NOT NULL,
    status_category TEXT NOT NULL,
    is_initial      INTEGER NOT NULL DEFAULT 0,
    is_final        INTEGER NOT NULL DEFAULT 0,
    display_order   INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    UNIQUE (type_id, name),
    CHECK (status_category IN ('backlog', 'in_progress', 'completed', 'cancelled'))
);

CREATE TABLE IF NOT EXISTS type_relationships (
    id                 TEXT PRIMARY KEY,
    parent_type_id     TEXT NOT NULL REFERENCES work_item_types(id),
    child_type_id      TEXT NOT NULL REFERENCES work_item_types(id),
    relationship_name  TEXT NOT NULL,
    is_required        INTEGER NOT NULL DEFAULT 0,
    min_count          INTEGER,
    max_count          INTEGER,
    auto_create        INTEGER NOT NULL DEFAULT 0,
    auto_create_config TEXT,
    display_order      INTEGER NOT NULL DEFAULT 0,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    deleted_at         TEXT,
    CHECK (parent_type_id != child_type_id),
    CHECK (min_count IS NULL OR min_count >= 0),
    CHECK (max_count IS NULL OR max_count >= 0)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_relationships_live_pair
    ON type_relationships(parent_type_id, child_type_id) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS status_transitions (
    id                TEXT PRIMARY KEY,
    work_item_type_id TEXT NOT NULL REFERENCES work_item_types(id),
    from_status_id    TEXT NOT NULL REFERENCES status_definitions(id),
    to_status_id      TEXT NOT NULL REFERENCES status_definitions(id),
    is_allowed        INTEGER NOT NULL DEFAULT 1,
    validation_config TEXT,
    action_config     TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    UNIQUE (work_item_type_id, from_status_id, to_status_id)
);

CREATE TABLE IF NOT EXISTS work_items (
    id              TEXT PRIMARY KEY,
    type_id         TEXT NOT NULL REFERENCES work_item_types(id),
    organization_id TEXT NOT NULL,
    status_id       TEXT NOT NULL REFERENCES status_definitions(id),
    parent_id       TEXT REFERENCES work_items(id),
    root_id         TEXT NOT NULL,
    depth           INTEGER NOT NULL DEFAULT 0,
    path            TEXT NOT NULL,
    path_key        TEXT NOT NULL,
    subject         TEXT NOT NULL,
    description     TEXT DEFAULT '',
    priority        TEXT NOT NULL DEFAULT 'medium',
    assigned_to     TEXT,
    due_date        TEXT,
    started_at      TEXT,
    completed_at    TEXT,
    created_by      TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    deleted_at      TEXT,
    CHECK (depth BETWEEN 0 AND 10),
    CHECK (priority IN ('critical', 'high', 'medium', 'low'))
);

CREATE INDEX IF NOT EXISTS idx_items_parent ON work_items(parent_id);
CREATE INDEX IF NOT EXISTS idx_items_root ON work_items(root_id);
CREATE INDEX IF NOT EXISTS idx_items_path_key ON work_items(path_key);
CREATE INDEX IF NOT EXISTS idx_items_type ON work_items(type_id);
CREATE INDEX IF NOT EXISTS idx_items_assigned ON work_items(assigned_to);

CREATE TABLE IF NOT EXISTS work_item_field_values (
    work_item_id TEXT NOT NULL REFERENCES work_items(id),
    field_id     TEXT NOT NULL REFERENCES field_definitions(id),
    field_type   TEXT NOT NULL,
    value        TEXT,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (work_item_id, field_id)
);

CREATE TABLE IF NOT EXISTS watchers (
    id                    TEXT PRIMARY KEY,
    work_item_id          TEXT NOT NULL REFERENCES work_items(id),
    user_id               TEXT NOT NULL,
    watch_type            TEXT NOT NULL DEFAULT 'manual',
    notify_status_changes INTEGER NOT NULL DEFAULT 1,
    notify_comments       INTEGER NOT NULL DEFAULT 1,
    notify_assignments    INTEGER NOT NULL DEFAULT 1,
    notify_due_date       INTEGER NOT NULL DEFAULT 1,
    created_at            TEXT NOT NULL,
    UNIQUE (work_item_id, user_id),
    CHECK (watch_type IN ('manual', 'auto_creator', 'auto_assignee', 'auto_commenter'))
);

CREATE TABLE IF NOT EXISTS events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id TEXT NOT NULL REFERENCES work_items(id),
    event_type   TEXT NOT NULL,
    actor        TEXT DEFAULT '',
    old_value    TEXT,
    new_value    TEXT,
    comment      TEXT DEFAULT '',
    created_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_item ON events(work_item_id, created_at);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

CURRENT_SCHEMA_VERSION = 1
