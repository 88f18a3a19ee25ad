from __future__ import annotations

VIEWS_TABLE_NAME = "views"
SEARCHES_TABLE_NAME = "searches"
RECORDS_TABLE_NAME = "telemetry_records"
QUALITY_ISSUES_TABLE_NAME = "search_quality_issues"

VIEWS_DDL = f"""
CREATE TABLE IF NOT EXISTS {VIEWS_TABLE_NAME} (
    run_id TEXT NOT NULL,
    view_id TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,

    user_id TEXT NOT NULL,
    session_id TEXT NOT NULL,

    item_id TEXT NOT NULL,
    item_name TEXT,
    category TEXT,

    view_source TEXT NOT NULL,
    referrer_path TEXT,
    viewport_width INTEGER,
    viewport_height INTEGER,

    duration_s INTEGER
);
"""

SEARCHES_DDL = f"""
CREATE TABLE IF NOT EXISTS {SEARCHES_TABLE_NAME} (
    run_id TEXT NOT NULL,
    search_id TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP,

    user_id TEXT NOT NULL,
    session_id TEXT NOT NULL,

    search_query TEXT NOT NULL,
    search_query_normalized TEXT NOT NULL,
    results_count INTEGER NOT NULL,
    search_location TEXT NOT NULL,
    search_type TEXT NOT NULL,
    failed_search BOOLEAN NOT NULL,
    search_duration_ms BIGINT NOT NULL,

    filters_json TEXT,
    viewport_json TEXT,

    clicked_item_id TEXT,
    clicked_position INTEGER,
    time_to_click_ms BIGINT,

    abandoned BOOLEAN,
    abandonment_dwell_ms BIGINT
);
"""

RECORDS_DDL = f"""
CREATE TABLE IF NOT EXISTS {RECORDS_TABLE_NAME} (
    run_id TEXT NOT NULL,
    record_id TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,

    record_type TEXT NOT NULL,
    user_id TEXT,
    session_id TEXT,
    subject TEXT,

    value_num DOUBLE,
    value_str TEXT,
    payload_json TEXT
);
"""

QUALITY_ISSUES_DDL = f"""
CREATE TABLE IF NOT EXISTS {QUALITY_ISSUES_TABLE_NAME} (
    run_id TEXT NOT NULL,
    issue_id TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,

    issue_type TEXT NOT NULL,
    search_query TEXT NOT NULL,
    details_json TEXT
);
"""

INDEXES = [
    f"CREATE INDEX IF NOT EXISTS idx_views_item_session ON {VIEWS_TABLE_NAME}(item_id, session_id);",
    f"CREATE INDEX IF NOT EXISTS idx_searches_id ON {SEARCHES_TABLE_NAME}(search_id);",
    f"CREATE INDEX IF NOT EXISTS idx_searches_normalized ON {SEARCHES_TABLE_NAME}(search_query_normalized);",
    f"CREATE INDEX IF NOT EXISTS idx_records_type ON {RECORDS_TABLE_NAME}(record_type);",
]


def create_schema(conn) -> None:
    """
    Create tables/indexes. No migrations. Safe to call per run.
    """
    conn.execute(VIEWS_DDL)
    conn.execute(SEARCHES_DDL)
    conn.execute(RECORDS_DDL)
    conn.execute(QUALITY_ISSUES_DDL)
    for ddl in INDEXES:
        conn.execute(ddl)
