import duckdb

from tabtrack.core.config import parse_config
from tabtrack.core.types import ContentItem
from tabtrack.features.bootstrap.service import bootstrap_tab, run_journey


def _cfg_dict(db_path, steps, **extra) -> dict:
    d = {
        "run": {"run_id": "e2e", "seed": 7, "start_date": "2026-01-01T09:00:00"},
        "storage": {"duckdb_path": str(db_path), "clean_slate": True, "latency_s": 0.1},
        "logging": {"level": "INFO"},
        "views": {"track_interactions": True},
        "journey": {
            "user_id": "u1",
            "start_url": "https://example.com/mental-models",
            "steps": steps,
        },
    }
    d.update(extra)
    return d


STEPS = [
    {"at_s": 1.0, "action": "search", "query": "bias", "results": 12},
    {"at_s": 3.0, "action": "search", "query": "biases", "results": 9},
    {"at_s": 6.5, "action": "click", "item_id": "confirmation-bias", "position": 2},
    {
        "at_s": 6.5,
        "action": "view",
        "item_id": "confirmation-bias",
        "category": "psychology",
        "url": "https://example.com/mental-models/confirmation-bias?ref=search",
    },
    {"at_s": 20.0, "action": "interact", "kind": "expand_example"},
    {"at_s": 48.0, "action": "hide"},
    {"at_s": 62.0, "action": "search", "query": "xyzxyz", "results": 0},
    {"at_s": 75.0, "action": "unload"},
]


def test_journey_end_to_end(tmp_path):
    db_path = tmp_path / "tab.duckdb"
    cfg = parse_config(_cfg_dict(db_path, STEPS))

    res = run_journey(cfg)

    assert db_path.exists()
    assert res.steps_run == len(STEPS)
    assert res.records_delivered == 2
    assert res.records_dropped == 0
    assert res.session_id is not None

    con = duckdb.connect(str(db_path), read_only=True)
    searches = con.execute(
        """
        SELECT search_query, search_type, failed_search, search_location,
               clicked_item_id, clicked_position, time_to_click_ms,
               abandoned, abandonment_dwell_ms, session_id
        FROM searches ORDER BY search_id
        """
    ).fetchall()
    views = con.execute(
        "SELECT item_id, view_source, duration_s, session_id FROM views"
    ).fetchall()
    records = con.execute(
        "SELECT record_type, subject, value_str FROM telemetry_records ORDER BY record_id"
    ).fetchall()
    con.close()

    # debounce collapses nothing here: the two queries are 2 s apart
    assert [s[0] for s in searches] == ["bias", "biases", "xyzxyz"]
    assert [s[1] for s in searches] == ["initial", "refined", "initial"]
    assert [s[2] for s in searches] == [False, False, True]
    assert searches[0][3] == "library_main"
    assert searches[2][3] == "modal"

    # click attached to the refined search, 3 s after it was issued
    assert searches[1][4:7] == ("confirmation-bias", 2, 3000)
    assert searches[0][4] is None

    # unload abandons the unclicked failed search
    assert searches[2][7] is True
    assert searches[2][8] == 12500

    assert views == [("confirmation-bias", "library_search", 41, res.session_id)]
    assert {s[9] for s in searches} == {res.session_id}

    assert records == [
        ("interaction", "confirmation-bias", "expand_example"),
        ("content_gap", "xyzxyz", "modal"),
    ]


def test_journey_without_unload_still_flushes(tmp_path):
    db_path = tmp_path / "tab.duckdb"
    steps = [
        {"at_s": 0.0, "action": "view", "item_id": "anchoring"},
        {"at_s": 1.0, "action": "interact", "kind": "scroll"},
    ]
    cfg = parse_config(
        _cfg_dict(db_path, steps, batching={"max_batch_size": 50, "flush_interval_s": 1000})
    )

    res = run_journey(cfg)

    assert res.records_delivered == 1
    con = duckdb.connect(str(db_path), read_only=True)
    (duration,) = con.execute("SELECT duration_s FROM views").fetchone()
    con.close()
    # unload forced after the drain window finalizes the view
    assert duration == 31


def test_anonymous_visitor_tracks_nothing(tmp_path):
    db_path = tmp_path / "tab.duckdb"
    d = _cfg_dict(db_path, STEPS)
    d["journey"]["user_id"] = None
    cfg = parse_config(d)

    res = run_journey(cfg)

    assert res.store_calls["insert_view"] == 0
    assert res.store_calls["insert_search"] == 0
    assert res.records_delivered == 0


def test_store_failures_do_not_escape(tmp_path):
    db_path = tmp_path / "tab.duckdb"
    d = _cfg_dict(db_path, STEPS)
    d["storage"]["failure_rate"] = 1.0
    cfg = parse_config(d)

    res = run_journey(cfg)

    assert res.steps_run == len(STEPS)
    assert res.records_delivered == 0
    # interaction and content gap both fail to deliver
    assert res.records_dropped == 2
    assert res.store_calls["update_view_duration"] == 0


def test_bootstrap_tab_wires_session_reset_to_views(tmp_path):
    cfg = parse_config(_cfg_dict(tmp_path / "tab.duckdb", []))
    rt = bootstrap_tab(cfg)
    try:
        rt.visitor.user_id = "u1"
        rt.views.activate(ContentItem("anchoring"))
        rt.env.run(until=5.0)
        first = rt.sessions.get_session_id()

        rt.sessions.reset_session()

        assert rt.views.current is None
        assert rt.sessions.get_session_id() != first
    finally:
        rt.store.close()


def test_failed_query_still_pending_at_unload_is_delivered(tmp_path):
    db_path = tmp_path / "tab.duckdb"
    steps = [
        {"at_s": 1.0, "action": "search", "query": "xyzxyz", "results": 0},
        {"at_s": 1.1, "action": "unload"},
    ]
    cfg = parse_config(_cfg_dict(db_path, steps))

    res = run_journey(cfg)

    assert res.records_delivered == 1
    assert res.records_dropped == 0
    con = duckdb.connect(str(db_path), read_only=True)
    records = con.execute("SELECT record_type, subject FROM telemetry_records").fetchall()
    searches = con.execute("SELECT search_query, failed_search FROM searches").fetchall()
    con.close()
    assert records == [("content_gap", "xyzxyz")]
    assert searches == [("xyzxyz", True)]
