from __future__ import annotations

import csv
import io
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from tabtrack.core.logging import get_logger
from tabtrack.features.persistence.duckdb_adapter import DuckDBAdapter
from tabtrack.features.persistence.schema import QUALITY_ISSUES_TABLE_NAME, SEARCHES_TABLE_NAME

QUALITY_ISSUE_TYPES = frozenset({"slow_results", "no_results", "poor_relevance", "high_abandonment"})
EXPORT_FORMATS = ("json", "csv")


@dataclass(frozen=True)
class QualityWeights:
    """
    Weighted search-quality score. Weights are empirical, not derived;
    they should sum to 1.
    """

    ctr: float = 0.4
    speed: float = 0.2
    success: float = 0.3
    relevance: float = 0.1
    # avg results at which relevance saturates at 100
    relevance_saturation: float = 10.0
    # each this many ms of time-to-click costs one point of speed
    speed_ms_per_point: float = 100.0


@dataclass(frozen=True, slots=True)
class SearchSummary:
    total_searches: int
    click_through_rate: float
    failed_search_rate: float
    avg_time_to_click_ms: float
    recent_searches: list[dict[str, Any]]


@dataclass(frozen=True, slots=True)
class PopularSearch:
    search_query: str
    search_count: int
    unique_users: int
    click_through_rate: float
    avg_results: float


@dataclass(frozen=True, slots=True)
class ContentGap:
    search_query: str
    failure_count: int
    unique_users: int
    last_searched: datetime
    sample_filters: dict[str, Any] | None


@dataclass(frozen=True, slots=True)
class CategoryPerformance:
    total_searches: int
    click_through_rate: int
    failure_rate: int
    avg_time_to_click_ms: int
    quality_score: int


@dataclass(frozen=True, slots=True)
class SearchInsight:
    """One day at one search location. Rates are percentages."""

    date: str
    search_location: str
    total_searches: int
    unique_users: int
    searches_with_clicks: int
    failed_searches: int
    avg_results_count: float
    avg_time_to_click_ms: float
    click_through_rate: float
    failure_rate: float


@dataclass(frozen=True, slots=True)
class FunnelStage:
    stage: str
    count: int
    # share of all searches in the period
    percentage: float


@dataclass(frozen=True)
class QualityIssueThresholds:
    """Per-query limits for detect_quality_issues. Rates are fractions."""

    min_searches: int = 3
    slow_click_ms: float = 10_000.0
    no_results_rate: float = 0.5
    poor_relevance_ctr: float = 0.1
    high_abandonment_rate: float = 0.5


@dataclass(frozen=True, slots=True)
class QualityIssue:
    issue_id: str
    issue_type: str
    search_query: str
    created_at: datetime
    details: dict[str, Any] | None


def calculate_search_quality(
    *,
    click_through_rate: float,
    avg_time_to_click_ms: float,
    failure_rate: float,
    avg_results_count: float,
    weights: QualityWeights = QualityWeights(),
) -> int:
    """
    Composite 0..100 score. Rates are percentages (0..100).
    """
    ctr_score = min(click_through_rate, 100.0)
    speed_score = max(0.0, 100.0 - avg_time_to_click_ms / weights.speed_ms_per_point)
    success_score = 100.0 - failure_rate
    relevance_score = min(avg_results_count / weights.relevance_saturation * 100.0, 100.0)

    score = (
        ctr_score * weights.ctr
        + speed_score * weights.speed
        + success_score * weights.success
        + relevance_score * weights.relevance
    )
    return int(round(score))


class SearchAnalyticsService:
    """
    Read-side reports over tracked searches. Synchronous; runs after the
    tab's loop has drained.

    Period filters take `since` and `until`, both inclusive and both
    optional. Quality issues are the one thing written from here.
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        run_id: str | None = None,
        weights: QualityWeights = QualityWeights(),
    ) -> None:
        self.adapter = adapter
        self.run_id = run_id
        self.weights = weights
        self._issue_seq: int | None = None
        self._logger = get_logger(__name__)

    def _where(
        self,
        clauses: list[str],
        params: list[Any],
        since: datetime | None,
        until: datetime | None = None,
    ) -> str:
        if self.run_id is not None:
            clauses.append("run_id = ?")
            params.append(self.run_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(until)
        return ("WHERE " + " AND ".join(clauses)) if clauses else ""

    def user_summary(self, user_id: str, *, limit: int = 100) -> SearchSummary | None:
        params: list[Any] = [user_id]
        where = self._where(["user_id = ?"], params, None)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT search_id, search_query, search_type, results_count, failed_search,
                   clicked_item_id, time_to_click_ms, created_at
            FROM {SEARCHES_TABLE_NAME}
            {where}
            ORDER BY created_at DESC, search_id DESC
            LIMIT ?
            """,
            [*params, int(limit)],
        )
        if not rows:
            return None

        total = len(rows)
        clicked = [r for r in rows if r["clicked_item_id"]]
        failed = sum(1 for r in rows if r["failed_search"])
        ttc = [int(r["time_to_click_ms"]) for r in clicked if r["time_to_click_ms"] is not None]

        return SearchSummary(
            total_searches=total,
            click_through_rate=len(clicked) / total,
            failed_search_rate=failed / total,
            avg_time_to_click_ms=(sum(ttc) / len(ttc)) if ttc else 0.0,
            recent_searches=rows[:10],
        )

    def popular_searches(
        self,
        *,
        limit: int = 10,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PopularSearch]:
        params: list[Any] = []
        where = self._where([], params, since, until)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT search_query_normalized AS q,
                   COUNT(*) AS n,
                   COUNT(DISTINCT user_id) AS users,
                   AVG(CASE WHEN clicked_item_id IS NOT NULL THEN 1.0 ELSE 0.0 END) AS ctr,
                   AVG(results_count) AS avg_results
            FROM {SEARCHES_TABLE_NAME}
            {where}
            GROUP BY search_query_normalized
            ORDER BY n DESC, q ASC
            LIMIT ?
            """,
            [*params, int(limit)],
        )
        return [
            PopularSearch(
                search_query=str(r["q"]),
                search_count=int(r["n"]),
                unique_users=int(r["users"]),
                click_through_rate=float(r["ctr"]),
                avg_results=float(r["avg_results"]),
            )
            for r in rows
        ]

    def content_gaps(
        self,
        *,
        limit: int = 20,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ContentGap]:
        params: list[Any] = []
        where = self._where(["failed_search"], params, since, until)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT search_query_normalized AS q,
                   COUNT(*) AS n,
                   COUNT(DISTINCT user_id) AS users,
                   MAX(created_at) AS last_searched,
                   arg_max(filters_json, created_at) AS sample_filters
            FROM {SEARCHES_TABLE_NAME}
            {where}
            GROUP BY search_query_normalized
            ORDER BY n DESC, last_searched DESC
            LIMIT ?
            """,
            [*params, int(limit)],
        )
        return [
            ContentGap(
                search_query=str(r["q"]),
                failure_count=int(r["n"]),
                unique_users=int(r["users"]),
                last_searched=r["last_searched"],
                sample_filters=json.loads(r["sample_filters"]) if r["sample_filters"] else None,
            )
            for r in rows
        ]

    def performance_by_category(
        self, *, since: datetime | None = None, until: datetime | None = None
    ) -> dict[str, CategoryPerformance]:
        params: list[Any] = []
        where = self._where([], params, since, until)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT filters_json, clicked_item_id, time_to_click_ms, failed_search
            FROM {SEARCHES_TABLE_NAME}
            {where}
            """,
            params,
        )

        buckets: dict[str, dict[str, int]] = {}
        for r in rows:
            filters = json.loads(r["filters_json"]) if r["filters_json"] else {}
            category = filters.get("category") or "all"
            b = buckets.setdefault(
                category, {"searches": 0, "clicks": 0, "failures": 0, "ttc_total": 0, "ttc_n": 0}
            )
            b["searches"] += 1
            if r["clicked_item_id"]:
                b["clicks"] += 1
            if r["failed_search"]:
                b["failures"] += 1
            if r["time_to_click_ms"]:
                b["ttc_total"] += int(r["time_to_click_ms"])
                b["ttc_n"] += 1

        out: dict[str, CategoryPerformance] = {}
        for category, b in buckets.items():
            ctr = b["clicks"] / b["searches"] * 100.0
            failure = b["failures"] / b["searches"] * 100.0
            avg_ttc = b["ttc_total"] / b["ttc_n"] if b["ttc_n"] else 0.0
            out[category] = CategoryPerformance(
                total_searches=b["searches"],
                click_through_rate=int(round(ctr)),
                failure_rate=int(round(failure)),
                avg_time_to_click_ms=int(round(avg_ttc)),
                quality_score=calculate_search_quality(
                    click_through_rate=ctr,
                    avg_time_to_click_ms=avg_ttc,
                    failure_rate=failure,
                    # result counts are not aggregated per category
                    avg_results_count=self.weights.relevance_saturation,
                    weights=self.weights,
                ),
            )
        return out

    def insights(
        self, *, since: datetime | None = None, until: datetime | None = None
    ) -> list[SearchInsight]:
        """Daily rollup per search location, newest day first."""
        params: list[Any] = []
        where = self._where([], params, since, until)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT CAST(created_at AS DATE) AS search_date,
                   search_location,
                   COUNT(*) AS n,
                   COUNT(DISTINCT user_id) AS users,
                   COUNT(clicked_item_id) AS clicks,
                   COUNT(*) FILTER (WHERE failed_search) AS failed,
                   AVG(results_count) AS avg_results,
                   AVG(time_to_click_ms) AS avg_ttc
            FROM {SEARCHES_TABLE_NAME}
            {where}
            GROUP BY search_date, search_location
            ORDER BY search_date DESC, search_location ASC
            """,
            params,
        )

        out: list[SearchInsight] = []
        for r in rows:
            n = int(r["n"])
            clicks = int(r["clicks"])
            failed = int(r["failed"])
            out.append(
                SearchInsight(
                    date=r["search_date"].isoformat(),
                    search_location=str(r["search_location"]),
                    total_searches=n,
                    unique_users=int(r["users"]),
                    searches_with_clicks=clicks,
                    failed_searches=failed,
                    avg_results_count=round(float(r["avg_results"]), 2),
                    avg_time_to_click_ms=round(float(r["avg_ttc"] or 0.0), 2),
                    click_through_rate=round(clicks / n * 100.0, 2),
                    failure_rate=round(failed / n * 100.0, 2),
                )
            )
        return out

    def funnel(
        self, *, since: datetime | None = None, until: datetime | None = None
    ) -> list[FunnelStage]:
        """searched -> clicked -> not abandoned."""
        params: list[Any] = []
        where = self._where([], params, since, until)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT COUNT(*) AS searched,
                   COUNT(clicked_item_id) AS clicked,
                   COUNT(clicked_item_id) FILTER (WHERE abandoned IS NOT TRUE) AS not_abandoned
            FROM {SEARCHES_TABLE_NAME}
            {where}
            """,
            params,
        )
        r = rows[0]
        searched = int(r["searched"])
        stages: list[FunnelStage] = []
        for stage in ("searched", "clicked", "not_abandoned"):
            count = int(r[stage])
            pct = round(count / searched * 100.0, 2) if searched else 0.0
            stages.append(FunnelStage(stage=stage, count=count, percentage=pct))
        return stages

    # ----------------------------
    # Quality issues
    # ----------------------------
    def _next_issue_id(self) -> str:
        if self.run_id is None:
            raise RuntimeError("Quality issues need a run_id")
        if self._issue_seq is None:
            # continue after issues written by an earlier report on the same run
            self._issue_seq = self.adapter.count_rows(QUALITY_ISSUES_TABLE_NAME, self.run_id)
        self._issue_seq += 1
        return f"issue_{self.run_id}_{self._issue_seq:08d}"

    def track_quality_issue(
        self,
        issue_type: str,
        query: str,
        details: dict[str, Any] | None = None,
        *,
        created_at: datetime,
    ) -> QualityIssue:
        if issue_type not in QUALITY_ISSUE_TYPES:
            raise ValueError(
                f"Unknown quality issue type {issue_type!r}. "
                f"Allowed: {sorted(QUALITY_ISSUE_TYPES)}"
            )

        issue = QualityIssue(
            issue_id=self._next_issue_id(),
            issue_type=issue_type,
            search_query=query,
            created_at=created_at,
            details=details,
        )
        self._logger.warning(
            "search_quality_issue",
            extra={"event": "search_quality_issue", "issue_type": issue_type, "query": query},
        )
        self.adapter.insert_quality_issue({"run_id": self.run_id, **asdict(issue)})
        return issue

    def detect_quality_issues(
        self,
        *,
        thresholds: QualityIssueThresholds = QualityIssueThresholds(),
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[QualityIssue]:
        """
        Scan per-query aggregates and record an issue for each limit crossed.
        A query that mostly fails is reported as no_results only.
        """
        params: list[Any] = []
        where = self._where([], params, since, until)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT search_query_normalized AS q,
                   COUNT(*) AS n,
                   AVG(CASE WHEN failed_search THEN 1.0 ELSE 0.0 END) AS failure_rate,
                   AVG(CASE WHEN clicked_item_id IS NOT NULL THEN 1.0 ELSE 0.0 END) AS ctr,
                   AVG(CASE WHEN abandoned THEN 1.0 ELSE 0.0 END) AS abandonment_rate,
                   AVG(time_to_click_ms) AS avg_ttc,
                   MAX(created_at) AS last_searched
            FROM {SEARCHES_TABLE_NAME}
            {where}
            GROUP BY search_query_normalized
            HAVING COUNT(*) >= ?
            ORDER BY n DESC, q ASC
            """,
            [*params, int(thresholds.min_searches)],
        )

        found: list[QualityIssue] = []
        for r in rows:
            q = str(r["q"])
            stats = {
                "searches": int(r["n"]),
                "failure_rate": round(float(r["failure_rate"]), 4),
                "click_through_rate": round(float(r["ctr"]), 4),
                "abandonment_rate": round(float(r["abandonment_rate"]), 4),
            }
            hits: list[str] = []
            if stats["failure_rate"] >= thresholds.no_results_rate:
                hits.append("no_results")
            elif stats["click_through_rate"] < thresholds.poor_relevance_ctr:
                hits.append("poor_relevance")
            if r["avg_ttc"] is not None and float(r["avg_ttc"]) > thresholds.slow_click_ms:
                stats["avg_time_to_click_ms"] = round(float(r["avg_ttc"]), 2)
                hits.append("slow_results")
            if stats["abandonment_rate"] >= thresholds.high_abandonment_rate:
                hits.append("high_abandonment")

            for issue_type in hits:
                found.append(
                    self.track_quality_issue(
                        issue_type, q, dict(stats), created_at=r["last_searched"]
                    )
                )
        return found

    def quality_issues(
        self, *, since: datetime | None = None, until: datetime | None = None
    ) -> list[QualityIssue]:
        params: list[Any] = []
        where = self._where([], params, since, until)
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT issue_id, issue_type, search_query, created_at, details_json
            FROM {QUALITY_ISSUES_TABLE_NAME}
            {where}
            ORDER BY created_at DESC, issue_id ASC
            """,
            params,
        )
        return [
            QualityIssue(
                issue_id=str(r["issue_id"]),
                issue_type=str(r["issue_type"]),
                search_query=str(r["search_query"]),
                created_at=r["created_at"],
                details=json.loads(r["details_json"]) if r["details_json"] else None,
            )
            for r in rows
        ]

    # ----------------------------
    # Bundles
    # ----------------------------
    def report(
        self,
        *,
        user_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, Any]:
        """JSON-serializable bundle used by the CLI."""
        summary = self.user_summary(user_id) if user_id else None
        return {
            "run_id": self.run_id,
            "period": {"since": since, "until": until},
            "user_summary": asdict(summary) if summary else None,
            "insights": [asdict(i) for i in self.insights(since=since, until=until)],
            "funnel": [asdict(s) for s in self.funnel(since=since, until=until)],
            "popular_searches": [
                asdict(p) for p in self.popular_searches(since=since, until=until)
            ],
            "content_gaps": [asdict(g) for g in self.content_gaps(since=since, until=until)],
            "performance_by_category": {
                k: asdict(v)
                for k, v in self.performance_by_category(since=since, until=until).items()
            },
            "quality_issues": [
                asdict(q) for q in self.quality_issues(since=since, until=until)
            ],
        }

    def export(
        self,
        *,
        fmt: str = "json",
        user_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> str:
        """
        Render the period as text. json is the full report; csv is a flat
        Category,Metric,Value sheet of the headline numbers.
        """
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format {fmt!r}. Allowed: {list(EXPORT_FORMATS)}")

        if fmt == "json":
            return json.dumps(
                self.report(user_id=user_id, since=since, until=until), indent=2, default=str
            )

        buf = io.StringIO()
        w = csv.writer(buf, lineterminator="\n")
        w.writerow(["Category", "Metric", "Value"])
        for i in self.insights(since=since, until=until):
            label = f"{i.date} {i.search_location}"
            w.writerow(["Insights", f"{label} Total Searches", i.total_searches])
            w.writerow(["Insights", f"{label} CTR", i.click_through_rate])
            w.writerow(["Insights", f"{label} Failure Rate", i.failure_rate])
        for p in self.popular_searches(since=since, until=until):
            w.writerow(["Popular Search", p.search_query, p.search_count])
        for g in self.content_gaps(since=since, until=until):
            w.writerow(["Content Gap", g.search_query, g.failure_count])
        for s in self.funnel(since=since, until=until):
            w.writerow(["Funnel", s.stage, s.count])
        return buf.getvalue()
