"""
query_executor.py
Runs a QueryPlan against Azure DevOps with per-query caching and partial-failure semantics.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Dict, Any, Optional
from services.ado import AdoClient
from services.cache import CacheStore
from services.ai_workflow.data_model import (
    QueryPlan, PlannedQuery, QueryResult, QueryResults, QueryKind, WorkItem, GlobalFilters
)
from services.ai_workflow.utils.common_utils import Deadline, build_query_cache_key, elapsed_ms
from services.ai_workflow.utils.wiql_utils import apply_filters_to_query
from services.constants import (
    QUERY_CACHE_TTL_SECONDS, MAX_CONCURRENT_QUERIES, ADO_REQUEST_TIMEOUT_SECONDS, CACHE_NAMESPACE
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class QueryExecutor:
    """
    Executes planned queries in ascending priority. Queries whose dependencies
    are all settled run together as one wave on a bounded thread pool; a
    dependent query waits for the wave holding its prerequisites.
    """

    def __init__(self, ado_client: AdoClient, cache: CacheStore,
                 cache_ttl: int = QUERY_CACHE_TTL_SECONDS,
                 max_workers: int = MAX_CONCURRENT_QUERIES):
        self.ado = ado_client
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.max_workers = max(1, max_workers)

    def execute(
        self,
        plan: QueryPlan,
        filters: Optional[GlobalFilters] = None,
        skip_cache: bool = False,
        base_cache_key: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> QueryResults:
        start = time.perf_counter()
        base_key = base_cache_key or plan.plan_id
        pending = sorted(plan.queries, key=lambda q: q.priority)
        position = {query.id: index for index, query in enumerate(pending)}
        results_by_id: Dict[str, QueryResult] = {}
        ordered_results: List[QueryResult] = []

        while pending:
            wave = self._next_wave(pending, results_by_id, position)
            wave_ids = {query.id for query in wave}
            pending = [query for query in pending if query.id not in wave_ids]

            for result in self._run_wave(wave, results_by_id, filters, skip_cache, base_key, deadline):
                results_by_id[result.query_id] = result
                ordered_results.append(result)

        ordered_results.sort(key=lambda r: position[r.query_id])
        return self._aggregate(ordered_results, start)

    @staticmethod
    def _next_wave(pending: List[PlannedQuery], finished: Dict[str, QueryResult],
                   position: Dict[str, int]) -> List[PlannedQuery]:
        """
        Queries of the lowest remaining priority whose prerequisites have all settled.
        A prerequisite that isn't in the plan counts as settled; the dependency check
        then records it as unmet.
        """
        priority = pending[0].priority
        wave = [
            query for query in pending
            if query.priority == priority
            and all(dep in finished or dep not in position for dep in query.depends_on)
        ]
        if not wave:
            # Cycle, or a prerequisite planned at a later priority: it can never settle in time
            wave = [pending[0]]
        return wave

    def _run_wave(self, wave: List[PlannedQuery], finished: Dict[str, QueryResult],
                  filters: Optional[GlobalFilters], skip_cache: bool, base_key: str,
                  deadline: Optional[Deadline]) -> List[QueryResult]:
        """Run one wave and return its results in the wave's (priority) order."""
        if len(wave) == 1:
            return [self._execute_one(wave[0], finished, filters, skip_cache, base_key, deadline)]

        wave_results: Dict[str, QueryResult] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(wave))) as pool:
            future_to_query = {
                pool.submit(self._execute_one, query, finished, filters, skip_cache, base_key, deadline): query
                for query in wave
            }
            for future in as_completed(future_to_query):
                query = future_to_query[future]
                wave_results[query.id] = future.result()
        return [wave_results[q.id] for q in wave]

    def _execute_one(self, query: PlannedQuery, finished: Dict[str, QueryResult],
                     filters: Optional[GlobalFilters], skip_cache: bool, base_key: str,
                     deadline: Optional[Deadline]) -> QueryResult:
        start = time.perf_counter()

        unmet = sorted(d for d in query.depends_on if d not in finished or not finished[d].success)
        if unmet and not query.optional:
            logger.warning(f"Skipping {query.id}: dependencies not met ({', '.join(unmet)})")
            return QueryResult(
                query_id=query.id,
                kind=query.kind,
                success=False,
                error=f"Dependencies not met: {', '.join(unmet)}",
                duration=elapsed_ms(start),
            )

        cache_key = build_query_cache_key(base_key, query.id, query.kind.value, query.query_body, filters)
        if not skip_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Cache hit for {query.id}")
                return QueryResult(
                    query_id=query.id,
                    kind=query.kind,
                    success=True,
                    data=cached,
                    duration=elapsed_ms(start),
                    cached=True,
                    cache_key=cache_key,
                )

        if deadline is not None and deadline.expired():
            return QueryResult(query_id=query.id, kind=query.kind, success=False,
                               error="Pipeline time budget exhausted", duration=elapsed_ms(start))

        timeout = deadline.call_timeout(ADO_REQUEST_TIMEOUT_SECONDS) if deadline else ADO_REQUEST_TIMEOUT_SECONDS
        try:
            data = self._run_live(query, filters, timeout)
        except Exception as e:
            logger.error(f"Query {query.id} failed: {e}", exc_info=True)
            return QueryResult(
                query_id=query.id,
                kind=query.kind,
                success=False,
                error=str(e),
                duration=elapsed_ms(start),
                cache_key=cache_key,
            )

        self.cache.set(cache_key, data, self.cache_ttl)
        return QueryResult(
            query_id=query.id,
            kind=query.kind,
            success=True,
            data=data,
            duration=elapsed_ms(start),
            cached=False,
            cache_key=cache_key,
        )

    def _run_live(self, query: PlannedQuery, filters: Optional[GlobalFilters], timeout: float) -> List[Dict[str, Any]]:
        """Outbound call for one query. WIQL results come back as WorkItem dicts."""
        if query.kind == QueryKind.WIQL:
            wiql = apply_filters_to_query(query.query_body, filters)
            raw_items = self.ado.search_items(wiql, timeout=timeout)
            return [WorkItem.from_ado(raw).to_dict() for raw in raw_items]
        if query.kind == QueryKind.METADATA:
            return self.ado.list_metadata(query.query_body, timeout=timeout)
        if query.kind == QueryKind.REST:
            return self.ado.rest_get(query.query_body, timeout=timeout)
        raise ValueError(f"Unknown query kind: {query.kind}")

    def _aggregate(self, results: List[QueryResult], start: float) -> QueryResults:
        work_items: List[WorkItem] = []
        seen_ids = set()
        for result in results:
            if result.kind != QueryKind.WIQL or not result.success or not isinstance(result.data, list):
                continue
            for raw in result.data:
                item = WorkItem.from_dict(raw)
                if item.id not in seen_ids:
                    seen_ids.add(item.id)
                    work_items.append(item)

        successful = sum(1 for r in results if r.success)
        query_results = QueryResults(
            results=results,
            work_items=work_items,
            total_queries=len(results),
            successful_queries=successful,
            failed_queries=len(results) - successful,
            cache_hits=sum(1 for r in results if r.cached),
            total_duration=elapsed_ms(start),
        )
        logger.info(
            f"Executed {query_results.total_queries} queries: {query_results.successful_queries} ok, "
            f"{query_results.failed_queries} failed, {query_results.cache_hits} from cache, "
            f"{len(work_items)} work items"
        )
        return query_results

    def invalidate(self, pattern: str = f"{CACHE_NAMESPACE}:query:*") -> int:
        """Drop cached query results matching pattern."""
        deleted = self.cache.delete_pattern(pattern)
        logger.info(f"Invalidated {deleted} cached query results ({pattern})")
        return deleted
