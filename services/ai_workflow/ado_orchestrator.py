"""
ado_orchestrator.py
High-level orchestrator turning a free-text question into Azure DevOps queries and a grounded answer.
"""

import json
import time
import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional, Iterator, Callable
from services.ado import AdoClient, get_ado_client
from services.cache import CacheStore, get_cache
from services.errors import PipelineError, InvalidInputError
from services.logs import log_pipeline_run
from services.ai_workflow.context_manager import ContextManager
from services.ai_workflow.agents.intent_classifier import classify_intent, is_slash_command
from services.ai_workflow.agents.decision_maker import decide_fetch, quick_decision, fallback_decision
from services.ai_workflow.agents.query_planner import plan_queries, validate_query, fix_query
from services.ai_workflow.agents.query_executor import QueryExecutor
from services.ai_workflow.agents.result_evaluator import (
    evaluate_results, quick_evaluation, fallback_evaluation, should_retry, generate_retry_strategy
)
from services.ai_workflow.agents.response_synthesizer import (
    synthesize_response, synthesize_general_answer, build_fallback_response, default_suggestions,
    get_stream_tools, build_stream_messages, DATA_SOURCE
)
from services.ai_workflow.agents.answer_validator import quick_validate, validate_answer
from services.ai_workflow.data_model import (
    Intent, IntentType, IntentScope, Decision, QueryPlan, PlannedQuery, QueryKind, QueryResults,
    Evaluation, OrchestratedResponse, ResponseMetadata, PhaseMetric, GlobalFilters, ProcessOptions,
    ConversationContext, StreamEvent, WorkItem
)
from services.ai_workflow.utils.openai_utils import OpenAIClient
from services.ai_workflow.utils.common_utils import (
    Deadline, elapsed_ms, sanitize_cache_key, format_work_items_for_prompt
)
from services.ai_workflow.utils.visualization_utils import generate_auto_visualizations
from services.constants import (
    ADO_PROJECT, CACHE_NAMESPACE, METADATA_CACHE_TTL_SECONDS, ADO_REQUEST_TIMEOUT_SECONDS,
    MAX_RETRY_ATTEMPTS, MAX_QUERY_LENGTH, OPENAI_SYNTHESIS_MODEL, SYNTHESIS_TEMPERATURE, DEBUG_MODE
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ERROR_SUGGESTIONS = [
    "Show me my active items",
    "List all projects",
    "What users are available?",
]

ERROR_SUMMARIES = {
    "invalid_input": "I couldn't process that request. Please enter a question about your work items.",
    "conversation_not_found": "That conversation no longer exists. Please start a new one.",
    "ownership_mismatch": "That conversation belongs to another user.",
    "timeout": "Your request took too long to process. Please try a narrower question.",
}
GENERIC_ERROR_SUMMARY = "An error occurred while processing your query. Please try again or rephrase your question."
INTERNAL_ERROR_MESSAGE = "Internal error while processing the query"
STREAM_FAILED_MESSAGE = "The answer stream was interrupted"

NO_PLAN_SUMMARY = (
    "I couldn't turn that request into a query. Try rephrasing it, "
    "or use a command such as /sprint current or /assigned_to <name>."
)

STREAM_TOOL_NAME = "search_work_items"
MAX_STREAM_TOOL_ROUNDS = 1

SPRINT_METADATA_SCOPES = (IntentScope.SPRINT, IntentScope.ITERATION, IntentScope.PROJECT)


class PipelineState(str, Enum):
    PLAN = "PLAN"
    EXECUTE = "EXECUTE"
    EVALUATE = "EVALUATE"
    REPLAN = "REPLAN"
    SYNTHESIZE = "SYNTHESIZE"


@dataclass
class PipelineRun:
    """Everything one call to process() carries between stages."""
    query: str
    user_id: str
    context: ConversationContext
    filters: Optional[GlobalFilters]
    options: ProcessOptions
    deadline: Deadline
    completion: OpenAIClient
    start: float = field(default_factory=time.perf_counter)
    phases: List[PhaseMetric] = field(default_factory=list)
    attempts: int = 0
    validation_issues: List[str] = field(default_factory=list)


@dataclass
class PreparedAnswer:
    """Output of stages 1-5. `response` is set when no synthesis is needed."""
    intent: Intent
    decision: Optional[Decision] = None
    results: Optional[QueryResults] = None
    evaluation: Optional[Evaluation] = None
    response: Optional[OrchestratedResponse] = None


class AdoOrchestrator:
    """
    Runs the pipeline for one chat message:
        intent -> fetch decision -> PLAN -> EXECUTE -> EVALUATE -> (REPLAN -> PLAN ...) -> SYNTHESIZE
    followed by the answer validator. Each stage recovers from its own failures;
    only typed pipeline errors end a run early.
    """

    def __init__(
        self,
        completion: Optional[OpenAIClient] = None,
        ado_client: Optional[AdoClient] = None,
        cache: Optional[CacheStore] = None,
        context_manager: Optional[ContextManager] = None,
        max_retries: int = MAX_RETRY_ATTEMPTS,
    ):
        self.completion = completion if completion is not None else OpenAIClient()
        self.ado = ado_client if ado_client is not None else get_ado_client()
        self.cache = cache if cache is not None else get_cache()
        self.context_manager = context_manager if context_manager is not None else ContextManager(self.cache)
        self.executor = QueryExecutor(self.ado, self.cache)
        self.max_retries = max_retries

    # :::::: Entry points :::::: #

    def process(
        self,
        query: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        filters: Optional[GlobalFilters] = None,
        options: Optional[ProcessOptions] = None,
    ) -> OrchestratedResponse:
        """Answer one message. Always returns a response; failures come back as success=False."""
        start = time.perf_counter()
        run = None
        try:
            run = self._start_run(query, user_id, conversation_id, filters, options)
            prepared = self._prepare(run)

            if prepared.response is not None:
                return self._finish(run, prepared.intent, prepared.response, None)

            response = self._phase(
                run, "Response Synthesis",
                lambda: synthesize_response(
                    prepared.intent, prepared.evaluation, prepared.results, run.completion,
                    self.context_manager.get_conversation_summary(run.context),
                ),
            )
            response = self._validate(run, prepared.intent, response, prepared.results.work_items)
            return self._finish(run, prepared.intent, response, prepared.results.work_items)

        except PipelineError as e:
            logger.warning(f"Pipeline stopped ({e.code}): {e.message}")
            return self._error_response(query, e.message, e.code, start, run, conversation_id)
        except Exception as e:
            logger.error(f"Error processing query: {e}", exc_info=True)
            return self._error_response(query, INTERNAL_ERROR_MESSAGE, "internal_error", start, run,
                                        conversation_id, detail=str(e))

    def process_stream(
        self,
        query: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        filters: Optional[GlobalFilters] = None,
        options: Optional[ProcessOptions] = None,
    ) -> Iterator[StreamEvent]:
        """
        Same pipeline as process(), with the answer streamed:
            token* -> (tool_use -> token*)? -> verifying -> correction? -> done
        or a single error event. Closing the generator stops the upstream stream.
        """
        start = time.perf_counter()
        run = None
        try:
            run = self._start_run(query, user_id, conversation_id, filters, options)
            prepared = self._prepare(run)

            if prepared.response is not None:
                response = self._finish(run, prepared.intent, prepared.response, None)
                yield StreamEvent(type="token", content=response.summary)
                yield StreamEvent(type="done", data={"response": response})
                return

            yield from self._stream_answer(run, prepared)

        except PipelineError as e:
            logger.warning(f"Pipeline stopped ({e.code}): {e.message}")
            response = self._error_response(query, e.message, e.code, start, run, conversation_id)
            yield StreamEvent(type="error", content=e.message, data={"error_code": e.code, "response": response})
        except Exception as e:
            logger.error(f"Error streaming query: {e}", exc_info=True)
            response = self._error_response(query, INTERNAL_ERROR_MESSAGE, "internal_error", start, run,
                                            conversation_id, detail=str(e))
            yield StreamEvent(type="error", content=INTERNAL_ERROR_MESSAGE,
                              data={"error_code": "internal_error", "response": response})

    def get_context_stats(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        context = self.context_manager.get_context(conversation_id)
        if context is None:
            return None
        return self.context_manager.get_stats(context)

    def clear_context(self, conversation_id: str) -> None:
        self.context_manager.delete_context(conversation_id)

    def invalidate_cache(self, pattern: str = f"{CACHE_NAMESPACE}:query:*") -> int:
        return self.executor.invalidate(pattern)

    # :::::: Stages :::::: #

    def _start_run(self, query: str, user_id: str, conversation_id: Optional[str],
                   filters: Optional[GlobalFilters], options: Optional[ProcessOptions]) -> PipelineRun:
        if not isinstance(query, str) or not query.strip():
            raise InvalidInputError("Query must be a non-empty string")
        if len(query) > MAX_QUERY_LENGTH:
            raise InvalidInputError(f"Query is longer than {MAX_QUERY_LENGTH} characters")
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError("A user id is required")

        options = options or ProcessOptions()
        if options.timeout_ms <= 0:
            raise InvalidInputError("timeout_ms must be positive")

        deadline = Deadline(options.timeout_ms)
        context = self.context_manager.get_or_create_context(conversation_id, user_id, filters)
        return PipelineRun(
            query=query.strip(),
            user_id=user_id,
            context=context,
            filters=filters or context.global_filters,
            options=options,
            deadline=deadline,
            completion=self.completion.with_deadline(deadline),
        )

    def _phase(self, run: PipelineRun, name: str, fn: Callable[[], Any]) -> Any:
        """Run one stage and record its duration. Errors are recorded and re-raised."""
        run.deadline.check(name)
        start = time.perf_counter()
        try:
            result = fn()
        except Exception as e:
            run.phases.append(PhaseMetric(phase=name, duration=elapsed_ms(start), success=False, error=str(e)))
            raise
        run.phases.append(PhaseMetric(phase=name, duration=elapsed_ms(start), success=True))
        return result

    def _prepare(self, run: PipelineRun) -> PreparedAnswer:
        """Stages 1-5: intent, fetch decision, then the plan/execute/evaluate loop."""
        summary = self.context_manager.get_conversation_summary(run.context)
        recent_entities = self.context_manager.get_recent_entities(run.context)
        slash = is_slash_command(run.query)

        intent = self._phase(
            run, "Intent Analysis",
            lambda: classify_intent(run.query, run.completion, recent_entities, summary),
        )
        fast_path = slash and intent.type == IntentType.COMMAND
        if DEBUG_MODE:
            print(f"intent: {intent}")

        if fast_path:
            decision = self._phase(run, "Decision Making", lambda: quick_decision(intent) or fallback_decision(intent))
        else:
            recent_similar = self.context_manager.has_recent_similar_query(run.context, intent)
            decision = self._phase(
                run, "Decision Making",
                lambda: decide_fetch(intent, run.completion, summary, recent_similar),
            )

        if not decision.requires_ado:
            response = self._phase(
                run, "Response Synthesis (No Data)",
                lambda: synthesize_general_answer(intent, run.completion),
            )
            return PreparedAnswer(intent=intent, decision=decision, response=response)

        metadata = self._load_sprint_metadata(run, intent)
        return self._plan_execute_evaluate(run, intent, decision, metadata, fast_path)

    def _plan_execute_evaluate(self, run: PipelineRun, intent: Intent, decision: Decision,
                               metadata: Optional[Dict[str, Any]], fast_path: bool) -> PreparedAnswer:
        state = PipelineState.PLAN
        current_intent = intent
        hints: Optional[List[str]] = None
        plan: Optional[QueryPlan] = None
        results: Optional[QueryResults] = None
        evaluation: Optional[Evaluation] = None
        retries = 0
        suffix = ""

        while state != PipelineState.SYNTHESIZE:
            if state == PipelineState.PLAN:
                plan = self._phase(
                    run, f"Query Planning{suffix}",
                    lambda: plan_queries(current_intent, decision, run.completion, metadata, hints,
                                         self._project_name(run, current_intent)),
                )
                if not plan.queries:
                    logger.warning("Plan has no executable queries")
                    return PreparedAnswer(intent=current_intent, decision=decision,
                                          response=self._no_plan_response(current_intent))
                state = PipelineState.EXECUTE

            elif state == PipelineState.EXECUTE:
                run.attempts += 1
                results = self._phase(
                    run, f"Query Execution{suffix}",
                    lambda: self.executor.execute(
                        plan,
                        filters=run.filters,
                        skip_cache=run.options.skip_cache or not decision.can_use_cache,
                        base_cache_key=decision.cache_key,
                        deadline=run.deadline,
                    ),
                )
                state = PipelineState.EVALUATE

            elif state == PipelineState.EVALUATE:
                if fast_path:
                    evaluation = self._phase(
                        run, f"Result Evaluation{suffix}",
                        lambda: quick_evaluation(current_intent, results) or fallback_evaluation(results),
                    )
                else:
                    evaluation = self._phase(
                        run, f"Result Evaluation{suffix}",
                        lambda: evaluate_results(current_intent, results, run.completion),
                    )
                state = PipelineState.SYNTHESIZE
                if should_retry(evaluation, retries, self.max_retries):
                    strategy = generate_retry_strategy(evaluation, current_intent)
                    if strategy.is_productive:
                        logger.info(f"Retrying (attempt {retries + 1}): {strategy.reason}")
                        current_intent = strategy.adjusted_intent or current_intent
                        hints = strategy.additional_queries or None
                        state = PipelineState.REPLAN
                    else:
                        logger.info(f"Not retrying: {strategy.reason}")

            elif state == PipelineState.REPLAN:
                retries += 1
                suffix = f" (Retry {retries})"
                state = PipelineState.PLAN

        return PreparedAnswer(intent=current_intent, decision=decision, results=results, evaluation=evaluation)

    def _project_name(self, run: PipelineRun, intent: Intent) -> str:
        if intent.project_identifier:
            return intent.project_identifier
        if run.filters and run.filters.project_name:
            return run.filters.project_name
        return ADO_PROJECT

    def _load_sprint_metadata(self, run: PipelineRun, intent: Intent) -> Optional[Dict[str, Any]]:
        """Sprint list for sprint resolution in the planner. Missing metadata is not an error."""
        if not (intent.sprint_identifier or intent.scope in SPRINT_METADATA_SCOPES):
            return None

        project = self._project_name(run, intent)
        key = sanitize_cache_key(f"{CACHE_NAMESPACE}:metadata:sprints:{project}")
        sprints = self.cache.get(key)
        if sprints is None:
            try:
                sprints = self.ado.list_metadata(
                    "sprints", timeout=run.deadline.call_timeout(ADO_REQUEST_TIMEOUT_SECONDS)
                )
                self.cache.set(key, sprints, METADATA_CACHE_TTL_SECONDS)
            except Exception as e:
                logger.warning(f"Failed to fetch sprint metadata for {project}: {e}")
                return None

        logger.info(f"Loaded {len(sprints)} sprints for query planning from project: {project}")
        return {"sprints": sprints}

    def _no_plan_response(self, intent: Intent) -> OrchestratedResponse:
        return OrchestratedResponse(
            success=True,
            summary=NO_PLAN_SUMMARY,
            suggestions=default_suggestions(intent),
            metadata=ResponseMetadata(queries_executed=0, confidence=0.1),
        )

    def _validate(self, run: PipelineRun, intent: Intent, response: OrchestratedResponse,
                  work_items: List[WorkItem]) -> OrchestratedResponse:
        """Cross-check the answer against the data. A correction supersedes the summary."""
        if not response.success or not work_items or run.deadline.expired():
            return response

        check = quick_validate(response.summary, work_items)
        if not check.needs_validation:
            return response

        logger.info(f"Quick check flagged the answer: {check.reason}")
        result = self._phase(
            run, "Answer Validation",
            lambda: validate_answer(run.query, response.summary, work_items, run.completion, check.reason),
        )
        if not result.is_accurate:
            run.validation_issues.extend(result.issues or [check.reason])
            if result.corrected_response:
                response.summary = result.corrected_response
        return response

    # :::::: Streaming :::::: #

    def _stream_answer(self, run: PipelineRun, prepared: PreparedAnswer) -> Iterator[StreamEvent]:
        intent, evaluation, results = prepared.intent, prepared.evaluation, prepared.results
        work_items = list(results.work_items)
        messages = build_stream_messages(
            intent, evaluation, results, self.context_manager.get_conversation_summary(run.context)
        )
        text_parts: List[str] = []
        tool_rounds = 0
        synthesis_start = time.perf_counter()

        run.deadline.check("Response Synthesis")
        try:
            while True:
                round_text: List[str] = []
                tool_calls: List[Dict[str, str]] = []
                tools = get_stream_tools() if tool_rounds < MAX_STREAM_TOOL_ROUNDS else None

                stream = run.completion.stream_openai(
                    messages, tools=tools, model=OPENAI_SYNTHESIS_MODEL,
                    temperature=SYNTHESIS_TEMPERATURE, max_tokens=3000,
                )
                try:
                    for part in stream:
                        if part["type"] == "token":
                            round_text.append(part["content"])
                            text_parts.append(part["content"])
                            yield StreamEvent(type="token", content=part["content"])
                        elif part["type"] == "tool_call":
                            tool_calls.append(part)
                finally:
                    stream.close()

                if not tool_calls or tools is None:
                    break

                tool_rounds += 1
                messages.append({
                    "role": "assistant",
                    "content": "".join(round_text) or None,
                    "tool_calls": [
                        {"id": call["id"], "type": "function",
                         "function": {"name": call["name"], "arguments": call["arguments"]}}
                        for call in tool_calls
                    ],
                })
                for call in tool_calls:
                    tool_input = self._parse_tool_input(call["arguments"])
                    yield StreamEvent(type="tool_use", data={"tool_name": call["name"], "tool_input": tool_input})
                    content, new_items = self._run_stream_tool(run, call["name"], tool_input)
                    messages.append({"role": "tool", "tool_call_id": call["id"], "content": content})
                    known = {item.id for item in work_items}
                    work_items.extend(item for item in new_items if item.id not in known)

        except Exception as e:
            run.phases.append(PhaseMetric(phase="Response Synthesis", duration=elapsed_ms(synthesis_start),
                                          success=False, error=str(e)))
            if text_parts:
                logger.error(f"Streaming failed mid-answer: {e}", exc_info=True)
                response = self._error_response(run.query, STREAM_FAILED_MESSAGE, "stream_failed", run.start, run,
                                                run.context.conversation_id, detail=str(e))
                yield StreamEvent(type="error", content=STREAM_FAILED_MESSAGE,
                                  data={"error_code": "stream_failed", "response": response})
                return
            logger.error(f"Streaming failed before any output, using fallback answer: {e}", exc_info=True)
        else:
            run.phases.append(PhaseMetric(phase="Response Synthesis", duration=elapsed_ms(synthesis_start),
                                          success=True))

        merged = QueryResults(
            results=results.results,
            work_items=work_items,
            total_queries=results.total_queries,
            successful_queries=results.successful_queries,
            failed_queries=results.failed_queries,
            cache_hits=results.cache_hits,
            total_duration=results.total_duration,
        )
        text = "".join(text_parts).strip()
        if text:
            response = OrchestratedResponse(
                success=True,
                summary=text,
                raw_data=work_items,
                suggestions=default_suggestions(intent),
                visualizations=generate_auto_visualizations(intent, work_items),
                metadata=ResponseMetadata(
                    queries_executed=merged.total_queries,
                    confidence=evaluation.confidence,
                    cache_hit=merged.cache_hits > 0,
                    data_sources=[DATA_SOURCE],
                ),
            )
        else:
            response = build_fallback_response(intent, evaluation, merged)
            yield StreamEvent(type="token", content=response.summary)

        yield StreamEvent(type="verifying")
        original_summary = response.summary
        response = self._validate(run, intent, response, work_items)
        if response.summary != original_summary:
            yield StreamEvent(
                type="correction",
                content=response.summary,
                data={"corrected_content": response.summary, "issues": list(run.validation_issues)},
            )

        response = self._finish(run, intent, response, work_items)
        yield StreamEvent(type="done", data={"response": response})

    def _parse_tool_input(self, arguments: str) -> Dict[str, Any]:
        try:
            parsed = json.loads(arguments or "{}")
        except (json.JSONDecodeError, TypeError):
            logger.warning("Tool call arguments are not valid JSON")
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _run_stream_tool(self, run: PipelineRun, name: str, tool_input: Dict[str, Any]):
        """Execute a search_work_items call. Returns (tool message content, work items)."""
        if name != STREAM_TOOL_NAME:
            return f"Unknown tool: {name}", []

        wiql = str(tool_input.get("wiql") or "").strip()
        if not wiql:
            return "Error: the wiql argument is required.", []

        if validate_query(wiql):
            wiql = fix_query(wiql)
            remaining = validate_query(wiql)
            if remaining:
                return "Error: invalid WIQL: " + "; ".join(remaining), []

        plan = QueryPlan(
            plan_id="stream_search",
            queries=[PlannedQuery(id="search_work_items", kind=QueryKind.WIQL, query_body=wiql,
                                  purpose=str(tool_input.get("purpose") or "Follow-up search"))],
        )
        results = self._phase(
            run, "Follow-up Query Execution",
            lambda: self.executor.execute(plan, filters=run.filters, skip_cache=run.options.skip_cache,
                                          deadline=run.deadline),
        )
        failed = [r.error for r in results.results if not r.success]
        if failed:
            return f"Error: {failed[0]}", []
        return (
            f"Found {len(results.work_items)} work items:\n{format_work_items_for_prompt(results.work_items)}",
            results.work_items,
        )

    # :::::: Finishing :::::: #

    def _finish(self, run: PipelineRun, intent: Intent, response: OrchestratedResponse,
                work_items: Optional[List[WorkItem]]) -> OrchestratedResponse:
        """Stamp run metadata, record the turn and log the run."""
        response.metadata.processing_time = elapsed_ms(run.start)
        response.metadata.attempts = max(1, run.attempts)
        response.metadata.conversation_id = run.context.conversation_id
        response.metadata.validation_issues = list(run.validation_issues)
        response.metadata.phases = list(run.phases)

        self.context_manager.add_turn(run.context.conversation_id, run.query, intent, response, work_items)
        log_pipeline_run(
            run.query,
            response.summary,
            response.metadata.confidence,
            [asdict(p) for p in run.phases],
            validation_issues=run.validation_issues,
        )
        return response

    def _error_response(self, query: str, message: str, code: str, start: float,
                        run: Optional[PipelineRun], conversation_id: Optional[str],
                        detail: Optional[str] = None) -> OrchestratedResponse:
        """Error response for the user; `detail` (raw exception text) only goes to the run log."""
        phases = list(run.phases) if run else []
        phases.append(PhaseMetric(phase="Error", duration=elapsed_ms(start), success=False, error=message))
        response = OrchestratedResponse(
            success=False,
            summary=ERROR_SUMMARIES.get(code, GENERIC_ERROR_SUMMARY),
            suggestions=list(ERROR_SUGGESTIONS),
            metadata=ResponseMetadata(
                queries_executed=0,
                confidence=0.0,
                processing_time=elapsed_ms(start),
                conversation_id=run.context.conversation_id if run else conversation_id,
                phases=phases,
            ),
            error=message,
            error_code=code,
        )
        log_pipeline_run(str(query)[:MAX_QUERY_LENGTH], response.summary, 0.0,
                         [asdict(p) for p in phases], error=detail or message)
        return response
