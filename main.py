# ------------------------------------------------------------------
# Project's Entry Point
# Run: python main.py "show me my active bugs" --user me@example.com
#      python main.py "/sprint current" --stream
# Note: needs ADO_ORGANIZATION, ADO_PROJECT, ADO_PAT and OPENAI_API_KEY (see .env)
# ------------------------------------------------------------------

import argparse
import logging
from services.ai_workflow.ado_orchestrator import AdoOrchestrator
from services.ai_workflow.data_model import GlobalFilters, ProcessOptions
from services.constants import PIPELINE_TIMEOUT_MS

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ask a question about your Azure DevOps work items.")
    parser.add_argument("query", help="Question or slash command, e.g. '/assigned_to Jane'")
    parser.add_argument("--user", default="cli-user", help="User id owning the conversation")
    parser.add_argument("--conversation", default=None, help="Conversation id to continue")
    parser.add_argument("--stream", action="store_true", help="Stream the answer token by token")
    parser.add_argument("--skip-cache", action="store_true", help="Ignore cached query results")
    parser.add_argument("--ignore-closed", action="store_true", help="Hide closed and removed items")
    parser.add_argument("--timeout-ms", type=int, default=PIPELINE_TIMEOUT_MS)
    return parser.parse_args()


def print_response(response) -> None:
    print("\n" + response.summary)
    if response.error:
        print(f"\n[error: {response.error_code}] {response.error}")
    if response.visualizations:
        print("\nCharts: " + ", ".join(v.title for v in response.visualizations))
    if response.suggestions:
        print("\nTry next:")
        for suggestion in response.suggestions:
            print(f"  - {suggestion}")
    print(f"\n(conversation {response.metadata.conversation_id}, "
          f"{response.metadata.queries_executed} queries, "
          f"confidence {response.metadata.confidence:.2f}, "
          f"{response.metadata.processing_time:.0f} ms)")


if __name__ == "__main__":

    args = parse_args()
    orchestrator = AdoOrchestrator()
    filters = GlobalFilters(ignore_closed=True, current_user=args.user) if args.ignore_closed else None
    options = ProcessOptions(skip_cache=args.skip_cache, timeout_ms=args.timeout_ms)

    if not args.stream:
        print_response(orchestrator.process(args.query, args.user, args.conversation, filters, options))
    else:
        for event in orchestrator.process_stream(args.query, args.user, args.conversation, filters, options):
            if event.type == "token":
                print(event.content, end="", flush=True)
            elif event.type == "tool_use":
                print(f"\n[searching: {event.data.get('tool_input', {}).get('wiql', '')}]\n")
            elif event.type == "verifying":
                print("\n[verifying answer...]")
            elif event.type == "correction":
                print("\n[corrected answer]\n" + event.content)
            elif event.type in ("done", "error"):
                print_response(event.data["response"])
