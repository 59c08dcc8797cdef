# ------------------------------
# Module: constants.py
# Description: Constants for the services
# ------------------------------

import os
from pathlib import Path
from dotenv import load_dotenv

# Make sure values from the project's .env are visible before reading them
load_dotenv(Path(__file__).parent.parent / '.env')

# :::::: Provider Related :::::: #

CACHE_PROVIDER = os.getenv("CACHE_PROVIDER", "redis")
ADO_PROVIDER = "rest"

# :::::: Azure DevOps Related :::::: #

ADO_PROJECT = os.getenv("ADO_PROJECT", "")
ADO_BASE_URL = os.getenv("ADO_BASE_URL", "https://dev.azure.com")
ADO_API_VERSION = "7.1"

# The work items endpoint accepts at most 200 ids per call
ADO_MAX_IDS_PER_REQUEST = 200

# Hard cap on ids pulled from a single WIQL result
ADO_MAX_RESULTS = 200

# Fields requested for every work item fetch
ADO_WORK_ITEM_FIELDS = [
    "System.Id",
    "System.Title",
    "System.WorkItemType",
    "System.State",
    "System.AssignedTo",
    "System.CreatedBy",
    "System.CreatedDate",
    "System.ChangedDate",
    "System.Tags",
    "System.IterationPath",
    "System.AreaPath",
    "System.TeamProject",
    "Microsoft.VSTS.Common.Priority",
    "Microsoft.VSTS.Scheduling.StoryPoints",
]

# Metadata kinds the client knows how to list
ADO_METADATA_KINDS = ["projects", "teams", "users", "states", "types", "tags", "sprints"]

# :::::: OpenAI Related :::::: #

OPENAI_INTENT_MODEL = os.getenv("OPENAI_INTENT_MODEL", "gpt-4o-mini")
OPENAI_DECISION_MODEL = os.getenv("OPENAI_DECISION_MODEL", "gpt-4o-mini")
OPENAI_PLANNING_MODEL = os.getenv("OPENAI_PLANNING_MODEL", "gpt-4o")
OPENAI_EVALUATION_MODEL = os.getenv("OPENAI_EVALUATION_MODEL", "gpt-4o")
OPENAI_SYNTHESIS_MODEL = os.getenv("OPENAI_SYNTHESIS_MODEL", "gpt-4o")
OPENAI_VALIDATION_MODEL = os.getenv("OPENAI_VALIDATION_MODEL", "gpt-4o")

# Temperatures per stage, near zero where the output must be repeatable
INTENT_TEMPERATURE = 0.3
DECISION_TEMPERATURE = 0.2
PLANNING_TEMPERATURE = 0.0
EVALUATION_TEMPERATURE = 0.3
SYNTHESIS_TEMPERATURE = 0.4
GENERAL_ANSWER_TEMPERATURE = 0.5
VALIDATION_TEMPERATURE = 0.0

OPENAI_RETRIES = 3
OPENAI_BACKOFF_SECONDS = 2.0

# :::::: Cache Related :::::: #

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_SOCKET_TIMEOUT_SECONDS = 2.0

CACHE_NAMESPACE = "ado"
QUERY_CACHE_TTL_SECONDS = int(os.getenv("QUERY_CACHE_TTL_SECONDS", "300"))     # Work items change often, keep it in minutes
METADATA_CACHE_TTL_SECONDS = int(os.getenv("METADATA_CACHE_TTL_SECONDS", "1800"))

# :::::: Conversation Context Related :::::: #

CONTEXT_MAX_TURNS = 10
CONTEXT_TTL_SECONDS = int(os.getenv("CONTEXT_TTL_SECONDS", "3600"))
CONTEXT_RECENT_TURNS = 7
CONTEXT_MAX_WORK_ITEMS_PER_TURN = 50
SIMILAR_QUERY_WINDOW_MINUTES = 5

# :::::: Pipeline Related :::::: #

PIPELINE_TIMEOUT_MS = int(os.getenv("PIPELINE_TIMEOUT_MS", "30000"))
OPENAI_REQUEST_TIMEOUT_SECONDS = 20.0        # Always shorter than the pipeline budget
ADO_REQUEST_TIMEOUT_SECONDS = 15.0
MAX_RETRY_ATTEMPTS = 2
MAX_CONCURRENT_QUERIES = 4
MAX_QUERY_LENGTH = 2000
MAX_VISUALIZATIONS = 3
MAX_SUGGESTIONS = 4

# Max work items rendered into an LLM prompt
PROMPT_MAX_WORK_ITEMS = 50

DEBUG_MODE = os.getenv("DEBUG_MODE", "false").lower() == "true"
