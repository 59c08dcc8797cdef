# ------------------------------
# Module: errors.py
# Description: Typed errors raised by the services
# ------------------------------


class PipelineError(Exception):
    """Base class for errors that stop a pipeline run. Never retried."""
    code = "pipeline_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(PipelineError):
    code = "invalid_input"


class ConversationNotFoundError(PipelineError):
    code = "conversation_not_found"

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class ConversationOwnershipError(PipelineError):
    code = "ownership_mismatch"

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} belongs to another user")
        self.conversation_id = conversation_id


class PipelineTimeoutError(PipelineError):
    code = "timeout"


class AdoApiError(Exception):
    """Raised by the ADO client when the REST API answers with an error."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code
