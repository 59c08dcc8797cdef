import logging
from typing import Dict, List, Any, Optional
from datetime import datetime

# Configure logging
logger = logging.getLogger(__name__)

# In-memory storage for pipeline runs
_pipeline_logs = []

def log_pipeline_run(
    query: str,
    summary: str,
    confidence: float,
    phases: List[Dict[str, Any]],
    validation_issues: Optional[List[str]] = None,
    error: Optional[str] = None,
) -> None:
    """
    Log one pipeline run and its phase metrics to in-memory storage.

    Args:
        query: The user's query
        summary: The answer returned to the user
        confidence: Confidence score of the answer
        phases: Per-phase metrics (phase, duration, success, error)
        validation_issues: Discrepancies found by the answer validator
        error: Error message when the run failed
    """
    try:
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "query": query,
            "summary": summary,
            "confidence": confidence,
            "phases": phases,
            "validation_issues": validation_issues or [],
            "error": error,
        }
        _pipeline_logs.append(log_entry)
        logger.info(f"Logged pipeline run: {query[:50]}... -> {summary[:50]}...")
    except Exception as e:
        logger.error(f"Error logging pipeline run: {str(e)}")

def get_all_logs() -> List[Dict]:
    """Get all logs, sorted by timestamp (newest first)."""
    return sorted(_pipeline_logs, key=lambda x: x["timestamp"], reverse=True)

def get_latest_log() -> Optional[Dict]:
    """Get the most recent log entry."""
    return _pipeline_logs[-1] if _pipeline_logs else None

def clear_logs() -> None:
    """Clear all logs from memory."""
    _pipeline_logs.clear()
    logger.info("Cleared all pipeline logs")
