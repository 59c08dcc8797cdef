"""
visualization_utils.py
Build chart data and plotly figures from work items.
"""

import logging
from typing import List, Dict, Any, Optional
import pandas as pd
import plotly.graph_objects as go
from services.ai_workflow.data_model import (
    Intent, IntentType, IntentScope, WorkItem, Visualization, VisualizationType
)
from services.constants import MAX_VISUALIZATIONS

logger = logging.getLogger(__name__)

DONE_STATES = {"Closed", "Resolved", "Done", "Completed"}


def work_items_to_df(work_items: List[WorkItem]) -> pd.DataFrame:
    return pd.DataFrame([item.to_dict() for item in work_items])


def count_by(df: pd.DataFrame, column: str) -> Dict[str, int]:
    """Value counts of a column as {str(value): count}, most frequent first."""
    if df.empty or column not in df.columns:
        return {}
    counts = df[column].dropna().astype(str).value_counts()
    return {str(k): int(v) for k, v in counts.items()}


def _pie_figure(data: Dict[str, int], title: str) -> Dict[str, Any]:
    fig = go.Figure(data=[go.Pie(labels=list(data.keys()), values=list(data.values()))])
    fig.update_layout(title=title)
    return fig.to_dict()


def _bar_figure(data: Dict[str, Any], title: str) -> Dict[str, Any]:
    fig = go.Figure(data=[go.Bar(x=list(data.keys()), y=list(data.values()))])
    fig.update_layout(title=title)
    return fig.to_dict()


def build_visualization(viz_type: VisualizationType, work_items: List[WorkItem]) -> Optional[Visualization]:
    """
    Compute one visualization from raw work items. Returns None when the data
    can't support it. Velocity needs several sprints of history, so it's never built.
    """
    df = work_items_to_df(work_items)
    if df.empty:
        return None

    if viz_type == VisualizationType.STATUS_PIE:
        data = count_by(df, "state")
        if not data:
            return None
        title = "Work Item Status Distribution"
        return Visualization(type=viz_type, title=title, data=data, figure=_pie_figure(data, title))

    if viz_type == VisualizationType.PRIORITY_DISTRIBUTION:
        data = count_by(df, "priority")
        if len(data) <= 1:
            return None
        data = {f"P{k}": v for k, v in sorted(data.items())}
        title = "Priority Distribution"
        return Visualization(type=viz_type, title=title, data=data, figure=_bar_figure(data, title))

    if viz_type == VisualizationType.BURNDOWN:
        total = len(df)
        completed = int(df["state"].isin(DONE_STATES).sum())
        data = {
            "completed": completed,
            "remaining": total - completed,
            "total": total,
            "percentage": round(completed / total * 100),
        }
        title = "Sprint Progress"
        figure = _bar_figure({"Completed": completed, "Remaining": total - completed}, title)
        return Visualization(type=viz_type, title=title, data=data, figure=figure)

    if viz_type == VisualizationType.TEAM_COMPARISON:
        data = count_by(df.fillna({"assigned_to": "Unassigned"}), "assigned_to")
        if len(data) <= 1:
            return None
        title = "Work Items per Assignee"
        return Visualization(type=viz_type, title=title, data=data, figure=_bar_figure(data, title))

    if viz_type == VisualizationType.TIMELINE:
        if "created_date" not in df.columns:
            return None
        created = pd.to_datetime(df["created_date"], errors="coerce", utc=True).dropna()
        if created.empty:
            return None
        per_day = created.dt.strftime("%Y-%m-%d").value_counts().sort_index()
        data = {str(k): int(v) for k, v in per_day.items()}
        title = "Work Items Created per Day"
        return Visualization(type=viz_type, title=title, data=data, figure=_bar_figure(data, title))

    if viz_type == VisualizationType.BLOCKERS:
        blocked = [
            item for item in work_items
            if item.state.lower() == "blocked" or any(t.lower() == "blocked" for t in item.tags)
        ]
        if not blocked:
            return None
        data = {f"#{item.id}": item.title for item in blocked}
        return Visualization(type=viz_type, title="Blocked Work Items", data=data)

    return None


def generate_auto_visualizations(intent: Intent, work_items: List[WorkItem]) -> List[Visualization]:
    """Status (always), priority (when it varies) and sprint progress for sprint analysis."""
    if not work_items:
        return []

    wanted = [VisualizationType.STATUS_PIE, VisualizationType.PRIORITY_DISTRIBUTION]
    if intent.scope == IntentScope.SPRINT and intent.type == IntentType.ANALYSIS:
        wanted.append(VisualizationType.BURNDOWN)

    visualizations = []
    for viz_type in wanted:
        viz = build_visualization(viz_type, work_items)
        if viz is not None:
            visualizations.append(viz)
    return visualizations[:MAX_VISUALIZATIONS]
