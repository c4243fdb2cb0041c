"""Visualization endpoints - Kaplan-Meier survival curves."""

import logging
from typing import List

import plotly.graph_objects as go
from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from ...survival import SurvivalCurve, survival_by_group
from ...validators import ValidationError
from ..dependencies import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plots", tags=["visualizations"])

DEFAULT_GROUP_COLORS = ['#1f77b4', '#d62728', '#2ca02c', '#ff7f0e', '#9467bd', '#8c564b']


def _parse_ids(experiment_ids: str) -> List[int]:
    try:
        ids = [int(part) for part in experiment_ids.split(',') if part.strip()]
    except ValueError:
        raise ValidationError('experiment_ids', experiment_ids,
                              "Expected comma-separated experiment ids")
    if not ids:
        raise ValidationError('experiment_ids', experiment_ids, "At least one experiment id is required")
    return ids


@router.get("/survival")
def survival_data(
    experiment_ids: str = Query(..., description="Comma-separated experiment ids"),
    session: Session = Depends(get_db_session),
):
    """Kaplan-Meier curves per treatment group, as JSON."""
    curves = survival_by_group(session, _parse_ids(experiment_ids))
    return {"success": True, "data": [c.to_dict() for c in curves]}


@router.get("/survival/render")
def render_survival(
    experiment_ids: str = Query(..., description="Comma-separated experiment ids"),
    session: Session = Depends(get_db_session),
):
    """Render survival curves as interactive Plotly HTML."""
    ids = _parse_ids(experiment_ids)
    curves = survival_by_group(session, ids)
    return HTMLResponse(_render_survival_plotly(curves, ids))


def _render_survival_plotly(curves: List[SurvivalCurve], experiment_ids: List[int]) -> str:
    """Render survival curves as a Plotly step chart div."""
    fig = go.Figure()

    if not curves:
        # Empty state
        fig.add_annotation(
            text=f"No subjects found for experiment(s) {', '.join(map(str, experiment_ids))}",
            xref="paper", yref="paper", x=0.5, y=0.5,
            showarrow=False, font=dict(size=14, color="#757575"),
        )
        return fig.to_html(include_plotlyjs='cdn', full_html=False, div_id='survival-plot')

    for i, curve in enumerate(curves):
        color = curve.color or DEFAULT_GROUP_COLORS[i % len(DEFAULT_GROUP_COLORS)]
        fig.add_trace(go.Scatter(
            x=[p.day for p in curve.data],
            y=[p.survival_pct for p in curve.data],
            customdata=[[p.at_risk, p.events] for p in curve.data],
            mode='lines+markers',
            line=dict(color=color, width=2.5, shape='hv'),
            marker=dict(size=5),
            name=f"{curve.treatment_group_name} (n={curve.total_subjects}, deaths={curve.total_events})",
            hovertemplate=(f"{curve.treatment_group_name}<br>Day %{{x}}<br>Survival %{{y:.1f}}%"
                           "<br>At risk %{customdata[0]}<br>Deaths %{customdata[1]}<extra></extra>"),
        ))

    fig.update_layout(
        title=dict(text="Survival by Treatment Group", font=dict(size=16)),
        xaxis=dict(title="Day of Study", rangemode="tozero"),
        yaxis=dict(title="Survival (%)", range=[0, 105]),
        legend=dict(
            yanchor="bottom", y=0.01,
            xanchor="left", x=0.01,
            bgcolor="rgba(255,255,255,0.9)",
            bordercolor="#E0E0E0",
            borderwidth=1,
        ),
        template="plotly_white",
        height=500,
        margin=dict(l=60, r=20, t=50, b=50),
    )

    return fig.to_html(include_plotlyjs='cdn', full_html=False, div_id='survival-plot')
