"""Humane-endpoint alerts raised from derived observation fields."""

from dataclasses import dataclass, asdict
from typing import List, Optional

# Warn this many points before the weight-loss endpoint
WEIGHT_WARNING_MARGIN = 5.0
# Warn this many points before the CSS endpoint
CSS_WARNING_MARGIN = 2


@dataclass
class EndpointAlert:
    type: str        # 'weight_loss' or 'css_threshold'
    severity: str    # 'warning' or 'critical'
    message: str
    value: float
    threshold: float

    def to_dict(self) -> dict:
        return asdict(self)


def evaluate_css_threshold(value: int, threshold: int, operator: str) -> bool:
    if operator == '>=':
        return value >= threshold
    if operator == '>':
        return value > threshold
    if operator == '=':
        return value == threshold
    if operator == '<':
        return value < threshold
    if operator == '<=':
        return value <= threshold
    return False


def check_endpoint_alerts(weight_pct_change: Optional[float],
                          total_css: Optional[int],
                          endpoint_weight_loss_pct: float,
                          endpoint_css_threshold: Optional[int],
                          endpoint_css_operator: Optional[str]) -> List[EndpointAlert]:
    """
    Compare an observation's derived values against the experiment endpoints.

    Returns:
        List of alerts, critical before warning within each category
    """
    alerts = []

    if weight_pct_change is not None and weight_pct_change < 0:
        loss = abs(weight_pct_change)
        if loss >= endpoint_weight_loss_pct:
            alerts.append(EndpointAlert(
                type='weight_loss', severity='critical',
                message=(f"Weight loss of {loss:.1f}% exceeds endpoint threshold "
                         f"of {endpoint_weight_loss_pct}%"),
                value=loss, threshold=endpoint_weight_loss_pct,
            ))
        elif loss >= endpoint_weight_loss_pct - WEIGHT_WARNING_MARGIN:
            alerts.append(EndpointAlert(
                type='weight_loss', severity='warning',
                message=(f"Weight loss of {loss:.1f}% approaching endpoint threshold "
                         f"of {endpoint_weight_loss_pct}%"),
                value=loss, threshold=endpoint_weight_loss_pct,
            ))

    if (total_css is not None and endpoint_css_threshold is not None
            and endpoint_css_operator is not None):
        if evaluate_css_threshold(total_css, endpoint_css_threshold, endpoint_css_operator):
            alerts.append(EndpointAlert(
                type='css_threshold', severity='critical',
                message=(f"CSS score of {total_css} {endpoint_css_operator} "
                         f"{endpoint_css_threshold} meets endpoint criteria"),
                value=total_css, threshold=endpoint_css_threshold,
            ))
        elif total_css >= endpoint_css_threshold - CSS_WARNING_MARGIN:
            alerts.append(EndpointAlert(
                type='css_threshold', severity='warning',
                message=(f"CSS score of {total_css} approaching endpoint threshold "
                         f"of {endpoint_css_threshold}"),
                value=total_css, threshold=endpoint_css_threshold,
            ))

    return alerts
