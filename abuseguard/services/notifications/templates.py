from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from abuseguard.domain.types import NotificationType


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


_CAP_LABELS = {
    "db_queries_per_day": "database queries per day",
    "realtime_connections": "realtime connections",
    "storage_uploads_per_day": "storage uploads per day",
    "function_invocations_per_day": "function invocations per day",
}

_RESOLUTION_STEPS = (
    "Review recent traffic and error logs for the project.",
    "Fix or throttle the workload that caused the violation.",
    "Reply to this message or contact support to request reactivation or higher limits.",
)


def _cap_label(cap_type: Any) -> str:
    return _CAP_LABELS.get(str(cap_type), str(cap_type or "usage"))


def _render_suspended(project_name: str, data: dict[str, Any], support_contact: str) -> RenderedMessage:
    steps = "\n".join(f"  {index}. {step}" for index, step in enumerate(_RESOLUTION_STEPS, start=1))
    reason = data.get("details") or "usage exceeded the allowed limit"
    lines = [
        f"Your project {project_name} has been suspended.",
        "",
        f"Reason: {reason}",
    ]
    if data.get("cap_type"):
        lines.append(
            f"Limit: {_cap_label(data['cap_type'])} "
            f"(current {data.get('current_value')}, limit {data.get('limit_exceeded')})"
        )
    lines += ["", "To resolve this:", steps, "", f"Support: {support_contact}"]
    return RenderedMessage(subject=f"Project suspended: {project_name}", body="\n".join(lines))


def _render_unsuspended(project_name: str, data: dict[str, Any], support_contact: str) -> RenderedMessage:
    reason = data.get("reason") or "the suspension was resolved"
    body = (
        f"Your project {project_name} is active again.\n\n"
        f"Reason: {reason}\n\n"
        f"Questions? Contact {support_contact}."
    )
    return RenderedMessage(subject=f"Project reactivated: {project_name}", body=body)


def _render_quota_warning(project_name: str, data: dict[str, Any], support_contact: str) -> RenderedMessage:
    pct = int(round(float(data.get("usage_pct", 0))))
    label = _cap_label(data.get("cap_type"))
    body = (
        f"Project {project_name} has used {pct}% of its {label} limit "
        f"({data.get('usage')} of {data.get('limit')}).\n\n"
        "The project will be suspended if it exceeds the limit.\n"
        f"To raise the limit, contact {support_contact}."
    )
    return RenderedMessage(subject=f"Quota warning ({pct}%): {project_name}", body=body)


def _render_spike(project_name: str, data: dict[str, Any], support_contact: str) -> RenderedMessage:
    body = (
        f"Unusual {data.get('metric_type') or 'usage'} activity was detected on project {project_name}.\n\n"
        f"Severity: {data.get('severity')}\n"
        f"Current window: {data.get('current_value')} (baseline {data.get('baseline_value')})\n\n"
        f"If this is expected, no action is needed. Otherwise contact {support_contact}."
    )
    return RenderedMessage(subject=f"Usage spike detected: {project_name}", body=body)


def _render_error_rate(project_name: str, data: dict[str, Any], support_contact: str) -> RenderedMessage:
    body = (
        f"A high error rate was detected on project {project_name}.\n\n"
        f"Severity: {data.get('severity')}\n"
        f"Error rate: {data.get('current_value')}% (threshold {data.get('threshold')}%)\n\n"
        f"Check recent deployments and logs. Contact {support_contact} if you need help."
    )
    return RenderedMessage(subject=f"High error rate detected: {project_name}", body=body)


_RENDERERS: dict[str, Callable[[str, dict[str, Any], str], RenderedMessage]] = {
    NotificationType.PROJECT_SUSPENDED.value: _render_suspended,
    NotificationType.PROJECT_UNSUSPENDED.value: _render_unsuspended,
    NotificationType.QUOTA_WARNING.value: _render_quota_warning,
    NotificationType.USAGE_SPIKE_DETECTED.value: _render_spike,
    NotificationType.ERROR_RATE_DETECTED.value: _render_error_rate,
}


def render_notification(
    notification_type: str,
    *,
    project_name: str,
    data: dict[str, Any],
    support_contact: str,
) -> RenderedMessage:
    renderer = _RENDERERS.get(str(notification_type))
    if renderer is None:
        raise ValueError(f"no template for notification type {notification_type}")
    return renderer(project_name, data, support_contact)
