from __future__ import annotations

import logging
import re
import smtplib
from email.message import EmailMessage
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from novapulse.core.config import settings
from novapulse.core.queue import get_all_stats
from novapulse.core.time import utcnow
from novapulse.models.jobs import Job
from novapulse.models.webhook_delivery_logs import WebhookDeliveryLog
from novapulse.schemas.jobs import EmailJobPayload, ReportJobPayload, WorkflowJobPayload


logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")


def _lookup(data: Any, path: str) -> Any:
    value = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def interpolate(template: str, data: dict[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        value = _lookup(data, match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template or "")


# Email


def _build_message(payload: EmailJobPayload) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.SMTP_FROM
    message["To"] = ", ".join(payload.recipients())
    message["Subject"] = interpolate(payload.subject, payload.data)
    text = payload.text or interpolate(payload.template or "", payload.data)
    message.set_content(text or "")
    if payload.html:
        message.add_alternative(interpolate(payload.html, payload.data), subtype="html")
    return message


def handle_email(_db: Session, job: Job) -> dict[str, Any]:
    payload = EmailJobPayload.model_validate(job.payload_json or {})
    message = _build_message(payload)
    recipients = payload.recipients()
    if not settings.SMTP_HOST:
        logger.info(
            "Email stub: job_id=%s recipients=%s subject=%s",
            job.id,
            recipients,
            message["Subject"],
        )
        return {"sent": False, "recipients": recipients}

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
        if settings.SMTP_USE_TLS:
            smtp.starttls()
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD or "")
        smtp.send_message(message)
    logger.info("Email sent: job_id=%s recipients=%s", job.id, recipients)
    return {"sent": True, "recipients": recipients}


# Workflow


def _compare(value: Any, operator: str, expected: Any) -> bool:
    value_str = "" if value is None else str(value)
    expected_str = "" if expected is None else str(expected)
    if operator == "equals":
        return value_str == expected_str
    if operator == "not_equals":
        return value_str != expected_str
    if operator == "contains":
        return expected_str.lower() in value_str.lower()
    if operator == "not_contains":
        return expected_str.lower() not in value_str.lower()
    if operator == "starts_with":
        return value_str.lower().startswith(expected_str.lower())
    if operator == "ends_with":
        return value_str.lower().endswith(expected_str.lower())
    if operator in {"greater_than", "less_than"}:
        try:
            left, right = float(value), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "greater_than" else left < right
    return False


def _conditions_pass(connection: dict[str, Any], data: dict[str, Any]) -> bool:
    conditions = connection.get("conditions") or []
    if not conditions:
        return True
    results = [
        _compare(_lookup(data, str(item.get("field", ""))), item.get("operator", ""), item.get("value"))
        for item in conditions
        if isinstance(item, dict)
    ]
    if str(connection.get("logic", "AND")).upper() == "OR":
        return any(results)
    return all(results)


def _run_action(node: dict[str, Any], data: dict[str, Any]) -> dict[str, Any]:
    action = node.get("actionType") or node.get("action_type")
    config = node.get("config") or {}
    if action == "send_email":
        return {"emailSent": True, "recipient": interpolate(config.get("recipient", ""), data)}
    if action == "send_notification":
        return {"notificationSent": True, "message": interpolate(config.get("message", ""), data)}
    if action == "log_event":
        message = interpolate(config.get("message", ""), data)
        logger.info("Workflow log_event: node_id=%s message=%s", node.get("id"), message)
        return {"eventLogged": True, "message": message}
    if action == "call_webhook":
        return {"webhookCalled": True, "url": config.get("url")}
    if action == "update_record":
        return {"recordUpdated": True, "table": config.get("table")}
    return {"actionCompleted": True}


def execute_workflow(definition: dict[str, Any], trigger_data: dict[str, Any]) -> list[dict[str, Any]]:
    """Walk the graph from its trigger node and return the executed steps."""
    nodes = {node["id"]: node for node in definition.get("nodes", []) if isinstance(node, dict) and "id" in node}
    connections = [c for c in definition.get("connections", []) if isinstance(c, dict)]
    trigger = next((node for node in nodes.values() if node.get("type") == "trigger"), None)
    if trigger is None:
        raise ValueError("No trigger node found")

    steps: list[dict[str, Any]] = []
    visited: set[str] = set()
    pending: list[tuple[dict[str, Any], dict[str, Any]]] = [(trigger, dict(trigger_data))]
    while pending:
        node, data = pending.pop(0)
        if node["id"] in visited:
            continue
        visited.add(node["id"])
        if node.get("type") == "trigger":
            output = {**data, "triggeredBy": node.get("triggerType")}
        else:
            output = _run_action(node, data)
        steps.append({"node_id": node["id"], "status": "success", "output": output})

        for connection in connections:
            if connection.get("source") != node["id"]:
                continue
            target = nodes.get(connection.get("target"))
            if target is None:
                continue
            if _conditions_pass(connection, data):
                pending.append((target, {**data, **output}))
            else:
                steps.append({"node_id": target["id"], "status": "skipped"})
    return steps


WorkflowLoader = Callable[[Session, str], dict[str, Any] | None]

_workflow_loader: WorkflowLoader | None = None


def set_workflow_loader(loader: WorkflowLoader | None) -> None:
    global _workflow_loader
    _workflow_loader = loader


def handle_workflow(db: Session, job: Job) -> dict[str, Any]:
    payload = WorkflowJobPayload.model_validate(job.payload_json or {})
    definition = payload.definition
    if definition is None and _workflow_loader is not None:
        definition = _workflow_loader(db, payload.workflow_id)
    if not definition:
        raise ValueError(f"Workflow {payload.workflow_id} has no definition")
    steps = execute_workflow(definition, payload.trigger_data)
    logger.info(
        "Workflow executed: job_id=%s workflow_id=%s steps=%s",
        job.id,
        payload.workflow_id,
        len(steps),
    )
    return {"workflow_id": payload.workflow_id, "steps": steps, "executed_at": utcnow().isoformat()}


# Report


def _queue_overview_report(db: Session, _payload: ReportJobPayload) -> dict[str, Any]:
    return {name: item.as_dict() for name, item in get_all_stats(db).items()}


def _webhook_deliveries_report(db: Session, payload: ReportJobPayload) -> dict[str, Any]:
    rows = (
        db.query(WebhookDeliveryLog.event, WebhookDeliveryLog.status, func.count(WebhookDeliveryLog.id))
        .filter(WebhookDeliveryLog.company_id == payload.company_id)
        .group_by(WebhookDeliveryLog.event, WebhookDeliveryLog.status)
        .all()
    )
    summary: dict[str, dict[str, int]] = {}
    for event, status, count in rows:
        summary.setdefault(event, {"success": 0, "failed": 0})[status] = int(count)
    return summary


REPORT_BUILDERS: dict[str, Callable[[Session, ReportJobPayload], dict[str, Any]]] = {
    "queue_overview": _queue_overview_report,
    "webhook_deliveries": _webhook_deliveries_report,
}


def handle_report(db: Session, job: Job) -> dict[str, Any]:
    payload = ReportJobPayload.model_validate(job.payload_json or {})
    builder = REPORT_BUILDERS.get(payload.report_type)
    if builder is None:
        raise ValueError(f"Unsupported report type: {payload.report_type}")
    data = builder(db, payload)
    logger.info(
        "Report generated: job_id=%s report_type=%s company_id=%s",
        job.id,
        payload.report_type,
        payload.company_id,
    )
    return {
        "report_type": payload.report_type,
        "company_id": payload.company_id,
        "generated_at": utcnow().isoformat(),
        "data": data,
    }
