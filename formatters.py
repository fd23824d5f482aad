"""Plain text, HTML and SMS renderings of an alert."""
import html
import json
from typing import Dict, List, Optional

from models import Alert, AlertSeverity, AlertType, LowStockItem

ALERT_TITLES = {
    AlertType.LOW_STOCK: "Low Stock Alert",
    AlertType.OUT_OF_STOCK: "Out of Stock",
    AlertType.SENSOR_FAILURE: "Sensor Failure",
    AlertType.TEMPERATURE_ALERT: "Temperature Alert",
    AlertType.WEIGHT_MISMATCH: "Weight Anomaly",
    AlertType.LOW_BATTERY: "Low Battery",
}

SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "#dc2626",
    AlertSeverity.WARNING: "#f59e0b",
    AlertSeverity.INFO: "#3b82f6",
}

SMS_PREFIX = {
    AlertSeverity.CRITICAL: "CRITICAL",
    AlertSeverity.WARNING: "WARNING",
    AlertSeverity.INFO: "INFO",
}

SMS_MAX_LENGTH = 320


def alert_title(alert_type: AlertType) -> str:
    return ALERT_TITLES.get(alert_type, "System Alert")


def _subject_lines(alert: Alert, subject_label: Optional[str]):
    lines = [
        ("Type", alert.type.value.replace("_", " ")),
        ("Warehouse", alert.warehouse_id),
    ]
    if subject_label:
        lines.append(("Subject", subject_label))
    if alert.shelf_id:
        lines.append(("Shelf", alert.shelf_id))
    if alert.device_id:
        lines.append(("Device", alert.device_id))
    if alert.product_id:
        lines.append(("Product", alert.product_id))
    lines.append(("Time", alert.created_at or ""))
    return lines


def format_alert_email(alert: Alert, subject_label: Optional[str] = None) -> Dict[str, str]:
    """
    Render an alert email.

    Returns:
        Dict with ``subject``, ``text`` and ``html`` keys
    """
    subject = f"[{alert.severity.value.upper()}] {alert.message}"
    lines = _subject_lines(alert, subject_label)
    details = json.dumps(alert.details, indent=2, sort_keys=True, default=str) if alert.details else ""

    text_parts = [alert_title(alert.type), alert.message, ""]
    text_parts += [f"{label}: {value}" for label, value in lines]
    if details:
        text_parts += ["", "Additional details:", details]
    text_parts += ["", "Smart Warehouse IoT System", "This is an automated notification. Please do not reply."]

    color = SEVERITY_COLORS.get(alert.severity, "#3b82f6")
    rows = "".join(
        f"<p><strong>{html.escape(label)}:</strong> {html.escape(str(value))}</p>" for label, value in lines
    )
    details_block = (
        f'<div class="alert-details"><h3>Additional Details:</h3><pre>{html.escape(details)}</pre></div>'
        if details else ""
    )
    body_html = (
        "<!DOCTYPE html><html><body>"
        '<div style="max-width:600px;margin:0 auto;padding:20px;font-family:Arial,sans-serif;">'
        f'<div style="background-color:{color};color:white;padding:20px;text-align:center;">'
        f"<h1>{html.escape(alert_title(alert.type))}</h1>"
        f'<p style="margin:0;">{alert.severity.value.upper()}</p></div>'
        f'<div style="background-color:#f9fafb;padding:20px;"><h2>{html.escape(alert.message)}</h2>'
        f'<div class="alert-details">{rows}</div>{details_block}</div>'
        '<div style="text-align:center;padding:20px;color:#6b7280;font-size:12px;">'
        "<p>Smart Warehouse IoT System</p>"
        "<p>This is an automated notification. Please do not reply to this email.</p>"
        "</div></div></body></html>"
    )

    return {"subject": subject, "text": "\n".join(text_parts), "html": body_html}


def format_alert_sms(alert: Alert, subject_label: Optional[str] = None) -> str:
    """Short SMS body, truncated to two segments."""
    parts = [f"{SMS_PREFIX.get(alert.severity, 'ALERT')} ALERT: {alert.message}", f"Warehouse: {alert.warehouse_id}"]
    if subject_label:
        parts.append(subject_label)
    message = " | ".join(parts)
    if len(message) > SMS_MAX_LENGTH:
        message = message[: SMS_MAX_LENGTH - 3] + "..."
    return message


def format_low_stock_digest(items: List[LowStockItem], warehouse_name: str) -> Dict[str, str]:
    """
    Render the daily low stock email for one warehouse.

    Args:
        items: Products at or below their minimum stock level
        warehouse_name: Display name of the warehouse

    Returns:
        Dict with ``subject``, ``text`` and ``html`` keys
    """
    subject = f"Low Stock Alert - {len(items)} items need attention"
    summary = f"{len(items)} products are below minimum stock levels and need to be restocked."

    text_parts = [f"Low Stock Alert: {warehouse_name}", "", summary, ""]
    text_parts += [
        f"- {item.name} ({item.sku}): current {item.current_stock}, min {item.min_stock}, warehouse {item.warehouse}"
        for item in items
    ]
    text_parts += ["", "Smart Warehouse IoT System", "This is an automated notification. Please do not reply."]

    rows = "".join(
        '<tr style="border-bottom:1px solid #e0e0e0;">'
        f'<td style="padding:12px;">{html.escape(item.name)}</td>'
        f'<td style="padding:12px;font-family:monospace;">{html.escape(item.sku)}</td>'
        f'<td style="padding:12px;text-align:center;color:#e53e3e;font-weight:bold;">{item.current_stock}</td>'
        f'<td style="padding:12px;text-align:center;">{item.min_stock}</td>'
        f'<td style="padding:12px;">{html.escape(item.warehouse)}</td>'
        "</tr>"
        for item in items
    )
    body_html = (
        "<!DOCTYPE html><html><body>"
        '<div style="max-width:700px;margin:0 auto;padding:20px;font-family:Arial,sans-serif;">'
        f'<div style="background-color:{SEVERITY_COLORS[AlertSeverity.WARNING]};color:white;padding:20px;text-align:center;">'
        f'<h1>Low Stock Alert</h1><p style="margin:0;">{html.escape(warehouse_name)}</p></div>'
        f'<div style="padding:20px;"><p><strong>{len(items)}</strong> products are below minimum stock levels '
        "and need to be restocked.</p>"
        '<table style="width:100%;border-collapse:collapse;"><thead><tr>'
        "<th>Product Name</th><th>SKU</th><th>Current Stock</th><th>Min Stock</th><th>Warehouse</th>"
        f"</tr></thead><tbody>{rows}</tbody></table></div>"
        '<div style="text-align:center;padding:20px;color:#6b7280;font-size:12px;">'
        "<p>Smart Warehouse IoT System</p>"
        "<p>This is an automated notification. Please do not reply to this email.</p>"
        "</div></div></body></html>"
    )

    return {"subject": subject, "text": "\n".join(text_parts), "html": body_html}
