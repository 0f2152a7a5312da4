"""``connector_message_tool``: proactive outbound messages through running connectors."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from .base import ToolExecutor, make_tool_def

TOOL_NAME = "connector_message_tool"

CONNECTOR_MESSAGE_TOOL_DEF = make_tool_def(
    TOOL_NAME,
    "Send proactive outbound messages through running connectors (for example WhatsApp "
    "status updates). Supports listing running connectors/targets and sending text plus "
    "an optional image URL.",
    {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ["list_running", "list_targets", "send"],
                "description": "Connector messaging action.",
            },
            "connector_id": {
                "type": "string",
                "description": "Optional connector id. Defaults to the first running connector "
                "(or the first for the selected platform).",
            },
            "platform": {
                "type": "string",
                "description": "Optional platform filter (whatsapp, telegram, slack).",
            },
            "to": {
                "type": "string",
                "description": "Target channel id / recipient. For WhatsApp, phone number or full JID.",
            },
            "message": {"type": "string", "description": "Message text (required for send)."},
            "image_url": {"type": "string", "description": "Optional public image URL to attach."},
        },
        "required": ["action"],
    },
)


def normalize_whatsapp_target(value: str) -> str:
    """Phone number (any punctuation, optional +, UK local 07...) to a WhatsApp JID."""
    raw = value.strip()
    if not raw or "@" in raw:
        return raw
    cleaned = re.sub(r"[^\d+]", "", raw).lstrip("+")
    if cleaned.startswith("0") and len(cleaned) >= 10:
        cleaned = "44" + cleaned[1:]
    cleaned = re.sub(r"\D", "", cleaned)
    return f"{cleaned}@s.whatsapp.net" if cleaned else raw


def make_connector_message_tool(connectors: Any) -> ToolExecutor:
    """Bind the tool to a ``ConnectorManager``."""

    async def connector_message_tool(
        action: str,
        connector_id: Optional[str] = None,
        platform: Optional[str] = None,
        to: Optional[str] = None,
        message: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> str:
        running = connectors.list_running(platform or None)
        if action in ("list_running", "list_targets"):
            return json.dumps(running)
        if action != "send":
            return "Unknown action. Use list_running, list_targets, or send."

        text = (message or "").strip()
        image = (image_url or "").strip() or None
        if not text and not image:
            return "Error: message or image_url is required for send action."
        if not running:
            suffix = f' for platform "{platform}"' if platform else ""
            return f"Error: no running connectors{suffix}."

        if connector_id:
            selected = next((c for c in running if c["connector_id"] == connector_id), None)
        else:
            selected = running[0]
        if selected is None:
            return f"Error: running connector not found: {connector_id}"
        connector = connectors.get_connector(selected["connector_id"])
        if connector is None:
            return f"Error: connector not found: {selected['connector_id']}"

        channel_id = (to or "").strip()
        if not channel_id:
            channel_id = (connector.config.get("outbound_jid") or "").strip()
        if not channel_id:
            channel_id = connectors.recent_channel(connector.id) or ""
        if not channel_id:
            allowed = [s.strip() for s in (connector.config.get("allowed_jids") or "").split(",") if s.strip()]
            channel_id = allowed[0] if allowed else ""
        if not channel_id:
            return (
                'Error: no target recipient configured. Provide "to", or set connector config '
                '"outbound_jid"/"allowed_jids".'
            )
        if connector.platform == "whatsapp":
            channel_id = normalize_whatsapp_target(channel_id)

        receipt = await connectors.send_message(
            text, connector_id=connector.id, channel_id=channel_id, image_url=image,
        )
        if receipt is None:
            return json.dumps({"status": "suppressed", "connector_id": connector.id})
        return json.dumps({
            "status": "sent",
            "connector_id": receipt.connector_id,
            "platform": receipt.platform,
            "to": receipt.channel_id,
            "message_id": receipt.message_id,
        })

    return connector_message_tool
