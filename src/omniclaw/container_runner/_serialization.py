"""Serialization helpers: camelCase/snake_case boundary crossing.

Converts AgentInput to the camelCase dict the in-container agent runner
reads from stdin, and parses the JSON units it writes between output
markers back into OutputRecord.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

from omniclaw.config import get_settings
from omniclaw.types import AgentInput, OutputRecord

# Wire keys mapped onto OutputRecord fields. Anything else lands in ``extra``.
_KNOWN_OUTPUT_KEYS = {
    "status": "status",
    "result": "result",
    "newSessionId": "new_session_id",
    "error": "error",
    "chatJid": "chat_jid",
    "intermediate": "intermediate",
    "resumeAt": "resume_at",
}


class OutputProtocolError(ValueError):
    """An output unit was not valid JSON or not a valid OutputRecord."""


def input_to_dict(input_data: AgentInput) -> dict[str, Any]:
    """Convert AgentInput to the dict written to the agent's stdin."""
    d: dict[str, Any] = {
        "prompt": input_data.prompt,
        "groupFolder": input_data.group_folder,
        "chatJid": input_data.chat_jid,
        "isMain": input_data.is_main,
    }
    if input_data.session_id is not None:
        d["sessionId"] = input_data.session_id
    if input_data.resume_at is not None:
        d["resumeAt"] = input_data.resume_at
    if input_data.runtime_folder is not None:
        d["runtimeFolder"] = input_data.runtime_folder
    if input_data.is_scheduled_task:
        d["isScheduledTask"] = True
    if input_data.server_folder is not None:
        d["serverFolder"] = input_data.server_folder
    if input_data.agent_runtime is not None:
        d["agentRuntime"] = input_data.agent_runtime
    agent = get_settings().agent
    d["agentName"] = input_data.agent_name or agent.name
    d["agentTrigger"] = input_data.agent_trigger or agent.trigger
    if input_data.channels:
        d["channels"] = [asdict(c) for c in input_data.channels]
    return d


def parse_output_record(raw: str | dict[str, Any]) -> OutputRecord:
    """Parse one output unit into an OutputRecord.

    Raises OutputProtocolError for malformed JSON, a non-object payload, an
    unknown ``status`` or a non-string ``result``.
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise OutputProtocolError(f"Invalid JSON in output unit: {exc}") from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise OutputProtocolError(f"Output unit must be a JSON object, got {type(data).__name__}")

    status = data.get("status")
    if status not in ("success", "error"):
        raise OutputProtocolError(f"Invalid output status: {status!r}")
    result = data.get("result")
    if result is not None and not isinstance(result, str):
        raise OutputProtocolError(f"Output result must be a string or null, got {type(result).__name__}")

    return OutputRecord(
        status=status,
        result=result,
        new_session_id=data.get("newSessionId") or None,
        error=data.get("error"),
        chat_jid=data.get("chatJid"),
        intermediate=bool(data.get("intermediate", False)),
        resume_at=data.get("resumeAt"),
        extra={k: v for k, v in data.items() if k not in _KNOWN_OUTPUT_KEYS},
    )


def output_record_to_dict(record: OutputRecord) -> dict[str, Any]:
    """Inverse of :func:`parse_output_record`: camelCase wire form."""
    d: dict[str, Any] = dict(record.extra)
    d["status"] = record.status
    d["result"] = record.result
    if record.new_session_id is not None:
        d["newSessionId"] = record.new_session_id
    if record.error is not None:
        d["error"] = record.error
    if record.chat_jid is not None:
        d["chatJid"] = record.chat_jid
    if record.intermediate:
        d["intermediate"] = True
    if record.resume_at is not None:
        d["resumeAt"] = record.resume_at
    return d
