"""
Record Parser

Extracts the system prompt context, the user-facing input text, the
generated output text and image attachments from the free-form input/output
payloads captured by execution records.
"""

import json
from typing import Any

# Keys that hold the user-facing text of an input item, in priority order
INPUT_TEXT_FIELDS = ("input", "query", "prompt", "text", "message")

# Keys that hold the generated text of an output item, in priority order
OUTPUT_TEXT_FIELDS = ("output", "text", "response", "answer", "message")

# Keys that may hold an image attachment
ATTACHMENT_FIELDS = ("image", "image_url", "url")


def _to_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


def is_image_reference(value: Any) -> bool:
    """True for image data URLs and http(s) URLs"""
    if not isinstance(value, str):
        return False
    return value.startswith("data:image/") or value.startswith(("http://", "https://"))


def _is_data_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("data:")


def parse_context(data: Any) -> str | None:
    """
    Collect the system messages found anywhere in an input payload

    Returns:
        The system messages joined with ", ", or None when there are none
    """
    system_messages: list[str] = []

    def _walk(item: Any) -> None:
        if isinstance(item, list):
            for element in item:
                _walk(element)
            return
        if not isinstance(item, dict):
            return

        options = item.get("options") if isinstance(item.get("options"), dict) else {}
        system_message = item.get("systemMessage") or options.get("systemMessage")
        if system_message:
            system_messages.append(str(system_message))
            return
        if item.get("role") == "system" and item.get("content"):
            content = item["content"]
            system_messages.append(content if isinstance(content, str) else _to_json(content))
            return
        for value in item.values():
            _walk(value)

    _walk(data)
    return ", ".join(system_messages) if system_messages else None


def parse_input_content(data: Any) -> str:
    """
    Extract the user-facing text of an input payload

    System messages and image parts are skipped. A ``content`` string wins,
    then the first of INPUT_TEXT_FIELDS. Payloads with no recognizable text
    field are returned as JSON.
    """
    if data is None or data == "":
        return ""
    if isinstance(data, str):
        return data

    contents: list[str] = []
    matched = False

    def _walk(item: Any) -> None:
        nonlocal matched
        if item is None:
            return
        if isinstance(item, str):
            if not _is_data_url(item):
                contents.append(item)
            return
        if isinstance(item, list):
            for element in item:
                _walk(element)
            return
        if not isinstance(item, dict):
            return
        if item.get("type") == "image_url" or item.get("role") == "system":
            return

        content = item.get("content")
        if isinstance(content, str) and not _is_data_url(content):
            contents.append(content)
            matched = True
            return
        for field_name in INPUT_TEXT_FIELDS:
            value = item.get(field_name)
            if isinstance(value, str) and value and not _is_data_url(value):
                contents.append(value)
                matched = True
                return
        # Bare strings under other keys are labels (role, type), not content
        for value in item.values():
            if isinstance(value, (dict, list)):
                _walk(value)

    _walk(data)
    if not matched:
        return _to_json(data)
    return ", ".join(contents)


def parse_output_content(data: Any) -> str:
    """
    Extract the generated text of an output payload

    Understands chat-completion responses (``choices[0].message.content``),
    message dicts and the common OUTPUT_TEXT_FIELDS; anything else is
    returned as JSON.
    """
    if data is None or data == "":
        return ""
    if isinstance(data, str):
        return data

    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message") if isinstance(choices[0], dict) else None
            if isinstance(message, dict) and message.get("content") is not None:
                content = message["content"]
                return content if isinstance(content, str) else _to_json(content)

        content = data.get("content")
        if isinstance(content, str):
            return content
        for field_name in OUTPUT_TEXT_FIELDS:
            value = data.get(field_name)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict):
                return parse_output_content(value)

    return _to_json(data)


def parse_attachments(data: Any) -> list[str]:
    """
    Collect image references (data URLs or http(s) URLs) from an input payload

    Duplicates are dropped; discovery order is preserved.
    """
    attachments: list[str] = []

    def _add(value: Any) -> None:
        if is_image_reference(value) and value not in attachments:
            attachments.append(value)

    def _walk(item: Any) -> None:
        if isinstance(item, str):
            if item.startswith("data:image/"):
                _add(item)
            return
        if isinstance(item, list):
            for element in item:
                _walk(element)
            return
        if not isinstance(item, dict):
            return

        for field_name in ATTACHMENT_FIELDS:
            value = item.get(field_name)
            if isinstance(value, dict):
                _add(value.get("url"))
            else:
                _add(value)
        for key, value in item.items():
            if key in ATTACHMENT_FIELDS and not isinstance(value, (dict, list)):
                continue
            _walk(value)

    _walk(data)
    return attachments
