import base64
import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import httpx

from .types import (
    ContentPart, FunctionCallMessage, FunctionCallOutputMessage, ImageContent,
    ImageUrlDetail, InputMessage, TextContent, Tool, ToolCall,
)

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}

# =============================================================================
# Image Helpers
# =============================================================================

def encode_image_file(image_path: Union[str, Path]) -> Tuple[str, str]:
    """
    Encode a local image file to base64.

    Args:
        image_path (Union[str, Path]): Path to the image file.

    Returns:
        Tuple[str, str]: ``(b64_data, mime_type)``; the MIME type is guessed
        from the extension.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")

    mime_type = MIME_TYPES.get(path.suffix.lower(), "image/jpeg")
    with open(path, "rb") as f:
        b64_data = base64.b64encode(f.read()).decode("utf-8")
    return b64_data, mime_type


async def encode_image_url(url: str, client: Optional[httpx.AsyncClient] = None) -> Tuple[str, str]:
    """
    Download an image and encode it to base64.

    Args:
        url (str): Publicly reachable image URL.
        client (httpx.AsyncClient, optional): Client to reuse; a short-lived
            one is created when omitted.

    Returns:
        Tuple[str, str]: ``(b64_data, mime_type)`` with the MIME type taken
        from the Content-Type header.

    Raises:
        httpx.HTTPError: If the download fails.
    """
    headers = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    }
    if client is None:
        async with httpx.AsyncClient(timeout=30.0, headers=headers, follow_redirects=True) as http_client:
            response = await http_client.get(url)
    else:
        response = await client.get(url, headers=headers)
    response.raise_for_status()

    content_type = response.headers.get("content-type", "image/jpeg")
    mime_type = content_type.split(";")[0].strip()
    b64_data = base64.b64encode(response.content).decode("utf-8")
    return b64_data, mime_type


def parse_data_uri(url: str) -> Tuple[str, str]:
    """Split ``data:<mime>;base64,<data>`` into ``(data, mime)``."""
    header, data = url.split(",", 1)
    mime_type = header.split(":", 1)[1].split(";")[0] or "application/octet-stream"
    return data, mime_type


async def resolve_image_to_base64(url: str) -> Tuple[str, str]:
    """
    Resolve a remote URL or data URI to ``(b64_data, mime_type)``.
    """
    if url.startswith("data:"):
        return parse_data_uri(url)
    return await encode_image_url(url)


def create_image_content(
    source: str,
    *,
    mime_type: Optional[str] = None,
    detail: Optional[Literal["auto", "low", "high"]] = None,
) -> ImageContent:
    """
    Build an image content part for a history message.

    Args:
        source (str): Local file path, http(s) URL, data URI, or raw base64
            (raw base64 requires ``mime_type``).
        mime_type (str, optional): MIME type for raw base64 input.
        detail (str, optional): OpenAI vision detail level.

    Raises:
        ValueError: If the source type cannot be determined.
    """
    if source.startswith(("data:", "http://", "https://")):
        url = source
    elif mime_type:
        url = f"data:{mime_type};base64,{source}"
    elif len(source) < 260 and Path(source).exists():
        b64_data, detected_mime = encode_image_file(source)
        url = f"data:{detected_mime};base64,{b64_data}"
    else:
        raise ValueError(
            f"Cannot determine image source type for: {source[:50]}... "
            "Provide mime_type for raw base64 data."
        )

    image_url: ImageUrlDetail = {"url": url}
    if detail:
        image_url["detail"] = detail
    return {"type": "image_url", "image_url": image_url}


def create_text_content(text: str) -> TextContent:
    return {"type": "text", "text": text}


def create_message(
    role: Literal["system", "developer", "user", "assistant"],
    content: Union[str, List[Union[str, ContentPart]]],
) -> InputMessage:
    """
    Build a history ``message`` item; bare strings inside a list become text parts.
    """
    if isinstance(content, str):
        return {"type": "message", "role": role, "content": content}

    normalized: List[ContentPart] = [
        create_text_content(item) if isinstance(item, str) else item
        for item in content
    ]
    return {"type": "message", "role": role, "content": normalized}


def content_to_text(content: Any) -> str:
    """Flatten message content to plain text, dropping non-text parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return "" if content is None else str(content)


# =============================================================================
# Tool Calling Helpers
# =============================================================================

def create_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> Tool:
    """
    Build a tool definition in OpenAI function-calling format.

    Args:
        name (str): Function name.
        description (str): What the tool does.
        parameters (Dict): JSON Schema ``properties`` mapping.
        required (List[str], optional): Required parameter names.
    """
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": parameters,
                "required": required or [],
            },
        },
    }


def create_function_call(tool_call: ToolCall) -> FunctionCallMessage:
    """History item recording that the model asked for ``tool_call``."""
    return {
        "type": "function_call",
        "call_id": tool_call["id"],
        "name": tool_call["function"]["name"],
        "arguments": tool_call["function"]["arguments"],
    }


def create_function_call_output(tool_call: ToolCall, output: Any) -> FunctionCallOutputMessage:
    """History item carrying a tool's result back to the model."""
    return {
        "type": "function_call_output",
        "call_id": tool_call["id"],
        "name": tool_call["function"]["name"],
        "output": output if isinstance(output, str) else json.dumps(output, default=str),
    }
