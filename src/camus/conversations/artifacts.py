"""Helpers for artifacts embedded in chat messages."""

from __future__ import annotations

import hashlib
import html
import re
import secrets

ARTIFACT_BLOCK_RE = re.compile(r"```artifact\n([\s\S]*?)\n```")
TITLE_RE = re.compile(r"<title>(.*?)</title>")
H1_RE = re.compile(r"<h1>(.*?)</h1>")
DEFAULT_ARTIFACT_NAME = "Generated Artifact"


def extract_artifact_content(message_content: str) -> str | None:
    match = ARTIFACT_BLOCK_RE.search(message_content)
    return match.group(1) if match else None


def extract_html_title(document: str) -> str:
    for pattern in (TITLE_RE, H1_RE):
        match = pattern.search(document)
        if match and match.group(1):
            return match.group(1)
    return DEFAULT_ARTIFACT_NAME


def artifact_id_for(conversation_id: str, content: str) -> str:
    """Same content in the same conversation always maps to the same id."""
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:12]
    return f"{conversation_id}-{digest}"


def new_share_slug() -> str:
    return secrets.token_urlsafe(9)


HTML_DOCUMENT_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
</head>
<body>
  {body}
</body>
</html>"""


def as_html_document(name: str, content: str) -> str:
    """Return `content` as a full HTML page, wrapping plain fragments."""
    stripped = content.strip()
    if stripped.startswith("<!DOCTYPE") or stripped.startswith("<html"):
        return content
    if ("<html" in content or "<head" in content) and "</html>" in content:
        return content
    return HTML_DOCUMENT_TEMPLATE.format(title=html.escape(name), body=content)
