"""Rich-text document (ADF) helpers"""

import copy
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

BANNER_PREFIX = "🔗 "
BANNER_SEPARATOR = " ↔ "
LEGACY_PANEL_TITLE = "🔗 Synced Issue Reference"

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\n+")
_PROVENANCE_RE = re.compile(r"^\[Comment from (?P<org>.+?) - User: (?P<user>.*?)\]:")


def empty_doc() -> Dict[str, Any]:
    return {"type": "doc", "version": 1, "content": []}


def _first_text(node: Dict[str, Any]) -> Optional[str]:
    content = node.get("content") or []
    if not content or not isinstance(content[0], dict):
        return None
    return content[0].get("text")


def is_cross_reference(node: Any) -> bool:
    """True for the injected ``🔗 LOCAL ↔ REMOTE`` paragraph."""
    if not isinstance(node, dict) or node.get("type") != "paragraph":
        return False
    text = _first_text(node) or ""
    return text.startswith(BANNER_PREFIX) and BANNER_SEPARATOR in text


def _is_legacy_panel(node: Dict[str, Any]) -> bool:
    if node.get("type") != "panel" or (node.get("attrs") or {}).get("panelType") != "info":
        return False
    first = (node.get("content") or [{}])[0]
    return isinstance(first, dict) and _first_text(first) == LEGACY_PANEL_TITLE


def extract_text(doc: Any, skip_cross_reference: bool = True) -> str:
    """Plain text of a document; paragraphs joined by a blank line."""
    if isinstance(doc, str):
        return doc.strip()
    if not isinstance(doc, dict):
        return ""

    parts: List[str] = []

    def traverse(node: Any, is_first: bool) -> None:
        if not isinstance(node, dict):
            return
        node_type = node.get("type")
        if skip_cross_reference and (
            is_cross_reference(node) or _is_legacy_panel(node) or node_type == "rule"
        ):
            return

        if node_type == "text":
            parts.append(node.get("text") or "")
        elif node_type == "paragraph" and not is_first and "".join(parts):
            parts.append("\n\n")
        elif node_type == "hardBreak":
            parts.append("\n")

        for index, child in enumerate(node.get("content") or []):
            traverse(child, is_first and index == 0)

    traverse(doc, True)
    return "".join(parts).strip()


def text_to_doc(text: Optional[str]) -> Dict[str, Any]:
    """Build a document from plain text, one paragraph per blank-line block."""
    if not text or not text.strip():
        return empty_doc()
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]
    return {
        "type": "doc",
        "version": 1,
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": p}]} for p in paragraphs
        ],
    }


def provenance_header(org_name: str, user_name: str) -> str:
    return f"[Comment from {org_name} - User: {user_name}]:\n\n"


def parse_provenance(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """(org, user) from a provenance header at the start of ``text``."""
    match = _PROVENANCE_RE.match((text or "").lstrip())
    if not match:
        return None
    return match.group("org"), match.group("user")


def text_to_doc_with_author(text: Optional[str], org_name: str, user_name: str) -> Dict[str, Any]:
    full_text = provenance_header(org_name, user_name) + (text or "")
    return {
        "type": "doc",
        "version": 1,
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": full_text}]}],
    }


def description_to_text_doc(description: Any) -> Dict[str, Any]:
    """Text-only copy of a description (drops media, marks and banners)."""
    if isinstance(description, dict):
        return text_to_doc(extract_text(description))
    if isinstance(description, str):
        return text_to_doc(description)
    return empty_doc()


def replace_media_ids(doc: Any, attachment_mapping: Dict[str, str]) -> Any:
    """Copy of ``doc`` with media ids rewritten through ``attachment_mapping``.

    Ids without a mapping are left alone and logged.
    """
    if not isinstance(doc, dict):
        return doc
    cloned = copy.deepcopy(doc)
    unresolved: List[str] = []

    def traverse(node: Any) -> None:
        if not isinstance(node, dict):
            return
        attrs = node.get("attrs") or {}
        if node.get("type") == "media" and attrs.get("id"):
            local_id = str(attrs["id"])
            remote_id = attachment_mapping.get(local_id)
            if remote_id:
                attrs["id"] = str(remote_id)
            else:
                unresolved.append(local_id)
        for child in node.get("content") or []:
            traverse(child)

    traverse(cloned)
    if unresolved:
        logger.warning(f"No attachment mapping for media id(s): {', '.join(unresolved)}")
    return cloned


def cross_reference_node(local_key: str, remote_key: str) -> Dict[str, Any]:
    return {
        "type": "paragraph",
        "content": [
            {
                "type": "text",
                "text": f"{BANNER_PREFIX}{local_key}{BANNER_SEPARATOR}{remote_key}",
                "marks": [{"type": "em"}],
            }
        ],
    }


def prepend_cross_reference(doc: Any, local_key: str, remote_key: str) -> Dict[str, Any]:
    """Put a single cross-reference banner at the top of ``doc``.

    An existing banner in first position is replaced, never duplicated.
    """
    banner = cross_reference_node(local_key, remote_key)
    if isinstance(doc, str):
        doc = text_to_doc(doc)
    if not isinstance(doc, dict) or not doc.get("content"):
        return {"type": "doc", "version": 1, "content": [banner]}

    content = list(doc["content"])
    if is_cross_reference(content[0]):
        content = content[1:]
    result = dict(doc)
    result["content"] = [banner] + content
    return result


def extract_sprint_ids(value: Any) -> Optional[List[int]]:
    """Sprint ids from a sprint field value, or None if it isn't sprint data."""
    if not value or not isinstance(value, list):
        return None

    first = value[0]

    def _to_int(item: Any) -> Optional[int]:
        if isinstance(item, bool):
            return None
        if isinstance(item, int):
            return item
        if isinstance(item, str):
            try:
                return int(item, 10)
            except ValueError:
                return None
        return None

    if isinstance(first, dict):
        if first.get("id") is None:
            return None
        ids = [i for i in (_to_int(item.get("id")) for item in value if isinstance(item, dict)) if i is not None]
        return ids or None

    if isinstance(first, int) and not isinstance(first, bool):
        return list(value)

    if isinstance(first, str):
        ids = [i for i in (_to_int(item) for item in value) if i is not None]
        return ids or None

    return None
