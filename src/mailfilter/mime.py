"""Plain-text body extraction from raw MIME.

The message is parsed with the standard library email package and turned
into a small tree of typed parts: TextPart leaves and MultiPart branches.
The first text/plain leaf is found by an iterative depth-first walk, bounded
in depth and node count so a pathologically nested message cannot exhaust
the stack or the poll cycle.
"""

from dataclasses import dataclass
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser

from mailfilter.core.logging import get_logger

logger = get_logger(__name__)

MAX_DEPTH = 16
MAX_NODES = 500


@dataclass(frozen=True, slots=True)
class TextPart:
    """Leaf part. ``text`` is None for binary content or undecodable text."""

    content_type: str
    text: str | None


@dataclass(frozen=True, slots=True)
class MultiPart:
    content_type: str
    children: tuple["Part", ...]


Part = TextPart | MultiPart


def _leaf(msg: EmailMessage) -> TextPart:
    content_type = msg.get_content_type()
    if msg.get_content_maintype() != "text":
        return TextPart(content_type, None)
    try:
        text = msg.get_content()
    except (LookupError, ValueError) as e:
        # Unknown charset or broken transfer encoding
        logger.debug("mime_part_undecodable", content_type=content_type, error=str(e))
        return TextPart(content_type, None)
    return TextPart(content_type, text if isinstance(text, str) else None)


def build_tree(msg: EmailMessage, max_depth: int = MAX_DEPTH, max_nodes: int = MAX_NODES) -> Part:
    """Convert a parsed message into a Part tree.

    Branches deeper than ``max_depth`` become empty, and once ``max_nodes``
    parts have been visited the remaining ones are dropped.
    """
    budget = [max_nodes]

    def convert(node: EmailMessage, depth: int) -> Part:
        budget[0] -= 1
        if not node.is_multipart():
            return _leaf(node)
        if depth >= max_depth:
            logger.debug("mime_depth_limit", depth=depth)
            return MultiPart(node.get_content_type(), ())
        children = []
        for child in node.iter_parts():
            if budget[0] <= 0:
                logger.debug("mime_node_limit", max_nodes=max_nodes)
                break
            children.append(convert(child, depth + 1))
        return MultiPart(node.get_content_type(), tuple(children))

    return convert(msg, 0)


def first_plain_text(root: Part) -> str | None:
    """Return the first non-empty text/plain leaf in depth-first order.

    A single-part root is returned as-is, whatever its text type, to match
    how a one-part message's body is its only part.
    """
    if isinstance(root, TextPart):
        return root.text or None

    stack: list[Part] = [root]
    while stack:
        part = stack.pop()
        if isinstance(part, TextPart):
            if part.content_type == "text/plain" and part.text:
                return part.text
            continue
        # Reverse so the first child is visited first
        stack.extend(reversed(part.children))
    return None


def extract_body_text(raw: bytes) -> str | None:
    """Parse raw RFC 822 bytes and return the plain-text body, if any."""
    msg = BytesParser(policy=policy.default).parsebytes(raw)
    return first_plain_text(build_tree(msg))
