"""Prompt text and the forced tool definition for classification."""

from typing import Any

from mailfilter.engine.models import Category, MessageRecord

CLASSIFY_EMAIL_TOOL: dict[str, Any] = {
    "name": "classify_email",
    "description": "Record the classification of one email",
    "input_schema": {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "enum": [c.value for c in Category],
            },
            "confidence": {
                "type": "number",
                "minimum": 0.0,
                "maximum": 1.0,
                "description": "Classification confidence score",
            },
            "reason": {
                "type": "string",
                "description": "Brief explanation, at most 100 characters",
            },
        },
        "required": ["category", "confidence", "reason"],
    },
}

SYSTEM_PROMPT = """You are an email classification assistant. Classify each email into exactly one of three categories and record it with the classify_email tool.

CATEGORIES:
1. IMPORTANT - needs the user's attention:
   - Personal email from known contacts
   - Work-related communication
   - Financial statements, bills, invoices
   - Security alerts (password resets, sign-in notifications)
   - Appointment confirmations
   - Delivery notifications for expected packages

2. REVIEW - possibly useful, not urgent:
   - Newsletters the user may have subscribed to
   - Social media notifications
   - First-time senders that look legitimate
   - Promotions from known services
   - Community or forum digests

3. JUNK - almost certainly unwanted:
   - Obvious spam or scams
   - Unsolicited marketing from unknown senders
   - Phishing attempts
   - Get-rich-quick schemes
   - Mentions of suspicious links or attachments

GUIDELINES:
- When in doubt between IMPORTANT and REVIEW, choose REVIEW
- When in doubt between REVIEW and JUNK, choose REVIEW
- Consider sender reputation, subject line and content
- Be conservative with JUNK so important mail is never lost"""


def build_user_message(message: MessageRecord, body_preview_chars: int) -> str:
    lines = [
        "Classify this email:",
        "",
        f"FROM: {message.sender}",
        f"SUBJECT: {message.subject}",
        f"DATE: {message.date}",
        f"SNIPPET: {message.snippet}",
    ]
    if message.body and body_preview_chars > 0:
        lines += ["", "BODY PREVIEW:", message.body[:body_preview_chars]]
    return "\n".join(lines)
