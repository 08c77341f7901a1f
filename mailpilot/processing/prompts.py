"""Prompt builders for importance scoring, conversation turns and draft writing."""

from __future__ import annotations

from datetime import datetime

from mailpilot.providers.types import Message

# Maximum characters of email body sent to the model for summaries.
SUMMARY_CHAR_LIMIT = 5_500
# Maximum characters of email content sent per importance score.
IMPORTANCE_CHAR_LIMIT = 4_000


# ── Importance scoring ─────────────────────────────────────────────────────────


def build_importance_messages(message: Message, keywords: list[str]) -> list[dict[str, str]]:
    """Ask for exactly one ``{"score", "isImportant"}`` object about one email."""
    content = f"{message.subject} {message.snippet} {message.body}".lower()[:IMPORTANCE_CHAR_LIMIT]
    return [
        {
            "role": "system",
            "content": "You rate how important an email is to its recipient. Reply with JSON only.",
        },
        {
            "role": "user",
            "content": (
                "Analyze the following email and decide whether it is important, "
                f"based on these keywords: {', '.join(keywords)}.\n"
                "Consider context, sender, and urgency. Return only a valid JSON object: "
                '{"score": NUMBER_BETWEEN_0_AND_100, "isImportant": BOOLEAN_VALUE}\n\n'
                f'Email content: "{content}"\n'
                f'Sender: "{message.sender}"'
            ),
        },
    ]


# ── Conversation ───────────────────────────────────────────────────────────────

#: Placeholders: {{USER_NAME}}, {{USER_EMAIL}}, {{TIME_CONTEXT}}, {{EMAIL_COUNT}}, {{UNREAD_COUNT}}
SYSTEM_PROMPT_TEMPLATE = """\
You are an email assistant working for {{USER_NAME}} ({{USER_EMAIL}}).
{{TIME_CONTEXT}}
Their mailbox currently holds {{EMAIL_COUNT}} recent emails, {{UNREAD_COUNT}} of them unread.

Always answer with exactly one JSON object in one of these shapes:

1. Run a mailbox tool:
   {"action": "<tool name>", "params": {...}}
2. Show structured information:
   {"message": "<short intro>", "data": {"table": [{"column": "value", ...}, ...]}}
3. Plain conversation:
   {"chat": "<your reply>"}

Available tools and their parameters:
- fetch-emails: filter (all, read, unread, archived, starred, sent, drafts, important, trash), query, maxResults, timeRange
- count-emails: filter, query
- read-email: email_id
- trash-email: email_id
- reply-to-email: email_id, message
- search-emails: query
- mark-email-as-read: email_id
- summarize-email: email_id
- draft-email: recipient, content, recipient_email
- send-email: recipient_id, subject, message
- list-attachments: email_id
- save-draft: (no parameters; saves the pending draft to the Drafts folder)

Never send an email directly: "send-email" only prepares a draft that the
user must confirm. Use search syntax such as from:, subject: and YYYY/MM/DD
dates in queries."""


def time_context(now: datetime) -> str:
    hour = now.hour
    if 5 <= hour < 12:
        part = "morning"
    elif 12 <= hour < 18:
        part = "afternoon"
    else:
        part = "evening"
    return f"It is {part} on {now:%A, %B %d, %Y}."


def render_system_prompt(template: str, values: dict[str, str]) -> str:
    """Substitute ``{{NAME}}`` placeholders; unknown placeholders are left as-is."""
    prompt = template
    for name, value in values.items():
        prompt = prompt.replace("{{" + name + "}}", value)
    return prompt


# ── Drafts and summaries ───────────────────────────────────────────────────────


def build_compose_messages(sender_name: str, recipient: str, content: str) -> list[dict[str, str]]:
    return [
        {
            "role": "user",
            "content": (
                f"Draft a polite and professional email from {sender_name} to {recipient} "
                f'based on the following message: "{content}". Include a suitable subject '
                "line starting with 'Subject:'. If the message is brief, expand it into a "
                "complete email body with appropriate greeting, context and a sign-off "
                f'using the sender\'s name "{sender_name}".'
            ),
        }
    ]


def build_amend_messages(draft_text: str, instruction: str) -> list[dict[str, str]]:
    """Ask for the draft rewritten as ``To:`` / ``Subject:`` / blank line / body."""
    return [
        {
            "role": "user",
            "content": (
                f'Modify the following email draft based on the user\'s request: "{instruction}".\n'
                "Keep the original structure and only update the requested parts.\n"
                "Return the updated draft with To: and Subject: each on their own line, "
                "then a blank line, then the body.\n\n"
                f"Original Draft:\n{draft_text}\n\nUpdated Draft:"
            ),
        }
    ]


def build_summary_messages(body: str) -> list[dict[str, str]]:
    text = body[:SUMMARY_CHAR_LIMIT]
    if len(body) > SUMMARY_CHAR_LIMIT:
        text += "... (truncated)"
    return [
        {"role": "system", "content": "You summarize emails in 1-2 concise sentences."},
        {"role": "user", "content": f"Summarize this email in 1-2 sentences: {text}"},
    ]
