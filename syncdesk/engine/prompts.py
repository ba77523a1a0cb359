SYSTEM_PROMPT = """You are an email assistant inside a personal productivity dashboard.

Rules:
- Do NOT invent email content
- Preserve factual accuracy
- Output structured JSON when requested
- Be concise, professional, and neutral"""

ENRICHMENT_PROMPT = """
Summarize the following email and suggest short replies.

Email:
From: {sender}
Subject: {subject}
Body: {body}

Tasks:
1. Write a one or two sentence summary of what the sender wants.
2. Suggest exactly three short reply options (under 15 words each).

Return a JSON object with this exact structure:
{{
    "summary": "string",
    "suggested_replies": ["Reply 1", "Reply 2", "Reply 3"]
}}
"""

PLACEHOLDER_REPLIES = [
    "Thanks for your email, I'll get back to you soon.",
    "Got it, thank you!",
    "Could you share a bit more detail?",
]

FOCUS_TASK_PROMPT = """
The user has a free {minutes}-minute focus block on {slot}.

Subjects of their most recent emails:
{subjects}

Suggest one concrete task they could finish in that block. Prefer something
the emails above ask for; do not invent people or deadlines.

Return a JSON object with this exact structure:
{{
    "suggested_task": "string"
}}
"""

PLACEHOLDER_FOCUS_TASK = "Plan and start your most important task for today"
