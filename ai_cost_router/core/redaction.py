"""
Redaction of error detail before it reaches telemetry.

Prompt and response payloads never reach billing records; error messages do,
so they are scrubbed of credentials and personal data first.
"""

import re
from typing import List, Optional, Pattern, Tuple

REDACTED = "[REDACTED]"
MAX_DETAIL_LENGTH = 200

_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(p, re.IGNORECASE), kind) for p, kind in [
        (r"\bBearer\s+[A-Za-z0-9\-._~+/]+=*", "bearer_token"),
        (r"\b(?:sk|pk|api|key|token)[-_]?[A-Za-z0-9\-_]{16,}\b", "api_key"),
        (r"\bAKIA[0-9A-Z]{16}\b", "aws_key"),
        (r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}", "email"),
        (r"(?:password|passwd|pwd|secret)\s*[=:]\s*\S+", "password"),
    ]
]


def redact(text: Optional[str], max_length: int = MAX_DETAIL_LENGTH) -> Optional[str]:
    """Scrub secrets and personal data from a message and truncate it."""
    if text is None:
        return None
    scrubbed = text
    for pattern, _ in _PATTERNS:
        scrubbed = pattern.sub(REDACTED, scrubbed)
    if len(scrubbed) > max_length:
        scrubbed = scrubbed[:max_length] + "..."
    return scrubbed
