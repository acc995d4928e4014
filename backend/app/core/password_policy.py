from __future__ import annotations

import re
from typing import Callable, List, Optional

from app.core.config import settings
from app.core.errors import PasswordPolicyError

# Compared after lower-casing the candidate.
COMMON_WEAK_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "password1!",
        "passw0rd",
        "passw0rd!",
        "p@ssw0rd",
        "p@ssword1",
        "12345678",
        "123456789",
        "qwerty123",
        "qwerty123!",
        "letmein1",
        "welcome1",
        "welcome1!",
        "trustno1",
        "marketplace1",
        "tradegear1",
        "tradegear1!",
    }
)

# Character classes every password must contain, in the order violations are reported.
_CHARACTER_CLASSES: list[tuple[str, re.Pattern[str]]] = [
    ("uppercase", re.compile(r"[A-Z]")),
    ("lowercase", re.compile(r"[a-z]")),
    ("number", re.compile(r"[0-9]")),
    ("special_char", re.compile(r"[^A-Za-z0-9]")),
]


def _length_bounds() -> tuple[int, int]:
    min_length = max(int(settings.PASSWORD_MIN_LENGTH or 0), 1)
    max_length = max(int(settings.PASSWORD_MAX_LENGTH or 0), min_length)
    return min_length, max_length


def _contains_identity(candidate: str, fragment: str) -> bool:
    return len(fragment) >= 3 and fragment in candidate


def evaluate_password(
    password: str,
    *,
    email: Optional[str] = None,
    nickname: Optional[str] = None,
) -> List[str]:
    """
    Return the policy violation codes for ``password`` (empty when it passes).

    Personal data checks use the email local part and the nickname, both
    case-insensitively.
    """
    pw = password or ""
    lowered = pw.lower()
    min_length, max_length = _length_bounds()
    email_local = (email or "").strip().lower().split("@")[0]
    nickname_norm = (nickname or "").strip().lower()

    rules: list[tuple[str, Callable[[], bool]]] = [
        ("min_length", lambda: len(pw) < min_length),
        ("max_length", lambda: len(pw) > max_length),
    ]
    rules += [(code, lambda pattern=pattern: pattern.search(pw) is None) for code, pattern in _CHARACTER_CLASSES]
    rules += [
        ("contains_email", lambda: _contains_identity(lowered, email_local)),
        ("contains_name", lambda: _contains_identity(lowered, nickname_norm)),
        ("denylist_common", lambda: lowered in COMMON_WEAK_PASSWORDS),
    ]
    return [code for code, violated in rules if violated()]


def ensure_strong_password(password: str, *, email: Optional[str] = None, nickname: Optional[str] = None) -> None:
    violations = evaluate_password(password, email=email, nickname=nickname)
    if violations:
        raise PasswordPolicyError(violations)
