import re
from typing import Optional

TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 64

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class TextValidator:
    """Basic text validations used by catalog management and registration."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        return TITLE_MIN_LENGTH <= len(title.strip()) <= TITLE_MAX_LENGTH

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        # must not be digits only
        if name is None:
            return False
        t = name.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def sanitize_text(text: str) -> str:
        if text is None:
            return ""
        # strip HTML tags before text is stored or rendered into a report
        return re.sub(r"<[^>]*>", "", text).strip()
