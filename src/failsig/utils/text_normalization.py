"""Нормализация текста ошибок — замена волатильных данных плейсхолдерами.

Используется нормализатором evidence (fallback error_type) и эвристикой
выбора representative_error в дефект-группе.
"""

from __future__ import annotations

import re

_MONTHS = (
    r"(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|Jun(?:e)?|"
    r"Jul(?:y)?|Aug(?:ust)?|Sep(?:tember)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)

# Порядок важен:
# - UUID раньше дат (в hex-UUID встречаются цифровые группы, похожие на дату)
# - полный datetime раньше даты без времени
# - IP раньше точка-дат (192.168.1.1)
# - длинные числа последними (иначе год «2026» станет <NUM> до матча даты)
_VOLATILE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(
            r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
            re.IGNORECASE,
        ),
        "<ID>",
    ),
    (re.compile(r"\b[0-9a-f]{32}\b", re.IGNORECASE), "<ID>"),
    (
        re.compile(
            r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2})?(?:[.,]\d{1,6})?(?:Z|[+-]\d{2}:?\d{2})?"
        ),
        "<TS>",
    ),
    (
        re.compile(
            r"(?:\d{1,2}[- ]" + _MONTHS + r"[- ]\d{4}|" + _MONTHS + r"\.?\s+\d{1,2},?\s+\d{4})"
            r"(?:[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d{1,6})?)?",
            re.IGNORECASE,
        ),
        "<TS>",
    ),
    (re.compile(r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}"), "<IP>"),
    (re.compile(r"\b\d{4}/\d{1,2}/\d{1,2}\b|\b\d{1,2}/\d{1,2}/\d{4}\b"), "<TS>"),
    (re.compile(r"\b\d{4}\.\d{1,2}\.\d{1,2}\b|\b\d{1,2}\.\d{1,2}\.\d{4}\b"), "<TS>"),
    (re.compile(r"\b\d{4}-\d{2}-\d{2}\b"), "<TS>"),
    (re.compile(r"(?<!\d[.:])\b\d{2}:\d{2}:\d{2}(?:[.,]\d{1,6})?\b"), "<TS>"),
    (re.compile(r"\b\d{4,}\b"), "<NUM>"),
)

# Маркеры «пустого» или обрезанного сообщения: такой текст плохо
# представляет группу.
PLACEHOLDER_TOKENS: tuple[str, ...] = (
    "<ID>",
    "<TS>",
    "<NUM>",
    "<IP>",
    "[object Object]",
)
_STUB_MESSAGES = frozenset({"undefined", "null", "none", "no error message", "unknown error"})
_TRUNCATION_SUFFIXES: tuple[str, ...] = ("...", "…", "[truncated]")


def normalize_text(text: str) -> str:
    """Заменить UUID, даты/время, IP и длинные числа плейсхолдерами.

    Регистр, пробелы и структура текста не меняются.
    """
    for pattern, placeholder in _VOLATILE_RULES:
        text = pattern.sub(placeholder, text)
    return text


def has_placeholder(text: str) -> bool:
    """True, если текст содержит плейсхолдер или заглушку вместо сообщения."""
    if text.strip().lower() in _STUB_MESSAGES:
        return True
    return any(token in text for token in PLACEHOLDER_TOKENS)


def is_truncated(text: str) -> bool:
    """True, если текст выглядит обрезанным источником."""
    return text.rstrip().endswith(_TRUNCATION_SUFFIXES)
