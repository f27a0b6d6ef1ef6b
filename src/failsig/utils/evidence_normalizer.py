"""Извлечение канонических полей из текста ошибки и стек-трейса.

error_type определяется упорядоченным списком декларативных правил
``(pattern, label)``: первое совпавшее правило задаёт тип. Новые форматы
добавляются в ``ERROR_TYPE_RULES`` без изменения алгоритма сигнатуры.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from failsig.models.evidence import UNKNOWN_ERROR_TYPE, NormalizedEvidence
from failsig.utils.text_normalization import normalize_text

DEFAULT_MAX_FILE_REFERENCES = 3
DEFAULT_ERROR_TYPE_MAX_LENGTH = 50


@dataclass(frozen=True)
class ErrorTypeRule:
    """Правило извлечения error_type из первой строки сообщения.

    ``label`` — фиксированная метка; если None, берётся первая группа паттерна.
    """

    name: str
    pattern: re.Pattern[str]
    label: str | None = None

    def extract(self, line: str) -> str | None:
        match = self.pattern.search(line)
        if match is None:
            return None
        if self.label is not None:
            return self.label
        return match.group(1)


# Квалифицированные имена (java.lang.NullPointerException) сводятся к идентификатору.
_QUALIFIER = r"(?:[A-Za-z_$][\w$]*\.)*"

ERROR_TYPE_RULES: tuple[ErrorTypeRule, ...] = (
    ErrorTypeRule("assertion", re.compile(r"^" + _QUALIFIER + r"(AssertionError):")),
    ErrorTypeRule("timeout", re.compile(r"^" + _QUALIFIER + r"(TimeoutError):")),
    ErrorTypeRule("element-not-found", re.compile(r"^(ElementNotFound):")),
    ErrorTypeRule("error-class", re.compile(r"^" + _QUALIFIER + r"([A-Z][\w$]*Error):")),
    ErrorTypeRule("exception-class", re.compile(r"^" + _QUALIFIER + r"([A-Z][\w$]*Exception):")),
    ErrorTypeRule("generic-error", re.compile(r"^(Error):")),
    # Тип без двоеточия: "TimeoutError waiting for locator"
    ErrorTypeRule(
        "bare-class",
        re.compile(r"^" + _QUALIFIER + r"([A-Z][\w$]*(?:Error|Exception))\b"),
    ),
)

_SOURCE_EXTENSIONS = (
    "jsx", "js", "mjs", "cjs", "tsx", "ts", "py", "java", "kt", "rb", "cs",
    "go", "php", "scala", "groovy", "feature", "html", "vue", "svelte",
)

# Путь к файлу с распознанным расширением; :line[:col] не входит в группу path.
_FILE_REF_RE = re.compile(
    r"(?P<path>(?:(?<![\w.])[A-Za-z]:)?[\w@.~/\\$+-]*?[\w$@+-]+\.(?:"
    + "|".join(_SOURCE_EXTENSIONS)
    + r"))(?::\d+)*(?=[\s)'\",:?#]|$)"
)
_FILE_URL_PREFIX_RE = re.compile(r"file:/{2,3}")
# scheme://host[:port] браузерных фреймов: хост и порт меняются между окружениями
_URL_ORIGIN_RE = re.compile(r"\b[A-Za-z][A-Za-z0-9+.-]*://[^/\s)'\"]*")
_DIGITS_RE = re.compile(r"\d+")
_WS_RE = re.compile(r"\s+")


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _match_error_type(line: str) -> str | None:
    for rule in ERROR_TYPE_RULES:
        label = rule.extract(line)
        if label:
            return label
    return None


def _fallback_error_type(line: str, max_length: int) -> str:
    """error_type для строки без известного паттерна.

    Текст до первого двоеточия (или начало строки), волатильные данные
    и цифры заменены плейсхолдерами.
    """
    head = line.split(":", 1)[0].strip() if ":" in line else line
    head = normalize_text(head[:max_length])
    head = _DIGITS_RE.sub("<N>", head)
    return _WS_RE.sub(" ", head).strip() or UNKNOWN_ERROR_TYPE


def extract_error_type(
    message: str,
    stack_trace: str = "",
    *,
    max_length: int = DEFAULT_ERROR_TYPE_MAX_LENGTH,
) -> str:
    """Определить тип ошибки по первой строке сообщения.

    Если сообщение пустое, ищется первая строка стек-трейса с известным
    паттерном (Python-трейсбэк заканчивается строкой ``ValueError: ...``),
    иначе берётся первая непустая строка трейса.
    """
    line = _first_line(message)
    if line:
        return _match_error_type(line) or _fallback_error_type(line, max_length)

    for trace_line in stack_trace.splitlines():
        label = _match_error_type(trace_line.strip())
        if label:
            return label

    trace_line = _first_line(stack_trace)
    if trace_line:
        return _fallback_error_type(trace_line, max_length)
    return UNKNOWN_ERROR_TYPE


def extract_file_references(
    stack_trace: str,
    *,
    limit: int = DEFAULT_MAX_FILE_REFERENCES,
) -> tuple[str, ...]:
    """Первые ``limit`` различных файлов из стек-трейса в исходном порядке.

    Номера строк/колонок отбрасываются: ``login.spec.js:42:7`` → ``login.spec.js``.
    """
    refs: list[str] = []
    if limit <= 0:
        return ()
    for line in stack_trace.splitlines():
        line = _FILE_URL_PREFIX_RE.sub("/", line)
        line = _URL_ORIGIN_RE.sub("", line)
        for match in _FILE_REF_RE.finditer(line):
            path = match.group("path").replace("\\", "/")
            if path in refs:
                continue
            refs.append(path)
            if len(refs) >= limit:
                return tuple(refs)
    return tuple(refs)


def normalize_evidence(
    error_message: str | None,
    stack_trace: str | None,
    *,
    metadata: dict[str, Any] | None = None,
    max_file_references: int = DEFAULT_MAX_FILE_REFERENCES,
    error_type_max_length: int = DEFAULT_ERROR_TYPE_MAX_LENGTH,
) -> NormalizedEvidence:
    """Нормализовать сырые данные о падении. Никогда не выбрасывает исключений.

    Пустые message и stack_trace дают sentinel-evidence ``unknown-error``.
    """
    message = (error_message or "").strip()
    trace = (stack_trace or "").strip()
    meta = dict(metadata or {})

    if not message and not trace:
        return NormalizedEvidence(
            error_type=UNKNOWN_ERROR_TYPE,
            metadata=meta,
            is_unknown=True,
        )

    return NormalizedEvidence(
        error_type=extract_error_type(message, trace, max_length=error_type_max_length),
        message=message,
        stack_trace=trace,
        file_references=extract_file_references(trace, limit=max_file_references),
        metadata=meta,
    )
