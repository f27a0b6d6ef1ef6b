"""Тесты нормализатора evidence: error_type и ссылки на файлы."""

from __future__ import annotations

import pytest

from failsig.utils.evidence_normalizer import (
    extract_error_type,
    extract_file_references,
    normalize_evidence,
)
from failsig.utils.signature import compute_signature


# ---------------------------------------------------------------------------
# error_type
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("TimeoutError: waiting for locator('#submit')", "TimeoutError"),
        ("AssertionError: expected 1 to equal 2", "AssertionError"),
        ("ElementNotFound: #login-button", "ElementNotFound"),
        ("java.lang.NullPointerException: Cannot invoke method", "NullPointerException"),
        ("selenium.common.exceptions.StaleElementReferenceException: stale", "StaleElementReferenceException"),
        ("TypeError: x is not a function", "TypeError"),
        ("Error: something broke", "Error"),
        ("TimeoutError waiting for locator", "TimeoutError"),
    ],
)
def test_extract_error_type_known_patterns(message: str, expected: str) -> None:
    assert extract_error_type(message) == expected


def test_extract_error_type_uses_first_line_only() -> None:
    message = "AssertionError: boom\nTimeoutError: later"
    assert extract_error_type(message) == "AssertionError"


def test_extract_error_type_fallback_strips_volatile_parts() -> None:
    """Неизвестный формат: текст до двоеточия, цифры заменены плейсхолдером."""
    first = extract_error_type("Request 42 failed: status 500")
    second = extract_error_type("Request 97 failed: status 503")

    assert first == "Request <N> failed"
    assert first == second


def test_extract_error_type_fallback_is_bounded() -> None:
    message = "x" * 300
    assert len(extract_error_type(message, max_length=50)) == 50


def test_extract_error_type_from_stack_when_message_empty() -> None:
    trace = 'Traceback (most recent call last):\n  File "app.py", line 3\nValueError: bad value'
    assert extract_error_type("", trace) == "ValueError"


def test_extract_error_type_unknown_when_nothing_given() -> None:
    assert extract_error_type("", "") == "unknown-error"


# ---------------------------------------------------------------------------
# file references
# ---------------------------------------------------------------------------


def test_extract_file_references_strips_line_and_column() -> None:
    trace = (
        "at Object.<anonymous> (/app/tests/login.spec.js:42:15)\n"
        "at Runner.run (/app/node_modules/runner.js:10:3)"
    )
    assert extract_file_references(trace) == ("/app/tests/login.spec.js", "/app/node_modules/runner.js")


def test_extract_file_references_java_and_python_frames() -> None:
    trace = (
        "at com.company.UserService.getUser(UserService.java:45)\n"
        '  File "/srv/tests/test_user.py", line 12, in test_user'
    )
    assert extract_file_references(trace) == ("UserService.java", "/srv/tests/test_user.py")


def test_extract_file_references_dedup_order_and_limit() -> None:
    trace = "\n".join(
        ["at a.js:1", "at b.js:2", "at a.js:3", "at c.js:4", "at d.js:5"]
    )
    assert extract_file_references(trace) == ("a.js", "b.js", "c.js")
    assert extract_file_references(trace, limit=1) == ("a.js",)


def test_extract_file_references_normalizes_windows_paths() -> None:
    trace = r"at C:\work\tests\login.spec.ts:12:5"
    assert extract_file_references(trace) == ("C:/work/tests/login.spec.ts",)


def test_extract_file_references_ignores_data_files() -> None:
    assert extract_file_references("cannot read fixtures/users.json:1") == ()


# ---------------------------------------------------------------------------
# normalize_evidence
# ---------------------------------------------------------------------------


def test_normalize_evidence_example_timeout() -> None:
    evidence = normalize_evidence(
        "TimeoutError: waiting for locator",
        "at login.spec.js:42\nat runner.js:10",
    )

    assert evidence.error_type == "TimeoutError"
    assert evidence.file_references == ("login.spec.js", "runner.js")
    assert not evidence.is_unknown


def test_normalize_evidence_empty_input_gives_sentinel() -> None:
    evidence = normalize_evidence(None, "   ", metadata={"framework": "jest"})

    assert evidence.error_type == "unknown-error"
    assert evidence.is_unknown
    assert evidence.file_references == ()
    assert evidence.metadata == {"framework": "jest"}


def test_normalize_evidence_trims_and_combines() -> None:
    evidence = normalize_evidence("  Error: boom  ", "\nat x.js:1\n")

    assert evidence.message == "Error: boom"
    assert evidence.stack_trace == "at x.js:1"
    assert evidence.combined_text == "Error: boom at x.js:1"


def test_extract_file_references_drops_url_origin() -> None:
    """Хост и порт браузерного фрейма не попадают в ссылку на файл."""
    local = "at render (http://localhost:3000/static/js/main.js:10:5)"
    ci = "at render (https://ci-runner.internal:4123/static/js/main.js:10:5)"

    assert extract_file_references(local) == ("/static/js/main.js",)
    assert extract_file_references(ci) == ("/static/js/main.js",)


def test_url_frames_on_different_ports_share_signature() -> None:
    first = normalize_evidence(
        "TypeError: x is undefined", "at render (http://localhost:3000/static/js/main.js:10:5)",
    )
    second = normalize_evidence(
        "TypeError: x is undefined", "at render (http://127.0.0.1:4123/static/js/main.js:88:1)",
    )

    assert first.file_references == second.file_references == ("/static/js/main.js",)
    assert compute_signature(first) == compute_signature(second)


def test_extract_file_references_file_url_and_drive_letter() -> None:
    assert extract_file_references("at file:///app/tests/cart.spec.ts:3:1") == ("/app/tests/cart.spec.ts",)
    assert extract_file_references("at file:///C:/work/cart.spec.ts:3:1") == ("C:/work/cart.spec.ts",)
