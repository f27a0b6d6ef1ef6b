"""Вычисление сигнатуры падения — детерминированного ключа группировки."""

from __future__ import annotations

import hashlib

from failsig.models.evidence import NormalizedEvidence

SIGNATURE_LENGTH = 12
"""Длина сигнатуры в hex-символах (48 бит).

Для десятков тысяч различных сигнатур вероятность коллизии пренебрежимо мала.
"""


def canonical_signature_text(evidence: NormalizedEvidence) -> str:
    """Каноническая строка: ``error_type|file1|file2|file3``.

    Без файлов строка заканчивается разделителем: ``TimeoutError|``.
    """
    return f"{evidence.error_type}|{'|'.join(evidence.file_references)}"


def compute_signature(evidence: NormalizedEvidence) -> str:
    """MD5 hex digest канонической строки, усечённый до ``SIGNATURE_LENGTH``.

    Зависит только от error_type и упорядоченного списка файлов, поэтому
    номера строк, timestamps и переменные части сообщения на сигнатуру не
    влияют. Алгоритм не зависит от процесса и языка (в отличие от ``hash()``).

    Returns:
        12-символьная hex-строка в нижнем регистре.
    """
    payload = canonical_signature_text(evidence)
    digest = hashlib.md5(payload.encode("utf-8"), usedforsecurity=False)
    return digest.hexdigest()[:SIGNATURE_LENGTH]
