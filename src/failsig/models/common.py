"""Общие перечисления."""

from __future__ import annotations

from enum import Enum


class PrimaryClass(str, Enum):
    """Категория корневой причины падения."""

    APPLICATION_DEFECT = "Application Defect"
    TEST_DATA_ISSUE = "Test Data Issue"
    AUTOMATION_SCRIPT_ERROR = "Automation Script Error"
    ENVIRONMENT_ISSUE = "Environment Issue"
    UNKNOWN = "Unknown"


class AuditAction(str, Enum):
    """Действие, зафиксированное в журнале аудита."""

    CREATED = "created"
    RECLASSIFIED = "reclassified"
    RESOLVED = "resolved"
    REOPENED = "reopened"


class PushStatus(str, Enum):
    """Статус попытки создать задачу в трекере."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
