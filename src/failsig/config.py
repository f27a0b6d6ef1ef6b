"""Конфигурация движка, загружаемая из переменных окружения."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Конфигурация failsig.

    Все значения задаются через переменные окружения с префиксом ``FAILSIG_``
    или через файл ``.env`` в рабочей директории.
    """

    model_config = SettingsConfigDict(
        env_prefix="FAILSIG_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    store_backend: Literal["memory", "postgres"] = Field(
        default="memory",
        description="Хранилище классификаций и групп: memory (в процессе) или postgres",
    )
    postgres_dsn: str = Field(
        default="",
        description="Строка подключения PostgreSQL (обязательна для backend=postgres)",
    )

    rules_backend: Literal["yaml", "postgres"] = Field(
        default="yaml",
        description="Источник правил классификации: YAML-директория или таблица classification_rules",
    )
    rules_path: str = Field(default="rules", description="Директория с YAML-файлами правил")

    signature_frame_count: int = Field(
        default=3, ge=1, le=10,
        description="Сколько файлов из стек-трейса входит в сигнатуру",
    )
    error_type_max_length: int = Field(
        default=50, ge=10,
        description="Максимальная длина error_type, взятого из первой строки сообщения",
    )
    evidence_max_chars: int = Field(
        default=4000, ge=200,
        description="Лимит символов message/stack_trace в снапшоте evidence",
    )
    conflict_retries: int = Field(
        default=3, ge=1,
        description="Сколько раз повторять транзакцию при конфликте создания группы",
    )

    push_enabled: bool = Field(default=False, description="Включить создание задач в трекере")
    push_concurrency: int = Field(default=5, ge=1, description="Макс. параллельных запросов к трекеру")
    push_pending_timeout: int = Field(
        default=600, ge=1,
        description="Через сколько секунд pending-запись push считается зависшей",
    )
    push_labels_prefix: str = Field(default="auto-defect", description="Префикс меток задачи в трекере")

    log_level: str = Field(default="INFO", description="Уровень логирования")
