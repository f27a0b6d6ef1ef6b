"""Точка входа CLI движка классификации падений failsig."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from failsig import __version__

if TYPE_CHECKING:
    from failsig.models.defects import DefectGroup, GroupListing
    from failsig.orchestrator import ClassificationRun

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_NOT_FOUND = 3

_CLASS_CHOICES = [
    "Application Defect",
    "Test Data Issue",
    "Automation Script Error",
    "Environment Issue",
    "Unknown",
]


def _datetime_arg(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"ожидается дата ISO 8601: {value}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="failsig",
        description="Классификация упавших тестов по сигнатурам и правилам",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Уровень логирования (переопределяет FAILSIG_LOG_LEVEL)",
    )
    parser.add_argument(
        "--output-format",
        choices=["text", "json"],
        default="text",
        help="Формат вывода (по умолчанию: text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"failsig {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    classify = sub.add_parser("classify", help="Классифицировать падения из JSON-файла")
    classify.add_argument("file", help="JSON: список падений или {\"failures\": [...]}")
    classify.add_argument(
        "--rules-path", default=None,
        help="Директория YAML-правил (переопределяет FAILSIG_RULES_PATH)",
    )

    groups = sub.add_parser("groups", help="Список дефект-групп")
    groups.add_argument("--project", type=int, default=None, help="ID проекта")
    groups.add_argument("--class", dest="primary_class", choices=_CLASS_CHOICES, default=None)
    groups.add_argument("--sub-class", default=None)
    groups.add_argument("--search", default=None, help="Подстрока в тексте ошибки или sub class")
    groups.add_argument("--since", type=_datetime_arg, default=None)
    groups.add_argument("--until", type=_datetime_arg, default=None)
    resolved = groups.add_mutually_exclusive_group()
    resolved.add_argument("--resolved", dest="is_resolved", action="store_const", const=True)
    resolved.add_argument("--unresolved", dest="is_resolved", action="store_const", const=False)
    groups.add_argument(
        "--sort-by", choices=["occurrence_count", "last_seen", "first_seen"],
        default="occurrence_count",
    )
    groups.add_argument("--limit", type=int, default=None)

    reclassify = sub.add_parser("reclassify", help="Ручная переклассификация падения")
    reclassify.add_argument("classification_id", type=int)
    reclassify.add_argument("primary_class", choices=_CLASS_CHOICES)
    reclassify.add_argument("--sub-class", default=None)
    reclassify.add_argument("--actor", required=True)
    reclassify.add_argument("--note", default=None)

    for name, help_text in (
        ("resolve", "Пометить группу решённой"),
        ("reopen", "Переоткрыть решённую группу"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("group_id", type=int)
        cmd.add_argument("--actor", required=True)
        cmd.add_argument("--note", default=None)

    audit = sub.add_parser("audit", help="Журнал аудита")
    audit.add_argument("--classification-id", type=int, default=None)
    audit.add_argument("--group-id", type=int, default=None)

    return parser


def run(args: argparse.Namespace) -> int:
    """Собрать зависимости и выполнить команду. Возвращает код выхода."""
    # Отложенные импорты — чтобы --help работал быстро
    from pydantic import ValidationError

    from failsig.config import Settings
    from failsig.exceptions import ConfigurationError, FailsigError, NotFoundError
    from failsig.logging_config import setup_logging
    from failsig.orchestrator import create_store

    # 1. Загрузка настроек
    try:
        overrides: dict[str, object] = {}
        if getattr(args, "rules_path", None):
            overrides["rules_path"] = args.rules_path
        settings = Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        print(
            f"Ошибка конфигурации: {exc}\n\nПодробности см. в .env.example.",
            file=sys.stderr,
        )
        return EXIT_CONFIG

    # 2. Настройка логирования
    setup_logging(args.log_level or settings.log_level)

    # 3. Выполнение команды
    try:
        store = create_store(settings)
        handler = _COMMANDS[args.command]
        return handler(args, settings, store)
    except ConfigurationError as exc:
        logger.error("Ошибка конфигурации: %s", exc)
        return EXIT_CONFIG
    except NotFoundError as exc:
        logger.error("Не найдено: %s", exc)
        return EXIT_NOT_FOUND
    except FailsigError as exc:
        logger.error("Ошибка: %s", exc)
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Прервано пользователем")
        return 130


# ------------------------------------------------------------------
# Команды
# ------------------------------------------------------------------


def _cmd_classify(args, settings, store) -> int:
    from failsig.orchestrator import load_failures, process_failures

    failures = load_failures(args.file)
    run_result = process_failures(failures, settings, store)

    if args.output_format == "json":
        output = {
            "outcomes": [o.model_dump(mode="json") for o in run_result.batch.outcomes],
            "failed": run_result.batch.failed,
            "cancelled": run_result.batch.cancelled,
            "groups": run_result.groups.model_dump(mode="json"),
            "suites": [dataclasses.asdict(s) for s in run_result.suites],
            "coverage": dataclasses.asdict(run_result.coverage),
        }
        print(json.dumps(output, indent=2, ensure_ascii=False))
    else:
        _print_classification_run(run_result)
    return EXIT_OK


def _cmd_groups(args, settings, store) -> int:
    from failsig.models.common import PrimaryClass
    from failsig.models.defects import GroupFilters
    from failsig.services.aggregation_service import DefectGroupAggregator

    if settings.store_backend == "memory":
        logger.warning("In-memory хранилище пусто в новом процессе: групп не будет")

    filters = GroupFilters(
        project_id=args.project,
        primary_class=PrimaryClass(args.primary_class) if args.primary_class else None,
        sub_class=args.sub_class,
        is_resolved=args.is_resolved,
        since=args.since,
        until=args.until,
        search=args.search,
        sort_by=args.sort_by,
        limit=args.limit,
    )
    listing = DefectGroupAggregator(store).list_groups(filters)

    if args.output_format == "json":
        print(json.dumps(listing.model_dump(mode="json"), indent=2, ensure_ascii=False))
    else:
        _print_group_listing(listing)
    return EXIT_OK


def _cmd_reclassify(args, settings, store) -> int:  # noqa: ARG001
    from failsig.models.common import PrimaryClass
    from failsig.orchestrator import build_reclassification_service

    service = build_reclassification_service(store)
    updated = service.reclassify(
        args.classification_id,
        PrimaryClass(args.primary_class),
        args.sub_class,
        actor=args.actor,
        note=args.note,
    )
    if args.output_format == "json":
        print(json.dumps(updated.model_dump(mode="json"), indent=2, ensure_ascii=False))
    else:
        print(
            f"Классификация #{updated.id}: {updated.primary_class.value}"
            f"{' / ' + updated.sub_class if updated.sub_class else ''}"
            f" (автор: {updated.classified_by or '-'})"
        )
    return EXIT_OK


def _cmd_resolve(args, settings, store) -> int:  # noqa: ARG001
    from failsig.orchestrator import build_reclassification_service

    service = build_reclassification_service(store)
    if args.command == "resolve":
        group = service.resolve_group(args.group_id, actor=args.actor, note=args.note)
    else:
        group = service.reopen_group(args.group_id, actor=args.actor, note=args.note)

    if args.output_format == "json":
        print(json.dumps(group.model_dump(mode="json"), indent=2, ensure_ascii=False))
    else:
        state = "решена" if group.is_resolved else "открыта"
        print(f"Группа #{group.id} ({group.signature}): {state}")
    return EXIT_OK


def _cmd_audit(args, settings, store) -> int:  # noqa: ARG001
    from failsig.orchestrator import build_reclassification_service

    entries = build_reclassification_service(store).get_audit_trail(
        classification_id=args.classification_id, group_id=args.group_id,
    )
    if args.output_format == "json":
        print(json.dumps([e.model_dump(mode="json") for e in entries], indent=2, ensure_ascii=False))
        return EXIT_OK

    if not entries:
        print("Записей аудита нет.")
    for e in entries:
        old = e.old_primary_class.value if e.old_primary_class else "-"
        new = e.new_primary_class.value if e.new_primary_class else "-"
        print(
            f"{e.created_at.isoformat()}  {e.action.value:<12} {old} → {new}"
            f"  ({e.actor or 'system'}){'  ' + e.note if e.note else ''}"
        )
    return EXIT_OK


_COMMANDS = {
    "classify": _cmd_classify,
    "groups": _cmd_groups,
    "reclassify": _cmd_reclassify,
    "resolve": _cmd_resolve,
    "reopen": _cmd_resolve,
    "audit": _cmd_audit,
}


# ------------------------------------------------------------------
# Текстовый вывод
# ------------------------------------------------------------------


def _print_classification_run(run_result: ClassificationRun) -> None:
    batch = run_result.batch
    print()
    print("=== Классификация падений ===")
    print(
        f"Всего: {batch.total}"
        f" | Классифицировано: {batch.processed_count}"
        f" | С ошибками: {batch.failed_count}"
        + (" | Прервано" if batch.cancelled else "")
    )
    print(f"Покрытие классификацией: {run_result.coverage.classified_percent}%")
    print()

    for o in batch.outcomes:
        sub = f" / {o.sub_class}" if o.sub_class else ""
        print(
            f"  [{o.primary_class.value}{sub}]  падение {o.failure_id}"
            f"  confidence={o.confidence:.2f}  сигнатура={o.signature}  группа=#{o.group_id}"
        )
    for ref, error in batch.failed.items():
        print(f"  [ОШИБКА]  падение {ref}: {error}")

    if run_result.suites:
        print()
        print("=== По наборам тестов ===")
    for s in run_result.suites:
        run_id = s.test_run_id if s.test_run_id is not None else "-"
        classes = ", ".join(f"{cls}: {n}" for cls, n in sorted(s.counts.items()))
        print(f"  {s.suite} (прогон {run_id}): {s.failure_count} падений | {classes}")
        if s.top_sub_classes:
            print("    " + ", ".join(f"{sub} x{n}" for sub, n in s.top_sub_classes))

    print()
    _print_group_listing(run_result.groups)


def _print_group_listing(listing: GroupListing) -> None:
    """Вывод групп и сводки в stdout."""
    summary = listing.summary
    print(
        f"=== Дефект-группы ({summary.total_groups} групп, "
        f"{summary.total_occurrences} падений) ==="
    )
    if summary.by_class:
        print("  " + " | ".join(f"{cls}: {n}" for cls, n in sorted(summary.by_class.items())))

    if not listing.groups:
        print("Группы не найдены.")
        return

    for group in listing.groups:
        print()
        for line in _group_lines(group):
            print(line)
    print()


def _group_lines(group: DefectGroup) -> list[str]:
    sub = f" / {group.sub_class}" if group.sub_class else ""
    state = " [решена]" if group.is_resolved else ""
    message = " ".join((group.representative_error or "").split())
    if len(message) > 200:
        message = message[:200] + "..."
    lines = [
        f"#{group.id} {group.primary_class.value}{sub}{state}",
        f"  Сигнатура: {group.signature}  Вхождений: {group.occurrence_count}",
        f"  Первое: {group.first_seen.isoformat()}  Последнее: {group.last_seen.isoformat()}",
    ]
    if message:
        lines.append(f"  Ошибка: {message}")
    return lines


def main(argv: Sequence[str] | None = None) -> None:
    """Синхронная точка входа для CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    sys.exit(run(args))


if __name__ == "__main__":
    main()
