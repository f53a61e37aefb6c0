# -*- coding: utf-8 -*-
"""
CLI-версия генератора счетов для 3D-печати (FDM)
— считает себестоимость и цену заказа по статистике слайсера и бизнес-параметрам мастерской,
  хранит именованные профили заказов и экспортирует счёт (.xls, XML Spreadsheet).

Примеры:
  python cli_invoice.py --stats stats.json --presets presets.json --parts-per-plate 4 --plates 2 --json
  python cli_invoice.py --stats stats.json --load-profile "Брелоки" --export invoice.xls
  python cli_invoice.py --stats stats.json --filament-cost 0=25 --save-profile "Брелоки"
  python cli_invoice.py --list-profiles

Входные файлы:
  stats.json   — {"filament_stats": {"0": <длина, мм>}, "total_weight": <г>,
                  "estimated_normal_print_time": "1d 2h 3m 4s"}
  presets.json — {"filament_presets": [...], "filament_colour": [...], "filament_cost": [...],
                  "filament_density": [...], "filament_diameter": [...]} (массивы по номеру экструдера)

Стабильный JSON-контракт (--json):
  {
    "success": true,
    "profile": "<имя загруженного профиля>" | null,
    "job": {... все поля JobParameters ...},
    "print_time": "<строка слайсера>",
    "total_weight_g": <float>,
    "filaments": [{"extruder_id", "name", "color", "weight_g", "cost_per_kg", "calculated_cost"}, ...],
    "costs": {"material_cost", "labor_cost", "machine_cost", "tooling_cost", "postprocess_cost",
              "subtotal", "failure_adjustment", "cost_per_part", "markup_amount", "final_price",
              "total_job_cost", "print_time_hours", "total_parts"},
    "saved_profile": "<имя>" | null,
    "export_path": "<путь>" | null,
    "errors": [...], "count_failed": <int>
  }

Конфиг (invoice_defaults.json):
  • По умолчанию берётся из cwd (если есть), иначе рядом со скриптом; можно указать --config-dir.
  • Переопределять отдельные параметры можно флагом --set key=val (key без точки = job.<key>).

Коды возврата: 0 — успех; 1 — ошибка расчёта/экспорта/хранилища; 2 — ошибка аргументов или конфигурации.
"""
from __future__ import annotations

import os, sys, json, argparse
from typing import Dict, List, Optional

# импортируем ядро: модель данных, формулы, отчёт
import invoice_core as core
from invoice_export import ExportError, export_workbook
from profile_store import JobProfileStore, JsonKeyValueStore, ProfileStoreError

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_STORE = "invoice_store.json"
TEXT_OVERRIDE_KEYS = frozenset(core.TEXT_FIELDS) | {"business_name"}


# ---------- Утилиты ----------
def set_by_dotted_path(d: dict, path: str, value):
    """Устанавливает значение по точечному пути (например, 'job.labor_rate'). Создаёт вложенные словари при необходимости."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def parse_kv_override(pairs):
    """
    Парсит список key=val оверрайдов из CLI (--set). Пытается привести val к bool/int/float, иначе оставляет строкой.
    Текстовые поля (телефон, имя заказа, ...) не приводятся: "+15550100" и "0123" остаются строками.
    """
    out = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ValueError(f"Неверный формат override '{kv}', нужен key=val")
        k, v = kv.split('=', 1)
        k = k.strip()
        if '.' not in k and k != 'business_name':
            k = 'job.' + k
        vv = v
        if k.rsplit('.', 1)[-1] not in TEXT_OVERRIDE_KEYS:
            try:
                if v.lower() in ('true', 'false'):
                    vv = (v.lower() == 'true')
                elif '.' in v:
                    vv = float(v)
                else:
                    vv = int(v)
            except ValueError:
                pass
        set_by_dotted_path(out, k, vv)
    return out


def parse_filament_costs(pairs) -> Dict[int, float]:
    """--filament-cost ID=COST (можно несколько раз) -> {extruder_id: $/кг}."""
    out: Dict[int, float] = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ValueError(f"Неверный формат --filament-cost '{kv}', нужен ID=COST")
        k, v = kv.split('=', 1)
        try:
            eid = int(k)
            cost = float(v)
        except ValueError:
            raise ValueError(f"Неверный формат --filament-cost '{kv}', нужен ID=COST") from None
        if eid < 0:
            raise ValueError(f"Номер экструдера должен быть >= 0: '{kv}'")
        out[eid] = cost
    return out


# ---------- Загрузка конфигов ----------
class ConfigError(Exception):
    """Ошибка конфигурации CLI (нет файла, неверный JSON, валидация и т.д.)."""


def resolve_config_path(config_dir: str | None = None) -> str:
    """Определяет путь к invoice_defaults.json по config_dir/cwd/директории скрипта."""
    if config_dir:
        return core.get_default_config_path(os.path.abspath(os.path.expanduser(config_dir)))
    cwd_path = os.path.join(os.getcwd(), core.DEFAULTS_FILE_NAME)
    if os.path.exists(cwd_path):
        return cwd_path
    return core.get_default_config_path(BASE_DIR)


def load_config_via_core(config_dir: str | None, override: dict | None = None) -> tuple[core.JobParameters, str]:
    """Загружает параметры по умолчанию через invoice_core. Без явного --config-dir и без файла — встроенные значения."""
    path = resolve_config_path(config_dir)
    if not config_dir and not os.path.exists(path):
        cfg = {"business_name": "", "job": {}}
        core.deep_merge(cfg, override or {})
        try:
            return core.params_from_config(cfg), "(built-in defaults)"
        except ValueError as e:
            raise ConfigError(str(e)) from None
    try:
        cfg = core.load_defaults_json(path, override=override)
        return core.params_from_config(cfg), path
    except FileNotFoundError as e:
        raise ConfigError(f"Файл конфигурации не найден: {e.filename or e}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"{core.DEFAULTS_FILE_NAME}: ошибка JSON ({e.msg}, строка {e.lineno}, колонка {e.colno})"
        ) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None


def read_json_input(path: str, label: str) -> dict:
    """Читает входной JSON (статистика/пресеты). Ошибки — ConfigError с понятным текстом."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"{label}: файл не найден: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"{label}: ошибка JSON ({e.msg}, строка {e.lineno}, колонка {e.colno})") from None
    if not isinstance(data, dict):
        raise ConfigError(f"{label}: expected object")
    return data


def finalize_json_payload(payload: dict, errors: List[dict]) -> dict:
    """Добавляет поля ошибок для JSON-вывода."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["success"] = len(errors) == 0
    return payload


# ---------- Расчёт ----------
def compute_job(params: core.JobParameters, stats: dict, presets: Optional[dict] = None) -> dict:
    """
    Высокоуровневая функция: статистика слайсера + пресеты + параметры -> филамент и разбивка.
    Каждый вызов пересчитывает всё с нуля (филамент собирается заново, правки $/кг применяются поверх).
    """
    filament_stats, total_weight_g, time_str = core.summarize_stats(stats)
    filaments = core.resolve_filaments(filament_stats, core.PresetProvider(presets), total_weight_g)
    core.apply_cost_overrides(filaments, params.filament_costs)
    breakdown = core.compute_breakdown(params, filaments, core.parse_time_to_hours(time_str))
    return {
        "filaments": filaments,
        "breakdown": breakdown,
        "print_time": time_str,
        "total_weight_g": total_weight_g,
    }


def apply_cli_fields(params: core.JobParameters, args) -> core.JobParameters:
    """Явные флаги CLI важнее конфига и профиля."""
    for attr in ("business_name", "customer_name", "customer_email", "customer_phone",
                 "job_name", "job_description"):
        v = getattr(args, attr)
        if v is not None:
            setattr(params, attr, v)
    if args.parts_per_plate is not None:
        params.parts_per_plate = core.coerce_count(args.parts_per_plate, "--parts-per-plate")
    if args.plates is not None:
        params.num_plates = core.coerce_count(args.plates, "--plates")
    if args.failure_rate is not None:
        params.failure_rate = float(args.failure_rate)
    if args.markup is not None:
        params.markup_percent = float(args.markup)
    return params


def _print_profiles(names: List[str], as_json: bool) -> None:
    if as_json:
        print(json.dumps(finalize_json_payload({"profiles": names}, []), ensure_ascii=False, indent=2))
    else:
        print("\n".join(names) if names else "(нет сохранённых профилей)")


# ---------- CLI ----------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="CLI генератор счетов 3D-печати (FDM): себестоимость, цена, профили, экспорт .xls")
    ap.add_argument('--stats', help='JSON со статистикой слайсера (filament_stats / total_weight / estimated_normal_print_time)')
    ap.add_argument('--presets', help='JSON с пресетами филамента (массивы по номеру экструдера)')
    ap.add_argument('--config-dir', default=None, help='Папка с invoice_defaults.json (по умолчанию: cwd или рядом со скриптом)')
    ap.add_argument('--set', dest='overrides', action='append', help='Переопределить параметр (format: key=val, напр. labor_rate=25). Можно несколько раз.')

    ap.add_argument('--store', default=DEFAULT_STORE, help=f'Файл хранилища профилей (по умолчанию: {DEFAULT_STORE})')
    ap.add_argument('--load-profile', help='Загрузить сохранённый профиль заказа')
    ap.add_argument('--last-profile', action='store_true', help='Загрузить последний использованный профиль')
    ap.add_argument('--save-profile', help='Сохранить текущие параметры под именем')
    ap.add_argument('--delete-profile', help='Удалить профиль из списка')
    ap.add_argument('--list-profiles', action='store_true', help='Показать сохранённые профили')

    ap.add_argument('--business-name', help='Название мастерской')
    ap.add_argument('--customer-name')
    ap.add_argument('--customer-email')
    ap.add_argument('--customer-phone')
    ap.add_argument('--job-name')
    ap.add_argument('--job-description')
    ap.add_argument('--parts-per-plate', type=int, help='Деталей на столе (>=1)')
    ap.add_argument('--plates', type=int, help='Количество столов (>=1)')
    ap.add_argument('--failure-rate', type=float, help='Процент брака, %')
    ap.add_argument('--markup', type=float, help='Наценка, %')
    ap.add_argument('--filament-cost', dest='filament_costs', action='append', help='Цена филамента $/кг для экструдера: ID=COST. Можно несколько раз.')

    ap.add_argument('--export', help='Экспорт счёта в файл (.xls, XML Spreadsheet)')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='Вывод в JSON')
    fmt.add_argument('--text', action='store_true', help='Текстовый отчёт (по умолчанию)')
    ap.add_argument('--full', dest='brief', action='store_false', help='Полный отчёт с таблицей материалов')
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    """Точка входа CLI. Возвращает код возврата (0/1/2)."""
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    args = build_parser().parse_args(argv)

    try:
        profiles = JobProfileStore(JsonKeyValueStore(args.store))
    except ProfileStoreError as e:
        print(f"Ошибка хранилища профилей: {e}", file=sys.stderr)
        return 1

    # --- управление профилями без расчёта ---
    if args.delete_profile:
        try:
            removed = profiles.delete(args.delete_profile)
        except ProfileStoreError as e:
            print(f"Ошибка хранилища профилей: {e}", file=sys.stderr)
            return 1
        state = "deleted" if removed else "not found"
        print(f"[cli] profile {state}: {args.delete_profile}", file=sys.stderr)
    if args.list_profiles and not args.stats:
        _print_profiles(profiles.list(), args.json)
        return 0
    if not args.stats:
        if args.delete_profile:
            return 0
        print("Нужен --stats (или --list-profiles / --delete-profile)", file=sys.stderr)
        return 2

    # --- параметры: конфиг -> профиль -> флаги ---
    try:
        overrides = parse_kv_override(args.overrides)
        params, config_path = load_config_via_core(args.config_dir, overrides)
    except ValueError as e:
        print(f"Неверный формат --set: {e}", file=sys.stderr)
        return 2
    except ConfigError as e:
        print(f"Ошибка конфигурации: {e}", file=sys.stderr)
        return 2
    print(f"[cli] using config: {config_path}", file=sys.stderr)

    errors: List[dict] = []
    profile_name = args.load_profile or (profiles.last_profile if args.last_profile else "")
    loaded_profile = None
    if profile_name:
        loaded = profiles.load(profile_name)
        if loaded is None:
            print(f"[cli] profile not found: {profile_name}", file=sys.stderr)
        else:
            if not loaded.business_name:
                loaded.business_name = params.business_name
            params = loaded
            loaded_profile = profile_name
            print(f"[cli] profile loaded: {profile_name}", file=sys.stderr)
            try:
                profiles.remember_last(profile_name)
            except ProfileStoreError as e:
                errors.append({"stage": "load_profile", "error": str(e)})
    if not params.business_name:
        params.business_name = profiles.business_name

    try:
        apply_cli_fields(params, args)
        params.filament_costs.update(parse_filament_costs(args.filament_costs))
        if args.save_profile:
            JobProfileStore.validate_name(args.save_profile)
    except ValueError as e:
        print(f"Неверное значение аргумента: {e}", file=sys.stderr)
        return 2

    try:
        stats = read_json_input(args.stats, "stats")
        presets = read_json_input(args.presets, "presets") if args.presets else None
    except ConfigError as e:
        print(f"Ошибка входных данных: {e}", file=sys.stderr)
        return 2

    try:
        result = compute_job(params, stats, presets)
    except ValueError as e:
        print(f"Ошибка расчёта: {e}", file=sys.stderr)
        return 1

    saved_profile = None
    if args.save_profile:
        try:
            profiles.save(args.save_profile, params)
            saved_profile = args.save_profile
            print(f"[cli] profile saved: {args.save_profile}", file=sys.stderr)
        except ProfileStoreError as e:
            errors.append({"stage": "save_profile", "error": str(e)})

    export_path = None
    if args.export:
        try:
            export_path = export_workbook(args.export, result["breakdown"], params, result["filaments"])
            print(f"[cli] invoice exported: {export_path}", file=sys.stderr)
        except ExportError as e:
            errors.append({"stage": "export", "error": str(e)})

    if errors and not args.json:
        for err in errors:
            print(f"[cli] {err['stage']}: {err['error']}", file=sys.stderr)

    # вывод
    if args.json:
        payload = {
            "success": True,
            "profile": loaded_profile,
            "job": params.to_dict(),
            "print_time": result["print_time"],
            "total_weight_g": result["total_weight_g"],
            "filaments": [f.to_dict() for f in result["filaments"]],
            "costs": result["breakdown"].to_dict(),
            "saved_profile": saved_profile,
            "export_path": export_path,
        }
        if args.list_profiles:
            payload["profiles"] = profiles.list()
        print(json.dumps(finalize_json_payload(payload, errors), ensure_ascii=False, indent=2))
    else:
        print(core.render_report(
            params=params,
            filaments=result["filaments"],
            breakdown=result["breakdown"],
            print_time_str=result["print_time"],
            total_weight_g=result["total_weight_g"],
            brief=bool(args.brief),
        ).rstrip())
        if args.list_profiles:
            _print_profiles(profiles.list(), False)

    return 1 if errors else 0


if __name__ == '__main__':
    sys.exit(main())
